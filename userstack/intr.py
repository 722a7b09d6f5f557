"""Interrupt emulation: a worker thread that dispatches raised IRQs and ticks a timer."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

__all__ = [
    "INTR_IRQ_BASE",
    "INTR_IRQ_EVENT",
    "INTR_IRQ_SOFTIRQ",
    "IntrError",
    "Interrupts",
]

logger = logging.getLogger(__name__)

INTR_IRQ_SOFTIRQ = 10
INTR_IRQ_EVENT = 12
INTR_IRQ_BASE = 35

_NAME_MAX = 15
_HANGUP = object()

IrqHandler = Callable[[int, Any], Any]


class IntrError(Exception):
    """Raised when an IRQ cannot be registered or the dispatcher misused."""


@dataclass
class _IrqEntry:
    irq: int
    handler: IrqHandler
    shared: bool
    name: str
    dev: Any


def _noop() -> None:
    return None


class Interrupts:
    """Dispatches raised IRQs to handlers on a dedicated thread.

    The soft IRQ and event IRQ numbers go to the stack-wide handlers; any
    other number goes to every handler registered for it.  The timer handler
    is called once per ``tick`` seconds while running.
    """

    def __init__(
        self,
        softirq_handler: Optional[Callable[[], Any]] = None,
        timer_handler: Optional[Callable[[], Any]] = None,
        event_handler: Optional[Callable[[], Any]] = None,
        tick: float = 0.001,
    ) -> None:
        if tick <= 0:
            raise ValueError("tick must be positive")
        self._softirq_handler = softirq_handler or _noop
        self._timer_handler = timer_handler or _noop
        self._event_handler = event_handler or _noop
        self._tick = tick
        self._irqs: list[_IrqEntry] = []
        self._lock = threading.Lock()
        self._queue: queue.SimpleQueue = queue.SimpleQueue()
        self._thread: Optional[threading.Thread] = None

    def request_irq(
        self,
        irq: int,
        handler: IrqHandler,
        shared: bool = False,
        name: str = "",
        dev: Any = None,
    ) -> None:
        """Register ``handler(irq, dev)`` for ``irq``.

        An IRQ number may carry several handlers only if all of them are shared.
        """
        logger.debug("irq=%d, shared=%s, name=%s", irq, shared, name)
        with self._lock:
            for entry in self._irqs:
                if entry.irq == irq and not (entry.shared and shared):
                    raise IntrError(
                        f"irq {irq} conflicts with already registered IRQs"
                    )
            self._irqs.insert(
                0, _IrqEntry(irq, handler, shared, name[:_NAME_MAX], dev)
            )
        logger.debug("registered: irq=%d, name=%s", irq, name)

    def raise_irq(self, irq: int) -> None:
        """Queue ``irq`` for the dispatcher thread."""
        self._queue.put(irq)

    def run(self) -> None:
        """Start the dispatcher thread and wait until it is running."""
        if self._thread is not None:
            raise IntrError("interrupt thread is already running")
        started = threading.Event()
        thread = threading.Thread(
            target=self._loop, args=(started,), name="intr", daemon=True
        )
        self._thread = thread
        thread.start()
        started.wait()

    def shutdown(self) -> None:
        """Stop the dispatcher thread; does nothing if it was never started."""
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return
        self._queue.put(_HANGUP)
        thread.join()
        self._thread = None

    def _call(self, handler: Callable[..., Any], *args: Any) -> None:
        try:
            handler(*args)
        except Exception:
            logger.exception("interrupt handler failed")

    def _dispatch(self, irq: int) -> None:
        if irq == INTR_IRQ_SOFTIRQ:
            self._call(self._softirq_handler)
        elif irq == INTR_IRQ_EVENT:
            self._call(self._event_handler)
        else:
            with self._lock:
                entries = [entry for entry in self._irqs if entry.irq == irq]
            for entry in entries:
                logger.debug("irq=%d, name=%s", entry.irq, entry.name)
                self._call(entry.handler, entry.irq, entry.dev)

    def _loop(self, started: threading.Event) -> None:
        logger.debug("start...")
        started.set()
        deadline = time.monotonic() + self._tick
        while True:
            timeout = max(0.0, deadline - time.monotonic())
            try:
                irq = self._queue.get(timeout=timeout)
            except queue.Empty:
                irq = None
            if irq is _HANGUP:
                break
            if irq is not None:
                self._dispatch(irq)
            now = time.monotonic()
            if now >= deadline:
                self._call(self._timer_handler)
                deadline = now + self._tick
        logger.debug("terminated")