"""A device that feeds transmitted data back into the stack."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any

from .intr import INTR_IRQ_BASE
from .net import DeviceFlag, DeviceType, NetDevice, NetError, NetStack

__all__ = [
    "LOOPBACK_IRQ",
    "LOOPBACK_MTU",
    "LOOPBACK_QUEUE_LIMIT",
    "LoopbackDevice",
    "loopback_init",
]

logger = logging.getLogger(__name__)

LOOPBACK_MTU = 0xFFFF
LOOPBACK_QUEUE_LIMIT = 16
LOOPBACK_IRQ = INTR_IRQ_BASE + 1


class LoopbackDevice(NetDevice):
    """Queues transmitted data and delivers it as input on its IRQ."""

    def __init__(self) -> None:
        super().__init__(
            type=DeviceType.LOOPBACK,
            mtu=LOOPBACK_MTU,
            flags=DeviceFlag.LOOPBACK,
            hlen=0,
            alen=0,
        )
        self.irq = LOOPBACK_IRQ
        self._lock = threading.Lock()
        self._queue: deque[tuple[int, bytes]] = deque()

    def transmit(self, type: int, data: bytes, dst: Any = None) -> None:
        if self.stack is None:
            raise NetError("device is not registered")
        with self._lock:
            if len(self._queue) >= LOOPBACK_QUEUE_LIMIT:
                raise NetError("queue is full")
            self._queue.append((type, bytes(data)))
            num = len(self._queue)
        logger.debug(
            "queue pushed (num:%d), dev=%s, type=0x%04x, len=%d",
            num, self.name, type, len(data),
        )
        self.stack.intr.raise_irq(self.irq)

    def isr(self, irq: int, dev: NetDevice) -> None:
        stack = dev.stack
        if stack is None:
            raise NetError("device is not registered")
        with self._lock:
            while self._queue:
                type, data = self._queue.popleft()
                logger.debug(
                    "queue popped (num:%d), dev=%s, type=0x%04x, len=%d",
                    len(self._queue), dev.name, type, len(data),
                )
                stack.input_handler(type, data, dev)


def loopback_init(stack: NetStack) -> LoopbackDevice:
    """Create a loopback device and register it and its IRQ with ``stack``."""
    dev = LoopbackDevice()
    stack.register_device(dev)
    stack.intr.request_irq(dev.irq, dev.isr, shared=True, name=dev.name, dev=dev)
    logger.debug("initialized, dev=%s", dev.name)
    return dev