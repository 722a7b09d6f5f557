"""Sleep/wakeup contexts built on a condition variable sharing a caller's lock."""

from __future__ import annotations

import threading
from typing import Optional, Union

__all__ = ["SchedContext"]

LockType = Union["threading.Lock", "threading.RLock"]


class SchedContext:
    """A wait point that sleepers can be woken from or interrupted out of.

    Every method must be called with ``lock`` held.
    """

    def __init__(self, lock) -> None:
        self._cond = threading.Condition(lock)
        self._interrupted = False
        self._waiters = 0

    def sleep(self, timeout: Optional[float] = None) -> bool:
        """Wait for a wakeup; release ``lock`` while waiting.

        Returns True when woken and False when ``timeout`` ran out.  Raises
        InterruptedError if the context is or becomes interrupted; the
        interruption is cleared once the last interrupted sleeper leaves.
        """
        if self._interrupted:
            raise InterruptedError("sleep interrupted")
        self._waiters += 1
        try:
            woken = self._cond.wait(timeout)
        finally:
            self._waiters -= 1
        if self._interrupted:
            if not self._waiters:
                self._interrupted = False
            raise InterruptedError("sleep interrupted")
        return woken

    def wakeup(self) -> None:
        """Wake every sleeper."""
        self._cond.notify_all()

    def interrupt(self) -> None:
        """Mark the context interrupted and wake every sleeper."""
        self._interrupted = True
        self._cond.notify_all()

    def destroy(self) -> bool:
        """Return True if no one is sleeping, False while sleepers remain."""
        return self._waiters == 0