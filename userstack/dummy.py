"""A device that drops everything it is given."""

from __future__ import annotations

import logging
from typing import Any

from .intr import INTR_IRQ_BASE
from .net import DeviceType, NetDevice, NetError, NetStack

__all__ = ["DUMMY_IRQ", "DUMMY_MTU", "DummyDevice", "dummy_init"]

logger = logging.getLogger(__name__)

DUMMY_MTU = 0xFFFF
DUMMY_IRQ = INTR_IRQ_BASE


class DummyDevice(NetDevice):
    """Discards transmitted data and raises its IRQ."""

    def __init__(self) -> None:
        super().__init__(type=DeviceType.DUMMY, mtu=DUMMY_MTU, hlen=0, alen=0)

    def transmit(self, type: int, data: bytes, dst: Any = None) -> None:
        if self.stack is None:
            raise NetError("device is not registered")
        logger.debug("dev=%s, type=0x%04x, len=%d", self.name, type, len(data))
        self.stack.intr.raise_irq(DUMMY_IRQ)

    def isr(self, irq: int, dev: NetDevice) -> None:
        logger.debug("irq=%d, dev=%s", irq, dev.name)


def dummy_init(stack: NetStack) -> DummyDevice:
    """Create a dummy device and register it and its IRQ with ``stack``."""
    dev = DummyDevice()
    stack.register_device(dev)
    stack.intr.request_irq(DUMMY_IRQ, dev.isr, shared=True, name=dev.name, dev=dev)
    logger.debug("initialized, dev=%s", dev.name)
    return dev