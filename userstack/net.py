"""Device, protocol, timer and event registry at the core of the stack."""

from __future__ import annotations

import enum
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Optional, Union

from .intr import INTR_IRQ_EVENT, INTR_IRQ_SOFTIRQ, Interrupts

__all__ = [
    "IFNAMSIZ",
    "NET_DEVICE_ADDR_LEN",
    "DeviceFlag",
    "DeviceType",
    "IfaceFamily",
    "NetDevice",
    "NetError",
    "NetIface",
    "NetStack",
    "ProtocolType",
]

logger = logging.getLogger(__name__)

IFNAMSIZ = 16
NET_DEVICE_ADDR_LEN = 16

ProtocolHandler = Callable[[bytes, "NetDevice"], Any]


class NetError(Exception):
    """Raised when a device or registry operation fails."""


class DeviceType(enum.IntEnum):
    DUMMY = 0x0000
    LOOPBACK = 0x0001
    ETHERNET = 0x0002


class DeviceFlag(enum.IntFlag):
    UP = 0x0001
    LOOPBACK = 0x0010
    BROADCAST = 0x0020
    P2P = 0x0040
    NEED_ARP = 0x0100


class ProtocolType(enum.IntEnum):
    """Protocol numbers carried by devices; the same values as Ethernet types."""

    IP = 0x0800
    ARP = 0x0806
    IPV6 = 0x86DD


class IfaceFamily(enum.IntEnum):
    IP = 1
    IPV6 = 2


class NetIface:
    """An address family bound to a device; protocol layers extend it."""

    def __init__(self, family: int) -> None:
        self.family = family
        self.dev: Optional[NetDevice] = None


class NetDevice:
    """A network device.

    Drivers subclass it and provide ``transmit``.  Drivers that acquire
    resources when brought up override ``open``/``close`` and call the base
    implementation to update the device state.
    """

    def __init__(
        self,
        type: int = DeviceType.DUMMY,
        mtu: int = 0,
        flags: int = 0,
        hlen: int = 0,
        alen: int = 0,
        addr: bytes = b"",
        broadcast: bytes = b"",
    ) -> None:
        self.index = -1
        self.name = ""
        self.type = type
        self.mtu = mtu
        self.flags = DeviceFlag(flags)
        self.hlen = hlen
        self.alen = alen
        self.addr = bytes(addr)
        self.broadcast = bytes(broadcast)
        self.ifaces: list[NetIface] = []
        self.stack: Optional[NetStack] = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name or '?'} type=0x{int(self.type):04x}>"

    def _state(self) -> str:
        return "up" if self.is_up() else "down"

    def is_up(self) -> bool:
        """Return True while the device is open."""
        return bool(self.flags & DeviceFlag.UP)

    def open(self) -> None:
        """Bring the device up."""
        if self.is_up():
            raise NetError(f"already opened, dev={self.name}")
        self.flags |= DeviceFlag.UP
        logger.info("dev=%s, state=%s", self.name, self._state())

    def close(self) -> None:
        """Bring the device down."""
        if not self.is_up():
            raise NetError(f"not opened, dev={self.name}")
        self.flags &= ~DeviceFlag.UP
        logger.info("dev=%s, state=%s", self.name, self._state())

    def transmit(self, type: int, data: bytes, dst: Any = None) -> None:
        """Send ``data`` on the wire; a device without a driver cannot."""
        raise NetError(f"device has no transmit operation, dev={self.name}")

    def add_iface(self, iface: NetIface) -> None:
        """Attach ``iface``; only one interface per family is allowed."""
        for entry in self.ifaces:
            if entry.family == iface.family:
                raise NetError(
                    f"already exists, dev={self.name}, family={entry.family}"
                )
        iface.dev = self
        self.ifaces.insert(0, iface)

    def get_iface(self, family: int) -> Optional[NetIface]:
        """Return the interface of ``family`` or None."""
        return next((e for e in self.ifaces if e.family == family), None)

    def output(self, type: int, data: bytes, dst: Any = None) -> None:
        """Check state and size, then hand ``data`` to the driver."""
        data = bytes(data)
        if not self.is_up():
            raise NetError(f"not opened, dev={self.name}")
        if len(data) > self.mtu:
            raise NetError(
                f"too long, dev={self.name}, mtu={self.mtu}, len={len(data)}"
            )
        logger.debug("dev=%s, type=0x%04x, len=%d", self.name, type, len(data))
        self.transmit(type, data, dst)


@dataclass
class _Protocol:
    type: int
    handler: ProtocolHandler
    queue: deque = field(default_factory=deque)


@dataclass
class _Timer:
    interval: float
    handler: Callable[[], Any]
    last: float


@dataclass
class _Event:
    handler: Callable[[Any], Any]
    arg: Any


class NetStack:
    """Registry of devices, protocols, timers and events driven by interrupts."""

    def __init__(self, tick: float = 0.001) -> None:
        self.intr = Interrupts(
            softirq_handler=self.softirq_handler,
            timer_handler=self.timer_handler,
            event_handler=self.event_handler,
            tick=tick,
        )
        self.devices: list[NetDevice] = []
        self._protocols: list[_Protocol] = []
        self._timers: list[_Timer] = []
        self._events: list[_Event] = []
        self._next_index = 0

    def register_device(self, dev: NetDevice) -> NetDevice:
        """Give ``dev`` an index and a name and attach it to this stack."""
        dev.index = self._next_index
        self._next_index += 1
        dev.name = f"net{dev.index}"[: IFNAMSIZ - 1]
        dev.stack = self
        self.devices.insert(0, dev)
        logger.info("registered, dev=%s, type=0x%04x", dev.name, int(dev.type))
        return dev

    def register_protocol(self, type: int, handler: ProtocolHandler) -> None:
        """Register ``handler(data, dev)`` for input of protocol ``type``."""
        if any(proto.type == type for proto in self._protocols):
            raise NetError(f"already registered, type=0x{type:04x}")
        self._protocols.insert(0, _Protocol(type, handler))
        logger.info("registered, type=0x%04x", type)

    def register_timer(
        self, interval: Union[float, timedelta], handler: Callable[[], Any]
    ) -> None:
        """Call ``handler`` whenever more than ``interval`` seconds have passed."""
        seconds = (
            interval.total_seconds()
            if isinstance(interval, timedelta)
            else float(interval)
        )
        self._timers.insert(0, _Timer(seconds, handler, time.monotonic()))
        logger.info("registered: interval=%s", seconds)

    def timer_handler(self) -> None:
        """Run every timer whose interval has elapsed."""
        for timer in self._timers:
            if timer.interval < time.monotonic() - timer.last:
                timer.handler()
                timer.last = time.monotonic()

    def input_handler(self, type: int, data: bytes, dev: NetDevice) -> bool:
        """Queue received ``data`` for its protocol.

        Returns False when no protocol handles ``type``; the data is dropped.
        """
        for proto in self._protocols:
            if proto.type == type:
                proto.queue.append((dev, bytes(data)))
                logger.debug(
                    "queue pushed (num %d), dev=%s, type=0x%04x, len=%d",
                    len(proto.queue), dev.name, type, len(data),
                )
                self.intr.raise_irq(INTR_IRQ_SOFTIRQ)
                return True
        return False

    def softirq_handler(self) -> int:
        """Deliver all queued input to protocol handlers; return how many."""
        delivered = 0
        for proto in self._protocols:
            while proto.queue:
                dev, data = proto.queue.popleft()
                logger.debug(
                    "queue popped (num:%d), dev=%s, type=0x%04x, len=%d",
                    len(proto.queue), dev.name, proto.type, len(data),
                )
                try:
                    proto.handler(data, dev)
                except Exception:
                    logger.exception("protocol handler failed, type=0x%04x", proto.type)
                delivered += 1
        return delivered

    def subscribe_event(self, handler: Callable[[Any], Any], arg: Any = None) -> None:
        """Call ``handler(arg)`` whenever an event is raised."""
        self._events.insert(0, _Event(handler, arg))

    def event_handler(self) -> None:
        """Notify every event subscriber."""
        for event in self._events:
            event.handler(event.arg)

    def raise_event(self) -> None:
        """Ask the interrupt thread to notify event subscribers."""
        self.intr.raise_irq(INTR_IRQ_EVENT)

    def run(self) -> None:
        """Start interrupt handling and open every device."""
        self.intr.run()
        logger.debug("open all devices...")
        for dev in self.devices:
            try:
                dev.open()
            except NetError as exc:
                logger.error("%s", exc)
        logger.debug("running...")

    def shutdown(self) -> None:
        """Close every device and stop interrupt handling."""
        logger.debug("close all devices...")
        for dev in self.devices:
            try:
                dev.close()
            except NetError as exc:
                logger.error("%s", exc)
        self.intr.shutdown()
        logger.debug("shutting down")