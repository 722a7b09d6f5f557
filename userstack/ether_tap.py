"""Ethernet device backed by a Linux TAP interface."""

from __future__ import annotations

import logging
import os
import select
import socket
import struct
import threading
from typing import Any, Optional

from .ether import (
    ETHER_ADDR_ANY,
    ETHER_ADDR_LEN,
    ether_addr_pton,
    ether_input_helper,
    ether_setup_helper,
    ether_transmit_helper,
)
from .intr import INTR_IRQ_BASE
from .net import IFNAMSIZ, NetDevice, NetError, NetStack

__all__ = ["CLONE_DEVICE", "ETHER_TAP_IRQ", "EtherTapDevice", "ether_tap_init"]

logger = logging.getLogger(__name__)

CLONE_DEVICE = "/dev/net/tun"
ETHER_TAP_IRQ = INTR_IRQ_BASE + 2

_TUNSETIFF = 0x400454CA
_SIOCGIFHWADDR = 0x8927
_IFF_TAP = 0x0002
_IFF_NO_PI = 0x1000
_POLL_INTERVAL = 0.1


def _ioctl(fd: int, request: int, arg: bytes) -> bytes:
    import fcntl

    return fcntl.ioctl(fd, request, arg)


class EtherTapDevice(NetDevice):
    """An Ethernet device reading and writing frames through a TAP interface.

    While open, a watcher thread raises the device IRQ whenever frames are
    waiting; the interrupt handler then reads and delivers them.
    """

    def __init__(self, name: str, addr: Optional[str] = None) -> None:
        super().__init__()
        ether_setup_helper(self)
        self.addr = ETHER_ADDR_ANY
        if addr:
            try:
                self.addr = ether_addr_pton(addr)
            except ValueError as exc:
                raise NetError(f"invalid address, addr={addr}") from exc
        self.ifname = name[: IFNAMSIZ - 1]
        self.fd = -1
        self.irq = ETHER_TAP_IRQ
        self._stop = threading.Event()
        self._drained = threading.Event()
        self._watcher: Optional[threading.Thread] = None

    def _hwaddr(self) -> bytes:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            try:
                ifr = _ioctl(
                    sock.fileno(), _SIOCGIFHWADDR,
                    struct.pack("256s", self.ifname.encode()),
                )
            except OSError as exc:
                raise NetError(f"ioctl [SIOCGIFHWADDR]: {exc}, dev={self.name}") from exc
        return ifr[18:18 + ETHER_ADDR_LEN]

    def open(self) -> None:
        if self.is_up():
            raise NetError(f"already opened, dev={self.name}")
        try:
            fd = os.open(CLONE_DEVICE, os.O_RDWR)
        except OSError as exc:
            raise NetError(f"open: {exc}, dev={self.name}") from exc
        try:
            ifr = struct.pack("16sH", self.ifname.encode(), _IFF_TAP | _IFF_NO_PI)
            try:
                _ioctl(fd, _TUNSETIFF, ifr)
            except OSError as exc:
                raise NetError(f"ioctl [TUNSETIFF]: {exc}, dev={self.name}") from exc
            if self.addr == ETHER_ADDR_ANY:
                self.addr = self._hwaddr()
        except Exception:
            os.close(fd)
            raise
        self.fd = fd
        self._stop.clear()
        self._watcher = threading.Thread(
            target=self._watch, name=f"{self.name}-watch", daemon=True
        )
        self._watcher.start()
        super().open()

    def close(self) -> None:
        if not self.is_up():
            raise NetError(f"not opened, dev={self.name}")
        self._stop.set()
        self._drained.set()
        if self._watcher is not None:
            self._watcher.join()
            self._watcher = None
        if self.fd >= 0:
            os.close(self.fd)
            self.fd = -1
        super().close()

    def _watch(self) -> None:
        while not self._stop.is_set():
            try:
                readable, _, _ = select.select([self.fd], [], [], _POLL_INTERVAL)
            except (OSError, ValueError):
                break
            if readable and self.stack is not None:
                self._drained.clear()
                self.stack.intr.raise_irq(self.irq)
                self._drained.wait(_POLL_INTERVAL)

    def _write(self, dev: NetDevice, frame: bytes) -> int:
        try:
            return os.write(self.fd, frame)
        except OSError as exc:
            logger.error("write: %s, dev=%s", exc, self.name)
            return -1

    def _read(self, dev: NetDevice, size: int) -> bytes:
        try:
            return os.read(self.fd, size)
        except InterruptedError:
            return b""
        except OSError as exc:
            logger.error("read: %s, dev=%s", exc, self.name)
            return b""

    def transmit(self, type: int, data: bytes, dst: Any = None) -> None:
        ether_transmit_helper(self, type, data, dst, self._write)

    def isr(self, irq: int, dev: NetDevice) -> None:
        """Read and deliver every frame that is waiting."""
        try:
            while self.fd >= 0:
                readable, _, _ = select.select([self.fd], [], [], 0)
                if not readable:
                    break
                try:
                    ether_input_helper(dev, self._read)
                except NetError as exc:
                    logger.error("%s", exc)
        finally:
            self._drained.set()


def ether_tap_init(
    stack: NetStack, name: str, addr: Optional[str] = None
) -> EtherTapDevice:
    """Create a TAP device and register it and its IRQ with ``stack``."""
    dev = EtherTapDevice(name, addr)
    stack.register_device(dev)
    stack.intr.request_irq(dev.irq, dev.isr, shared=True, name=dev.name, dev=dev)
    logger.info("ethernet device initialized, dev=%s", dev.name)
    return dev