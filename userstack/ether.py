"""Ethernet framing helpers shared by Ethernet device drivers."""

from __future__ import annotations

import logging
import re
import struct
from typing import Callable

from .net import DeviceFlag, DeviceType, NetDevice, NetError

__all__ = [
    "ETHER_ADDR_ANY",
    "ETHER_ADDR_BROADCAST",
    "ETHER_ADDR_LEN",
    "ETHER_FRAME_SIZE_MAX",
    "ETHER_FRAME_SIZE_MIN",
    "ETHER_HDR_SIZE",
    "ETHER_PAYLOAD_SIZE_MAX",
    "ETHER_PAYLOAD_SIZE_MIN",
    "ETHER_TYPE_ARP",
    "ETHER_TYPE_IP",
    "ETHER_TYPE_IPV6",
    "ether_addr_ntop",
    "ether_addr_pton",
    "ether_input_helper",
    "ether_setup_helper",
    "ether_transmit_helper",
]

logger = logging.getLogger(__name__)

ETHER_ADDR_LEN = 6
ETHER_HDR_SIZE = 14
ETHER_FRAME_SIZE_MIN = 60
ETHER_FRAME_SIZE_MAX = 1514
ETHER_PAYLOAD_SIZE_MIN = ETHER_FRAME_SIZE_MIN - ETHER_HDR_SIZE
ETHER_PAYLOAD_SIZE_MAX = ETHER_FRAME_SIZE_MAX - ETHER_HDR_SIZE

ETHER_TYPE_IP = 0x0800
ETHER_TYPE_ARP = 0x0806
ETHER_TYPE_IPV6 = 0x86DD

ETHER_ADDR_ANY = bytes(ETHER_ADDR_LEN)
ETHER_ADDR_BROADCAST = b"\xff" * ETHER_ADDR_LEN

_HDR = struct.Struct("!6s6sH")
_OCTET = re.compile(r"\s*\+?(?:0[xX])?[0-9a-fA-F]+")

WriteFunc = Callable[[NetDevice, bytes], int]
ReadFunc = Callable[[NetDevice, int], bytes]


def ether_addr_pton(p: str) -> bytes:
    """Parse ``xx:xx:xx:xx:xx:xx`` into six bytes; raise ValueError if malformed."""
    parts = p.split(":")
    if len(parts) != ETHER_ADDR_LEN:
        raise ValueError(f"invalid ethernet address: {p!r}")
    octets = []
    for part in parts:
        if not _OCTET.fullmatch(part):
            raise ValueError(f"invalid ethernet address: {p!r}")
        value = int(part.strip().lstrip("+"), 16)
        if value > 0xFF:
            raise ValueError(f"invalid ethernet address: {p!r}")
        octets.append(value)
    return bytes(octets)


def ether_addr_ntop(n: bytes) -> str:
    """Format the first six bytes of ``n`` as ``xx:xx:xx:xx:xx:xx``."""
    addr = bytes(n)[:ETHER_ADDR_LEN]
    if len(addr) != ETHER_ADDR_LEN:
        raise ValueError("ethernet address needs six bytes")
    return ":".join(f"{b:02x}" for b in addr)


def _dump(frame: bytes) -> None:
    dst, src, type = _HDR.unpack_from(frame)
    logger.debug(
        "src: %s, dst: %s, type: 0x%04x",
        ether_addr_ntop(src), ether_addr_ntop(dst), type,
    )


def ether_transmit_helper(
    dev: NetDevice, type: int, data: bytes, dst: bytes, write: WriteFunc
) -> None:
    """Frame ``data``, pad it to the minimum size and pass it to ``write``."""
    data = bytes(data)
    if len(data) > ETHER_PAYLOAD_SIZE_MAX:
        raise NetError(f"too long, dev={dev.name}, len={len(data)}")
    header = _HDR.pack(
        bytes(dst)[:ETHER_ADDR_LEN], dev.addr[:ETHER_ADDR_LEN], type
    )
    pad = max(0, ETHER_PAYLOAD_SIZE_MIN - len(data))
    frame = header + data + bytes(pad)
    logger.debug("dev=%s, type=0x%04x, len=%d", dev.name, type, len(frame))
    _dump(frame)
    if write(dev, frame) != len(frame):
        raise NetError(f"frame write failure, dev={dev.name}")


def ether_input_helper(dev: NetDevice, read: ReadFunc) -> bool:
    """Read one frame and hand its payload to the stack.

    Returns False when the frame is addressed to another host or no protocol
    takes it.
    """
    frame = bytes(read(dev, ETHER_FRAME_SIZE_MAX))
    if len(frame) < ETHER_HDR_SIZE:
        raise NetError("too short")
    dst, _src, type = _HDR.unpack_from(frame)
    if dst != dev.addr[:ETHER_ADDR_LEN] and dst != ETHER_ADDR_BROADCAST:
        return False
    logger.debug("dev=%s, type=0x%04x, len=%d", dev.name, type, len(frame))
    _dump(frame)
    if dev.stack is None:
        raise NetError("device is not registered")
    return dev.stack.input_handler(type, frame[ETHER_HDR_SIZE:], dev)


def ether_setup_helper(dev: NetDevice) -> None:
    """Set the Ethernet defaults on ``dev``."""
    dev.type = DeviceType.ETHERNET
    dev.mtu = ETHER_PAYLOAD_SIZE_MAX
    dev.flags = DeviceFlag.BROADCAST | DeviceFlag.NEED_ARP
    dev.hlen = ETHER_HDR_SIZE
    dev.alen = ETHER_ADDR_LEN
    dev.broadcast = ETHER_ADDR_BROADCAST