"""Checksum and hex dump helpers shared by the protocol layers."""

from __future__ import annotations

import struct

__all__ = ["cksum16", "hexdump"]

_BORDER = "+------+" + "-" * 49 + "+" + "-" * 18 + "+"


def cksum16(data: bytes, init: int = 0) -> int:
    """Return the 16-bit one's complement checksum of ``data``.

    Words are read in network byte order and ``init`` is added to the sum
    before folding, so a partial sum (for example of a pseudo header) can be
    carried in.  A buffer that already holds a correct checksum yields 0.
    """
    buf = bytes(data)
    if len(buf) % 2:
        buf += b"\x00"
    total = init + sum(struct.unpack(f">{len(buf) // 2}H", buf))
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    return ~total & 0xFFFF


def _printable(byte: int) -> str:
    return chr(byte) if 0x20 <= byte <= 0x7E else "."


def hexdump(data: bytes) -> str:
    """Render ``data`` as a boxed table of hex bytes and their ASCII form."""
    buf = bytes(data)
    lines = [_BORDER]
    for offset in range(0, len(buf), 16):
        chunk = buf[offset:offset + 16]
        pad = 16 - len(chunk)
        hex_part = "".join(f"{b:02x} " for b in chunk) + "   " * pad
        text_part = "".join(_printable(b) for b in chunk) + " " * pad
        lines.append(f"| {offset:04x} | {hex_part}| {text_part} |")
    lines.append(_BORDER)
    return "\n".join(lines) + "\n"