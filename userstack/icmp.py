"""ICMP: echo replies and message output."""

from __future__ import annotations

import enum
import logging
import struct

from .ip import (
    IP_PAYLOAD_SIZE_MAX,
    IP_PROTOCOL_ICMP,
    IpError,
    IpIface,
    IpLayer,
    ip_addr_ntop,
)
from .util import cksum16

__all__ = ["ICMP_HDR_SIZE", "Icmp", "IcmpType", "icmp_type_ntoa"]

logger = logging.getLogger(__name__)

ICMP_HDR_SIZE = 8

_HDR = struct.Struct("!BBHI")
_ECHO = struct.Struct("!BBHHH")


class IcmpType(enum.IntEnum):
    ECHOREPLY = 0
    DEST_UNREACH = 3
    SOURCE_QUENCH = 4
    REDIRECT = 5
    ECHO = 8
    TIME_EXCEEDED = 11
    PARAM_PROBLEM = 12
    TIMESTAMP = 13
    TIMESTAMPREPLY = 14
    INFO_REQUEST = 15
    INFO_REPLY = 16


_NAMES = {
    IcmpType.ECHOREPLY: "EchoReply",
    IcmpType.DEST_UNREACH: "DestinationUnreachable",
    IcmpType.SOURCE_QUENCH: "SourceQuench",
    IcmpType.REDIRECT: "Redirect",
    IcmpType.ECHO: "Echo",
    IcmpType.TIME_EXCEEDED: "TimeExceeded",
    IcmpType.PARAM_PROBLEM: "ParameterProblem",
    IcmpType.TIMESTAMP: "TimeStamp",
    IcmpType.TIMESTAMPREPLY: "TimestampReply",
    IcmpType.INFO_REQUEST: "InformationRequest",
    IcmpType.INFO_REPLY: "InformationReply",
}


def icmp_type_ntoa(type: int) -> str:
    """Return the name of an ICMP message type."""
    return _NAMES.get(type, "Unknown")


def _dump(data: bytes) -> None:
    type, code, sum_, values = _HDR.unpack_from(data)
    if type in (IcmpType.ECHOREPLY, IcmpType.ECHO):
        _, _, _, ident, seq = _ECHO.unpack_from(data)
        detail = f"id: {ident}, seq: {seq}"
    else:
        detail = f"values: 0x{values:08x}"
    logger.debug(
        "type: %d (%s), code: %d, sum: 0x%04x, %s",
        type, icmp_type_ntoa(type), code, sum_, detail,
    )


class Icmp:
    """ICMP layer: answers echo requests and sends ICMP messages."""

    def __init__(self, ip: IpLayer) -> None:
        self.ip = ip
        ip.protocol_register(IP_PROTOCOL_ICMP, self.input)

    def input(self, data: bytes, src: int, dst: int, iface: IpIface) -> None:
        """Check a received message and reply to echo requests."""
        data = bytes(data)
        if len(data) < ICMP_HDR_SIZE:
            raise IpError("too short")
        if cksum16(data) != 0:
            raise IpError(f"checksum different [cksum=0x{cksum16(data):04x}]")
        logger.debug(
            "%s => %s, len=%d", ip_addr_ntop(src), ip_addr_ntop(dst), len(data)
        )
        _dump(data)
        type, code, _sum, values = _HDR.unpack_from(data)
        if type == IcmpType.ECHO:
            # Reply from the address of the interface that received the request.
            self.output(
                IcmpType.ECHOREPLY, code, values, data[ICMP_HDR_SIZE:],
                iface.unicast, src,
            )

    def output(
        self, type: int, code: int, values: int, data: bytes, src: int, dst: int
    ) -> int:
        """Send an ICMP message; return its length including the header."""
        data = bytes(data)
        if ICMP_HDR_SIZE + len(data) > IP_PAYLOAD_SIZE_MAX:
            raise IpError("too long")
        msg = _HDR.pack(type, code, 0, values) + data
        msg = msg[:2] + struct.pack("!H", cksum16(msg)) + msg[4:]
        logger.debug(
            "%s => %s, len=%d", ip_addr_ntop(src), ip_addr_ntop(dst), len(msg)
        )
        _dump(msg)
        return self.ip.output(IP_PROTOCOL_ICMP, msg, src, dst)