"""UDP: datagram input and output and a small socket-like user interface."""

from __future__ import annotations

import enum
import logging
import struct
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from .ip import (
    IP_ADDR_ANY,
    IP_PAYLOAD_SIZE_MAX,
    IP_PROTOCOL_UDP,
    IpEndpoint,
    IpIface,
    IpLayer,
    ip_addr_ntop,
)
from .net import NetStack
from .sched import SchedContext
from .util import cksum16

__all__ = [
    "UDP_HDR_SIZE",
    "UDP_PCB_SIZE",
    "UDP_SOURCE_PORT_MAX",
    "UDP_SOURCE_PORT_MIN",
    "Udp",
    "UdpError",
]

logger = logging.getLogger(__name__)

UDP_PCB_SIZE = 16
UDP_SOURCE_PORT_MIN = 49152
UDP_SOURCE_PORT_MAX = 65535

_HDR = struct.Struct("!HHHH")
_PSEUDO = struct.Struct("!IIBBH")
UDP_HDR_SIZE = _HDR.size


class UdpError(Exception):
    """Raised when a UDP operation fails or a datagram is malformed."""


class _PcbState(enum.IntEnum):
    FREE = 0
    OPEN = 1
    CLOSING = 2


_UNBOUND = IpEndpoint(IP_ADDR_ANY, 0)


@dataclass
class _Pcb:
    state: _PcbState = _PcbState.FREE
    local: IpEndpoint = _UNBOUND
    queue: deque = field(default_factory=deque)
    ctx: Optional[SchedContext] = None


def _pseudo_sum(src: int, dst: int, length: int) -> int:
    pseudo = _PSEUDO.pack(src, dst, 0, IP_PROTOCOL_UDP, length)
    return ~cksum16(pseudo) & 0xFFFF


def _dump(data: bytes) -> None:
    src, dst, length, sum_ = _HDR.unpack_from(data)
    logger.debug("src: %d, dst: %d, len: %d, sum: 0x%04x", src, dst, length, sum_)


class Udp:
    """UDP layer with a fixed table of protocol control blocks.

    Sockets are identified by their index in the table.
    """

    def __init__(self, stack: NetStack, ip: IpLayer) -> None:
        self.stack = stack
        self.ip = ip
        self._lock = threading.Lock()
        self._pcbs = [_Pcb() for _ in range(UDP_PCB_SIZE)]
        ip.protocol_register(IP_PROTOCOL_UDP, self.input)
        stack.subscribe_event(self.event_handler, None)

    # Control block helpers; callers hold the lock.

    def _alloc(self) -> int:
        for index, pcb in enumerate(self._pcbs):
            if pcb.state == _PcbState.FREE:
                pcb.state = _PcbState.OPEN
                pcb.ctx = SchedContext(self._lock)
                return index
        raise UdpError("no free control block")

    def _release(self, pcb: _Pcb) -> None:
        pcb.state = _PcbState.CLOSING
        if pcb.ctx is not None and not pcb.ctx.destroy():
            # A sleeper is still waiting; it finishes the release when woken.
            pcb.ctx.wakeup()
            return
        pcb.state = _PcbState.FREE
        pcb.local = _UNBOUND
        pcb.queue.clear()
        pcb.ctx = None

    def _select(self, addr: int, port: int) -> Optional[_Pcb]:
        for pcb in self._pcbs:
            if pcb.state != _PcbState.OPEN:
                continue
            if (
                pcb.local.addr == IP_ADDR_ANY
                or addr == IP_ADDR_ANY
                or pcb.local.addr == addr
            ) and pcb.local.port == port:
                return pcb
        return None

    def _get(self, id: int) -> _Pcb:
        if not 0 <= id < len(self._pcbs):
            raise UdpError(f"pcb not found, id={id}")
        pcb = self._pcbs[id]
        if pcb.state != _PcbState.OPEN:
            raise UdpError(f"pcb not found, id={id}")
        return pcb

    # Protocol

    def input(self, data: bytes, src: int, dst: int, iface: IpIface) -> bool:
        """Queue a received datagram; return False if its port is not in use."""
        data = bytes(data)
        if len(data) < UDP_HDR_SIZE:
            raise UdpError("too short")
        sport, dport, length, sum_ = _HDR.unpack_from(data)
        if len(data) != length:
            raise UdpError(f"length error: len={len(data)}, hdr->len={length}")
        psum = _pseudo_sum(src, dst, len(data))
        if cksum16(data, psum) != 0:
            raise UdpError(f"checksum error: sum=0x{sum_:04x}")
        logger.debug(
            "%s:%d => %s:%d, len=%d (payload=%d)",
            ip_addr_ntop(src), sport, ip_addr_ntop(dst), dport,
            len(data), len(data) - UDP_HDR_SIZE,
        )
        _dump(data)
        with self._lock:
            pcb = self._select(dst, dport)
            if pcb is None:
                return False
            pcb.queue.append((IpEndpoint(src, sport), data[UDP_HDR_SIZE:]))
            logger.debug(
                "queue pushed: id=%d, num=%d", self._pcbs.index(pcb), len(pcb.queue)
            )
            pcb.ctx.wakeup()
        return True

    def output(self, src: IpEndpoint, dst: IpEndpoint, data: bytes) -> int:
        """Send ``data`` from ``src`` to ``dst``; return the payload length."""
        data = bytes(data)
        if len(data) > IP_PAYLOAD_SIZE_MAX - UDP_HDR_SIZE:
            raise UdpError("too long")
        total = UDP_HDR_SIZE + len(data)
        psum = _pseudo_sum(src.addr, dst.addr, total)
        msg = _HDR.pack(src.port, dst.port, total, 0) + data
        msg = msg[:6] + struct.pack("!H", cksum16(msg, psum)) + msg[8:]
        logger.debug("%s => %s, len=%d (payload=%d)", src, dst, total, len(data))
        _dump(msg)
        self.ip.output(IP_PROTOCOL_UDP, msg, src.addr, dst.addr)
        return len(data)

    def event_handler(self, arg: Any) -> None:
        """Interrupt every socket waiting for data."""
        with self._lock:
            for pcb in self._pcbs:
                if pcb.state == _PcbState.OPEN:
                    pcb.ctx.interrupt()

    # User commands

    def open(self) -> int:
        """Allocate a socket and return its id."""
        with self._lock:
            return self._alloc()

    def close(self, id: int) -> None:
        """Release socket ``id``."""
        with self._lock:
            self._release(self._get(id))

    def bind(self, id: int, local: IpEndpoint) -> None:
        """Bind socket ``id`` to ``local``; the address may be the wildcard."""
        with self._lock:
            pcb = self._get(id)
            exist = self._select(local.addr, local.port)
            if exist is not None:
                raise UdpError(
                    f"udp_pcb already exists (id={id}, local={local}, "
                    f"exist={exist.local})"
                )
            pcb.local = local
            logger.debug("bound, id=%d, local=%s", id, local)

    def sendto(self, id: int, data: bytes, foreign: IpEndpoint) -> int:
        """Send ``data`` to ``foreign``, choosing source address and port if unset."""
        with self._lock:
            pcb = self._get(id)
            local_addr = pcb.local.addr
            if local_addr == IP_ADDR_ANY:
                iface = self.ip.route_get_iface(foreign.addr)
                if iface is None:
                    raise UdpError(
                        "iface not found that can reach foreign address, "
                        f"addr={ip_addr_ntop(foreign.addr)}"
                    )
                local_addr = iface.unicast
                logger.debug("select local address, addr=%s", ip_addr_ntop(local_addr))
            if not pcb.local.port:
                port = next(
                    (
                        p
                        for p in range(UDP_SOURCE_PORT_MIN, UDP_SOURCE_PORT_MAX)
                        if self._select(local_addr, p) is None
                    ),
                    None,
                )
                if port is None:
                    raise UdpError(
                        "failed to dynamic assign local port, "
                        f"addr={ip_addr_ntop(local_addr)}"
                    )
                pcb.local = IpEndpoint(pcb.local.addr, port)
                logger.debug("dynamic assign local port, port=%d", port)
            local = IpEndpoint(local_addr, pcb.local.port)
        return self.output(local, foreign, data)

    def recvfrom(self, id: int, size: Optional[int] = None) -> tuple[bytes, IpEndpoint]:
        """Wait for a datagram; return its payload, cut to ``size``, and sender.

        Raises InterruptedError when interrupted by an event and UdpError when
        the socket is closed while waiting.
        """
        with self._lock:
            pcb = self._get(id)
            while not pcb.queue:
                pcb.ctx.sleep()
                if pcb.state == _PcbState.CLOSING:
                    logger.debug("closed")
                    self._release(pcb)
                    raise UdpError(f"socket closed, id={id}")
            foreign, data = pcb.queue.popleft()
        if size is not None:
            data = data[:size]
        return data, foreign