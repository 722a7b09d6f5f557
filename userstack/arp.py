"""Address resolution of IPv4 addresses to Ethernet addresses."""

from __future__ import annotations

import enum
import logging
import struct
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from .ether import (
    ETHER_ADDR_BROADCAST,
    ETHER_ADDR_LEN,
    ETHER_TYPE_ARP,
    ETHER_TYPE_IP,
    ether_addr_ntop,
)
from .ip import IP_ADDR_ANY, IP_ADDR_LEN, IpIface, IpLayer, ip_addr_ntop
from .net import DeviceType, IfaceFamily, NetDevice, NetError, NetStack, ProtocolType

__all__ = [
    "ARP_CACHE_SIZE",
    "ARP_CACHE_TIMEOUT",
    "ARP_HRD_ETHER",
    "ARP_OP_REPLY",
    "ARP_OP_REQUEST",
    "ARP_PRO_IP",
    "Arp",
    "ArpCacheEntry",
    "ArpCacheState",
    "ArpError",
]

logger = logging.getLogger(__name__)

ARP_HRD_ETHER = 0x0001
ARP_PRO_IP = ETHER_TYPE_IP

ARP_OP_REQUEST = 1
ARP_OP_REPLY = 2

ARP_CACHE_SIZE = 32
ARP_CACHE_TIMEOUT = 30  # seconds

_MSG = struct.Struct("!HHBBH6sI6sI")


class ArpError(Exception):
    """Raised when an address cannot be resolved or a message is malformed."""


class ArpCacheState(enum.IntEnum):
    FREE = 0
    INCOMPLETE = 1
    RESOLVED = 2
    STATIC = 3


@dataclass
class ArpCacheEntry:
    """One slot of the resolution cache."""

    state: ArpCacheState = ArpCacheState.FREE
    pa: int = IP_ADDR_ANY
    ha: bytes = field(default=bytes(ETHER_ADDR_LEN))
    timestamp: float = 0.0

    def clear(self) -> None:
        self.state = ArpCacheState.FREE
        self.pa = IP_ADDR_ANY
        self.ha = bytes(ETHER_ADDR_LEN)
        self.timestamp = 0.0


def _opcode_ntoa(op: int) -> str:
    if op == ARP_OP_REQUEST:
        return "Request"
    if op == ARP_OP_REPLY:
        return "Reply"
    return "Unknown"


def _dump(msg: bytes) -> None:
    hrd, pro, hln, pln, op, sha, spa, tha, tpa = _MSG.unpack_from(msg)
    logger.debug(
        "hrd: 0x%04x, pro: 0x%04x, hln: %d, pln: %d, op: %d (%s), "
        "sha: %s, spa: %s, tha: %s, tpa: %s",
        hrd, pro, hln, pln, op, _opcode_ntoa(op),
        ether_addr_ntop(sha), ip_addr_ntop(spa),
        ether_addr_ntop(tha), ip_addr_ntop(tpa),
    )


class Arp:
    """ARP for IPv4 over Ethernet with a fixed-size cache.

    Registers itself as the stack's ARP protocol handler, as the resolver of
    ``ip`` and installs a one-second timer that expires stale entries.
    """

    def __init__(self, stack: NetStack, ip: IpLayer) -> None:
        self.stack = stack
        self.ip = ip
        self.cache = [ArpCacheEntry() for _ in range(ARP_CACHE_SIZE)]
        self._lock = threading.Lock()
        stack.register_protocol(ProtocolType.ARP, self.input)
        stack.register_timer(1.0, self.timer_handler)
        ip.arp = self

    # Cache helpers; callers hold the lock.

    def _delete(self, entry: ArpCacheEntry) -> None:
        logger.debug(
            "DELETE: pa=%s, ha=%s", ip_addr_ntop(entry.pa), ether_addr_ntop(entry.ha)
        )
        entry.clear()

    def _alloc(self) -> ArpCacheEntry:
        oldest: Optional[ArpCacheEntry] = None
        for entry in self.cache:
            if entry.state == ArpCacheState.STATIC:
                continue
            if entry.state == ArpCacheState.FREE:
                return entry
            if oldest is None or oldest.timestamp > entry.timestamp:
                oldest = entry
        if oldest is None:
            raise ArpError("no cache entry available")
        self._delete(oldest)
        return oldest

    def _select(self, pa: int) -> Optional[ArpCacheEntry]:
        return next(
            (
                entry
                for entry in self.cache
                if entry.state != ArpCacheState.FREE and entry.pa == pa
            ),
            None,
        )

    def _update(self, pa: int, ha: bytes) -> Optional[ArpCacheEntry]:
        entry = self._select(pa)
        if entry is None:
            return None
        entry.state = ArpCacheState.RESOLVED
        entry.timestamp = time.monotonic()
        entry.ha = bytes(ha)
        entry.pa = pa
        logger.debug("UPDATE: pa=%s, ha=%s", ip_addr_ntop(pa), ether_addr_ntop(ha))
        return entry

    def _insert(self, pa: int, ha: bytes) -> ArpCacheEntry:
        entry = self._alloc()
        entry.state = ArpCacheState.RESOLVED
        entry.pa = pa
        entry.ha = bytes(ha)
        entry.timestamp = time.monotonic()
        logger.debug("INSERT: pa=%s, ha=%s", ip_addr_ntop(pa), ether_addr_ntop(ha))
        return entry

    def _send(
        self, iface: IpIface, op: int, tha: bytes, tpa: int, dst: bytes
    ) -> None:
        dev = iface.dev
        msg = _MSG.pack(
            ARP_HRD_ETHER, ARP_PRO_IP, ETHER_ADDR_LEN, IP_ADDR_LEN, op,
            dev.addr[:ETHER_ADDR_LEN], iface.unicast,
            bytes(tha)[:ETHER_ADDR_LEN], tpa,
        )
        logger.debug("dev=%s, len=%d", dev.name, len(msg))
        _dump(msg)
        try:
            dev.output(ETHER_TYPE_ARP, msg, dst)
        except NetError as exc:
            logger.error("%s", exc)

    def _request(self, iface: IpIface, tpa: int) -> None:
        self._send(iface, ARP_OP_REQUEST, ETHER_ADDR_BROADCAST, tpa, iface.dev.broadcast)

    def resolve(self, iface: IpIface, pa: int) -> Optional[bytes]:
        """Return the hardware address of ``pa``, or None while it is pending.

        An unknown address gets a cache slot and a broadcast request; a pending
        one is requested again in case the first request was lost.
        """
        dev = iface.dev
        if dev is None or dev.type != DeviceType.ETHERNET:
            raise ArpError("unsupported hardware address type")
        if iface.family != IfaceFamily.IP:
            raise ArpError("unsupported protocol address type")
        with self._lock:
            entry = self._select(pa)
            if entry is None:
                logger.debug("cache not found, pa=%s", ip_addr_ntop(pa))
                entry = self._alloc()
                entry.state = ArpCacheState.INCOMPLETE
                entry.pa = pa
                entry.timestamp = time.monotonic()
                pending = True
            else:
                pending = entry.state == ArpCacheState.INCOMPLETE
            ha = entry.ha
        if pending:
            self._request(iface, pa)
            return None
        logger.debug("resolved, pa=%s, ha=%s", ip_addr_ntop(pa), ether_addr_ntop(ha))
        return ha

    def timer_handler(self) -> int:
        """Drop dynamic entries older than the timeout; return how many."""
        deleted = 0
        with self._lock:
            now = time.monotonic()
            for entry in self.cache:
                if entry.state in (ArpCacheState.FREE, ArpCacheState.STATIC):
                    continue
                if int(now - entry.timestamp) > ARP_CACHE_TIMEOUT:
                    self._delete(entry)
                    deleted += 1
        return deleted

    def input(self, data: bytes, dev: NetDevice) -> bool:
        """Process an ARP message; return True if it was addressed to us."""
        data = bytes(data)
        if len(data) < _MSG.size:
            raise ArpError("too short")
        hrd, pro, hln, pln, op, sha, spa, _tha, tpa = _MSG.unpack_from(data)
        if hrd != ARP_HRD_ETHER or hln != ETHER_ADDR_LEN:
            raise ArpError(
                f"hardware does not match Ethernet: (hrd=0x{hrd:04x}, hln={hln})"
            )
        if pro != ARP_PRO_IP or pln != IP_ADDR_LEN:
            raise ArpError(f"protocol does not match IP: (pro=0x{pro:04x}, pln={pln})")
        logger.debug("dev=%s, len=%d", dev.name, len(data))
        _dump(data)
        with self._lock:
            merged = self._update(spa, sha) is not None
        iface = dev.get_iface(IfaceFamily.IP)
        if iface is None or iface.unicast != tpa:
            return False
        if not merged:
            with self._lock:
                self._insert(spa, sha)
        if op == ARP_OP_REQUEST:
            self._send(iface, ARP_OP_REPLY, sha, spa, sha)
        return True