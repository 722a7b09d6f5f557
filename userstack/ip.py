"""IPv4: addresses, interfaces, routing, input demultiplexing and output."""

from __future__ import annotations

import logging
import re
import struct
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .net import (
    NET_DEVICE_ADDR_LEN,
    DeviceFlag,
    IfaceFamily,
    NetDevice,
    NetIface,
    NetStack,
    ProtocolType,
)
from .util import cksum16

__all__ = [
    "IP_ADDR_ANY",
    "IP_ADDR_BROADCAST",
    "IP_HDR_SIZE_MIN",
    "IP_PROTOCOL_ICMP",
    "IP_PROTOCOL_TCP",
    "IP_PROTOCOL_UDP",
    "IP_PAYLOAD_SIZE_MAX",
    "IpEndpoint",
    "IpError",
    "IpIface",
    "IpLayer",
    "IpRoute",
    "ip_addr_ntop",
    "ip_addr_pton",
    "ip_endpoint_ntop",
    "ip_endpoint_pton",
    "ip_iface_alloc",
]

logger = logging.getLogger(__name__)

IP_VERSION_IPV4 = 4
IP_HDR_SIZE_MIN = 20
IP_HDR_SIZE_MAX = 60
IP_TOTAL_SIZE_MAX = 0xFFFF
IP_PAYLOAD_SIZE_MAX = IP_TOTAL_SIZE_MAX - IP_HDR_SIZE_MIN
IP_ADDR_LEN = 4

IP_PROTOCOL_ICMP = 1
IP_PROTOCOL_TCP = 6
IP_PROTOCOL_UDP = 17

IP_ADDR_ANY = 0x00000000
IP_ADDR_BROADCAST = 0xFFFFFFFF

_HDR = struct.Struct("!BBHHHBBHII")
_NUMBER = re.compile(r"\s*[+-]?\d+")
_LEADING_NUMBER = re.compile(r"\s*[+-]?\d+")

IpHandler = Callable[[bytes, int, int, "IpIface"], Any]


class IpError(Exception):
    """Raised when an IP operation fails or a datagram is malformed."""


def ip_addr_pton(p: str) -> int:
    """Parse dotted-quad ``p`` into a 32-bit integer; raise ValueError if malformed."""
    parts = p.split(".")
    if len(parts) != 4:
        raise ValueError(f"invalid ip address: {p!r}")
    value = 0
    for part in parts:
        if not _NUMBER.fullmatch(part):
            raise ValueError(f"invalid ip address: {p!r}")
        octet = int(part)
        if not 0 <= octet <= 255:
            raise ValueError(f"invalid ip address: {p!r}")
        value = (value << 8) | octet
    return value


def ip_addr_ntop(n: int) -> str:
    """Format a 32-bit address as dotted quad."""
    return ".".join(str((n >> shift) & 0xFF) for shift in (24, 16, 8, 0))


@dataclass(frozen=True)
class IpEndpoint:
    """An address and port pair."""

    addr: int
    port: int

    def __str__(self) -> str:
        return ip_endpoint_ntop(self)


def ip_endpoint_pton(p: str) -> IpEndpoint:
    """Parse ``a.b.c.d:port``; raise ValueError if malformed."""
    addr, sep, port_text = p.rpartition(":")
    if not sep:
        raise ValueError(f"invalid endpoint: {p!r}")
    match = _LEADING_NUMBER.match(port_text)
    port = int(match.group()) if match else 0
    if port <= 0 or port > 0xFFFF:
        raise ValueError(f"invalid endpoint port: {p!r}")
    return IpEndpoint(ip_addr_pton(addr), port)


def ip_endpoint_ntop(ep: IpEndpoint) -> str:
    """Format an endpoint as ``a.b.c.d:port``."""
    return f"{ip_addr_ntop(ep.addr)}:{ep.port}"


class IpIface(NetIface):
    """An IPv4 address assigned to a device."""

    def __init__(self, unicast: int, netmask: int) -> None:
        super().__init__(IfaceFamily.IP)
        self.unicast = unicast
        self.netmask = netmask
        self.broadcast = (unicast & netmask) | (~netmask & 0xFFFFFFFF)

    def __repr__(self) -> str:
        return (
            f"<IpIface {ip_addr_ntop(self.unicast)}/{ip_addr_ntop(self.netmask)}>"
        )


def ip_iface_alloc(unicast: str, netmask: str) -> IpIface:
    """Create an interface from dotted-quad address and netmask."""
    return IpIface(ip_addr_pton(unicast), ip_addr_pton(netmask))


@dataclass
class IpRoute:
    network: int
    netmask: int
    nexthop: int
    iface: IpIface


@dataclass
class _Protocol:
    type: int
    handler: IpHandler


class IpLayer:
    """IPv4 layer: interfaces, routes and upper-protocol dispatch.

    ``arp`` may be set to an object whose ``resolve(iface, addr)`` returns the
    hardware address, or None while the resolution is pending.
    """

    def __init__(self, stack: NetStack) -> None:
        self.stack = stack
        self.arp: Any = None
        self.ifaces: list[IpIface] = []
        self.routes: list[IpRoute] = []
        self._protocols: list[_Protocol] = []
        self._id = 128
        self._id_lock = threading.Lock()
        stack.register_protocol(ProtocolType.IP, self.input)

    def route_add(
        self, network: int, netmask: int, nexthop: int, iface: IpIface
    ) -> IpRoute:
        route = IpRoute(network & netmask, netmask, nexthop, iface)
        self.routes.insert(0, route)
        logger.info(
            "route added: network=%s, netmask=%s, nexthop=%s, iface=%s",
            ip_addr_ntop(route.network), ip_addr_ntop(netmask),
            ip_addr_ntop(nexthop), ip_addr_ntop(iface.unicast),
        )
        return route

    def route_lookup(self, dst: int) -> Optional[IpRoute]:
        """Return the matching route with the longest netmask, or None."""
        candidate = None
        for route in self.routes:
            if dst & route.netmask == route.network:
                if candidate is None or candidate.netmask < route.netmask:
                    candidate = route
        return candidate

    def set_default_gateway(self, iface: IpIface, gateway: str) -> IpRoute:
        try:
            gw = ip_addr_pton(gateway)
        except ValueError as exc:
            raise IpError(f"invalid gateway address: {gateway}") from exc
        return self.route_add(IP_ADDR_ANY, IP_ADDR_ANY, gw, iface)

    def route_get_iface(self, dst: int) -> Optional[IpIface]:
        route = self.route_lookup(dst)
        return route.iface if route else None

    def iface_register(self, dev: NetDevice, iface: IpIface) -> None:
        """Attach ``iface`` to ``dev`` and add the route to its network."""
        dev.add_iface(iface)
        self.route_add(iface.unicast, iface.netmask, IP_ADDR_ANY, iface)
        self.ifaces.insert(0, iface)
        logger.info(
            "registered: dev=%s, unicast=%s, netmask=%s, broadcast=%s",
            dev.name, ip_addr_ntop(iface.unicast),
            ip_addr_ntop(iface.netmask), ip_addr_ntop(iface.broadcast),
        )

    def iface_select(self, addr: int) -> Optional[IpIface]:
        return next((i for i in self.ifaces if i.unicast == addr), None)

    def protocol_register(self, type: int, handler: IpHandler) -> None:
        """Register ``handler(data, src, dst, iface)`` for protocol ``type``."""
        if any(p.type == type for p in self._protocols):
            raise IpError(f"already registered type={type}")
        self._protocols.insert(0, _Protocol(type, handler))
        logger.info("registered, type=%d", type)

    def input(self, data: bytes, dev: NetDevice) -> bool:
        """Validate a datagram and dispatch it; False if it is not delivered."""
        data = bytes(data)
        if len(data) < IP_HDR_SIZE_MIN:
            raise IpError("too short")
        vhl, _tos, total, _id, offset, _ttl, protocol, _sum, src, dst = (
            _HDR.unpack_from(data)
        )
        if vhl >> 4 != IP_VERSION_IPV4:
            raise IpError("not ipv4 packet")
        hlen = (vhl & 0x0F) << 2
        if len(data) < hlen or len(data) < total:
            raise IpError("too short")
        if cksum16(data[:hlen]) != 0:
            raise IpError(f"checksum different [cksum=0x{cksum16(data[:hlen]):04x}]")
        if offset & 0x2000 or offset & 0x1FFF:
            raise IpError("fragments are not supported")
        iface = next((i for i in self.ifaces if i.dev is dev), None)
        if iface is None:
            return False
        if dst not in (IP_ADDR_BROADCAST, iface.broadcast, iface.unicast):
            return False
        logger.debug(
            "dev=%s, iface=%s, protocol=%d, total=%d",
            dev.name, ip_addr_ntop(iface.unicast), protocol, total,
        )
        for proto in self._protocols:
            if proto.type == protocol:
                proto.handler(data[hlen:total], src, dst, iface)
                return True
        return False

    def _generate_id(self) -> int:
        with self._id_lock:
            ident = self._id
            self._id = (self._id + 1) & 0xFFFF
        return ident

    def _output_device(self, iface: IpIface, data: bytes, dst: int) -> bool:
        dev = iface.dev
        hwaddr = bytes(NET_DEVICE_ADDR_LEN)
        if dev.flags & DeviceFlag.NEED_ARP:
            if dst in (iface.broadcast, IP_ADDR_BROADCAST):
                hwaddr = dev.broadcast[: dev.alen]
            else:
                if self.arp is None:
                    raise IpError("no address resolver")
                resolved = self.arp.resolve(iface, dst)
                if resolved is None:
                    return False
                hwaddr = resolved
        dev.output(ProtocolType.IP, data, hwaddr)
        return True

    def output(self, protocol: int, data: bytes, src: int, dst: int) -> int:
        """Send ``data`` to ``dst``; return the payload length."""
        data = bytes(data)
        if src == IP_ADDR_ANY and dst == IP_ADDR_BROADCAST:
            raise IpError("source address is required for broadcast address")
        route = self.route_lookup(dst)
        if route is None:
            raise IpError(f"no route to host, addr={ip_addr_ntop(dst)}")
        iface = route.iface
        if src != IP_ADDR_ANY and src != iface.unicast:
            raise IpError(
                f"unable to output with specified source address, "
                f"addr={ip_addr_ntop(src)}, iface->unicast={ip_addr_ntop(iface.unicast)}"
            )
        nexthop = route.nexthop if route.nexthop != IP_ADDR_ANY else dst
        dev = iface.dev
        if dev.mtu < IP_HDR_SIZE_MIN + len(data):
            raise IpError(
                f"too long, dev={dev.name}, mtu={dev.mtu} < {IP_HDR_SIZE_MIN + len(data)}"
            )
        total = IP_HDR_SIZE_MIN + len(data)
        header = _HDR.pack(
            (IP_VERSION_IPV4 << 4) | (IP_HDR_SIZE_MIN >> 2), 0, total,
            self._generate_id(), 0, 255, protocol, 0, iface.unicast, dst,
        )
        header = header[:10] + struct.pack("!H", cksum16(header)) + header[12:]
        logger.debug(
            "dev=%s, iface=%s, dst=%s, protocol=%d, len=%d",
            dev.name, ip_addr_ntop(iface.unicast), ip_addr_ntop(dst), protocol, total,
        )
        self._output_device(iface, header + data, nexthop)
        return len(data)