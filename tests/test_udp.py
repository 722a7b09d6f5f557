import struct
import threading

import pytest

from userstack.ip import (
    IpEndpoint,
    IpError,
    IpLayer,
    ip_addr_pton,
    ip_endpoint_pton,
    ip_iface_alloc,
)
from userstack.loopback import loopback_init
from userstack.net import NetStack
from userstack.udp import UDP_PCB_SIZE, UDP_SOURCE_PORT_MIN, Udp, UdpError
from userstack.util import cksum16

TEST_DATA = bytes([
    0x45, 0x00, 0x00, 0x30, 0x00, 0x80, 0x00, 0x00,
    0xff, 0x01, 0xbd, 0x4a, 0x7f, 0x00, 0x00, 0x01,
    0x7f, 0x00, 0x00, 0x01, 0x08, 0x00, 0x35, 0x64,
    0x00, 0x80, 0x00, 0x01, 0x31, 0x32, 0x33, 0x34,
    0x35, 0x36, 0x37, 0x38, 0x39, 0x30, 0x21, 0x40,
    0x23, 0x24, 0x25, 0x5e, 0x26, 0x2a, 0x28, 0x29,
])
PAYLOAD = TEST_DATA[28:]
LOOPBACK = ip_addr_pton("127.0.0.1")


@pytest.fixture
def net():
    stack = NetStack()
    ip = IpLayer(stack)
    udp = Udp(stack, ip)
    lo = loopback_init(stack)
    ip.iface_register(lo, ip_iface_alloc("127.0.0.1", "255.0.0.0"))
    lo.open()
    return stack, udp, lo


def _pump(stack, lo):
    lo.isr(lo.irq, lo)
    stack.softirq_handler()


def _datagram(src, dst, sport, dport, payload):
    length = 8 + len(payload)
    pseudo = struct.pack("!IIBBH", src, dst, 0, 17, length)
    psum = ~cksum16(pseudo) & 0xFFFF
    msg = struct.pack("!HHHH", sport, dport, length, 0) + payload
    return msg[:6] + struct.pack("!H", cksum16(msg, psum)) + msg[8:]


def test_output_reaches_bound_socket(net):
    stack, udp, lo = net
    soc = udp.open()
    udp.bind(soc, ip_endpoint_pton("0.0.0.0:7"))
    src = ip_endpoint_pton("127.0.0.1:10000")
    dst = ip_endpoint_pton("127.0.0.1:7")
    assert udp.output(src, dst, PAYLOAD) == len(PAYLOAD)
    _pump(stack, lo)
    data, foreign = udp.recvfrom(soc, 1024)
    assert data == PAYLOAD
    assert foreign == IpEndpoint(LOOPBACK, 10000)


def test_echo_back_with_dynamic_port(net):
    stack, udp, lo = net
    server = udp.open()
    udp.bind(server, ip_endpoint_pton("0.0.0.0:7"))
    client = udp.open()
    assert udp.sendto(client, b"ping", ip_endpoint_pton("127.0.0.1:7")) == 4
    _pump(stack, lo)
    data, foreign = udp.recvfrom(server, 1024)
    assert (data, foreign) == (b"ping", IpEndpoint(LOOPBACK, UDP_SOURCE_PORT_MIN))
    udp.sendto(server, data, foreign)
    _pump(stack, lo)
    assert udp.recvfrom(client) == (b"ping", IpEndpoint(LOOPBACK, 7))


def test_recvfrom_truncates(net):
    stack, udp, lo = net
    soc = udp.open()
    udp.bind(soc, ip_endpoint_pton("127.0.0.1:7"))
    udp.output(ip_endpoint_pton("127.0.0.1:9000"), ip_endpoint_pton("127.0.0.1:7"), PAYLOAD)
    _pump(stack, lo)
    data, _ = udp.recvfrom(soc, 4)
    assert data == PAYLOAD[:4]


def test_input_direct(net):
    _, udp, lo = net
    soc = udp.open()
    udp.bind(soc, ip_endpoint_pton("0.0.0.0:7"))
    iface = lo.ifaces[0]
    assert udp.input(_datagram(LOOPBACK, LOOPBACK, 1234, 7, b"abc"), LOOPBACK, LOOPBACK, iface)
    assert udp.recvfrom(soc) == (b"abc", IpEndpoint(LOOPBACK, 1234))


def test_input_to_unused_port_is_dropped(net):
    _, udp, lo = net
    iface = lo.ifaces[0]
    assert udp.input(_datagram(LOOPBACK, LOOPBACK, 1234, 9, b"abc"), LOOPBACK, LOOPBACK, iface) is False


def test_input_rejects_bad_checksum(net):
    _, udp, lo = net
    good = _datagram(LOOPBACK, LOOPBACK, 1234, 7, b"abc")
    bad = good[:-1] + bytes([good[-1] ^ 0xFF])
    with pytest.raises(UdpError):
        udp.input(bad, LOOPBACK, LOOPBACK, lo.ifaces[0])


def test_input_rejects_length_mismatch(net):
    _, udp, lo = net
    good = _datagram(LOOPBACK, LOOPBACK, 1234, 7, b"abc")
    with pytest.raises(UdpError):
        udp.input(good + b"x", LOOPBACK, LOOPBACK, lo.ifaces[0])
    with pytest.raises(UdpError):
        udp.input(good[:5], LOOPBACK, LOOPBACK, lo.ifaces[0])


def test_bind_conflict(net):
    _, udp, _ = net
    first = udp.open()
    second = udp.open()
    udp.bind(first, ip_endpoint_pton("0.0.0.0:7"))
    with pytest.raises(UdpError):
        udp.bind(second, ip_endpoint_pton("127.0.0.1:7"))


def test_open_exhausts_table(net):
    _, udp, _ = net
    ids = [udp.open() for _ in range(UDP_PCB_SIZE)]
    assert ids == list(range(UDP_PCB_SIZE))
    with pytest.raises(UdpError):
        udp.open()
    udp.close(3)
    assert udp.open() == 3


def test_close_unknown_socket(net):
    _, udp, _ = net
    with pytest.raises(UdpError):
        udp.close(0)
    with pytest.raises(UdpError):
        udp.close(UDP_PCB_SIZE)


def test_sendto_without_route():
    stack = NetStack()
    udp = Udp(stack, IpLayer(stack))
    soc = udp.open()
    with pytest.raises(UdpError):
        udp.sendto(soc, b"x", ip_endpoint_pton("8.8.8.8:7"))


def test_output_too_long(net):
    _, udp, _ = net
    with pytest.raises(UdpError):
        udp.output(
            ip_endpoint_pton("127.0.0.1:1"), ip_endpoint_pton("127.0.0.1:7"), bytes(65535)
        )


def test_output_with_foreign_source_fails(net):
    _, udp, _ = net
    with pytest.raises(IpError):
        udp.output(ip_endpoint_pton("192.0.2.2:1"), ip_endpoint_pton("127.0.0.1:7"), b"x")


def test_event_interrupts_recvfrom(net):
    _, udp, _ = net
    soc = udp.open()
    udp.event_handler(None)
    with pytest.raises(InterruptedError):
        udp.recvfrom(soc, 1024)


def test_close_wakes_waiting_receiver(net):
    _, udp, _ = net
    soc = udp.open()
    result = {}

    def receive():
        try:
            udp.recvfrom(soc)
        except UdpError as exc:
            result["error"] = exc

    thread = threading.Thread(target=receive, daemon=True)
    thread.start()
    udp.close(soc)
    thread.join(5)
    assert isinstance(result["error"], UdpError)
    assert udp.open() == soc