import threading
import time
from datetime import timedelta

import pytest

from userstack.net import (
    DeviceFlag,
    IfaceFamily,
    NetDevice,
    NetError,
    NetIface,
    NetStack,
    ProtocolType,
)

TEST_DATA = bytes([
    0x45, 0x00, 0x00, 0x30, 0x00, 0x80, 0x00, 0x00,
    0xff, 0x01, 0xbd, 0x4a, 0x7f, 0x00, 0x00, 0x01,
    0x7f, 0x00, 0x00, 0x01, 0x08, 0x00, 0x35, 0x64,
    0x00, 0x80, 0x00, 0x01, 0x31, 0x32, 0x33, 0x34,
    0x35, 0x36, 0x37, 0x38, 0x39, 0x30, 0x21, 0x40,
    0x23, 0x24, 0x25, 0x5e, 0x26, 0x2a, 0x28, 0x29,
])


class RecordingDevice(NetDevice):
    def __init__(self, mtu=1500):
        super().__init__(mtu=mtu)
        self.sent = []

    def transmit(self, type, data, dst=None):
        self.sent.append((type, data, dst))


def _registered(mtu=1500):
    return NetStack().register_device(RecordingDevice(mtu=mtu))


def test_register_device_names_and_indexes():
    stack = NetStack()
    first = stack.register_device(RecordingDevice())
    second = stack.register_device(RecordingDevice())
    assert (first.name, first.index) == ("net0", 0)
    assert (second.name, second.index) == ("net1", 1)
    assert first.stack is stack
    assert stack.devices == [second, first]


def test_output_requires_open_device():
    dev = _registered()
    with pytest.raises(NetError):
        NetDevice.output(dev, 0x0800, TEST_DATA)
    assert dev.sent == []


def test_output_transmits_test_data():
    dev = _registered()
    NetDevice.open(dev)
    NetDevice.output(dev, ProtocolType.IP, TEST_DATA, b"\xff" * 6)
    assert dev.sent == [(0x0800, TEST_DATA, b"\xff" * 6)]


def test_output_too_long():
    dev = _registered(mtu=10)
    NetDevice.open(dev)
    with pytest.raises(NetError):
        NetDevice.output(dev, 0x0800, TEST_DATA)
    assert dev.sent == []


def test_open_close_state():
    dev = _registered()
    NetDevice.open(dev)
    assert NetDevice.is_up(dev)
    with pytest.raises(NetError):
        NetDevice.open(dev)
    NetDevice.close(dev)
    assert not NetDevice.is_up(dev)
    with pytest.raises(NetError):
        NetDevice.close(dev)


def test_base_device_cannot_transmit():
    dev = NetDevice(mtu=100, flags=DeviceFlag.UP)
    with pytest.raises(NetError):
        dev.output(0x0800, b"abc")


def test_add_and_get_iface():
    dev = RecordingDevice()
    iface = NetIface(IfaceFamily.IP)
    dev.add_iface(iface)
    assert iface.dev is dev
    assert dev.get_iface(IfaceFamily.IP) is iface
    assert dev.get_iface(IfaceFamily.IPV6) is None
    with pytest.raises(NetError):
        dev.add_iface(NetIface(IfaceFamily.IP))


def test_register_protocol_twice_fails():
    stack = NetStack()
    stack.register_protocol(0x0800, lambda data, dev: None)
    with pytest.raises(NetError):
        stack.register_protocol(0x0800, lambda data, dev: None)


def test_input_and_softirq_deliver_in_order():
    stack = NetStack()
    dev = stack.register_device(RecordingDevice())
    received = []
    stack.register_protocol(0x0800, lambda data, d: received.append((data, d)))
    assert stack.input_handler(0x0800, TEST_DATA, dev) is True
    assert stack.input_handler(0x0800, b"second", dev) is True
    assert stack.softirq_handler() == 2
    assert received == [(TEST_DATA, dev), (b"second", dev)]
    assert stack.softirq_handler() == 0


def test_input_unsupported_protocol_dropped():
    stack = NetStack()
    dev = stack.register_device(RecordingDevice())
    assert stack.input_handler(0x86DD, TEST_DATA, dev) is False
    assert stack.softirq_handler() == 0


def test_timer_fires_after_interval():
    stack = NetStack()
    fired = []
    stack.register_timer(0.0, lambda: fired.append("short"))
    stack.register_timer(timedelta(hours=1), lambda: fired.append("long"))
    time.sleep(0.02)
    stack.timer_handler()
    assert fired == ["short"]


def test_events_called_most_recent_first():
    stack = NetStack()
    calls = []
    stack.subscribe_event(calls.append, "a")
    stack.subscribe_event(calls.append, "b")
    stack.event_handler()
    assert calls == ["b", "a"]


def test_run_opens_and_shutdown_closes_devices():
    stack = NetStack()
    dev = stack.register_device(RecordingDevice())
    stack.run()
    try:
        assert dev.is_up()
    finally:
        stack.shutdown()
    assert not dev.is_up()


def test_running_stack_delivers_input_and_events():
    stack = NetStack()
    dev = stack.register_device(RecordingDevice())
    got_input = threading.Event()
    got_event = threading.Event()
    stack.register_protocol(0x0800, lambda data, d: got_input.set())
    stack.subscribe_event(lambda arg: arg.set(), got_event)
    stack.run()
    try:
        assert stack.input_handler(0x0800, TEST_DATA, dev)
        stack.raise_event()
        assert got_input.wait(2)
        assert got_event.wait(2)
    finally:
        stack.shutdown()