import os

import pytest

from userstack.ether import ETHER_ADDR_BROADCAST, ETHER_PAYLOAD_SIZE_MAX, ether_addr_pton
from userstack.ether_tap import ETHER_TAP_IRQ, EtherTapDevice, ether_tap_init
from userstack.net import DeviceFlag, DeviceType, NetError, NetStack

HW_ADDR = "00:00:5e:00:53:01"


@pytest.fixture
def pipe():
    r, w = os.pipe()
    yield r, w
    for fd in (r, w):
        try:
            os.close(fd)
        except OSError:
            pass


def test_init_sets_ethernet_defaults():
    stack = NetStack()
    dev = ether_tap_init(stack, "tap0", HW_ADDR)
    assert dev.name == "net0"
    assert dev.ifname == "tap0"
    assert dev.type == DeviceType.ETHERNET
    assert dev.mtu == ETHER_PAYLOAD_SIZE_MAX
    assert dev.flags == DeviceFlag.BROADCAST | DeviceFlag.NEED_ARP
    assert dev.addr == ether_addr_pton(HW_ADDR)
    assert dev.irq == ETHER_TAP_IRQ
    assert stack.devices == [dev]


def test_invalid_address_rejected():
    with pytest.raises(NetError):
        EtherTapDevice("tap0", "00:00:5e:00:53")


def test_close_unopened_device_fails():
    dev = EtherTapDevice("tap0", HW_ADDR)
    with pytest.raises(NetError):
        dev.close()


def test_transmit_writes_padded_frame(pipe):
    r, w = pipe
    dev = ether_tap_init(NetStack(), "tap0", HW_ADDR)
    dev.fd = w
    dev.transmit(0x0806, b"abc", ETHER_ADDR_BROADCAST)
    frame = os.read(r, 2000)
    assert len(frame) == 60
    assert frame[:6] == ETHER_ADDR_BROADCAST
    assert frame[6:12] == ether_addr_pton(HW_ADDR)
    assert frame[12:14] == b"\x08\x06"
    assert frame[14:17] == b"abc"
    assert frame[17:] == bytes(43)


def test_isr_delivers_frame_for_this_host(pipe):
    r, w = pipe
    stack = NetStack()
    received = []
    stack.register_protocol(0x0800, lambda data, dev: received.append((data, dev)))
    dev = ether_tap_init(stack, "tap0", HW_ADDR)
    dev.fd = r
    payload = bytes(range(46))
    os.write(w, dev.addr + b"\x02" * 6 + b"\x08\x00" + payload)
    dev.isr(dev.irq, dev)
    assert stack.softirq_handler() == 1
    assert received == [(payload, dev)]


def test_isr_ignores_frame_for_other_host(pipe):
    r, w = pipe
    stack = NetStack()
    received = []
    stack.register_protocol(0x0800, lambda data, dev: received.append(data))
    dev = ether_tap_init(stack, "tap0", HW_ADDR)
    dev.fd = r
    os.write(w, b"\x02" * 6 + b"\x04" * 6 + b"\x08\x00" + bytes(46))
    dev.isr(dev.irq, dev)
    assert stack.softirq_handler() == 0
    assert received == []