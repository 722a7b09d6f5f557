# userstack

A small IPv4 network stack that runs entirely in user space. It models
network devices, an interrupt loop running on its own thread and the
protocols layered on top of them, so packets can be built, sent, received
and inspected from Python.

## What it covers

- **Devices** (`userstack.net`, `userstack.dummy`, `userstack.loopback`,
  `userstack.ether_tap`) – `NetDevice` is the base class. `dummy_init`
  creates a device that drops everything it is given, `loopback_init` one
  that feeds transmitted data straight back into the stack (at most 16
  frames queued at a time), and `ether_tap_init` an Ethernet device backed
  by a Linux TAP interface.
- **Core** (`userstack.net`) – `NetStack` keeps the registered devices,
  protocol handlers, timers and event subscribers, and delivers queued input
  to protocol handlers. IRQs are dispatched by `userstack.intr.Interrupts`
  on a dedicated thread, which also ticks the timers; blocking calls sleep
  on a `userstack.sched.SchedContext`.
- **Ethernet** (`userstack.ether`) – address parsing and formatting
  (`ether_addr_pton`, `ether_addr_ntop`) and the framing helpers used by
  Ethernet drivers (`ether_transmit_helper`, `ether_input_helper`,
  `ether_setup_helper`). Short frames are padded to the 60-byte minimum.
- **ARP** (`userstack.arp`) – `Arp` resolves IPv4 addresses to Ethernet
  addresses with a 32-entry cache; dynamic entries expire after 30 seconds.
  While an address is pending, `Arp.resolve` returns `None` and sends a
  broadcast request.
- **IPv4** (`userstack.ip`) – `IpLayer` handles interfaces
  (`ip_iface_alloc`, `iface_register`), longest-prefix routing, a default
  gateway (`set_default_gateway`), header checksums and dispatch to upper
  protocols. Address and endpoint helpers: `ip_addr_pton`, `ip_addr_ntop`,
  `ip_endpoint_pton`, `ip_endpoint_ntop`, `IpEndpoint`.
- **ICMP** (`userstack.icmp`) – `Icmp` answers echo requests from the
  address of the receiving interface and sends any ICMP message with
  `Icmp.output`.
- **UDP** (`userstack.udp`) – `Udp` offers a socket-like interface over a
  table of 16 sockets: `open`, `bind`, `sendto`, `recvfrom` and `close`.
  An unbound socket gets its source address from the route to the peer and
  an ephemeral port from 49152–65534.
- **Host** (`userstack.host`) – `Host` builds a `NetStack` with IP, ARP,
  ICMP and UDP on it, and works as a context manager: devices are opened on
  entry and closed on exit.

## Installing

Install it into your environment as you would any other package; it has no
dependencies outside the standard library. The tests use pytest
(`pip install userstack[test]`).

## Addresses and checksums

```python
from userstack.ip import ip_addr_pton, ip_addr_ntop, ip_endpoint_pton, ip_endpoint_ntop
from userstack.ether import ether_addr_pton, ether_addr_ntop
from userstack.util import cksum16, hexdump

addr = ip_addr_pton("192.0.2.2")
assert ip_addr_ntop(addr) == "192.0.2.2"

endpoint = ip_endpoint_pton("127.0.0.1:7")
assert ip_endpoint_ntop(endpoint) == "127.0.0.1:7"

mac = ether_addr_pton("02:00:00:00:00:01")
assert ether_addr_ntop(mac) == "02:00:00:00:00:01"
```

IPv4 addresses are 32-bit integers in host order. `cksum16` computes the
16-bit one's-complement Internet checksum (a buffer holding a correct
checksum sums to 0), and `hexdump` returns bytes rendered as an
offset / hex / ASCII table.

Malformed input is rejected with an exception rather than a status code:
`ip_addr_pton("256.0.0.1")` and `ether_addr_pton("zz:00:00:00:00:00")` both
raise `ValueError`.

## Running a host

Devices and interfaces are added before the host runs:

```python
from userstack.host import Host
from userstack.ip import ip_endpoint_pton, ip_iface_alloc
from userstack.loopback import loopback_init

host = Host()
dev = loopback_init(host.stack)
host.ip.iface_register(dev, ip_iface_alloc("127.0.0.1", "255.0.0.0"))

with host:
    server = host.udp.open()
    host.udp.bind(server, ip_endpoint_pton("0.0.0.0:7"))
    client = host.udp.open()
    host.udp.sendto(client, b"hello", ip_endpoint_pton("127.0.0.1:7"))
    data, peer = host.udp.recvfrom(server)   # b"hello", 127.0.0.1:49152
    host.udp.close(client)
    host.udp.close(server)
```

`recvfrom` blocks until a datagram arrives. `host.stack.raise_event()`
interrupts every waiting `recvfrom` with `InterruptedError`; closing a socket
while another thread waits on it makes that `recvfrom` raise `UdpError`.

Failures are raised as `NetError`, `IpError`, `ArpError`, `UdpError` or
`IntrError`. Diagnostic output goes through the standard `logging` module,
one logger per module.

## Tap devices

`ether_tap_init(stack, "tap0", "02:00:00:00:00:01")` opens `/dev/net/tun`
and needs a Linux host with the TAP interface already created and
permission to use it. Without an address, the interface's own hardware
address is used. The dummy and loopback devices need nothing from the
operating system.

## What it does not do

- There is no TCP; UDP is the only transport.
- IP fragments are neither sent nor reassembled; fragmented datagrams are
  rejected.
- There is no IPv6, although the constants for it are defined.
- The package is a library only: it installs no command-line program.