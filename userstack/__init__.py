"""A user-space IPv4 network stack: devices, Ethernet, ARP, IPv4, ICMP and UDP."""

__version__ = "0.1.0"