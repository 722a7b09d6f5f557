"""A complete host stack: core, IP, ARP, ICMP and UDP wired together."""

from __future__ import annotations

import logging
from typing import Optional

from .arp import Arp
from .icmp import Icmp
from .ip import IpLayer
from .net import NetStack
from .udp import Udp

__all__ = ["Host"]

logger = logging.getLogger(__name__)


class Host:
    """Builds every protocol layer on one stack.

    Devices and interfaces are added through ``stack`` and ``ip`` before
    ``run``; using the host as a context manager runs it and shuts it down.
    """

    def __init__(self, tick: float = 0.001) -> None:
        self.stack = NetStack(tick)
        self.ip = IpLayer(self.stack)
        self.arp = Arp(self.stack, self.ip)
        self.icmp = Icmp(self.ip)
        self.udp = Udp(self.stack, self.ip)
        logger.info("initialized")

    def run(self) -> None:
        """Start interrupt handling and open every device."""
        self.stack.run()

    def shutdown(self) -> None:
        """Close every device and stop interrupt handling."""
        self.stack.shutdown()

    def __enter__(self) -> "Host":
        self.run()
        return self

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        self.shutdown()
        return None