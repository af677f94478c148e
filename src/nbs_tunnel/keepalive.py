"""
SSH keepalive configuration.

Provides:
- KeepaliveConfig: keepalive interval for a session's transport

Keepalives keep idle tunnels from being dropped by NAT and firewalls, and
let a dead server surface as a transport error, which stops local and
dynamic forwards.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import paramiko

logger = logging.getLogger(__name__)


@dataclass
class KeepaliveConfig:
    """
    ServerAliveInterval and ServerAliveCountMax for one session.

    paramiko sends keepalives but does not count missed replies, so
    max_count is only reported; a dead peer is detected when the
    transport's write fails.

    Usage:
        config = KeepaliveConfig(interval_sec=10.0, max_count=2)
        config.apply(client.get_transport())
    """
    interval_sec: float = 30.0
    max_count: int = 3

    def __post_init__(self) -> None:
        assert self.interval_sec > 0, \
            f"interval_sec must be positive, got {self.interval_sec}"
        assert self.max_count > 0, \
            f"max_count must be positive, got {self.max_count}"

    @property
    def total_timeout_sec(self) -> float:
        """How long an unresponsive server is tolerated, in OpenSSH terms."""
        return self.interval_sec * self.max_count

    def to_dict(self) -> dict[str, Any]:
        return {"interval_sec": self.interval_sec, "max_count": self.max_count}

    def apply(self, transport: "paramiko.Transport") -> None:
        """Enable keepalives on an open transport."""
        # paramiko takes whole seconds; anything below 1 would disable it
        interval = max(1, int(round(self.interval_sec)))
        transport.set_keepalive(interval)
        logger.debug("Keepalive every %ss on %s", interval, transport.getpeername())
