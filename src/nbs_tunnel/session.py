"""
The session interface forwarded ports depend on.

Provides:
- GlobalRequest: A tcpip-forward / cancel-tcpip-forward request
- ChannelOpenRequest: A server-initiated channel open (forwarded-tcpip)
- ForwardingSession: Abstract base class implemented by SSHConnection and
  by the in-process FakeSession used in tests

Global requests are asynchronous: send_global_request() returns at once
and the outcome arrives through request_success_received or
request_failure_received carrying the same GlobalRequest object, which
is how a forwarded port correlates the response with its own request.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from nbs_tunnel.events import Signal

if TYPE_CHECKING:
    from nbs_tunnel.channel import TunnelChannel

TCPIP_FORWARD = "tcpip-forward"
CANCEL_TCPIP_FORWARD = "cancel-tcpip-forward"
FORWARDED_TCPIP = "forwarded-tcpip"
DIRECT_TCPIP = "direct-tcpip"

# RFC 4254 section 5.1 reason codes
OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED = 1
OPEN_FAILED_CONNECT_FAILED = 2


@dataclass(frozen=True, eq=False)
class GlobalRequest:
    """
    A port forwarding global request.

    Compared by identity: two requests for the same address are still
    different requests, and each response belongs to exactly one of them.
    """
    name: str
    host: str
    port: int

    def __post_init__(self) -> None:
        assert self.name in (TCPIP_FORWARD, CANCEL_TCPIP_FORWARD), \
            f"Unsupported global request {self.name!r}"
        assert 0 <= self.port <= 65535, \
            f"port must be between 0 and 65535, got {self.port}"


@dataclass(frozen=True)
class ChannelOpenRequest:
    """
    A channel the server opened toward the client.

    For forwarded-tcpip, connected_host/connected_port name the remote
    listener that accepted the connection and originator_host/port the
    peer that connected to it. handle is the transport-level channel.
    """
    kind: str
    connected_host: str
    connected_port: int
    originator_host: str
    originator_port: int
    handle: Any = field(default=None, compare=False, repr=False)


class ForwardingSession(ABC):
    """
    What a forwarded port needs from an SSH session.

    Subclasses must call ForwardingSession.__init__ so the signals and
    message_loop_completed exist before any port subscribes.
    """

    def __init__(self) -> None:
        self.error_occurred = Signal("error_occurred")
        self.disconnected = Signal("disconnected")
        self.request_success_received = Signal("request_success_received")
        self.request_failure_received = Signal("request_failure_received")
        self.channel_open_received = Signal("channel_open_received")
        self.message_loop_completed = threading.Event()

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Return True while the session can carry forwarding traffic."""

    @property
    @abstractmethod
    def close_timeout(self) -> float:
        """Seconds to wait for responses and for draining on shutdown."""

    @abstractmethod
    def open_direct_tcpip(
        self, host: str, port: int, originator: tuple[str, int],
    ) -> "TunnelChannel":
        """
        Open a direct-tcpip channel to host:port.

        Raises:
            SSHError or OSError: If the server refuses or the session is down
        """

    @abstractmethod
    def accept_forwarded_tcpip(self, request: ChannelOpenRequest) -> "TunnelChannel":
        """Wrap a server-opened forwarded-tcpip channel for relaying."""

    @abstractmethod
    def send_global_request(self, request: GlobalRequest) -> None:
        """Send a global request; the response arrives via a signal."""

    @abstractmethod
    def reject_channel_open(self, request: ChannelOpenRequest, reason: int) -> None:
        """Refuse a server-initiated channel open."""
