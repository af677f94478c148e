"""
Exception hierarchy for tunnel sessions and forwarded ports.

Each exception carries an ErrorContext whose fields flatten into the data
of an ERROR event, so a failure in a log file can be matched to the host,
port, user or key that caused it without parsing the message text.

Hierarchy:
- SSHError
  - SSHConnectionError
    - ConnectionRefused, ConnectionTimeout, HostUnreachable
    - SessionNotConnected
  - AuthenticationError
    - AuthFailed: the server accepted none of the credentials offered
    - HostKeyMismatch: the host key policy rejected the server
    - KeyLoadError: a private key could not be read or decrypted
  - ForwardingError
    - PortStateError, with IllegalTransitionError and PortDisposedError
    - RemoteForwardRejected
    - TrackerClosedError
    - SocksError
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from nbs_tunnel.status import PortStatus


class DisconnectReason(str, Enum):
    """The reason field of a DISCONNECT event."""
    NORMAL = "normal"
    USER_INTERRUPT = "user_interrupt"
    NETWORK_ERROR = "network_error"
    AUTH_FAILURE = "auth_failure"
    FORWARD_FAILURE = "forward_failure"


@dataclass
class ErrorContext:
    """Where an error happened. Unset fields are left out of to_dict()."""
    host: str | None = None
    port: int | None = None
    username: str | None = None
    auth_method: str | None = None
    key_path: str | None = None
    original_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # 0 is legal: a forward may request an ephemeral port
        if self.port is not None:
            assert isinstance(self.port, int) and 0 <= self.port <= 65535, (
                f"Port must be between 0 and 65535, got {self.port}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Flatten into one dict; extra keys sit beside the named fields."""
        named = {k: v for k, v in asdict(self).items() if k != "extra" and v is not None}
        reserved = {f.name for f in fields(self)} & self.extra.keys()
        assert not reserved, (
            f"extra key collision with ErrorContext fields: {sorted(reserved)}"
        )
        return {**named, **self.extra}


class SSHError(Exception):
    """Root of every error raised by nbs_tunnel, with an ErrorContext attached."""

    def __init__(self, message: str, context: ErrorContext | None = None) -> None:
        assert isinstance(message, str) and message.strip(), (
            f"error message must be a non-empty string, got {message!r}"
        )
        super().__init__(message)
        self.context = context or ErrorContext()

    @property
    def error_type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        """Data for an ERROR event."""
        return {
            "error_type": self.error_type,
            "message": str(self),
            **self.context.to_dict(),
        }


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

class SSHConnectionError(SSHError):
    """The TCP connection or SSH transport could not be set up or has gone."""


class ConnectionRefused(SSHConnectionError):
    pass


class ConnectionTimeout(SSHConnectionError):
    pass


class HostUnreachable(SSHConnectionError):
    """DNS failure, no route, or another OS-level network error."""


class SessionNotConnected(SSHConnectionError):
    """An operation needs a connected session but the session is down."""

    def __init__(self, message: str = "Client not connected.",
                 context: ErrorContext | None = None) -> None:
        super().__init__(message, context)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

class AuthenticationError(SSHError):
    pass


class AuthFailed(AuthenticationError):
    """The server rejected every password, key or agent identity offered."""


class HostKeyMismatch(AuthenticationError):
    """
    The server's host key is unknown or differs from known_hosts, and the
    host key policy rejects it.
    """


class KeyLoadError(AuthenticationError):
    """
    A private key could not be used. The reason, stored in the context's
    extra dict, is one of file_not_found, permission_denied,
    invalid_format, passphrase_required, wrong_passphrase or unknown.
    """

    def __init__(
        self,
        message: str,
        key_path: str | None = None,
        reason: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        assert key_path is None or (isinstance(key_path, str) and key_path.strip()), (
            f"key_path must be None or a non-empty string, got {key_path!r}"
        )
        context = context or ErrorContext()
        context.key_path = key_path
        if reason:
            context.extra["reason"] = reason
        super().__init__(message, context)


# ---------------------------------------------------------------------------
# Forwarding
# ---------------------------------------------------------------------------

class ForwardingError(SSHError):
    pass


class PortStateError(ForwardingError):
    """
    A forwarded port was used in a way its lifecycle does not allow:
    started twice, started while detached, or attached to a second session.
    """


class IllegalTransitionError(PortStateError):
    """A PortStatus transition outside the legal transition table."""

    def __init__(self, current: "PortStatus", requested: "PortStatus") -> None:
        self.current = current
        self.requested = requested
        super().__init__(
            f"Forwarded port cannot transition from '{current}' to '{requested}'.",
            ErrorContext(extra={"current": current.value, "requested": requested.value}),
        )


class PortDisposedError(PortStateError):
    """The forwarded port has been disposed and cannot be used again."""

    def __init__(self, port_type: str) -> None:
        super().__init__(
            f"Cannot access a disposed object: {port_type}",
            ErrorContext(extra={"port_type": port_type}),
        )


class RemoteForwardRejected(ForwardingError):
    """The server refused (or never answered) a tcpip-forward request."""

    def __init__(self, bound_host: str, bound_port: int, reason: str | None = None) -> None:
        context = ErrorContext(host=bound_host, port=bound_port)
        if reason:
            context.extra["reason"] = reason
        super().__init__(
            f"Port forwarding for '{bound_host}' port '{bound_port}' failed to start.",
            context,
        )


class TrackerClosedError(ForwardingError):
    """A pending connection tracker was used after it was closed."""

    def __init__(self) -> None:
        super().__init__("Pending connection tracker is closed.")


class SocksError(ForwardingError):
    """A SOCKS client sent a request that cannot be served."""
    pass
