"""
Tests for the error taxonomy.
"""
from __future__ import annotations

import pytest

from nbs_tunnel.errors import (
    AuthenticationError,
    AuthFailed,
    ConnectionRefused,
    ErrorContext,
    ForwardingError,
    IllegalTransitionError,
    KeyLoadError,
    PortDisposedError,
    PortStateError,
    RemoteForwardRejected,
    SessionNotConnected,
    SocksError,
    SSHConnectionError,
    SSHError,
    TrackerClosedError,
)
from nbs_tunnel.status import PortStatus


class TestErrorContext:
    """Tests for ErrorContext."""

    def test_to_dict_drops_none(self) -> None:
        """None fields are omitted and extra is flattened."""
        ctx = ErrorContext(host="example.com", port=22, extra={"reason": "denied"})
        assert ctx.to_dict() == {"host": "example.com", "port": 22, "reason": "denied"}

    def test_port_zero_allowed(self) -> None:
        """Port 0 (ephemeral) is a valid context port."""
        assert ErrorContext(port=0).port == 0

    def test_port_out_of_range(self) -> None:
        """Out of range ports fail validation."""
        with pytest.raises(AssertionError, match="Port must be between"):
            ErrorContext(port=70000)

    def test_extra_collision_detected(self) -> None:
        """extra keys may not shadow field names."""
        ctx = ErrorContext(host="a", extra={"host": "b"})
        with pytest.raises(AssertionError, match="collision"):
            ctx.to_dict()


class TestHierarchy:
    """Exception classes sit where callers expect them."""

    @pytest.mark.parametrize("error,base", [
        (ConnectionRefused("refused"), SSHConnectionError),
        (SessionNotConnected(), SSHConnectionError),
        (AuthFailed("nope"), AuthenticationError),
        (KeyLoadError("bad key", key_path="/k", reason="invalid_format"), AuthenticationError),
        (PortDisposedError("LocalForward"), PortStateError),
        (IllegalTransitionError(PortStatus.STOPPING, PortStatus.STARTING), PortStateError),
        (RemoteForwardRejected("127.0.0.1", 8080), ForwardingError),
        (TrackerClosedError(), ForwardingError),
        (SocksError("bad"), ForwardingError),
    ])
    def test_subclassing(self, error: SSHError, base: type) -> None:
        """Each error derives from its category and from SSHError."""
        assert isinstance(error, base)
        assert isinstance(error, SSHError)

    def test_empty_message_rejected(self) -> None:
        """SSHError needs a message."""
        with pytest.raises(AssertionError, match="non-empty string"):
            SSHError("  ")

    def test_session_not_connected_message(self) -> None:
        """The default message matches the client wording."""
        assert str(SessionNotConnected()) == "Client not connected."

    def test_disposed_message(self) -> None:
        """PortDisposedError names the port type."""
        assert str(PortDisposedError("LocalForward")) == \
            "Cannot access a disposed object: LocalForward"

    def test_remote_forward_rejected_to_dict(self) -> None:
        """to_dict carries the type, the bound address and the reason."""
        error = RemoteForwardRejected("127.0.0.1", 8080, reason="request denied by server")
        data = error.to_dict()

        assert data["error_type"] == "RemoteForwardRejected"
        assert data["host"] == "127.0.0.1"
        assert data["port"] == 8080
        assert data["reason"] == "request denied by server"
        assert "'127.0.0.1' port '8080' failed to start" in data["message"]

    def test_key_load_error_context(self) -> None:
        """KeyLoadError stores key_path and reason in the context."""
        error = KeyLoadError("Key not found", key_path="/home/u/.ssh/id_rsa", reason="file_not_found")
        assert error.context.key_path == "/home/u/.ssh/id_rsa"
        assert error.context.extra["reason"] == "file_not_found"
