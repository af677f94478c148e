"""
Base class for forwarded ports.

Provides:
- ForwardedPort: Lifecycle shared by local, remote and dynamic forwards

A forwarded port is created unattached, added to a session (which sets
its session back-reference), started, stopped any number of times, and
finally disposed. Subclasses implement _start_port, _stop_port and
_dispose_port. _start_port returns False when another caller already
won the transition to STARTING. _stop_port reads the session once, then
calls _begin_stop(session) after winning the transition to STOPPING.

Signals:
- closing(): the port is being stopped; open tunnels shut their local side
- exception(exc): a per-connection failure, or an error of the session
- request_received(ForwardRequest): a connection is about to be forwarded

All lifecycle changes are also emitted as FORWARD events when the port
has an EventEmitter.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from nbs_tunnel.countdown import PendingConnectionTracker, signal_quietly
from nbs_tunnel.errors import PortDisposedError, PortStateError, SessionNotConnected
from nbs_tunnel.events import EventType, ForwardStatus, Signal
from nbs_tunnel.status import PortStatus, StatusCell

if TYPE_CHECKING:
    from nbs_tunnel.channel import TunnelChannel
    from nbs_tunnel.events import EventEmitter
    from nbs_tunnel.forwarding import ForwardIntent
    from nbs_tunnel.session import ForwardingSession

logger = logging.getLogger(__name__)

# Used when a port is stopped while detached from any session
DEFAULT_CLOSE_TIMEOUT = 30.0


class ForwardedPort(ABC):
    """
    Lifecycle contract of a forwarded port.

    Usage:
        port = LocalForward("localhost", 0, "db.internal", 5432)
        conn.add_forwarded_port(port)
        port.start()
        ...
        port.stop()
    """

    def __init__(self, *, emitter: "EventEmitter | None" = None) -> None:
        self._status = StatusCell()
        self._session: ForwardingSession | None = None
        self._session_lock = threading.Lock()
        self._disposed = False
        self._emitter = emitter
        self._tracker: PendingConnectionTracker | None = None
        self._reserved = False

        self.closing = Signal("closing")
        self.exception = Signal("exception")
        self.request_received = Signal("request_received")

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def status(self) -> PortStatus:
        """Return the current lifecycle status."""
        return self._status.value

    @property
    def is_started(self) -> bool:
        """Return True if the port is forwarding connections."""
        return self._status.value is PortStatus.STARTED

    @property
    def is_disposed(self) -> bool:
        """Return True once dispose() has run."""
        return self._disposed

    @property
    def pending_connections(self) -> int:
        """Connections accepted and not finished yet."""
        tracker = self._tracker
        if tracker is None or tracker.is_closed:
            return 0
        return max(tracker.current_count - int(self._reserved), 0)

    @property
    def session(self) -> "ForwardingSession | None":
        """Return the session this port is attached to."""
        return self._session

    @session.setter
    def session(self, session: "ForwardingSession | None") -> None:
        with self._session_lock:
            current = self._session
            if session is not None and current is not None and current is not session:
                raise PortStateError(
                    "Forwarded port is already added to a different client.",
                )
            self._session = session

    @property
    @abstractmethod
    def descriptor(self) -> "ForwardIntent":
        """Return the intent describing this forward."""

    def set_emitter(self, emitter: "EventEmitter | None") -> None:
        """Set the event emitter used for FORWARD events."""
        self._emitter = emitter

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for event logging."""
        return {**self.descriptor.to_dict(), "port_status": self.status.value}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Start forwarding.

        Blocks until the port is observably started.

        Raises:
            PortDisposedError: If the port was disposed
            PortStateError: If already started or not attached to a session
            SessionNotConnected: If the session is not connected
            SSHError or OSError: If the subtype fails to start; the port is
                back in STOPPED when this propagates
        """
        self._check_not_disposed()

        if self.is_started:
            raise PortStateError("Forwarded port is already started.")

        session = self._session
        if session is None:
            raise PortStateError("Forwarded port is not added to a client.")

        if not session.is_connected:
            raise SessionNotConnected()

        self._emit_forward_event(ForwardStatus.ESTABLISHING)
        session.error_occurred.connect(self._on_session_error)
        try:
            won = self._start_port()
        except Exception as e:
            session.error_occurred.disconnect(self._on_session_error)
            self._emit_forward_event(ForwardStatus.FAILED, error=str(e))
            raise

        # A concurrent start owns the outcome and reports it
        if won:
            self._emit_forward_event(ForwardStatus.ESTABLISHED)

    def stop(self, timeout: float | None = None) -> None:
        """
        Stop forwarding and wait for pending connections to finish.

        Args:
            timeout: Seconds to wait for pending connections, defaults
                to the session's close_timeout

        Does nothing if the port is not started.
        """
        if not self.is_started:
            return
        self._stop_port(self._resolve_timeout(timeout))

    def dispose(self) -> None:
        """
        Stop the port if needed, detach it from its session and release
        its resources. Idempotent.
        """
        if self._disposed:
            return

        if self._session is not None:
            self._stop_port(self._resolve_timeout(None))
            self.session = None

        self._dispose_port()
        self._disposed = True

    close = dispose

    def __enter__(self) -> "ForwardedPort":
        return self

    def __exit__(self, *args: Any) -> None:
        self.dispose()

    # ------------------------------------------------------------------
    # Subtype hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _start_port(self) -> bool:
        """
        Start the port; revert status to STOPPED before raising.

        Returns False, doing nothing, if another start is in progress.
        """

    @abstractmethod
    def _stop_port(self, timeout: float) -> None:
        """Stop the port, draining pending connections for up to timeout."""

    def _dispose_port(self) -> None:
        """Release resources owned by the port."""

    def _check_not_disposed(self) -> None:
        if self._disposed:
            raise PortDisposedError(type(self).__name__)

    def _begin_stop(self, session: "ForwardingSession | None") -> None:
        """
        Raise closing, then stop observing the session's errors.

        session is the one read when the stop began; a dispose run from
        a closing handler detaches the port before this returns.
        """
        self._emit_forward_event(ForwardStatus.CLOSING)
        self.closing.emit()

        if session is not None:
            session.error_occurred.disconnect(self._on_session_error)

    # ------------------------------------------------------------------
    # Helpers for subtypes
    # ------------------------------------------------------------------

    def _resolve_timeout(self, timeout: float | None) -> float:
        if timeout is not None:
            assert timeout >= 0, f"timeout must be non-negative, got {timeout}"
            return timeout
        session = self._session
        if session is None:
            return DEFAULT_CLOSE_TIMEOUT
        return session.close_timeout

    def _new_tracker(self) -> PendingConnectionTracker:
        """Replace the tracker; the count of one is the port's own reservation."""
        self._tracker = PendingConnectionTracker(1)
        self._reserved = True
        return self._tracker

    def _drain(self, timeout: float) -> None:
        """Release the reservation and wait for pending connections."""
        tracker = self._tracker
        if tracker is None:
            return
        self._reserved = False
        signal_quietly(tracker)
        try:
            if not tracker.wait(timeout):
                pending = tracker.current_count
                logger.warning(
                    "Timeout waiting for pending connections to close on %r "
                    "(%d still open after %.1fs)", self, pending, timeout,
                )
                self._emit_forward_event(
                    ForwardStatus.DRAIN_TIMEOUT, pending=pending, timeout=timeout,
                )
        finally:
            tracker.close()

    def _relay(self, tunnel: "TunnelChannel", sock: Any,
               originator: tuple[str, int]) -> None:
        """Bind a tunnel to a local socket for as long as both stay open."""
        self.closing.connect(tunnel.on_port_closing)
        try:
            tunnel.bind(sock)
        finally:
            self.closing.disconnect(tunnel.on_port_closing)
            self._emit_forward_event(
                ForwardStatus.CLOSED,
                originator_host=originator[0],
                originator_port=originator[1],
                bytes_sent=tunnel.bytes_sent,
                bytes_received=tunnel.bytes_received,
            )

    def _require_session(self) -> "ForwardingSession":
        session = self._session
        if session is None:
            raise SessionNotConnected("Forwarded port is not attached to a session.")
        return session

    def _stop_from_session(self, *args: Any) -> None:
        """Stop on behalf of a session error or disconnect."""
        try:
            self.stop()
        except Exception:
            logger.exception("Failed to stop %s after session loss", self)

    def _raise_exception(self, exc: BaseException) -> None:
        logger.debug("%s: %s", self, exc)
        self._emit_forward_event(ForwardStatus.CONNECTION_ERROR, error=str(exc))
        self.exception.emit(exc)

    def _on_session_error(self, exc: BaseException) -> None:
        self.exception.emit(exc)

    def _emit_forward_event(self, status: ForwardStatus, **extra: Any) -> None:
        """Emit a FORWARD event."""
        if self._emitter is None:
            return
        self._emitter.emit(
            EventType.FORWARD,
            status=status.value,
            **self.descriptor.to_dict(),
            **extra,
        )

    def __repr__(self) -> str:
        intent = self.descriptor
        target = "socks"
        if intent.target_host is not None:
            target = f"{intent.target_host}:{intent.target_port}"
        return (
            f"{type(self).__name__}({intent.bound_host or '*'}:{intent.bound_port}"
            f" -> {target}, {self.status})"
        )
