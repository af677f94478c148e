"""
Port forwarding intents and the per-session forward registry.

Provides:
- ForwardType: LOCAL, REMOTE, DYNAMIC forwarding types
- ForwardIntent: Describes a forward so it can be created and replayed
- ForwardManager: Tracks the forwarded ports of one session and replays
  their intents on a new session after reconnection

Lifecycle FORWARD events are emitted by the ports themselves; the
manager adds replay_failed when an intent cannot be re-established.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from nbs_tunnel.events import EventType, ForwardStatus

if TYPE_CHECKING:
    from nbs_tunnel.events import EventEmitter
    from nbs_tunnel.forward_dynamic import DynamicForward
    from nbs_tunnel.forward_local import LocalForward
    from nbs_tunnel.forward_remote import RemoteForward
    from nbs_tunnel.forwarded_port import ForwardedPort
    from nbs_tunnel.session import ForwardingSession

logger = logging.getLogger(__name__)


class ForwardType(str, Enum):
    """Types of SSH port forwarding."""
    LOCAL = "local"      # Forward local port to remote host:port
    REMOTE = "remote"    # Forward remote port to local host:port
    DYNAMIC = "dynamic"  # SOCKS proxy on local port


@dataclass(frozen=True)
class ForwardIntent:
    """
    Describes a port forwarding intent.

    This dataclass captures the full specification of a forward
    so it can be replayed after reconnection.

    Attributes:
        forward_type: Type of forwarding (LOCAL, REMOTE, DYNAMIC)
        bound_host: Address the listener binds to; for REMOTE this is on
            the server. Empty string means all interfaces.
        bound_port: Listening port, 0 for an ephemeral port
        target_host: Where forwarded connections go (not used for DYNAMIC)
        target_port: Target port (not used for DYNAMIC)
    """
    forward_type: ForwardType
    bound_host: str = "localhost"
    bound_port: int = 0
    target_host: str | None = None
    target_port: int | None = None

    def __post_init__(self) -> None:
        """Validate forward intent fields."""
        assert isinstance(self.forward_type, ForwardType), \
            f"forward_type must be a ForwardType, got {self.forward_type!r}"
        assert isinstance(self.bound_host, str), \
            f"bound_host must be a string, got {type(self.bound_host).__name__}"
        assert 0 <= self.bound_port <= 65535, \
            f"bound_port must be between 0 and 65535, got {self.bound_port}"

        if self.forward_type in (ForwardType.LOCAL, ForwardType.REMOTE):
            name = self.forward_type.name
            assert self.target_host, f"{name} forward requires target_host"
            assert self.target_port is not None, f"{name} forward requires target_port"
            assert 0 < self.target_port <= 65535, \
                f"target_port must be between 1 and 65535, got {self.target_port}"
        else:
            assert self.target_host is None and self.target_port is None, \
                "DYNAMIC forward takes no target, the SOCKS client chooses it"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for event logging."""
        result: dict[str, Any] = {
            "forward_type": self.forward_type.value,
            "bound_host": self.bound_host,
            "bound_port": self.bound_port,
        }
        if self.target_host is not None:
            result["target_host"] = self.target_host
        if self.target_port is not None:
            result["target_port"] = self.target_port
        return result

    def create_port(self, emitter: "EventEmitter | None" = None) -> "ForwardedPort":
        """Build an unattached forwarded port for this intent."""
        if self.forward_type == ForwardType.LOCAL:
            from nbs_tunnel.forward_local import LocalForward
            return LocalForward.from_intent(self, emitter=emitter)
        if self.forward_type == ForwardType.REMOTE:
            from nbs_tunnel.forward_remote import RemoteForward
            return RemoteForward.from_intent(self, emitter=emitter)
        from nbs_tunnel.forward_dynamic import DynamicForward
        return DynamicForward.from_intent(self, emitter=emitter)


class ForwardManager:
    """
    Registry of the forwarded ports attached to one session.

    Keeps the intent each port was created with (the requested bound
    port, not the resolved one), enabling replay after reconnection.
    """

    def __init__(
        self,
        session: "ForwardingSession",
        emitter: "EventEmitter | None" = None,
    ) -> None:
        """
        Initialise the forward manager.

        Args:
            session: The session ports are attached to
            emitter: Optional event emitter for FORWARD events
        """
        assert session is not None, "session must not be None"
        self._session = session
        self._emitter = emitter
        self._ports: dict[ForwardedPort, ForwardIntent] = {}
        self._intents: list[ForwardIntent] = []
        self._lock = threading.Lock()

    @property
    def session(self) -> "ForwardingSession":
        """Return the session ports are attached to."""
        return self._session

    def set_emitter(self, emitter: "EventEmitter | None") -> None:
        """Set the event emitter."""
        self._emitter = emitter

    @property
    def forwarded_ports(self) -> list["ForwardedPort"]:
        """Return the registered ports."""
        with self._lock:
            return list(self._ports)

    @property
    def intents(self) -> list[ForwardIntent]:
        """Return list of all registered intents (for replay)."""
        with self._lock:
            return list(self._intents)

    def add(self, port: "ForwardedPort") -> None:
        """
        Attach a port to the session and register it.

        Raises:
            PortStateError: If the port belongs to another session
        """
        port.session = self._session
        if self._emitter is not None:
            port.set_emitter(self._emitter)

        intent = port.descriptor
        with self._lock:
            self._ports.setdefault(port, intent)
            if intent not in self._intents:
                self._intents.append(intent)

    def remove(self, port: "ForwardedPort") -> None:
        """Stop a port, detach it and forget its intent."""
        with self._lock:
            intent = self._ports.pop(port, None)
            if intent is None:
                return
            if intent not in self._ports.values() and intent in self._intents:
                self._intents.remove(intent)

        port.stop()
        port.session = None

    def forward_local(
        self,
        bound_port: int,
        host: str,
        port: int,
        bound_host: str = "localhost",
    ) -> "LocalForward":
        """
        Create and start a local port forward.

        Connections to bound_host:bound_port are forwarded through the
        SSH connection to host:port.

        Args:
            bound_port: Local port to listen on (0 for auto-assign)
            host: Remote host to forward to
            port: Remote port to forward to
            bound_host: Local interface to bind to

        Returns:
            The started LocalForward
        """
        from nbs_tunnel.forward_local import LocalForward

        forward = LocalForward(bound_host, bound_port, host, port, emitter=self._emitter)
        self._establish(forward)
        return forward

    def forward_remote(
        self,
        bound_port: int,
        host: str,
        port: int,
        bound_host: str = "localhost",
    ) -> "RemoteForward":
        """
        Create and start a remote port forward.

        Connections to the server on bound_host:bound_port are forwarded
        to host:port on the client side.

        Security: The default bound_host="localhost" binds only to the
        loopback interface on the remote server, matching OpenSSH's
        GatewayPorts=no behaviour. To bind to all interfaces, explicitly
        pass bound_host="" or bound_host="0.0.0.0".

        Returns:
            The started RemoteForward
        """
        from nbs_tunnel.forward_remote import RemoteForward

        forward = RemoteForward(bound_host, bound_port, host, port, emitter=self._emitter)
        self._establish(forward)
        return forward

    def forward_dynamic(
        self,
        bound_port: int,
        bound_host: str = "localhost",
    ) -> "DynamicForward":
        """
        Create and start a dynamic (SOCKS) port forward.

        Returns:
            The started DynamicForward
        """
        from nbs_tunnel.forward_dynamic import DynamicForward

        forward = DynamicForward(bound_host, bound_port, emitter=self._emitter)
        self._establish(forward)
        return forward

    def establish(self, intent: ForwardIntent) -> "ForwardedPort":
        """
        Create, register and start the port an intent describes.

        Raises:
            SSHError or OSError: If the port fails to start; it is
                unregistered again
        """
        port = intent.create_port(self._emitter)
        self._establish(port)
        return port

    def _establish(self, port: "ForwardedPort") -> None:
        """Register and start a port, unregistering it if start fails."""
        self.add(port)
        try:
            port.start()
        except Exception:
            self.remove(port)
            raise

    def replay_all(
        self, session: "ForwardingSession | None" = None,
    ) -> list["ForwardedPort"]:
        """
        Re-establish every registered intent.

        Called after reconnection. The previous ports are disposed, then
        a fresh port is created and started for each intent on session
        (or the current session when None).

        Returns:
            The ports that started successfully
        """
        intents = self.intents
        self.close_all()
        if session is not None:
            self._session = session

        started: list[ForwardedPort] = []
        for intent in intents:
            port = intent.create_port(self._emitter)
            try:
                self.add(port)
                port.start()
                started.append(port)
            except Exception as e:
                logger.warning("Failed to replay forward %s: %s", intent.to_dict(), e)
                with self._lock:
                    self._ports.pop(port, None)
                port.session = None
                self._emit_forward_event(
                    intent, ForwardStatus.REPLAY_FAILED, error=str(e),
                )

        return started

    def stop_all(self, timeout: float | None = None) -> None:
        """Stop every registered port; they stay registered."""
        for port in self.forwarded_ports:
            port.stop(timeout)

    def close_all(self) -> None:
        """Dispose every registered port. Intents are kept for replay."""
        with self._lock:
            ports = list(self._ports)
            self._ports.clear()
        for port in ports:
            try:
                port.dispose()
            except Exception:
                logger.exception("Failed to dispose %r", port)

    def _emit_forward_event(
        self,
        intent: ForwardIntent,
        status: ForwardStatus,
        **extra: Any,
    ) -> None:
        """Emit a FORWARD event."""
        if self._emitter is None:
            return

        self._emitter.emit(
            EventType.FORWARD,
            status=status.value,
            **intent.to_dict(),
            **extra,
        )
