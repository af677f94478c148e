"""
A paramiko SSH session that forwarded ports run over.

Provides:
- SSHConnection: A paramiko client session that forwarded ports attach to
- HostKeyPolicy: What to do with a server key missing from known_hosts

Connect, authentication, forwarding and disconnect all emit events, and
paramiko and socket failures surface as nbs_tunnel.errors types.

Threads: paramiko runs the transport on its own thread. Global requests
run on short-lived worker threads, serialised by a lock, and a monitor
thread turns the end of the transport into error_occurred and
disconnected notifications.
"""
from __future__ import annotations

import errno
import getpass
import logging
import socket
import threading
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Sequence

import paramiko
from paramiko.ssh_exception import NoValidConnectionsError

from nbs_tunnel.auth import AuthConfig, check_agent_available, create_agent_auth, create_key_auth
from nbs_tunnel.channel import TunnelChannel
from nbs_tunnel.errors import (
    AuthFailed,
    ConnectionRefused,
    ConnectionTimeout,
    DisconnectReason,
    ErrorContext,
    ForwardingError,
    HostKeyMismatch,
    HostUnreachable,
    KeyLoadError,
    SessionNotConnected,
    SSHConnectionError,
    SSHError,
)
from nbs_tunnel.events import EventCollector, EventEmitter, EventType
from nbs_tunnel.forwarding import ForwardIntent, ForwardManager
from nbs_tunnel.keepalive import KeepaliveConfig
from nbs_tunnel.platform import expand_path, get_default_key_paths, get_known_hosts_path
from nbs_tunnel.session import (
    CANCEL_TCPIP_FORWARD,
    DIRECT_TCPIP,
    FORWARDED_TCPIP,
    TCPIP_FORWARD,
    ChannelOpenRequest,
    ForwardingSession,
    GlobalRequest,
)
from nbs_tunnel.validation import validate_bind_host, validate_port, validate_username

if TYPE_CHECKING:
    from nbs_tunnel.forward_dynamic import DynamicForward
    from nbs_tunnel.forward_local import LocalForward
    from nbs_tunnel.forward_remote import RemoteForward
    from nbs_tunnel.forwarded_port import ForwardedPort

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class HostKeyPolicy(str, Enum):
    """Handling of server keys not found in known_hosts."""
    REJECT = "reject"
    AUTO_ADD = "auto-add"
    WARN = "warn"

    def to_paramiko(self) -> paramiko.MissingHostKeyPolicy:
        if self is HostKeyPolicy.AUTO_ADD:
            return paramiko.AutoAddPolicy()
        if self is HostKeyPolicy.WARN:
            return paramiko.WarningPolicy()
        return paramiko.RejectPolicy()


def _classify(exc: Exception) -> tuple[type[SSHError], str]:
    """Pick the error class and message prefix for a connect-time failure."""
    if isinstance(exc, paramiko.BadHostKeyException):
        return HostKeyMismatch, "Host key verification failed"
    if isinstance(exc, paramiko.AuthenticationException):
        return AuthFailed, "Authentication failed"
    if isinstance(exc, paramiko.SSHException):
        # RejectPolicy reports an unknown key as a plain SSHException
        if "known_hosts" in str(exc):
            return HostKeyMismatch, "Host key verification failed"
        return SSHConnectionError, "SSH negotiation failed"
    if isinstance(exc, socket.timeout):
        return ConnectionTimeout, "Connection timed out"
    if isinstance(exc, NoValidConnectionsError):
        # One error per address tried; refused only if every address refused
        if all(e.errno == errno.ECONNREFUSED for e in exc.errors.values()):
            return ConnectionRefused, "Connection refused"
        return HostUnreachable, "Host unreachable"
    if isinstance(exc, OSError):
        text = str(exc).lower()
        if exc.errno == errno.ECONNREFUSED or "connection refused" in text:
            return ConnectionRefused, "Connection refused"
        if "timed out" in text:
            return ConnectionTimeout, "Connection timed out"
        if exc.errno in (errno.EHOSTUNREACH, errno.ENETUNREACH) or "no route" in text:
            return HostUnreachable, "Host unreachable"
        return SSHConnectionError, "Connection failed"
    return SSHError, "Unexpected error"


class SSHConnection(ForwardingSession):
    """
    SSH session carrying port forwards, with event logging.

    Usage:
        auth = AuthConfig(method=AuthMethod.PASSWORD, password="secret")
        with SSHConnection(host, port, username, auth=auth) as conn:
            forward = conn.forward_local(8080, "intranet", 80)
            ...

    Events emitted:
    - CONNECT: When connection is initiated and established
    - AUTH: For each authentication attempt (includes method and timing)
    - FORWARD: Lifecycle of each forwarded port
    - DISCONNECT: When connection closes
    - ERROR: On any failure
    """

    def __init__(
        self,
        host: str,
        port: int = 22,
        username: str | None = None,
        auth: AuthConfig | Sequence[AuthConfig] | None = None,
        *,
        known_hosts: Path | str | None = None,
        host_key_policy: HostKeyPolicy | str = HostKeyPolicy.REJECT,
        timeout: float = DEFAULT_TIMEOUT,
        keepalive: KeepaliveConfig | None = None,
        event_collector: EventCollector | None = None,
        event_log_path: Path | str | None = None,
    ) -> None:
        """
        Initialise SSH connection parameters.

        Args:
            host: SSH server hostname or IP
            port: SSH server port
            username: Username for authentication (defaults to current user)
            auth: AuthConfig or list of AuthConfigs to try in order. When
                  None, the SSH agent and the default key files are tried.
            known_hosts: known_hosts file (defaults to ~/.ssh/known_hosts)
            host_key_policy: What to do with an unknown server key
            timeout: Connect timeout, global request response timeout and
                     drain timeout for forwarded ports
            keepalive: Optional KeepaliveConfig for connection keepalive
            event_collector: Optional collector for in-memory event capture
            event_log_path: Optional path for JSONL event log
        """
        super().__init__()
        assert timeout > 0, f"timeout must be positive, got {timeout}"

        self._host = validate_bind_host(host, "host", allow_empty=False)
        self._port = validate_port(port)
        self._username = validate_username(username or getpass.getuser())
        self._known_hosts = expand_path(known_hosts) if known_hosts else get_known_hosts_path()
        self._host_key_policy = HostKeyPolicy(host_key_policy)
        self._timeout = timeout
        self._keepalive = keepalive
        self._disconnect_reason = DisconnectReason.NORMAL

        self._auth_configs = self._build_auth_configs(auth)
        if not self._auth_configs:
            raise AuthFailed(
                "Nothing to authenticate with: no SSH agent and no key in "
                "~/.ssh (id_ed25519, id_ecdsa, id_rsa). Pass auth= explicitly."
            )

        self._emitter = EventEmitter(
            collector=event_collector,
            jsonl_path=event_log_path,
        )

        self._client: paramiko.SSHClient | None = None
        self._transport: paramiko.Transport | None = None
        self._state_lock = threading.Lock()
        # paramiko tracks one outstanding global request response at a time
        self._request_lock = threading.Lock()
        # Remote listeners the server has accepted, as (address, port)
        self._remote_bindings: set[tuple[str, int]] = set()

        self._forwards = ForwardManager(self, emitter=self._emitter)

    @staticmethod
    def _build_auth_configs(
        auth: AuthConfig | Sequence[AuthConfig] | None,
    ) -> list[AuthConfig]:
        """Normalise auth to a list, falling back to agent and default keys."""
        if isinstance(auth, AuthConfig):
            return [auth]
        if auth is not None:
            return list(auth)

        configs: list[AuthConfig] = []
        if check_agent_available():
            configs.append(create_agent_auth())
        for key_path in get_default_key_paths():
            configs.append(create_key_auth(key_path))
        return configs

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def username(self) -> str:
        return self._username

    @property
    def emitter(self) -> EventEmitter:
        """Return the event emitter shared with the forwarded ports."""
        return self._emitter

    @property
    def forwards(self) -> ForwardManager:
        """Return the registry of forwarded ports on this session."""
        return self._forwards

    @property
    def is_connected(self) -> bool:
        transport = self._transport
        return transport is not None and transport.is_active()

    @property
    def close_timeout(self) -> float:
        return self._timeout

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def __enter__(self) -> "SSHConnection":
        """Connect and authenticate."""
        self.connect()
        return self

    def __exit__(self, *args: Any) -> None:
        """Dispose forwards and disconnect."""
        self.close()

    def connect(self) -> None:
        """
        Establish the SSH connection, trying each auth method in order.

        Raises:
            AuthFailed: If every authentication method failed
            HostKeyMismatch: If the server key is rejected
            SSHConnectionError: On network failures (refused, timeout, unreachable)
        """
        assert not self.is_connected, "connect() called on a connected session"

        connect_data: dict[str, Any] = {
            "host": self._host,
            "port": self._port,
            "username": self._username,
        }
        self._emitter.emit(EventType.CONNECT, status="initiating", **connect_data)

        error_ctx = ErrorContext(
            host=self._host,
            port=self._port,
            username=self._username,
        )

        last_error: Exception | None = None
        client: paramiko.SSHClient | None = None
        successful_method: str | None = None

        for auth_config in self._auth_configs:
            with self._emitter.timed_event(
                EventType.AUTH, method=auth_config.method.value, username=self._username,
            ) as auth_data:
                try:
                    client = self._try_auth_method(auth_config)
                except (AuthFailed, KeyLoadError) as e:
                    last_error = e
                    auth_data.update(
                        status="failed",
                        error_type=type(e).__name__,
                        error_message=str(e),
                    )
                    continue
                except Exception as e:
                    # Network and host key failures end the attempt
                    mapped_error = self._map_exception(e, error_ctx)
                    auth_data.update(status="error", error_type=mapped_error.error_type)
                    self._emitter.emit(
                        EventType.ERROR,
                        error_type=mapped_error.error_type,
                        message=str(mapped_error),
                        **connect_data,
                    )
                    raise mapped_error from e

                auth_data["status"] = "success"
                successful_method = auth_config.method.value
                break

        if client is None:
            error_ctx.auth_method = ",".join(c.method.value for c in self._auth_configs)
            self._emitter.emit(
                EventType.ERROR,
                error_type="authentication_failed",
                message="All authentication methods failed",
                methods_tried=[c.method.value for c in self._auth_configs],
                **connect_data,
            )
            if last_error is not None:
                raise self._map_exception(last_error, error_ctx) from last_error
            raise AuthFailed("All authentication methods failed", context=error_ctx)

        transport = client.get_transport()
        assert transport is not None, "paramiko returned a client without a transport"
        if self._keepalive is not None:
            self._keepalive.apply(transport)

        with self._state_lock:
            self._client = client
            self._transport = transport
            self._remote_bindings.clear()
            self._disconnect_reason = DisconnectReason.NORMAL
        self.message_loop_completed.clear()

        monitor = threading.Thread(
            target=self._monitor_transport,
            args=(transport,),
            name=f"SSHConnection-monitor-{self._host}:{self._port}",
            daemon=True,
        )
        monitor.start()

        self._emitter.emit(
            EventType.CONNECT,
            status="connected",
            auth_method=successful_method,
            **connect_data,
        )
        logger.info("Connected to %s@%s:%s", self._username, self._host, self._port)

    def _try_auth_method(self, auth_config: AuthConfig) -> paramiko.SSHClient:
        """Open a connection authenticated with a single method."""
        client = paramiko.SSHClient()
        if self._known_hosts.exists():
            client.load_host_keys(str(self._known_hosts))
        client.set_missing_host_key_policy(self._host_key_policy.to_paramiko())

        try:
            client.connect(
                self._host,
                port=self._port,
                username=self._username,
                timeout=self._timeout,
                banner_timeout=self._timeout,
                auth_timeout=self._timeout,
                **auth_config.to_paramiko_kwargs(),
            )
        except paramiko.BadHostKeyException:
            client.close()
            raise
        except paramiko.AuthenticationException as e:
            client.close()
            raise AuthFailed(
                f"Authentication failed: {e}",
                context=ErrorContext(auth_method=auth_config.method.value),
            ) from e
        except paramiko.SSHException as e:
            client.close()
            # Raised when the chosen method had nothing to offer (e.g. an empty agent)
            if "no authentication methods available" in str(e).lower():
                raise AuthFailed(
                    f"Authentication failed: {e}",
                    context=ErrorContext(auth_method=auth_config.method.value),
                ) from e
            raise
        except BaseException:
            client.close()
            raise
        return client

    def _map_exception(
        self,
        exc: Exception,
        ctx: ErrorContext,
    ) -> SSHError:
        """Translate a paramiko or socket exception into an SSHError subclass."""
        if isinstance(exc, SSHError):
            return exc

        ctx.original_error = str(exc)
        error_class, summary = _classify(exc)
        return error_class(f"{summary}: {exc}", context=ctx)

    def _monitor_transport(self, transport: paramiko.Transport) -> None:
        """Wait for the transport thread to end and report why."""
        transport.join()

        with self._state_lock:
            if transport is not self._transport:
                # Closed (or replaced) by us; close() reports it
                return
            self._transport = None
            self._remote_bindings.clear()
            self._disconnect_reason = DisconnectReason.NETWORK_ERROR

        exc = transport.get_exception()
        logger.warning("Connection to %s:%s lost: %s", self._host, self._port, exc or "closed by server")
        self._emitter.emit(
            EventType.DISCONNECT,
            host=self._host,
            port=self._port,
            reason=self._disconnect_reason.value,
            error=str(exc) if exc else None,
        )

        # EOF is the server closing the session, not an error
        if exc is not None and not isinstance(exc, EOFError):
            self.error_occurred.emit(exc)
        self.disconnected.emit()
        self.message_loop_completed.set()

    def reconnect(self) -> list["ForwardedPort"]:
        """
        Connect again after the session was lost, then re-establish every
        forward that was registered.

        Returns:
            The forwarded ports that started again
        """
        self._close_transport()
        self.connect()
        return self._forwards.replay_all()

    def close(self, reason: DisconnectReason | None = None) -> None:
        """Stop and dispose every forwarded port, then close the session."""
        if reason is not None:
            self._disconnect_reason = reason

        # Drain forwards while the transport can still carry cancel requests
        self._forwards.close_all()

        if self._close_transport():
            self._emitter.emit(
                EventType.DISCONNECT,
                host=self._host,
                port=self._port,
                reason=self._disconnect_reason.value,
            )
            logger.info("Disconnected from %s:%s", self._host, self._port)

        self._emitter.close()

    def _close_transport(self) -> bool:
        """Close the client; returns True if there was one to close."""
        with self._state_lock:
            client = self._client
            self._client = None
            self._transport = None
            self._remote_bindings.clear()
        if client is None:
            return False
        client.close()
        self.message_loop_completed.set()
        return True

    # ------------------------------------------------------------------
    # ForwardingSession
    # ------------------------------------------------------------------

    def _require_transport(self) -> paramiko.Transport:
        transport = self._transport
        if transport is None or not transport.is_active():
            raise SessionNotConnected()
        return transport

    def open_direct_tcpip(
        self, host: str, port: int, originator: tuple[str, int],
    ) -> TunnelChannel:
        transport = self._require_transport()
        ctx = ErrorContext(host=host, port=port)
        try:
            channel = transport.open_channel(
                DIRECT_TCPIP, (host, port), originator, timeout=self._timeout,
            )
        except paramiko.ChannelException as e:
            ctx.original_error = str(e)
            raise ForwardingError(
                f"Server refused {DIRECT_TCPIP} channel to {host}:{port}: {e}", ctx,
            ) from e
        except paramiko.SSHException as e:
            ctx.original_error = str(e)
            raise SSHConnectionError(
                f"Could not open {DIRECT_TCPIP} channel to {host}:{port}: {e}", ctx,
            ) from e
        return TunnelChannel(channel)

    def accept_forwarded_tcpip(self, request: ChannelOpenRequest) -> TunnelChannel:
        assert request.handle is not None, "forwarded-tcpip request has no channel"
        return TunnelChannel(request.handle)

    def reject_channel_open(self, request: ChannelOpenRequest, reason: int) -> None:
        # paramiko has already confirmed the channel; closing it is the refusal
        logger.debug(
            "Rejecting %s channel from %s:%s to %s:%s (reason %d)",
            request.kind, request.originator_host, request.originator_port,
            request.connected_host, request.connected_port, reason,
        )
        if request.handle is not None:
            request.handle.close()

    def send_global_request(self, request: GlobalRequest) -> None:
        worker = threading.Thread(
            target=self._run_global_request,
            args=(request,),
            name=f"SSHConnection-{request.name}-{request.port}",
            daemon=True,
        )
        worker.start()

    def _run_global_request(self, request: GlobalRequest) -> None:
        try:
            with self._request_lock:
                transport = self._require_transport()
                if request.name == TCPIP_FORWARD:
                    bound_port = transport.request_port_forward(
                        request.host, request.port, handler=self._on_forwarded_tcpip,
                    )
                    with self._state_lock:
                        self._remote_bindings.add((request.host, bound_port))
                else:
                    answered, response = self._cancel_remote_listener(transport, request)
                    with self._state_lock:
                        self._remote_bindings.discard((request.host, request.port))
                    if not answered:
                        raise paramiko.SSHException(f"No reply to {CANCEL_TCPIP_FORWARD}")
                    if response is None:
                        raise paramiko.SSHException(f"{CANCEL_TCPIP_FORWARD} denied")
                    bound_port = request.port
        except (paramiko.SSHException, SSHError, OSError) as e:
            logger.debug("%s for %s:%s failed: %s", request.name, request.host, request.port, e)
            self.request_failure_received.emit(request)
            return

        self.request_success_received.emit(request, bound_port)

    def _cancel_remote_listener(
        self, transport: paramiko.Transport, request: GlobalRequest,
    ) -> tuple[bool, Any]:
        """
        Send cancel-tcpip-forward and wait up to close_timeout for the reply.

        paramiko waits for a reply until the transport dies, so that wait
        runs on its own thread; a server that never answers only costs
        that thread, not the request lock.

        Returns:
            (answered, response) where response is None for a refusal
        """
        replies: list[Any] = []
        errors: list[Exception] = []

        def send() -> None:
            try:
                replies.append(transport.global_request(
                    CANCEL_TCPIP_FORWARD, (request.host, request.port), wait=True,
                ))
            except (paramiko.SSHException, OSError) as e:
                errors.append(e)

        waiter = threading.Thread(
            target=send, name=f"SSHConnection-cancel-{request.port}", daemon=True,
        )
        waiter.start()
        waiter.join(self.close_timeout)

        if errors:
            raise errors[0]
        if waiter.is_alive():
            return False, None
        return True, replies[0] if replies else None

    def _on_forwarded_tcpip(
        self,
        channel: paramiko.Channel,
        origin: tuple[str, int],
        server: tuple[str, int],
    ) -> None:
        """Runs on paramiko's transport thread."""
        with self._state_lock:
            bound = (server[0], server[1]) in self._remote_bindings
        if not bound:
            logger.debug("Closing %s channel for unknown listener %s:%s", FORWARDED_TCPIP, *server)
            channel.close()
            return

        self.channel_open_received.emit(ChannelOpenRequest(
            kind=FORWARDED_TCPIP,
            connected_host=server[0],
            connected_port=server[1],
            originator_host=origin[0],
            originator_port=origin[1],
            handle=channel,
        ))

    # ------------------------------------------------------------------
    # Forwarded ports
    # ------------------------------------------------------------------

    def add_forwarded_port(self, port: "ForwardedPort") -> None:
        """Attach a forwarded port to this session without starting it."""
        self._forwards.add(port)

    def remove_forwarded_port(self, port: "ForwardedPort") -> None:
        """Stop a forwarded port and detach it from this session."""
        self._forwards.remove(port)

    def establish_forward(self, intent: ForwardIntent) -> "ForwardedPort":
        """Create and start the forward an intent describes."""
        return self._forwards.establish(intent)

    def forward_local(
        self, bound_port: int, host: str, port: int, bound_host: str = "localhost",
    ) -> "LocalForward":
        """Start a local forward (ssh -L). See ForwardManager.forward_local."""
        return self._forwards.forward_local(bound_port, host, port, bound_host)

    def forward_remote(
        self, bound_port: int, host: str, port: int, bound_host: str = "localhost",
    ) -> "RemoteForward":
        """Start a remote forward (ssh -R). See ForwardManager.forward_remote."""
        return self._forwards.forward_remote(bound_port, host, port, bound_host)

    def forward_dynamic(
        self, bound_port: int, bound_host: str = "localhost",
    ) -> "DynamicForward":
        """Start a SOCKS forward (ssh -D). See ForwardManager.forward_dynamic."""
        return self._forwards.forward_dynamic(bound_port, bound_host)

    def __repr__(self) -> str:
        state = "connected" if self.is_connected else "disconnected"
        return f"SSHConnection({self._username}@{self._host}:{self._port}, {state})"
