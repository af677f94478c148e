"""
Mock SSH server for falsifiable integration testing.

Provides:
- MockServerConfig: Configuration for mock server behaviours
- MockSSHServer: Context manager that runs a paramiko server-mode SSH
  server on 127.0.0.1, port 0

The mock server supports:
- Password authentication
- direct-tcpip channels (connects to the requested target itself)
- tcpip-forward / cancel-tcpip-forward, opening forwarded-tcpip
  channels for connections to its listeners
- Dropping every session on demand, to exercise session loss
- Server-side event log for assertions

Example:
    with MockSSHServer() as server:
        with SSHConnection(
            "127.0.0.1", server.port, "test",
            auth=create_password_auth("test"),
            host_key_policy="auto-add",
            known_hosts=tmp_path / "known_hosts",
        ) as conn:
            conn.forward_local(0, "127.0.0.1", echo_port)
"""
from __future__ import annotations

import json
import socket
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

import paramiko

from nbs_tunnel.channel import TunnelChannel

ACCEPT_POLL_INTERVAL = 0.2


@dataclass
class MockServerConfig:
    """
    Configuration for mock SSH server behaviours.

    Attributes:
        username: Username to accept (default: "test")
        password: Password to accept (default: "test")
        host_key: Server key (an RSA key is generated if None)
        allow_tcpip_forward: Grant tcpip-forward requests
        allow_direct_tcpip: Grant direct-tcpip channels
        delay_forward_reply: Seconds to stall before answering tcpip-forward
        delay_cancel_reply: Seconds to stall before answering
            cancel-tcpip-forward
        forward_bind_host: Address remote listeners bind to when the
            client asks for all interfaces
    """
    username: str = "test"
    password: str = "test"
    host_key: paramiko.PKey | None = None
    allow_tcpip_forward: bool = True
    allow_direct_tcpip: bool = True
    delay_forward_reply: float = 0.0
    delay_cancel_reply: float = 0.0
    forward_bind_host: str = "127.0.0.1"

    def __post_init__(self) -> None:
        """Validate configuration."""
        assert self.delay_forward_reply >= 0, \
            f"delay_forward_reply must be >= 0, got {self.delay_forward_reply}"
        assert self.delay_cancel_reply >= 0, \
            f"delay_cancel_reply must be >= 0, got {self.delay_cancel_reply}"


@dataclass
class ServerEvent:
    """One server-side event (SERVER_* types, kept apart from client events)."""
    event_type: str
    timestamp: float
    data: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps({
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "data": self.data,
        }, default=str)


class MockServerEventLog:
    """Thread-safe server event list with optional JSONL mirroring."""

    def __init__(self, jsonl_path: Path | str | None = None) -> None:
        self._events: list[ServerEvent] = []
        self._lock = threading.Lock()
        self._path = Path(jsonl_path) if jsonl_path else None
        self._file: IO[str] | None = None

    def open(self) -> None:
        if self._path is not None:
            self._file = open(self._path, "a", encoding="utf-8")

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    def emit(self, event_type: str, **data: Any) -> None:
        event = ServerEvent(event_type=event_type, timestamp=time.time() * 1000, data=data)
        with self._lock:
            self._events.append(event)
            if self._file is not None:
                self._file.write(event.to_json() + "\n")
                self._file.flush()

    @property
    def events(self) -> list[ServerEvent]:
        with self._lock:
            return list(self._events)


class _MockServerInterface(paramiko.ServerInterface):
    """
    paramiko callbacks for one client session.

    Called on the session's transport thread.
    """

    def __init__(self, server: "MockSSHServer", transport: paramiko.Transport) -> None:
        self._server = server
        self._config = server.config
        self._log = server.event_log
        self._transport = transport
        # Target sockets for accepted direct-tcpip channels, by channel id
        self.direct_sockets: dict[int, socket.socket] = {}
        self._listeners: dict[tuple[str, int], socket.socket] = {}
        self._lock = threading.Lock()

    def get_allowed_auths(self, username: str) -> str:
        return "password"

    def check_auth_password(self, username: str, password: str) -> int:
        success = username == self._config.username and password == self._config.password
        self._log.emit("SERVER_AUTH", username=username, method="password", success=success)
        return paramiko.AUTH_SUCCESSFUL if success else paramiko.AUTH_FAILED

    def check_channel_request(self, kind: str, chanid: int) -> int:
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def check_channel_direct_tcpip_request(
        self, chanid: int, origin: tuple[str, int], destination: tuple[str, int],
    ) -> int:
        if not self._config.allow_direct_tcpip:
            self._log.emit("SERVER_DIRECT_TCPIP", destination=list(destination), granted=False)
            return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

        try:
            target = socket.create_connection(destination, timeout=5.0)
        except OSError as e:
            self._log.emit(
                "SERVER_DIRECT_TCPIP", destination=list(destination), granted=False, error=str(e),
            )
            return paramiko.OPEN_FAILED_CONNECT_FAILED
        target.settimeout(None)

        with self._lock:
            self.direct_sockets[chanid] = target
        self._log.emit(
            "SERVER_DIRECT_TCPIP",
            destination=list(destination),
            origin=list(origin),
            granted=True,
        )
        return paramiko.OPEN_SUCCEEDED

    def take_direct_socket(self, chanid: int) -> socket.socket | None:
        with self._lock:
            return self.direct_sockets.pop(chanid, None)

    def check_port_forward_request(self, address: str, port: int) -> int | bool:
        if self._config.delay_forward_reply:
            time.sleep(self._config.delay_forward_reply)
        if not self._config.allow_tcpip_forward:
            self._log.emit("SERVER_TCPIP_FORWARD", address=address, port=port, granted=False)
            return False

        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind((address or self._config.forward_bind_host, port))
            listener.listen(16)
            listener.settimeout(ACCEPT_POLL_INTERVAL)
        except OSError as e:
            listener.close()
            self._log.emit(
                "SERVER_TCPIP_FORWARD", address=address, port=port, granted=False, error=str(e),
            )
            return False

        bound_port = listener.getsockname()[1]
        with self._lock:
            self._listeners[(address, bound_port)] = listener
        thread = threading.Thread(
            target=self._serve_listener,
            args=(listener, address, bound_port),
            name=f"MockSSHServer-listener-{bound_port}",
            daemon=True,
        )
        thread.start()
        self._log.emit("SERVER_TCPIP_FORWARD", address=address, port=bound_port, granted=True)
        return bound_port

    def cancel_port_forward_request(self, address: str, port: int) -> None:
        if self._config.delay_cancel_reply:
            time.sleep(self._config.delay_cancel_reply)
        with self._lock:
            listener = self._listeners.pop((address, port), None)
        if listener is not None:
            listener.close()
        self._log.emit("SERVER_CANCEL_TCPIP_FORWARD", address=address, port=port,
                       found=listener is not None)

    def close_listeners(self) -> None:
        with self._lock:
            listeners = list(self._listeners.values())
            self._listeners.clear()
            sockets = list(self.direct_sockets.values())
            self.direct_sockets.clear()
        for sock in listeners + sockets:
            sock.close()

    def _serve_listener(self, listener: socket.socket, address: str, bound_port: int) -> None:
        while self._transport.is_active():
            try:
                client, peer = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                break  # Cancelled

            client.settimeout(None)
            try:
                channel = self._transport.open_forwarded_tcpip_channel(
                    (peer[0], peer[1]), (address, bound_port),
                )
            except (paramiko.SSHException, OSError) as e:
                self._log.emit("SERVER_FORWARDED_TCPIP", port=bound_port, opened=False, error=str(e))
                client.close()
                continue

            self._log.emit("SERVER_FORWARDED_TCPIP", port=bound_port, opened=True,
                           origin=[peer[0], peer[1]])
            _start_relay(channel, client, f"MockSSHServer-forwarded-{peer[1]}")


def _start_relay(channel: paramiko.Channel, sock: socket.socket, name: str) -> None:
    tunnel = TunnelChannel(channel)
    thread = threading.Thread(target=tunnel.bind, args=(sock,), name=name, daemon=True)
    thread.start()


class MockSSHServer:
    """
    Context manager for running a mock SSH server.

    Binds to port 0 for dynamic port allocation, making tests
    parallelisable without port conflicts.

    Usage:
        config = MockServerConfig(username="test", password="test")
        with MockSSHServer(config) as server:
            # server.port contains the assigned port
            ...
            # Access server logs
            for event in server.events:
                print(event)
    """

    def __init__(
        self,
        config: MockServerConfig | None = None,
        event_log_path: Path | str | None = None,
    ) -> None:
        """
        Initialise mock server.

        Args:
            config: Server behaviour configuration (default: basic auth)
            event_log_path: Optional path for JSONL event log
        """
        self._config = config or MockServerConfig()
        self._event_log = MockServerEventLog(event_log_path)
        self._host_key = self._config.host_key or paramiko.RSAKey.generate(2048)

        self._listener: socket.socket | None = None
        self._accept_thread: threading.Thread | None = None
        self._port = 0
        self._running = threading.Event()
        self._sessions: list[tuple[paramiko.Transport, _MockServerInterface]] = []
        self._sessions_lock = threading.Lock()

    @property
    def port(self) -> int:
        """Return the assigned port (only valid after entering context)."""
        assert self._port > 0, "Port not assigned - server not started"
        return self._port

    @property
    def host_key(self) -> paramiko.PKey:
        return self._host_key

    @property
    def config(self) -> MockServerConfig:
        """Return the server configuration."""
        return self._config

    @property
    def event_log(self) -> MockServerEventLog:
        return self._event_log

    @property
    def events(self) -> list[ServerEvent]:
        """Return collected events."""
        return self._event_log.events

    def get_events(self, event_type: str) -> list[ServerEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def __enter__(self) -> "MockSSHServer":
        """Start the mock server."""
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        """Stop the mock server."""
        self.stop()

    def start(self) -> None:
        """Start listening on 127.0.0.1, port 0."""
        self._event_log.open()

        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        listener.bind(("127.0.0.1", 0))
        listener.listen(16)
        listener.settimeout(ACCEPT_POLL_INTERVAL)
        self._listener = listener
        self._port = listener.getsockname()[1]

        self._running.set()
        self._accept_thread = threading.Thread(
            target=self._accept_loop,
            name=f"MockSSHServer-{self._port}",
            daemon=True,
        )
        self._accept_thread.start()

        self._event_log.emit(
            "SERVER_START",
            port=self._port,
            config={
                "username": self._config.username,
                "allow_tcpip_forward": self._config.allow_tcpip_forward,
                "allow_direct_tcpip": self._config.allow_direct_tcpip,
            },
        )

    def stop(self) -> None:
        """Stop accepting and close every session."""
        self._running.clear()
        if self._listener is not None:
            self._listener.close()
            self._listener = None
        if self._accept_thread is not None:
            self._accept_thread.join(ACCEPT_POLL_INTERVAL * 5)
            self._accept_thread = None

        self.drop_connections(reason="server_stop")
        self._event_log.emit("SERVER_STOP", port=self._port)
        self._event_log.close()

    def drop_connections(self, reason: str = "requested") -> None:
        """Close every client session abruptly."""
        with self._sessions_lock:
            sessions = list(self._sessions)
            self._sessions.clear()
        for transport, interface in sessions:
            interface.close_listeners()
            transport.close()
        if sessions:
            self._event_log.emit("SERVER_DROP", reason=reason, sessions=len(sessions))

    def _accept_loop(self) -> None:
        listener = self._listener
        assert listener is not None
        while self._running.is_set():
            try:
                sock, peer = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                break

            self._event_log.emit("SERVER_CONNECT", peer=f"{peer[0]}:{peer[1]}")
            thread = threading.Thread(
                target=self._serve_session,
                args=(sock,),
                name=f"MockSSHServer-session-{peer[1]}",
                daemon=True,
            )
            thread.start()

    def _serve_session(self, sock: socket.socket) -> None:
        sock.settimeout(None)
        transport = paramiko.Transport(sock)
        transport.add_server_key(self._host_key)
        interface = _MockServerInterface(self, transport)
        try:
            transport.start_server(server=interface)
        except (paramiko.SSHException, EOFError, OSError) as e:
            self._event_log.emit("SERVER_NEGOTIATION_FAILED", error=str(e))
            transport.close()
            return

        with self._sessions_lock:
            self._sessions.append((transport, interface))

        # direct-tcpip channels land in the transport's accept queue
        while transport.is_active() and self._running.is_set():
            channel = transport.accept(ACCEPT_POLL_INTERVAL)
            if channel is None:
                continue
            target = interface.take_direct_socket(channel.get_id())
            if target is None:
                channel.close()
                continue
            _start_relay(channel, target, f"MockSSHServer-direct-{channel.get_id()}")

        interface.close_listeners()
        self._event_log.emit("SERVER_DISCONNECT")
