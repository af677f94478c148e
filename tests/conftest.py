"""
Pytest fixtures for nbs-tunnel tests.

Provides:
- Event capture fixture for asserting event sequences
- TCP echo server fixture used as a forwarding target
- FakeSession fixture for forwarded-port tests without SSH
- MockSSHServer and connected SSHConnection fixtures (no Docker required)
"""
from __future__ import annotations

import socket
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Generator

import pytest

if TYPE_CHECKING:
    from nbs_tunnel.connection import SSHConnection
    from nbs_tunnel.events import EventCollector, EventEmitter
    from nbs_tunnel.testing import FakeSession, MockSSHServer


class EchoServer:
    """Threaded TCP server on 127.0.0.1 that echoes every byte back."""

    def __init__(self) -> None:
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen(16)
        self._listener.settimeout(0.1)
        self.port = self._listener.getsockname()[1]
        self.peers: list[tuple[str, int]] = []
        self._running = True
        self._connections: list[socket.socket] = []
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        while self._running:
            try:
                conn, peer = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            self.peers.append(peer)
            self._connections.append(conn)
            threading.Thread(target=self._echo, args=(conn,), daemon=True).start()

    def _echo(self, conn: socket.socket) -> None:
        conn.settimeout(None)
        try:
            while True:
                data = conn.recv(4096)
                if not data:
                    break
                conn.sendall(data)
        except OSError:
            pass
        finally:
            conn.close()

    def close(self) -> None:
        self._running = False
        self._listener.close()
        self._thread.join(1.0)
        for conn in self._connections:
            conn.close()


def recv_exactly(sock: socket.socket, length: int, timeout: float = 5.0) -> bytes:
    """Read length bytes from sock, failing the test on timeout or EOF."""
    sock.settimeout(timeout)
    data = b""
    while len(data) < length:
        chunk = sock.recv(length - len(data))
        assert chunk, f"EOF after {len(data)} of {length} bytes"
        data += chunk
    return data


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll predicate until it holds or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def event_collector() -> Generator["EventCollector", None, None]:
    """
    Fixture for capturing and asserting event sequences.

    Usage:
        def test_example(event_collector):
            conn = SSHConnection(..., event_collector=event_collector)
            ...
            events = event_collector.events
            assert events[0].event_type == "CONNECT"
    """
    from nbs_tunnel.events import EventCollector

    collector = EventCollector()
    yield collector
    collector.clear()


@pytest.fixture
def emitter(event_collector: "EventCollector") -> "EventEmitter":
    """EventEmitter feeding event_collector."""
    from nbs_tunnel.events import EventEmitter

    return EventEmitter(collector=event_collector)


@pytest.fixture
def temp_jsonl_path(tmp_path: Path) -> Path:
    """Provide a temporary path for JSONL event log output."""
    return tmp_path / "events.jsonl"


@pytest.fixture
def echo_server() -> Generator[EchoServer, None, None]:
    """A local echo server to forward connections to."""
    server = EchoServer()
    yield server
    server.close()


@pytest.fixture
def fake_session() -> Generator["FakeSession", None, None]:
    """A connected FakeSession with a short close timeout."""
    from nbs_tunnel.testing import FakeSession

    with FakeSession(close_timeout=1.0) as session:
        yield session


@pytest.fixture
def mock_ssh_server() -> Generator["MockSSHServer", None, None]:
    """
    Fixture providing a MockSSHServer for integration tests.

    Accepts user "test" with password "test".
    """
    from nbs_tunnel.testing import MockServerConfig, MockSSHServer

    with MockSSHServer(MockServerConfig(username="test", password="test")) as server:
        yield server


@pytest.fixture
def ssh_connection(
    mock_ssh_server: "MockSSHServer",
    event_collector: "EventCollector",
    tmp_path: Path,
) -> Generator["SSHConnection", None, None]:
    """An SSHConnection connected to mock_ssh_server."""
    from nbs_tunnel.auth import create_password_auth
    from nbs_tunnel.connection import HostKeyPolicy, SSHConnection

    conn = SSHConnection(
        "127.0.0.1",
        mock_ssh_server.port,
        "test",
        auth=create_password_auth("test"),
        known_hosts=tmp_path / "known_hosts",
        host_key_policy=HostKeyPolicy.AUTO_ADD,
        timeout=5.0,
        event_collector=event_collector,
    )
    with conn:
        yield conn
