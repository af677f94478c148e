"""
Tests for RemoteForward against a FakeSession.

Tests:
- tcpip-forward success, denial and missing response
- Server-allocated ports replace bound_port 0
- forwarded-tcpip channels are dispatched only to the matching port
- Channels arriving before the port is started are prohibited
- Stop sends cancel-tcpip-forward and tolerates no answer
"""
from __future__ import annotations

import threading
import time

import pytest

from conftest import EchoServer, recv_exactly, wait_until
from nbs_tunnel.errors import RemoteForwardRejected
from nbs_tunnel.events import EventCollector, EventEmitter, ForwardRequest
from nbs_tunnel.forward_remote import RemoteForward
from nbs_tunnel.forwarding import ForwardIntent, ForwardType
from nbs_tunnel.session import (
    CANCEL_TCPIP_FORWARD,
    OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED,
    TCPIP_FORWARD,
)
from nbs_tunnel.status import PortStatus
from nbs_tunnel.testing import FakeSession


def make_forward(
    session: FakeSession, target_port: int, bound_port: int = 0,
    emitter: EventEmitter | None = None,
) -> RemoteForward:
    port = RemoteForward("127.0.0.1", bound_port, "127.0.0.1", target_port, emitter=emitter)
    port.session = session
    return port


class TestRemoteForwardStart:
    """The tcpip-forward exchange."""

    def test_start_sends_tcpip_forward(
        self, fake_session: FakeSession, echo_server: EchoServer,
        event_collector: EventCollector, emitter: EventEmitter,
    ) -> None:
        """A granted request starts the port on the allocated port."""
        port = make_forward(fake_session, echo_server.port, emitter=emitter)
        port.start()
        try:
            request = fake_session.requests_named(TCPIP_FORWARD)[0]
            assert (request.host, request.port) == ("127.0.0.1", 0)
            assert port.is_started
            assert port.bound_port == fake_session.allocated_port
            assert event_collector.get_forward_statuses() == ["establishing", "established"]
        finally:
            port.dispose()

    def test_explicit_port_kept(self, fake_session: FakeSession, echo_server: EchoServer) -> None:
        """A non-zero bound_port is not replaced."""
        port = make_forward(fake_session, echo_server.port, bound_port=8022)
        port.start()
        try:
            assert port.bound_port == 8022
        finally:
            port.dispose()

    def test_denied(
        self, echo_server: EchoServer, event_collector: EventCollector, emitter: EventEmitter,
    ) -> None:
        """A refused request raises and leaves no subscriptions behind."""
        with FakeSession(close_timeout=1.0, forward_response="failure") as session:
            port = make_forward(session, echo_server.port, bound_port=8022, emitter=emitter)

            with pytest.raises(RemoteForwardRejected, match="'127.0.0.1' port '8022'") as exc_info:
                port.start()

            assert exc_info.value.context.extra["reason"] == "request denied by server"
            assert port.status is PortStatus.STOPPED
            assert len(session.request_success_received) == 0
            assert len(session.request_failure_received) == 0
            assert len(session.channel_open_received) == 0
            assert len(session.error_occurred) == 0
            assert event_collector.get_forward_statuses() == ["establishing", "failed"]

    def test_no_response_times_out(self, echo_server: EchoServer) -> None:
        """Without an answer start gives up after close_timeout."""
        with FakeSession(close_timeout=0.3, forward_response="none") as session:
            port = make_forward(session, echo_server.port, bound_port=8022)

            start = time.monotonic()
            with pytest.raises(RemoteForwardRejected) as exc_info:
                port.start()

            assert time.monotonic() - start >= 0.25
            assert exc_info.value.context.extra["reason"] == "no response from server"
            assert port.status is PortStatus.STOPPED

    def test_message_loop_completed_ends_wait(self, echo_server: EchoServer) -> None:
        """A finished receive loop fails start without waiting for the timeout."""
        with FakeSession(close_timeout=30.0, forward_response="none") as session:
            session.complete_message_loop()
            port = make_forward(session, echo_server.port, bound_port=8022)

            start = time.monotonic()
            with pytest.raises(RemoteForwardRejected):
                port.start()
            assert time.monotonic() - start < 5.0

    def test_delayed_response(self, echo_server: EchoServer) -> None:
        """A response arriving on another thread completes start."""
        with FakeSession(close_timeout=2.0, response_delay=0.1) as session:
            port = make_forward(session, echo_server.port)
            port.start()
            try:
                assert port.bound_port == session.allocated_port
            finally:
                port.dispose()

    def test_concurrent_start_sends_one_request(
        self, echo_server: EchoServer, event_collector: EventCollector, emitter: EventEmitter,
    ) -> None:
        """A second start during the exchange neither sends nor reports anything."""
        with FakeSession(close_timeout=2.0, response_delay=0.3) as session:
            port = make_forward(session, echo_server.port, emitter=emitter)
            first = threading.Thread(target=port.start)
            first.start()
            try:
                assert wait_until(lambda: port.status is PortStatus.STARTING)
                port.start()
                first.join(5.0)

                assert port.is_started
                assert len(session.requests_named(TCPIP_FORWARD)) == 1
                assert event_collector.get_forward_statuses().count("established") == 1
            finally:
                first.join(5.0)
                port.dispose()

    def test_host_names_resolved(self) -> None:
        """Host names are stored as addresses."""
        port = RemoteForward("localhost", 8022, "localhost", 80)
        assert port.bound_host in ("127.0.0.1", "::1")
        assert port.host in ("127.0.0.1", "::1")

    def test_from_intent(self) -> None:
        """from_intent builds an equivalent port."""
        intent = ForwardIntent(ForwardType.REMOTE, "127.0.0.1", 8022, "127.0.0.1", 80)
        assert RemoteForward.from_intent(intent).descriptor == intent


class TestRemoteForwardChannels:
    """Dispatch of forwarded-tcpip channels."""

    def test_matching_channel_relayed(
        self, fake_session: FakeSession, echo_server: EchoServer,
    ) -> None:
        """A channel for this listener is connected to the target."""
        port = make_forward(fake_session, echo_server.port)
        requests: list[ForwardRequest] = []
        port.request_received.connect(requests.append)
        port.start()
        try:
            _, peer = fake_session.open_forwarded_channel(
                "127.0.0.1", port.bound_port, originator=("203.0.113.5", 51000),
            )
            peer.sendall(b"hello remote")
            assert recv_exactly(peer, 12) == b"hello remote"

            assert wait_until(lambda: len(requests) == 1)
            assert requests[0] == ForwardRequest("203.0.113.5", 51000)
        finally:
            port.dispose()

    def test_non_matching_channel_ignored(
        self, fake_session: FakeSession, echo_server: EchoServer,
    ) -> None:
        """A channel for another listener is left for other ports."""
        port = make_forward(fake_session, echo_server.port)
        requests: list[ForwardRequest] = []
        port.request_received.connect(requests.append)
        port.start()
        try:
            fake_session.open_forwarded_channel("127.0.0.1", port.bound_port + 1)
            fake_session.open_forwarded_channel("10.0.0.1", port.bound_port)

            time.sleep(0.1)
            assert requests == []
            assert fake_session.rejected == []
        finally:
            port.dispose()

    def test_two_ports_dispatch_separately(
        self, fake_session: FakeSession, echo_server: EchoServer,
    ) -> None:
        """Each port receives only its own channels."""
        first = make_forward(fake_session, echo_server.port, bound_port=8022)
        second = make_forward(fake_session, echo_server.port, bound_port=8023)
        seen: dict[int, int] = {8022: 0, 8023: 0}
        first.request_received.connect(lambda r: seen.__setitem__(8022, seen[8022] + 1))
        second.request_received.connect(lambda r: seen.__setitem__(8023, seen[8023] + 1))
        first.start()
        second.start()
        try:
            fake_session.open_forwarded_channel("127.0.0.1", 8023)
            assert wait_until(lambda: seen[8023] == 1)
            assert seen[8022] == 0
        finally:
            first.dispose()
            second.dispose()

    def test_channel_before_started_prohibited(self, echo_server: EchoServer) -> None:
        """A channel that arrives while the port is starting is refused."""
        with FakeSession(close_timeout=1.0, forward_response="none") as session:
            port = make_forward(session, echo_server.port, bound_port=8022)
            errors: list[BaseException] = []

            def start() -> None:
                try:
                    port.start()
                except RemoteForwardRejected as e:
                    errors.append(e)

            thread = threading.Thread(target=start)
            thread.start()
            assert wait_until(lambda: len(session.sent_requests) == 1)

            request, peer = session.open_forwarded_channel("127.0.0.1", 8022)
            assert session.rejected == [(request, OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED)]
            peer.settimeout(2.0)
            assert peer.recv(10) == b""

            thread.join(5.0)
            assert len(errors) == 1

    def test_unreachable_target_reported(
        self, fake_session: FakeSession, event_collector: EventCollector,
        emitter: EventEmitter,
    ) -> None:
        """A target that refuses the connection raises exception and closes the channel."""
        closed = EchoServer()
        dead_port = closed.port
        closed.close()

        port = make_forward(fake_session, dead_port, emitter=emitter)
        errors: list[BaseException] = []
        port.exception.connect(errors.append)
        port.start()
        try:
            _, peer = fake_session.open_forwarded_channel("127.0.0.1", port.bound_port)
            peer.settimeout(5.0)
            assert peer.recv(10) == b""
            assert wait_until(lambda: len(errors) == 1)
            assert isinstance(errors[0], OSError)
            assert "connection_error" in event_collector.get_forward_statuses()
        finally:
            port.dispose()


class TestRemoteForwardStop:
    """Cancelling a remote forward."""

    def test_stop_sends_cancel(
        self, fake_session: FakeSession, echo_server: EchoServer,
        event_collector: EventCollector, emitter: EventEmitter,
    ) -> None:
        """stop() cancels the listener it was granted."""
        port = make_forward(fake_session, echo_server.port, emitter=emitter)
        port.start()
        port.stop()

        cancel = fake_session.requests_named(CANCEL_TCPIP_FORWARD)[0]
        assert (cancel.host, cancel.port) == ("127.0.0.1", fake_session.allocated_port)
        assert port.status is PortStatus.STOPPED
        assert len(fake_session.channel_open_received) == 0
        assert event_collector.get_forward_statuses()[-2:] == ["closing", "closed"]

    def test_stop_without_cancel_reply(self, echo_server: EchoServer) -> None:
        """A server that never answers the cancel does not block stop."""
        with FakeSession(close_timeout=0.2, cancel_response="none") as session:
            port = make_forward(session, echo_server.port)
            port.start()

            start = time.monotonic()
            port.stop()

            assert time.monotonic() - start < 5.0
            assert port.status is PortStatus.STOPPED

    def test_stop_after_disconnect(self, echo_server: EchoServer) -> None:
        """Stopping on a lost session skips the cancel and still stops."""
        with FakeSession(close_timeout=5.0) as session:
            port = make_forward(session, echo_server.port)
            port.start()
            session.disconnect()

            start = time.monotonic()
            port.stop()

            assert time.monotonic() - start < 2.0
            assert port.status is PortStatus.STOPPED
            assert session.requests_named(CANCEL_TCPIP_FORWARD) == []

    def test_dispose_from_closing_handler(
        self, fake_session: FakeSession, echo_server: EchoServer,
    ) -> None:
        """Disposing while the port stops still cancels and unsubscribes."""
        port = make_forward(fake_session, echo_server.port)
        port.closing.connect(port.dispose)
        port.start()
        port.stop()

        assert port.is_disposed
        assert port.status is PortStatus.STOPPED
        assert len(fake_session.requests_named(CANCEL_TCPIP_FORWARD)) == 1
        assert len(fake_session.request_success_received) == 0
        assert len(fake_session.channel_open_received) == 0
        assert len(fake_session.error_occurred) == 0

    def test_channel_after_stop_not_dispatched(
        self, fake_session: FakeSession, echo_server: EchoServer,
    ) -> None:
        """A stopped port no longer observes channel opens."""
        port = make_forward(fake_session, echo_server.port, bound_port=8022)
        requests: list[ForwardRequest] = []
        port.request_received.connect(requests.append)
        port.start()
        port.stop()

        fake_session.open_forwarded_channel("127.0.0.1", 8022)
        time.sleep(0.1)
        assert requests == []

    def test_restart(self, fake_session: FakeSession, echo_server: EchoServer) -> None:
        """A stopped remote forward can be started again."""
        port = make_forward(fake_session, echo_server.port, bound_port=8022)
        port.start()
        port.stop()
        port.start()
        try:
            assert port.is_started
            assert len(fake_session.requests_named(TCPIP_FORWARD)) == 2
            assert len(fake_session.channel_open_received) == 1
        finally:
            port.dispose()
