"""
Remote port forwarding (ssh -R).

Provides:
- RemoteForward: Asks the server to listen on bound_host:bound_port and
  relays each forwarded-tcpip channel the server opens to host:port on
  the client side

Starting sends a tcpip-forward global request and blocks until the server
answers, the session's receive loop ends, or close_timeout expires.
Stopping sends cancel-tcpip-forward, waits for the same conditions, then
drains the tunnels that are still open.
"""
from __future__ import annotations

import logging
import socket
import threading
import time
from typing import TYPE_CHECKING

from nbs_tunnel.countdown import PendingConnectionTracker, signal_quietly
from nbs_tunnel.errors import ForwardingError, PortStateError, RemoteForwardRejected
from nbs_tunnel.events import ForwardRequest, ForwardStatus
from nbs_tunnel.forwarded_port import ForwardedPort
from nbs_tunnel.forwarding import ForwardIntent, ForwardType
from nbs_tunnel.session import (
    CANCEL_TCPIP_FORWARD,
    FORWARDED_TCPIP,
    OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED,
    TCPIP_FORWARD,
    ChannelOpenRequest,
    GlobalRequest,
)
from nbs_tunnel.status import PortStatus, to_starting, to_stopping
from nbs_tunnel.validation import validate_bind_host, validate_port

if TYPE_CHECKING:
    from nbs_tunnel.events import EventEmitter
    from nbs_tunnel.session import ForwardingSession

logger = logging.getLogger(__name__)

RESPONSE_POLL_INTERVAL = 0.05


def resolve_address(host: str) -> str:
    """
    Resolve a host name to the first address it maps to.

    The empty string (all interfaces) is returned unchanged.
    """
    if not host:
        return host
    return socket.getaddrinfo(host, None, type=socket.SOCK_STREAM)[0][4][0]


class RemoteForward(ForwardedPort):
    """
    Forward connections made to the server on bound_host:bound_port to
    host:port, as reached from the client.

    Host names are resolved to addresses when the forward is created.
    bound_host "" asks the server to listen on all interfaces (subject to
    its GatewayPorts setting). A bound_port of 0 lets the server choose;
    bound_port holds the allocated port once the forward has started.
    """

    forward_type = ForwardType.REMOTE

    def __init__(
        self,
        bound_host: str,
        bound_port: int,
        host: str,
        port: int,
        *,
        emitter: "EventEmitter | None" = None,
    ) -> None:
        super().__init__(emitter=emitter)
        self.bound_host = resolve_address(validate_bind_host(bound_host))
        self.bound_port = validate_port(bound_port, allow_zero=True)
        self.host = resolve_address(validate_bind_host(host, "host", allow_empty=False))
        self.port = validate_port(port)

        self._response = threading.Event()
        self._pending_request: GlobalRequest | None = None
        self._request_succeeded = False
        self._response_bound_port: int | None = None

    @classmethod
    def from_intent(
        cls, intent: ForwardIntent, emitter: "EventEmitter | None" = None,
    ) -> "RemoteForward":
        """Build a RemoteForward from a REMOTE intent."""
        assert intent.forward_type == ForwardType.REMOTE, \
            f"Expected a REMOTE intent, got {intent.forward_type}"
        return cls(
            intent.bound_host, intent.bound_port,
            intent.target_host, intent.target_port,
            emitter=emitter,
        )

    @property
    def descriptor(self) -> ForwardIntent:
        return ForwardIntent(
            forward_type=ForwardType.REMOTE,
            bound_host=self.bound_host,
            bound_port=self.bound_port,
            target_host=self.host,
            target_port=self.port,
        )

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def _start_port(self) -> bool:
        if not to_starting(self._status):
            return False

        session = self._require_session()
        self._new_tracker()

        request = GlobalRequest(TCPIP_FORWARD, self.bound_host, self.bound_port)
        self._begin_request(request)
        self._subscribe(session)

        try:
            session.send_global_request(request)

            if not self._wait_for_response(session, session.close_timeout):
                raise RemoteForwardRejected(
                    self.bound_host, self.bound_port, reason="no response from server",
                )
            if not self._request_succeeded:
                raise RemoteForwardRejected(
                    self.bound_host, self.bound_port, reason="request denied by server",
                )
        except Exception:
            # The request failed, these notifications are of no further interest
            self._unsubscribe(session)
            self._status.compare_exchange(PortStatus.STARTING, PortStatus.STOPPED)
            raise

        if self.bound_port == 0 and self._response_bound_port:
            self.bound_port = self._response_bound_port

        observed = self._status.compare_exchange(PortStatus.STARTING, PortStatus.STARTED)
        if observed is not PortStatus.STARTING:
            raise PortStateError(f"Forwarded port was stopped while starting ({observed}).")
        logger.info("%s accepted by server", self)
        return True

    # ------------------------------------------------------------------
    # Global request responses
    # ------------------------------------------------------------------

    def _begin_request(self, request: GlobalRequest) -> None:
        self._request_succeeded = False
        self._response_bound_port = None
        self._response.clear()
        self._pending_request = request

    def _wait_for_response(self, session: "ForwardingSession", timeout: float) -> bool:
        """
        Wait for the response to the pending request.

        Returns False on timeout, or when the session's receive loop has
        ended and no response can arrive anymore.
        """
        deadline = time.monotonic() + timeout
        while not self._response.is_set():
            if session.message_loop_completed.is_set():
                return False
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._response.wait(min(remaining, RESPONSE_POLL_INTERVAL))
        return True

    def _on_request_success(self, request: GlobalRequest, bound_port: int | None) -> None:
        if request is not self._pending_request:
            return
        self._request_succeeded = True
        self._response_bound_port = bound_port
        self._response.set()

    def _on_request_failure(self, request: GlobalRequest) -> None:
        if request is not self._pending_request:
            return
        self._request_succeeded = False
        self._response.set()

    def _subscribe(self, session: "ForwardingSession") -> None:
        session.request_success_received.connect(self._on_request_success)
        session.request_failure_received.connect(self._on_request_failure)
        session.channel_open_received.connect(self._on_channel_open)

    def _unsubscribe(self, session: "ForwardingSession") -> None:
        session.request_success_received.disconnect(self._on_request_success)
        session.request_failure_received.disconnect(self._on_request_failure)
        session.channel_open_received.disconnect(self._on_channel_open)

    # ------------------------------------------------------------------
    # Forwarded channels
    # ------------------------------------------------------------------

    def _on_channel_open(self, request: ChannelOpenRequest) -> None:
        """Runs on the session's receive thread; must not block."""
        if request.kind != FORWARDED_TCPIP:
            return

        # Ensure this is the corresponding request
        if request.connected_host != self.bound_host or request.connected_port != self.bound_port:
            return

        session = self._session
        if session is None:
            return

        if not self.is_started:
            session.reject_channel_open(request, OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED)
            return

        # Capture the tracker: a restart replaces it while these
        # connections may still be pending
        tracker = self._tracker
        try:
            tracker.add_count()
        except ForwardingError:
            session.reject_channel_open(request, OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED)
            return

        worker = threading.Thread(
            target=self._process_channel,
            args=(session, request, tracker),
            name=f"{type(self).__name__}-{request.originator_host}:{request.originator_port}",
            daemon=True,
        )
        worker.start()

    def _process_channel(
        self,
        session: "ForwardingSession",
        request: ChannelOpenRequest,
        tracker: PendingConnectionTracker,
    ) -> None:
        originator = (request.originator_host, request.originator_port)
        try:
            self.request_received.emit(ForwardRequest(*originator))
            self._emit_forward_event(
                ForwardStatus.REQUEST,
                originator_host=originator[0],
                originator_port=originator[1],
            )

            tunnel = session.accept_forwarded_tcpip(request)
            try:
                sock = tunnel.connect(self.host, self.port, timeout=session.close_timeout)
            except Exception:
                tunnel.close()
                raise
            self._relay(tunnel, sock, originator)
        except Exception as e:
            self._raise_exception(e)
        finally:
            # The tracker may have been closed by a drain that timed out
            signal_quietly(tracker)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def _stop_port(self, timeout: float) -> None:
        if not to_stopping(self._status):
            return

        session = self._session
        self._begin_stop(session)

        if session is not None:
            request = GlobalRequest(CANCEL_TCPIP_FORWARD, self.bound_host, self.bound_port)
            self._begin_request(request)
            try:
                session.send_global_request(request)
            except Exception as e:
                logger.debug("Could not send %s for %s: %s", CANCEL_TCPIP_FORWARD, self, e)

            # Either the server answers, or the receive loop ends and no
            # answer can arrive anymore
            if not self._wait_for_response(session, timeout):
                logger.debug("No response to %s for %s", CANCEL_TCPIP_FORWARD, self)

            self._unsubscribe(session)

        self._drain(timeout)

        self._status.set(PortStatus.STOPPED)
        self._emit_forward_event(ForwardStatus.CLOSED)
        logger.info("%s stopped", self)

    def _dispose_port(self) -> None:
        self._pending_request = None
