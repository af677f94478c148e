"""
Local port forwarding (ssh -L).

Provides:
- ListeningForward: Listener, accept loop and drain shared with DynamicForward
- LocalForward: Listens on a local address and forwards every accepted
  connection through a direct-tcpip channel to a target reachable from
  the server

One accept thread per started port, one worker thread per accepted
connection. The accept loop polls so that a stop is observed within
ACCEPT_POLL_INTERVAL even on platforms where closing a listening socket
does not interrupt accept().
"""
from __future__ import annotations

import logging
import os
import socket
import threading
from abc import abstractmethod
from typing import TYPE_CHECKING, Any

from nbs_tunnel.countdown import PendingConnectionTracker, signal_quietly
from nbs_tunnel.errors import ForwardingError, PortStateError
from nbs_tunnel.events import ForwardRequest, ForwardStatus
from nbs_tunnel.forwarded_port import ForwardedPort
from nbs_tunnel.forwarding import ForwardIntent, ForwardType
from nbs_tunnel.status import PortStatus, to_starting, to_stopping
from nbs_tunnel.validation import validate_bind_host, validate_port

if TYPE_CHECKING:
    from nbs_tunnel.events import EventEmitter
    from nbs_tunnel.session import ForwardingSession

logger = logging.getLogger(__name__)

ACCEPT_POLL_INTERVAL = 0.5
LISTEN_BACKLOG = socket.SOMAXCONN


def _close_socket(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


class ListeningForward(ForwardedPort):
    """
    A forwarded port that listens on a local address.

    An empty bound_host (or "*") listens on all interfaces. A bound_port
    of 0 picks an ephemeral port; bound_port holds the real port once
    the forward has started. Subclasses decide where each accepted
    connection goes by implementing _forward_connection().
    """

    def __init__(
        self,
        bound_host: str,
        bound_port: int,
        *,
        emitter: "EventEmitter | None" = None,
    ) -> None:
        super().__init__(emitter=emitter)
        self.bound_host = validate_bind_host(bound_host)
        self.bound_port = validate_port(bound_port, allow_zero=True)

        self._listener: socket.socket | None = None
        self._accept_thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def _start_port(self) -> bool:
        if not to_starting(self._status):
            return False

        try:
            self._start_listener()
        except Exception:
            # Only revert if a concurrent stop has not taken over
            self._status.compare_exchange(PortStatus.STARTING, PortStatus.STOPPED)
            raise
        return True

    def _start_listener(self) -> None:
        session = self._require_session()
        listener = self._bind_listener()
        self._listener = listener

        # Update the bound port in case 0 was requested
        self.bound_port = listener.getsockname()[1]

        session.error_occurred.connect(self._stop_from_session)
        session.disconnected.connect(self._stop_from_session)

        tracker = self._new_tracker()

        observed = self._status.compare_exchange(PortStatus.STARTING, PortStatus.STARTED)
        if observed is not PortStatus.STARTING:
            self._unsubscribe_session(session)
            _close_socket(listener)
            raise PortStateError(f"Forwarded port was stopped while starting ({observed}).")

        self._accept_thread = threading.Thread(
            target=self._accept_loop,
            args=(listener, tracker),
            name=f"{type(self).__name__}-{self.bound_port}",
            daemon=True,
        )
        self._accept_thread.start()
        logger.info("%s listening on %s", self, listener.getsockname()[:2])

    def _bind_listener(self) -> socket.socket:
        """Resolve the bound address and return a listening socket."""
        host = self.bound_host or "0.0.0.0"
        family, socktype, proto, _, sockaddr = socket.getaddrinfo(
            host, self.bound_port, type=socket.SOCK_STREAM,
        )[0]

        listener = socket.socket(family, socktype, proto)
        try:
            if os.name == "posix":
                listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind(sockaddr)
            listener.listen(LISTEN_BACKLOG)
            listener.settimeout(ACCEPT_POLL_INTERVAL)
        except OSError:
            listener.close()
            raise
        return listener

    # ------------------------------------------------------------------
    # Accept loop
    # ------------------------------------------------------------------

    def _accept_loop(self, listener: socket.socket, tracker: PendingConnectionTracker) -> None:
        while self._status.value is PortStatus.STARTED:
            try:
                client, peer = listener.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._status.value is not PortStatus.STARTED or listener.fileno() == -1:
                    # Listener closed by stop()
                    break
                self._raise_exception(e)
                break

            if self._status.value is not PortStatus.STARTED:
                _close_socket(client)
                break

            try:
                tracker.add_count()
            except ForwardingError:
                # Tracker closed or drained by a concurrent stop
                _close_socket(client)
                break

            worker = threading.Thread(
                target=self._process_accept,
                args=(client, peer, tracker),
                name=f"{type(self).__name__}-{peer[0]}:{peer[1]}",
                daemon=True,
            )
            worker.start()

        logger.debug("%s accept loop finished", self)

    def _process_accept(
        self,
        client: socket.socket,
        peer: tuple[Any, ...],
        tracker: PendingConnectionTracker,
    ) -> None:
        originator = (peer[0], peer[1])
        try:
            client.settimeout(None)
            client.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            self._forward_connection(client, originator)
        except Exception as e:
            self._raise_exception(e)
            _close_socket(client)
        finally:
            signal_quietly(tracker)

    @abstractmethod
    def _forward_connection(self, client: socket.socket, originator: tuple[str, int]) -> None:
        """Forward one accepted connection; runs on its worker thread."""

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def _stop_port(self, timeout: float) -> None:
        if not to_stopping(self._status):
            return

        session = self._session
        # Signal open tunnels that the port is closing
        self._begin_stop(session)
        # Prevent new connections from being accepted
        self._stop_listener(session, timeout)
        # Wait for open tunnels to close
        self._drain(timeout)

        self._status.set(PortStatus.STOPPED)
        self._emit_forward_event(ForwardStatus.CLOSED)
        logger.info("%s stopped", self)

    def _stop_listener(self, session: "ForwardingSession | None", timeout: float) -> None:
        self._unsubscribe_session(session)

        listener = self._listener
        if listener is not None:
            self._listener = None
            _close_socket(listener)

        thread = self._accept_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(max(timeout, ACCEPT_POLL_INTERVAL * 2))
        self._accept_thread = None

    def _unsubscribe_session(self, session: "ForwardingSession | None") -> None:
        if session is not None:
            session.error_occurred.disconnect(self._stop_from_session)
            session.disconnected.disconnect(self._stop_from_session)

    def _dispose_port(self) -> None:
        listener = self._listener
        if listener is not None:
            self._listener = None
            listener.close()


class LocalForward(ListeningForward):
    """
    Forward connections made to bound_host:bound_port to host:port via
    the SSH server.
    """

    forward_type = ForwardType.LOCAL

    def __init__(
        self,
        bound_host: str,
        bound_port: int,
        host: str,
        port: int,
        *,
        emitter: "EventEmitter | None" = None,
    ) -> None:
        super().__init__(bound_host, bound_port, emitter=emitter)
        self.host = validate_bind_host(host, "host", allow_empty=False)
        self.port = validate_port(port)

    @classmethod
    def from_intent(
        cls, intent: ForwardIntent, emitter: "EventEmitter | None" = None,
    ) -> "LocalForward":
        """Build a LocalForward from a LOCAL intent."""
        assert intent.forward_type == ForwardType.LOCAL, \
            f"Expected a LOCAL intent, got {intent.forward_type}"
        return cls(
            intent.bound_host, intent.bound_port,
            intent.target_host, intent.target_port,
            emitter=emitter,
        )

    @property
    def descriptor(self) -> ForwardIntent:
        return ForwardIntent(
            forward_type=ForwardType.LOCAL,
            bound_host=self.bound_host,
            bound_port=self.bound_port,
            target_host=self.host,
            target_port=self.port,
        )

    def _forward_connection(self, client: socket.socket, originator: tuple[str, int]) -> None:
        """Open a direct-tcpip channel to the target and relay client over it."""
        self.request_received.emit(ForwardRequest(*originator))
        self._emit_forward_event(
            ForwardStatus.REQUEST,
            originator_host=originator[0],
            originator_port=originator[1],
        )

        session = self._require_session()
        tunnel = session.open_direct_tcpip(self.host, self.port, originator)
        self._relay(tunnel, client, originator)
