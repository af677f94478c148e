"""
Dynamic port forwarding (ssh -D).

Provides:
- DynamicForward: A local SOCKS4/4a/5 proxy; each accepted connection
  names its own target in the SOCKS handshake and is forwarded through a
  direct-tcpip channel to it

Listener, accept loop, tracker and stop behaviour are those of
LocalForward.
"""
from __future__ import annotations

import logging
import socket
from typing import TYPE_CHECKING

from nbs_tunnel.events import ForwardRequest, ForwardStatus
from nbs_tunnel.forward_local import ListeningForward
from nbs_tunnel.forwarding import ForwardIntent, ForwardType
from nbs_tunnel.socks import read_socks_request

if TYPE_CHECKING:
    from nbs_tunnel.events import EventEmitter

logger = logging.getLogger(__name__)


class DynamicForward(ListeningForward):
    """
    SOCKS proxy on bound_host:bound_port whose connections leave through
    the SSH server.

    The handshake is read with the session's close_timeout; stopping the
    port interrupts a handshake still in progress.
    """

    forward_type = ForwardType.DYNAMIC

    def __init__(
        self,
        bound_host: str,
        bound_port: int,
        *,
        emitter: "EventEmitter | None" = None,
    ) -> None:
        super().__init__(bound_host, bound_port, emitter=emitter)

    @classmethod
    def from_intent(
        cls, intent: ForwardIntent, emitter: "EventEmitter | None" = None,
    ) -> "DynamicForward":
        """Build a DynamicForward from a DYNAMIC intent."""
        assert intent.forward_type == ForwardType.DYNAMIC, \
            f"Expected a DYNAMIC intent, got {intent.forward_type}"
        return cls(intent.bound_host, intent.bound_port, emitter=emitter)

    @property
    def descriptor(self) -> ForwardIntent:
        return ForwardIntent(
            forward_type=ForwardType.DYNAMIC,
            bound_host=self.bound_host,
            bound_port=self.bound_port,
        )

    def _forward_connection(self, client: socket.socket, originator: tuple[str, int]) -> None:
        session = self._require_session()

        def interrupt_handshake() -> None:
            try:
                client.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass

        self.closing.connect(interrupt_handshake)
        try:
            client.settimeout(session.close_timeout)
            try:
                request = read_socks_request(client)
            except OSError:
                if not self.is_started:
                    # Handshake interrupted by stop()
                    request = None
                else:
                    raise
        finally:
            self.closing.disconnect(interrupt_handshake)

        if request is None:
            logger.debug("SOCKS client %s:%s closed during handshake", *originator)
            client.close()
            return
        client.settimeout(None)

        self.request_received.emit(ForwardRequest(request.host, request.port))
        self._emit_forward_event(
            ForwardStatus.REQUEST,
            originator_host=originator[0],
            originator_port=originator[1],
            socks_version=request.version,
            socks_host=request.host,
            socks_port=request.port,
        )

        try:
            tunnel = session.open_direct_tcpip(request.host, request.port, originator)
        except Exception:
            client.sendall(request.reply(False))
            raise

        client.sendall(request.reply(True))
        self._relay(tunnel, client, originator)
