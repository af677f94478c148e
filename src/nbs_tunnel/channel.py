"""
Byte relay between a tunnel channel and a local socket.

Provides:
- TunnelChannel: Wraps an open SSH channel (or any socket-like object with
  fileno/recv/sendall/close) and relays it to a local TCP socket

The relay is a select() loop over both ends, reading whichever side is
readable and writing the chunk to the other. It ends when either side
reports EOF or an error, and always closes both ends.
"""
from __future__ import annotations

import logging
import select
import socket
import threading
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 32768


class TunnelChannel:
    """
    One forwarded connection: an SSH channel plus the local socket it is
    bound to.

    Connect on_port_closing() to the owning port's closing signal while
    bind() runs, so stopping the port makes the local peer see EOF.
    """

    def __init__(
        self,
        channel: Any,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        poll_interval: float = 0.5,
    ) -> None:
        assert channel is not None, "channel must not be None"
        assert chunk_size > 0, f"chunk_size must be positive, got {chunk_size}"
        assert poll_interval > 0, f"poll_interval must be positive, got {poll_interval}"

        self._channel = channel
        self._sock: socket.socket | None = None
        self._chunk_size = chunk_size
        self._poll_interval = poll_interval
        self._lock = threading.Lock()
        self._closing = False
        self._closed = False

        self.bytes_sent = 0
        self.bytes_received = 0

    @property
    def channel(self) -> Any:
        """Return the wrapped SSH channel."""
        return self._channel

    @property
    def is_closed(self) -> bool:
        """Return True once both ends have been closed."""
        return self._closed

    def connect(self, host: str, port: int, timeout: float | None = None) -> socket.socket:
        """
        Open a TCP connection to a local target.

        Used by remote forwarding, where the server announced the channel
        and the client must reach the target itself.

        Raises:
            OSError: If the target cannot be reached
        """
        sock = socket.create_connection((host, port), timeout=timeout)
        sock.settimeout(None)
        return sock

    def bind(self, sock: socket.socket) -> None:
        """
        Relay bytes between sock and the channel until either side ends.

        Blocks the calling thread. Both ends are closed on return.

        Raises:
            OSError: On a relay error that did not follow on_port_closing()
        """
        with self._lock:
            if self._closed:
                sock.close()
                return
            self._sock = sock

        channel = self._channel
        try:
            while not self._closed:
                readable, _, _ = select.select(
                    [sock, channel], [], [], self._poll_interval,
                )
                if sock in readable:
                    data = sock.recv(self._chunk_size)
                    if not data:
                        break
                    channel.sendall(data)
                    self.bytes_sent += len(data)
                if channel in readable:
                    data = channel.recv(self._chunk_size)
                    if not data:
                        break
                    sock.sendall(data)
                    self.bytes_received += len(data)
        except (OSError, ValueError) as e:
            # ValueError: select() on a descriptor closed by close()
            if not (self._closing or self._closed):
                raise OSError(f"Tunnel relay failed: {e}") from e
            logger.debug("Relay ended during shutdown: %s", e)
        finally:
            self.close()

    def on_port_closing(self) -> None:
        """
        Handle the owning port's closing signal.

        Shuts down the write side of the local socket so the local peer
        sees EOF. Relay errors after this point end the relay quietly.
        """
        with self._lock:
            self._closing = True
            sock = self._sock
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_WR)
            except OSError:
                pass

    def close(self) -> None:
        """Close the channel and the bound socket. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            sock = self._sock

        if sock is not None:
            try:
                sock.close()
            except OSError as e:
                logger.debug("Error closing tunnel socket: %s", e)
        try:
            self._channel.close()
        except OSError as e:
            logger.debug("Error closing tunnel channel: %s", e)

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return (
            f"TunnelChannel({state}, sent={self.bytes_sent}, "
            f"received={self.bytes_received})"
        )
