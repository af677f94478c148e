"""
SOCKS server-side handshake for dynamic port forwarding.

Provides:
- SocksRequest: The target a SOCKS client asked to connect to
- read_socks_request: Read a SOCKS4, SOCKS4a or SOCKS5 CONNECT request
- socks4_reply / socks5_reply: Encode the reply sent once the tunnel to
  the target is open (or failed to open)

Only CONNECT is supported, and SOCKS5 clients must offer the
"no authentication" method.
"""
from __future__ import annotations

import ipaddress
import socket
import struct
from dataclasses import dataclass

from nbs_tunnel.errors import ErrorContext, SocksError

SOCKS4_VERSION = 0x04
SOCKS5_VERSION = 0x05

COMMAND_CONNECT = 0x01

SOCKS4_GRANTED = 0x5A
SOCKS4_REJECTED = 0x5B

SOCKS5_NO_AUTHENTICATION = 0x00
SOCKS5_NO_ACCEPTABLE_METHODS = 0xFF

SOCKS5_SUCCEEDED = 0x00
SOCKS5_GENERAL_FAILURE = 0x01
SOCKS5_COMMAND_NOT_SUPPORTED = 0x07
SOCKS5_ADDRESS_TYPE_NOT_SUPPORTED = 0x08

ADDRESS_TYPE_IPV4 = 0x01
ADDRESS_TYPE_DOMAIN = 0x03
ADDRESS_TYPE_IPV6 = 0x04

# Longest user id / SOCKS4a host name we accept before the NUL terminator
MAX_SOCKS4_STRING = 255


@dataclass(frozen=True)
class SocksRequest:
    """A CONNECT request read from a SOCKS client."""
    version: int
    host: str
    port: int
    command: int = COMMAND_CONNECT
    user_id: str = ""
    # Destination address as sent by a SOCKS4 client, echoed in the reply
    raw_address: bytes = b"\x00\x00\x00\x00"

    def reply(self, succeeded: bool) -> bytes:
        """Encode the reply for this request."""
        if self.version == SOCKS4_VERSION:
            return socks4_reply(succeeded, self.port, self.raw_address)
        return socks5_reply(succeeded)


def socks4_reply(granted: bool, port: int, address: bytes = b"\x00\x00\x00\x00") -> bytes:
    """Encode a SOCKS4 reply: null byte, status, port, IPv4 address."""
    assert len(address) == 4, f"SOCKS4 address must be 4 bytes, got {len(address)}"
    status = SOCKS4_GRANTED if granted else SOCKS4_REJECTED
    return struct.pack("!BBH", 0x00, status, port) + address


def socks5_reply(succeeded: bool, code: int | None = None) -> bytes:
    """
    Encode a SOCKS5 reply.

    The bound address is always reported as IPv4 0.0.0.0 port 0.
    """
    if code is None:
        code = SOCKS5_SUCCEEDED if succeeded else SOCKS5_GENERAL_FAILURE
    return struct.pack("!BBBB", SOCKS5_VERSION, code, 0x00, ADDRESS_TYPE_IPV4) + b"\x00" * 6


def _recv_exact(sock: socket.socket, length: int) -> bytes | None:
    """Read exactly length bytes, or return None if the client closed."""
    data = b""
    while len(data) < length:
        chunk = sock.recv(length - len(data))
        if not chunk:
            return None
        data += chunk
    return data


def _recv_byte(sock: socket.socket) -> int | None:
    data = _recv_exact(sock, 1)
    return None if data is None else data[0]


def _recv_string(sock: socket.socket, field_name: str) -> str | None:
    """Read a NUL-terminated string."""
    data = bytearray()
    while True:
        byte = _recv_byte(sock)
        if byte is None:
            return None
        if byte == 0:
            return data.decode("ascii", errors="replace")
        if len(data) >= MAX_SOCKS4_STRING:
            raise SocksError(f"SOCKS4: {field_name} is too long.")
        data.append(byte)


def read_socks_request(sock: socket.socket) -> SocksRequest | None:
    """
    Run the server side of a SOCKS handshake up to the CONNECT request.

    For SOCKS5 this includes the method negotiation reply. The caller
    sends request.reply() once it knows whether the target is reachable.

    Returns:
        The request, or None if the client closed the connection (or,
        for SOCKS5, was refused because it offered no acceptable method)

    Raises:
        SocksError: Unsupported version, command or address type
        OSError: On socket errors, including the read timeout
    """
    version = _recv_byte(sock)
    if version is None:
        return None
    if version == SOCKS4_VERSION:
        return _read_socks4(sock)
    if version == SOCKS5_VERSION:
        return _read_socks5(sock)
    raise SocksError(
        f"SOCKS version {version} is not supported.",
        ErrorContext(extra={"socks_version": version}),
    )


def _read_socks4(sock: socket.socket) -> SocksRequest | None:
    header = _recv_exact(sock, 7)
    if header is None:
        return None
    command, port = struct.unpack("!BH", header[:3])
    raw_address = header[3:]

    user_id = _recv_string(sock, "user id")
    if user_id is None:
        return None

    # SOCKS4a: 0.0.0.x (x != 0) means a host name follows the user id
    if raw_address[:3] == b"\x00\x00\x00" and raw_address[3] != 0:
        host = _recv_string(sock, "host name")
        if host is None:
            return None
    else:
        host = str(ipaddress.IPv4Address(raw_address))

    if command != COMMAND_CONNECT:
        sock.sendall(socks4_reply(False, port, raw_address))
        raise SocksError(f"SOCKS4: Command '{command}' is not supported.")

    return SocksRequest(
        version=SOCKS4_VERSION,
        host=host,
        port=port,
        command=command,
        user_id=user_id,
        raw_address=raw_address,
    )


def _read_socks5(sock: socket.socket) -> SocksRequest | None:
    method_count = _recv_byte(sock)
    if method_count is None:
        return None
    methods = _recv_exact(sock, method_count) if method_count else b""
    if methods is None:
        return None

    if SOCKS5_NO_AUTHENTICATION not in methods:
        # The client requires authentication, which we do not support
        sock.sendall(bytes([SOCKS5_VERSION, SOCKS5_NO_ACCEPTABLE_METHODS]))
        return None
    sock.sendall(bytes([SOCKS5_VERSION, SOCKS5_NO_AUTHENTICATION]))

    header = _recv_exact(sock, 4)
    if header is None:
        return None
    version, command, reserved, address_type = header

    if version != SOCKS5_VERSION:
        raise SocksError("SOCKS5: Version 5 is expected.")
    if reserved != 0:
        raise SocksError("SOCKS5: 0 is expected for reserved byte.")

    if address_type == ADDRESS_TYPE_IPV4:
        raw = _recv_exact(sock, 4)
        host = None if raw is None else str(ipaddress.IPv4Address(raw))
    elif address_type == ADDRESS_TYPE_DOMAIN:
        length = _recv_byte(sock)
        raw = None if length is None else _recv_exact(sock, length)
        host = None if raw is None else raw.decode("ascii", errors="replace")
    elif address_type == ADDRESS_TYPE_IPV6:
        raw = _recv_exact(sock, 16)
        host = None if raw is None else str(ipaddress.IPv6Address(raw))
    else:
        sock.sendall(socks5_reply(False, SOCKS5_ADDRESS_TYPE_NOT_SUPPORTED))
        raise SocksError(f"SOCKS5: Address type '{address_type}' is not supported.")
    if host is None:
        return None

    port_bytes = _recv_exact(sock, 2)
    if port_bytes is None:
        return None
    (port,) = struct.unpack("!H", port_bytes)

    if command != COMMAND_CONNECT:
        sock.sendall(socks5_reply(False, SOCKS5_COMMAND_NOT_SUPPORTED))
        raise SocksError(f"SOCKS5: Command '{command}' is not supported.")

    return SocksRequest(version=SOCKS5_VERSION, host=host, port=port, command=command)
