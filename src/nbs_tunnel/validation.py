"""
Input validation for SSH connection and forwarding parameters.

Provides:
- validate_hostname: RFC 952/1123 host names, normalised to lowercase
- validate_username: POSIX user names
- validate_port: TCP ports, optionally allowing 0 (ephemeral)
- validate_bind_host: Forwarding addresses (all interfaces, IP literals, names)

Every check rejects shell metacharacters, newlines and null bytes before
a value reaches paramiko or a socket call. Failures raise ValueError with
a message that names the offending field.
"""
from __future__ import annotations

import ipaddress
import re
from typing import Final

MAX_HOSTNAME_LENGTH: Final[int] = 253
MAX_LABEL_LENGTH: Final[int] = 63
MAX_USERNAME_LENGTH: Final[int] = 32
MAX_PORT: Final[int] = 65535

# Shell metacharacters, control characters, and null bytes
DANGEROUS_CHARS: Final[frozenset[str]] = frozenset(
    "\x00\n\r\t"
    "`$(){}[]|;&<>\\'\""
)

_CHAR_NAMES: Final[dict[str, str]] = {
    "\x00": "null byte",
    "\n": "newline",
    "\r": "carriage return",
    "\t": "tab",
}

# One DNS label: alphanumerics and inner hyphens
_LABEL_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?$")

_USERNAME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_-]*$")

ALL_INTERFACES: Final[tuple[str, str]] = ("", "*")


def _check_text(value: object, field_name: str, max_length: int) -> str:
    """Common checks: a non-empty string, no dangerous characters, bounded length."""
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string, got {type(value).__name__}")
    if not value:
        raise ValueError(f"{field_name} must not be empty")

    forbidden = next((c for c in value if c in DANGEROUS_CHARS), None)
    if forbidden is not None:
        description = _CHAR_NAMES.get(forbidden, repr(forbidden))
        raise ValueError(f"{field_name} contains forbidden character: {description}")

    if len(value) > max_length:
        raise ValueError(
            f"{field_name} exceeds maximum length of {max_length} characters "
            f"(got {len(value)})"
        )
    return value


def _check_label(label: str, position: int, count: int, field_name: str) -> None:
    if not label:
        if position == 0:
            raise ValueError(f"{field_name} must not start with a dot")
        if position == count - 1:
            raise ValueError(f"{field_name} must not end with a dot")
        raise ValueError(f"{field_name} must not contain consecutive dots")

    if len(label) > MAX_LABEL_LENGTH:
        raise ValueError(
            f"{field_name} label '{label}' exceeds maximum length of "
            f"{MAX_LABEL_LENGTH} characters (got {len(label)})"
        )

    if _LABEL_PATTERN.match(label):
        return
    if label.startswith("-"):
        raise ValueError(f"{field_name} label '{label}' must not start with a hyphen")
    if label.endswith("-"):
        raise ValueError(f"{field_name} label '{label}' must not end with a hyphen")
    raise ValueError(
        f"{field_name} label '{label}' contains invalid characters "
        "(only alphanumeric and hyphens allowed)"
    )


def validate_hostname(hostname: str, field_name: str = "hostname") -> str:
    """
    Validate and normalise a hostname per RFC 952/1123.

    Args:
        hostname: The hostname to validate
        field_name: Name of the field for error messages

    Returns:
        The hostname in lowercase

    Raises:
        ValueError: If the hostname is invalid
    """
    _check_text(hostname, field_name, MAX_HOSTNAME_LENGTH)

    labels = hostname.split(".")
    for position, label in enumerate(labels):
        _check_label(label, position, len(labels), field_name)

    result = hostname.lower()
    assert 0 < len(result) <= MAX_HOSTNAME_LENGTH, \
        f"Postcondition: normalised hostname length {len(result)} out of range"
    return result


def validate_username(username: str) -> str:
    """
    Validate a POSIX username: at most 32 characters, starting with a
    letter or underscore, then alphanumerics, underscores and hyphens.

    Raises:
        ValueError: If the username is invalid
    """
    _check_text(username, "username", MAX_USERNAME_LENGTH)

    if _USERNAME_PATTERN.match(username):
        return username

    first = username[0]
    if not (first.isalpha() or first == "_"):
        raise ValueError(f"username must start with a letter or underscore, got '{first}'")
    offending = next(c for c in username if not (c.isalnum() or c in "_-"))
    raise ValueError(f"username contains invalid character: {offending!r}")


def validate_port(port: int, allow_zero: bool = False) -> int:
    """
    Validate a TCP port number.

    Args:
        port: The port number to validate
        allow_zero: Accept 0, which asks for an ephemeral port when binding

    Returns:
        The port number unchanged

    Raises:
        ValueError: If the port is not an int in range
    """
    # bool is a subclass of int
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValueError(f"port must be an integer, got {type(port).__name__}")

    minimum = 0 if allow_zero else 1
    if port < minimum:
        raise ValueError(f"port must be at least {minimum}, got {port}")
    if port > MAX_PORT:
        raise ValueError(f"port must be at most {MAX_PORT}, got {port}")
    return port


def validate_bind_host(host: str, field_name: str = "bound_host",
                       allow_empty: bool = True) -> str:
    """
    Validate a forwarding address.

    Accepts:
    - Empty string or "*" meaning all interfaces (normalised to "")
    - IPv4 or IPv6 literals, IPv6 optionally in [brackets]
    - Hostnames valid per validate_hostname()

    Args:
        host: The address to validate
        field_name: Name of the field for error messages
        allow_empty: Accept the all-interfaces forms

    Returns:
        The normalised address

    Raises:
        ValueError: If the address is invalid, with a clear message
    """
    if not isinstance(host, str):
        raise ValueError(f"{field_name} must be a string, got {type(host).__name__}")

    if host in ALL_INTERFACES:
        if not allow_empty:
            raise ValueError(f"{field_name} must not be empty")
        return ""

    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]

    try:
        return str(ipaddress.ip_address(host))
    except ValueError:
        return validate_hostname(host, field_name)
