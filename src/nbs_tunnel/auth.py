"""
Credentials offered to the server, one method at a time.

Provides:
- AuthMethod: password, private key or agent
- AuthConfig: one method plus its secret, convertible to paramiko arguments
- load_private_key: read a key file, classifying every failure
- create_*_auth helpers used by the command line

The authentication exchange itself is paramiko's; AuthConfig only turns
into the keyword arguments of paramiko.SSHClient.connect().
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import paramiko

from nbs_tunnel.errors import KeyLoadError
from nbs_tunnel.platform import expand_path, get_agent_available

# Tried in order when loading a key file of unknown type
KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


class AuthMethod(str, Enum):
    PASSWORD = "password"
    PRIVATE_KEY = "private_key"
    SSH_AGENT = "ssh_agent"


@dataclass
class AuthConfig:
    """
    One authentication method. SSHConnection.connect() tries a list of
    these in order and stops at the first the server accepts.

    Usage:
        configs = [
            AuthConfig(method=AuthMethod.SSH_AGENT),
            AuthConfig(method=AuthMethod.PRIVATE_KEY, key_path="~/.ssh/id_ed25519"),
            AuthConfig(method=AuthMethod.PASSWORD, password=secret),
        ]
    """
    method: AuthMethod
    password: str | None = None
    key_path: Path | str | None = None
    passphrase: str | None = None

    def __post_init__(self) -> None:
        if self.method == AuthMethod.PASSWORD:
            assert self.password is not None, \
                "Password required for PASSWORD auth method"
        elif self.method == AuthMethod.PRIVATE_KEY:
            assert self.key_path is not None, \
                "key_path required for PRIVATE_KEY auth method"

        if self.key_path is not None:
            self.key_path = expand_path(self.key_path)

    def to_dict(self) -> dict[str, Any]:
        """Loggable description; never includes the password or passphrase."""
        result: dict[str, Any] = {"method": self.method.value}
        if self.key_path:
            result["key_path"] = str(self.key_path)
        return result

    def to_paramiko_kwargs(self) -> dict[str, Any]:
        """
        Build the authentication arguments for SSHClient.connect().

        Each config enables exactly one method, so a failure is
        attributable to it.

        Raises:
            KeyLoadError: If the private key cannot be loaded
        """
        kwargs: dict[str, Any] = {"allow_agent": False, "look_for_keys": False}
        if self.method == AuthMethod.PASSWORD:
            kwargs["password"] = self.password
        elif self.method == AuthMethod.PRIVATE_KEY:
            kwargs["pkey"] = load_private_key(self.key_path, self.passphrase)
        elif self.method == AuthMethod.SSH_AGENT:
            kwargs["allow_agent"] = True
        return kwargs


def load_private_key(
    key_path: Path | str,
    passphrase: str | None = None,
) -> paramiko.PKey:
    """
    Read an Ed25519, ECDSA or RSA private key.

    Raises:
        KeyLoadError: With reason file_not_found, permission_denied,
            passphrase_required, wrong_passphrase, invalid_format or unknown
    """
    key_path = expand_path(key_path)

    if not key_path.exists():
        raise KeyLoadError(
            f"Private key file not found: {key_path}",
            key_path=str(key_path),
            reason="file_not_found",
        )

    if not os.access(key_path, os.R_OK):
        raise KeyLoadError(
            f"Private key file not readable: {key_path}",
            key_path=str(key_path),
            reason="permission_denied",
        )

    # Each key class rejects files of another type with SSHException
    last_error: paramiko.SSHException | None = None
    for key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key_file(str(key_path), password=passphrase)
        except paramiko.PasswordRequiredException as e:
            raise KeyLoadError(
                f"Private key {key_path} is encrypted and no passphrase was given",
                key_path=str(key_path),
                reason="passphrase_required",
            ) from e
        except paramiko.SSHException as e:
            if passphrase is not None and _is_decrypt_failure(e):
                raise KeyLoadError(
                    f"Wrong passphrase for private key {key_path}",
                    key_path=str(key_path),
                    reason="wrong_passphrase",
                ) from e
            last_error = e
        except (OSError, ValueError) as e:
            raise KeyLoadError(
                f"Unexpected error loading private key {key_path}: {e}",
                key_path=str(key_path),
                reason="unknown",
            ) from e

    raise KeyLoadError(
        f"Failed to load private key {key_path}: {last_error}",
        key_path=str(key_path),
        reason="invalid_format",
    ) from last_error


def _is_decrypt_failure(error: paramiko.SSHException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in ("password", "decrypt", "checkints"))


def check_agent_available() -> bool:
    """True when agent authentication is worth offering."""
    return get_agent_available()


def create_password_auth(password: str) -> AuthConfig:
    return AuthConfig(method=AuthMethod.PASSWORD, password=password)


def create_key_auth(key_path: Path | str, passphrase: str | None = None) -> AuthConfig:
    """Create private key authentication config."""
    return AuthConfig(
        method=AuthMethod.PRIVATE_KEY,
        key_path=key_path,
        passphrase=passphrase,
    )


def create_agent_auth() -> AuthConfig:
    return AuthConfig(method=AuthMethod.SSH_AGENT)
