"""
Cross-platform SSH file locations.

Provides:
- SSH directory, known_hosts and ssh_config paths for Unix and Windows
- Default private key locations
- SSH agent detection
- Path expansion (~ and, on Windows, %VAR%)
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

DEFAULT_KEY_NAMES = ("id_ed25519", "id_ecdsa", "id_rsa")


def is_windows() -> bool:
    return sys.platform == "win32"


def get_ssh_dir() -> Path:
    """~/.ssh, or %USERPROFILE%\\.ssh on Windows when USERPROFILE is set."""
    profile = os.environ.get("USERPROFILE") if is_windows() else None
    return Path(profile) / ".ssh" if profile else Path.home() / ".ssh"


def get_known_hosts_path() -> Path:
    """Get the user's known_hosts file path."""
    return get_ssh_dir() / "known_hosts"


def get_config_path() -> Path:
    """Get the user's SSH config file path."""
    return get_ssh_dir() / "config"


def get_system_config_path() -> Path:
    """/etc/ssh/ssh_config on Unix, %ProgramData%\\ssh\\ssh_config on Windows."""
    if is_windows():
        program_data = os.environ.get("ProgramData", "C:\\ProgramData")
        return Path(program_data) / "ssh" / "ssh_config"
    return Path("/etc/ssh/ssh_config")


def get_default_key_paths() -> list[Path]:
    """Return the default private key files that exist, preferred first."""
    ssh_dir = get_ssh_dir()
    return [ssh_dir / name for name in DEFAULT_KEY_NAMES if (ssh_dir / name).is_file()]


def expand_path(path: str | Path) -> Path:
    """
    Expand ~ in a path. On Windows %VAR% references are expanded too,
    matching how OpenSSH for Windows reads its config.
    """
    path_str = str(path)
    if is_windows():
        path_str = os.path.expandvars(path_str)
    return Path(path_str).expanduser()


def get_agent_available() -> bool:
    """
    Check if an SSH agent is reachable.

    Unix: SSH_AUTH_SOCK names an existing socket. Windows: paramiko talks
    to Pageant or the OpenSSH agent pipe itself, so assume one may exist.
    """
    if is_windows():
        return True
    auth_sock = os.environ.get("SSH_AUTH_SOCK")
    return bool(auth_sock) and Path(auth_sock).exists()
