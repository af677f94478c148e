"""
SSH config file parsing matching OpenSSH behaviour.

Provides:
- SSHConfig: Parser for ~/.ssh/config and /etc/ssh/ssh_config
- SSHHostConfig: Resolved configuration for a specific host
- parse_forward_spec: Parse -L/-R/-D and LocalForward/RemoteForward/
  DynamicForward values into ForwardIntents

Supports:
- Host pattern matching with wildcards (*, ?) and negation (!)
- First match wins for single-value options
- Connection, authentication, keepalive and forwarding options
"""
from __future__ import annotations

import fnmatch
import getpass
import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from nbs_tunnel.forwarding import ForwardIntent, ForwardType
from nbs_tunnel.keepalive import KeepaliveConfig
from nbs_tunnel.platform import expand_path, get_config_path, get_system_config_path
from nbs_tunnel.validation import validate_bind_host, validate_port

logger = logging.getLogger(__name__)

TRUE_VALUES = ("yes", "true", "1")


# ---------------------------------------------------------------------------
# Forward specifications
# ---------------------------------------------------------------------------

def _split_forward_fields(spec: str) -> list[str]:
    """Split a forward specification on ':', keeping [IPv6] addresses whole."""
    fields: list[str] = []
    current: list[str] = []
    in_brackets = False

    for char in spec:
        if char == "[" and not in_brackets:
            in_brackets = True
        elif char == "]" and in_brackets:
            in_brackets = False
        elif char == ":" and not in_brackets:
            fields.append("".join(current))
            current = []
            continue
        current.append(char)

    if in_brackets:
        raise ValueError(f"unterminated '[' in {spec!r}")
    fields.append("".join(current))
    return fields


def _parse_spec_port(value: str, spec: str, allow_zero: bool) -> int:
    try:
        port = int(value)
    except ValueError:
        raise ValueError(f"Bad port '{value}' in forwarding specification '{spec}'") from None
    return validate_port(port, allow_zero=allow_zero)


def parse_forward_spec(
    spec: str,
    forward_type: ForwardType,
    gateway_ports: bool = False,
) -> ForwardIntent:
    """
    Parse a forwarding specification.

    Accepts the command line form ("[bind_address:]port:host:hostport",
    "[bind_address:]port" for DYNAMIC) and the ssh_config form, where the
    bound and target parts are separated by whitespace.

    Without a bind address the forward binds to localhost, or to all
    interfaces when gateway_ports is set. An empty bind address or "*"
    means all interfaces.

    Raises:
        ValueError: If the specification is malformed
    """
    spec = spec.strip()
    if not spec:
        raise ValueError(f"Empty {forward_type.value} forwarding specification")
    fields = _split_forward_fields(":".join(spec.split()))

    default_bind = "" if gateway_ports else "localhost"

    if forward_type == ForwardType.DYNAMIC:
        if len(fields) == 1:
            bind, bound_port = default_bind, fields[0]
        elif len(fields) == 2:
            bind, bound_port = fields
        else:
            raise ValueError(f"Bad dynamic forwarding specification '{spec}'")
        return ForwardIntent(
            forward_type=ForwardType.DYNAMIC,
            bound_host=validate_bind_host(bind),
            bound_port=_parse_spec_port(bound_port, spec, allow_zero=True),
        )

    if len(fields) == 3:
        bind = default_bind
        bound_port, target_host, target_port = fields
    elif len(fields) == 4:
        bind, bound_port, target_host, target_port = fields
    else:
        raise ValueError(f"Bad {forward_type.value} forwarding specification '{spec}'")

    return ForwardIntent(
        forward_type=forward_type,
        bound_host=validate_bind_host(bind),
        bound_port=_parse_spec_port(bound_port, spec, allow_zero=True),
        target_host=validate_bind_host(target_host, "target_host", allow_empty=False),
        target_port=_parse_spec_port(target_port, spec, allow_zero=False),
    )


# ---------------------------------------------------------------------------
# Host configuration
# ---------------------------------------------------------------------------

@dataclass
class SSHHostConfig:
    """
    The options that apply to one host once every matching block has
    been merged. Unset options are None (or empty), and the get_* methods
    supply the defaults.
    """
    hostname: str | None = None
    port: int | None = None
    user: str | None = None
    connect_timeout: int | None = None

    identity_file: list[Path] = field(default_factory=list)
    identities_only: bool = False
    strict_host_key_checking: str | None = None
    user_known_hosts_file: Path | None = None

    server_alive_interval: int | None = None
    server_alive_count_max: int | None = None

    # Raw specifications, parsed by forward_intents()
    local_forward: list[str] = field(default_factory=list)
    remote_forward: list[str] = field(default_factory=list)
    dynamic_forward: list[str] = field(default_factory=list)
    exit_on_forward_failure: bool = False
    gateway_ports: bool = False

    def get_hostname(self, original_host: str) -> str:
        return self.hostname or original_host

    def get_port(self, default: int = 22) -> int:
        return default if self.port is None else self.port

    def get_user(self, default: str | None = None) -> str:
        """HostName's User, else default, else the local login name."""
        return self.user or default or getpass.getuser()

    def get_host_key_policy(self, default: str = "reject") -> str:
        """
        Map StrictHostKeyChecking to a host key policy name.

        "yes" and "ask" reject unknown keys (there is no prompt), while
        "accept-new", "no" and "off" add them.
        """
        value = (self.strict_host_key_checking or "").lower()
        if value in ("yes", "ask"):
            return "reject"
        if value in ("accept-new", "no", "off"):
            return "auto-add"
        return default

    def get_keepalive(self) -> KeepaliveConfig | None:
        """Build a KeepaliveConfig from ServerAliveInterval, if enabled."""
        if not self.server_alive_interval:
            return None
        return KeepaliveConfig(
            interval_sec=float(self.server_alive_interval),
            max_count=self.server_alive_count_max or KeepaliveConfig.max_count,
        )

    def forward_intents(self) -> list[ForwardIntent]:
        """
        Parse the configured forwards, in the order local, remote, dynamic.

        Raises:
            ValueError: If a forwarding directive is malformed
        """
        intents: list[ForwardIntent] = []
        for forward_type, specs in (
            (ForwardType.LOCAL, self.local_forward),
            (ForwardType.REMOTE, self.remote_forward),
            (ForwardType.DYNAMIC, self.dynamic_forward),
        ):
            # GatewayPorts only governs local listeners
            gateway = self.gateway_ports and forward_type != ForwardType.REMOTE
            intents.extend(parse_forward_spec(spec, forward_type, gateway) for spec in specs)
        return intents


# Directives that may repeat; every other option keeps its first value
MULTI_VALUE_OPTIONS = frozenset({
    "identityfile",
    "localforward",
    "remoteforward",
    "dynamicforward",
})

# "Keyword value" or "Keyword=value"
_LINE_PATTERN = re.compile(r"^(?P<key>[A-Za-z]+)\s*(?:=\s*|\s+)(?P<value>\S.*)$")

_TOKEN_PATTERN = re.compile(r"%(.)")


def _strip_comment(line: str) -> str:
    line = line.strip()
    if line.startswith("#"):
        return ""
    # Only a '#' after whitespace starts a trailing comment
    return re.split(r"\s#", line, maxsplit=1)[0].rstrip()


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def _split_patterns(value: str) -> list[str]:
    try:
        return shlex.split(value)
    except ValueError:
        # Unbalanced quote: fall back to plain whitespace splitting
        return value.split()


def _expand_tokens(value: str, host: str, user: str | None, port: int) -> str:
    """
    Expand %h and %n (host as given), %p (port), %r (remote user),
    %u (local user) and %% in a HostName or IdentityFile value.
    Unknown tokens are left as written.
    """
    local_user = getpass.getuser()
    tokens = {
        "h": host,
        "n": host,
        "p": str(port),
        "r": user or local_user,
        "u": local_user,
        "%": "%",
    }
    return _TOKEN_PATTERN.sub(lambda m: tokens.get(m.group(1), m.group(0)), value)


def _to_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        logger.debug("Ignoring non-numeric config value %r", value)
        return None


def _to_bool(value: str | None) -> bool:
    return (value or "").lower() in TRUE_VALUES


@dataclass
class _HostBlock:
    """
    One section of a config file. patterns is None for the options that
    precede the first Host line, which apply to every host.
    """
    patterns: list[str] | None
    options: list[tuple[str, str]] = field(default_factory=list)
    # Match blocks are kept so their options do not leak into the
    # preceding Host block, but their criteria are not evaluated
    never_matches: bool = False

    def matches(self, host: str) -> bool:
        """
        OpenSSH semantics: the host must match at least one positive
        pattern, and a matching negated pattern excludes it outright.
        """
        if self.never_matches:
            return False
        if self.patterns is None:
            return True

        host = host.lower()
        found = False
        for pattern in self.patterns:
            negated = pattern.startswith("!")
            if fnmatch.fnmatchcase(host, pattern.lstrip("!").lower()):
                if negated:
                    return False
                found = True
        return found


class SSHConfig:
    """
    Reader for OpenSSH client config files.

    Blocks are applied in file order and the first value seen for an
    option wins, except for IdentityFile and the forwarding directives,
    which accumulate. Host patterns support *, ? and ! negation.

    Usage:
        config = SSHConfig()  # ~/.ssh/config, then the system config
        host_config = config.lookup("myserver.example.com")

        config = SSHConfig(config_files=["/path/to/config"])
    """

    def __init__(
        self,
        config_files: list[Path | str] | None = None,
        load_system_config: bool = True,
    ) -> None:
        """
        Args:
            config_files: Files to read instead of the defaults
            load_system_config: Read the system-wide file after the user's
        """
        self._blocks: list[_HostBlock] = []

        if config_files is None:
            paths = [get_config_path()]
            if load_system_config:
                paths.append(get_system_config_path())
        else:
            paths = [expand_path(p) for p in config_files]

        for path in paths:
            self._read(path)

    @classmethod
    def from_string(cls, content: str) -> "SSHConfig":
        """Parse config text directly (no files are read)."""
        config = cls(config_files=[])
        config._parse(content)
        return config

    def _read(self, path: Path) -> None:
        if not path.is_file():
            return
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning("Skipping unreadable SSH config %s: %s", path, e)
            return
        self._parse(content)

    def _parse(self, content: str) -> None:
        # Each file starts outside any Host block
        block = _HostBlock(patterns=None)
        self._blocks.append(block)

        for raw_line in content.splitlines():
            match = _LINE_PATTERN.match(_strip_comment(raw_line))
            if match is None:
                continue
            keyword = match["key"].lower()
            value = match["value"].strip()

            if keyword == "host":
                block = _HostBlock(patterns=_split_patterns(value))
                self._blocks.append(block)
            elif keyword == "match":
                block = _HostBlock(patterns=[], never_matches=True)
                self._blocks.append(block)
            else:
                block.options.append((keyword, _unquote(value)))

    def lookup(self, host: str) -> SSHHostConfig:
        """
        Merge every block that applies to host, as given by the user.

        Returns:
            SSHHostConfig with all applicable options
        """
        single: dict[str, str] = {}
        multi: dict[str, list[str]] = {name: [] for name in MULTI_VALUE_OPTIONS}

        for block in self._blocks:
            if not block.matches(host):
                continue
            for keyword, value in block.options:
                if keyword in MULTI_VALUE_OPTIONS:
                    multi[keyword].append(value)
                else:
                    single.setdefault(keyword, value)

        return self._build_host_config(host, single, multi)

    @staticmethod
    def _build_host_config(
        host: str,
        single: dict[str, str],
        multi: dict[str, list[str]],
    ) -> SSHHostConfig:
        config = SSHHostConfig(
            user=single.get("user"),
            port=_to_int(single.get("port")),
            connect_timeout=_to_int(single.get("connecttimeout")),
            identities_only=_to_bool(single.get("identitiesonly")),
            strict_host_key_checking=single.get("stricthostkeychecking"),
            server_alive_interval=_to_int(single.get("serveraliveinterval")),
            server_alive_count_max=_to_int(single.get("serveralivecountmax")),
            local_forward=multi["localforward"],
            remote_forward=multi["remoteforward"],
            dynamic_forward=multi["dynamicforward"],
            exit_on_forward_failure=_to_bool(single.get("exitonforwardfailure")),
            gateway_ports=_to_bool(single.get("gatewayports")),
        )

        # Tokens see the resolved port and user
        port = config.get_port()
        if "hostname" in single:
            config.hostname = _expand_tokens(single["hostname"], host, config.user, port)
        config.identity_file = [
            expand_path(_expand_tokens(path, host, config.user, port))
            for path in multi["identityfile"]
        ]

        if "userknownhostsfile" in single:
            # Only the first file is used; "none" disables the user file
            first = single["userknownhostsfile"].split()[0]
            if first.lower() != "none":
                config.user_known_hosts_file = expand_path(first)

        return config

    def get_hosts(self) -> list[str]:
        """Host names written literally in Host lines (no wildcards or negations)."""
        return [
            pattern
            for block in self._blocks
            if block.patterns and not block.never_matches
            for pattern in block.patterns
            if not pattern.startswith("!") and not any(c in pattern for c in "*?")
        ]


def get_ssh_config() -> SSHConfig:
    """The user's config followed by the system config."""
    return SSHConfig()
