"""
CLI interface for nbs-tunnel.

Holds an SSH session open for port forwarding only, like ``ssh -N``.

Usage:
    python -m nbs_tunnel -L 8080:localhost:80 user@host     # Local forward
    python -m nbs_tunnel -R 9090:localhost:3000 user@host   # Remote forward
    python -m nbs_tunnel -D 1080 user@host                  # Dynamic SOCKS
    python -m nbs_tunnel -p 2222 -i keyfile -L 5432:db:5432 user@host
    python -m nbs_tunnel --events -D 1080 user@host
    python -m nbs_tunnel --help

Runs until interrupted (SIGINT/SIGTERM) or until the session is lost.
"""
from __future__ import annotations

import argparse
import getpass
import logging
import signal
import sys
import threading
from typing import Any, Sequence

from nbs_tunnel.config import SSHConfig, SSHHostConfig, parse_forward_spec
from nbs_tunnel.forwarding import ForwardIntent, ForwardType

logger = logging.getLogger("nbs_tunnel.cli")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
WAIT_INTERVAL = 0.5


def parse_target(target: str) -> tuple[str, str | None]:
    """
    Parse user@host target string.

    Returns:
        Tuple of (host, username) where username may be None.
    """
    if "@" in target:
        username, host = target.rsplit("@", 1)
        return host, username
    return target, None


def parse_local_forward(spec: str, gateway_ports: bool = False) -> ForwardIntent:
    """
    Parse a -L specification.

    Formats:
        port:host:hostport            binds localhost
        bind_addr:port:host:hostport  binds bind_addr
        *:port:host:hostport          binds all interfaces
        [::1]:port:host:hostport      IPv6 bind address

    Raises:
        ValueError: If spec format is invalid
    """
    return parse_forward_spec(spec, ForwardType.LOCAL, gateway_ports)


def parse_remote_forward(spec: str) -> ForwardIntent:
    """
    Parse a -R specification; same formats as parse_local_forward().

    The bind address is on the server, which applies its own GatewayPorts
    policy to it.
    """
    return parse_forward_spec(spec, ForwardType.REMOTE)


def parse_dynamic_forward(spec: str, gateway_ports: bool = False) -> ForwardIntent:
    """
    Parse a -D specification.

    Formats:
        port            binds localhost
        bind_addr:port  binds bind_addr
        *:port          binds all interfaces
    """
    return parse_forward_spec(spec, ForwardType.DYNAMIC, gateway_ports)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the nbs-tunnel CLI."""
    from nbs_tunnel import __version__

    parser = argparse.ArgumentParser(
        prog="nbs-tunnel",
        description="Inspectable SSH port forwarding client",
        epilog="Example: nbs-tunnel -L 8080:intranet:80 user@gateway",
    )

    parser.add_argument(
        "target",
        metavar="[user@]host",
        help="Target host (optionally with username)",
    )

    parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="SSH port (default: 22, or Port from ssh_config)",
    )

    parser.add_argument(
        "-l", "--login",
        metavar="USER",
        help="Login username (alternative to user@host)",
    )

    parser.add_argument(
        "-i", "--identity",
        metavar="FILE",
        action="append",
        help="Private key file for authentication. "
             "Can be specified multiple times.",
    )

    parser.add_argument(
        "--password",
        action="store_true",
        help="Prompt for password authentication",
    )

    # Port forwarding options (OpenSSH parity)
    parser.add_argument(
        "-L", "--local-forward",
        metavar="[BIND:]PORT:HOST:HOSTPORT",
        action="append",
        dest="local_forward",
        help="Forward local port to host:hostport via the server. "
             "Can be specified multiple times.",
    )

    parser.add_argument(
        "-R", "--remote-forward",
        metavar="[BIND:]PORT:HOST:HOSTPORT",
        action="append",
        dest="remote_forward",
        help="Forward server port to host:hostport via this client. "
             "Can be specified multiple times.",
    )

    parser.add_argument(
        "-D", "--dynamic-forward",
        metavar="[BIND:]PORT",
        action="append",
        dest="dynamic_forward",
        help="Dynamic SOCKS4/5 port forwarding. "
             "Can be specified multiple times.",
    )

    parser.add_argument(
        "-g", "--gateway-ports",
        action="store_true",
        dest="gateway_ports",
        help="Allow remote hosts to connect to local forwarded ports",
    )

    parser.add_argument(
        "--exit-on-forward-failure",
        action="store_true",
        dest="exit_on_forward_failure",
        help="Exit if any forward cannot be established "
             "(like ExitOnForwardFailure=yes)",
    )

    parser.add_argument(
        "-F", "--config-file",
        metavar="FILE",
        dest="config_file",
        help="Use specified config file instead of ~/.ssh/config",
    )

    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Connect, response and drain timeout in seconds (default: 30)",
    )

    parser.add_argument(
        "--strict-host-key-checking",
        metavar="MODE",
        choices=["yes", "no", "accept-new"],
        default=None,
        help="Host key verification mode (default: yes). "
             "yes: reject unknown hosts. "
             "accept-new / no: accept and save unknown hosts.",
    )

    parser.add_argument(
        "--events",
        action="store_true",
        help="Print JSONL events to stderr on exit",
    )

    parser.add_argument(
        "--event-log",
        metavar="FILE",
        dest="event_log",
        help="Append JSONL events to FILE as they happen",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Verbose mode (use multiple times for more verbosity)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Quiet mode (suppress warnings)",
    )

    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    return parser


def configure_logging(verbose: int, quiet: bool) -> None:
    """Set up logging from -v/-q; paramiko's own logging follows one level behind."""
    if quiet:
        logging.basicConfig(level=logging.ERROR, format=LOG_FORMAT, stream=sys.stderr)
        logging.getLogger("paramiko").setLevel(logging.ERROR)
        return

    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)

    if verbose >= 3:
        logging.getLogger("paramiko").setLevel(logging.DEBUG)
    elif verbose >= 2:
        logging.getLogger("paramiko").setLevel(logging.INFO)
    else:
        logging.getLogger("paramiko").setLevel(logging.WARNING)


def collect_intents(args: argparse.Namespace, host_config: SSHHostConfig) -> list[ForwardIntent]:
    """
    Gather forwards from the command line and from ssh_config.

    Command line forwards come first, like OpenSSH.

    Raises:
        ValueError: If a specification is malformed
    """
    gateway_ports = args.gateway_ports or host_config.gateway_ports
    intents = [parse_local_forward(s, gateway_ports) for s in args.local_forward or []]
    intents += [parse_remote_forward(s) for s in args.remote_forward or []]
    intents += [parse_dynamic_forward(s, gateway_ports) for s in args.dynamic_forward or []]
    for intent in host_config.forward_intents():
        if intent not in intents:
            intents.append(intent)
    return intents


def build_auth_configs(args: argparse.Namespace, host_config: SSHHostConfig) -> list[Any]:
    """
    Decide which authentication methods to try, in order.

    --password prompts and uses only the password. Otherwise -i keys (or
    IdentityFile entries) come first, then the agent and default keys
    unless IdentitiesOnly is set.
    """
    from nbs_tunnel.auth import (
        check_agent_available,
        create_agent_auth,
        create_key_auth,
        create_password_auth,
    )
    from nbs_tunnel.platform import get_default_key_paths

    if args.password:
        return [create_password_auth(getpass.getpass("Password: "))]

    configs = []
    key_paths = list(args.identity or []) + [str(p) for p in host_config.identity_file]
    for key_path in key_paths:
        configs.append(create_key_auth(key_path))

    if not host_config.identities_only:
        if check_agent_available():
            configs.append(create_agent_auth())
        for key_path in get_default_key_paths():
            if str(key_path) not in key_paths:
                configs.append(create_key_auth(key_path))
    return configs


def _describe(port: Any) -> str:
    intent = port.descriptor
    bound = f"{intent.bound_host or '*'}:{intent.bound_port}"
    if intent.forward_type == ForwardType.DYNAMIC:
        return f"Dynamic SOCKS forward: {bound}"
    label = "Local" if intent.forward_type == ForwardType.LOCAL else "Remote"
    return f"{label} forward: {bound} -> {intent.target_host}:{intent.target_port}"


def run_forwarding(args: argparse.Namespace, stop_event: threading.Event | None = None) -> int:
    """
    Connect, establish the forwards and block until stopped.

    Args:
        args: Parsed command line arguments
        stop_event: Set to end the session (signal handlers set it)

    Returns:
        0 on a requested stop, 1 on errors or when the session was lost
    """
    from nbs_tunnel.connection import SSHConnection
    from nbs_tunnel.errors import DisconnectReason, SSHError
    from nbs_tunnel.events import EventCollector

    if stop_event is None:
        stop_event = threading.Event()

    host_alias, target_user = parse_target(args.target)
    if args.config_file:
        ssh_config = SSHConfig(config_files=[args.config_file], load_system_config=False)
    else:
        ssh_config = SSHConfig()
    host_config = ssh_config.lookup(host_alias)

    # Precedence: CLI args > ssh_config > defaults
    host = host_config.get_hostname(host_alias)
    port = args.port if args.port is not None else host_config.get_port()
    username = args.login or target_user or host_config.get_user()
    timeout = args.timeout or (float(host_config.connect_timeout) if host_config.connect_timeout else 30.0)
    if args.strict_host_key_checking is not None:
        host_key_policy = "reject" if args.strict_host_key_checking == "yes" else "auto-add"
    else:
        host_key_policy = host_config.get_host_key_policy()
    exit_on_forward_failure = args.exit_on_forward_failure or host_config.exit_on_forward_failure

    event_collector = EventCollector() if args.events else None
    lost = threading.Event()
    exit_code = 0

    try:
        intents = collect_intents(args, host_config)
        auth_configs = build_auth_configs(args, host_config)
        conn = SSHConnection(
            host,
            port,
            username,
            auth=auth_configs or None,
            known_hosts=host_config.user_known_hosts_file,
            host_key_policy=host_key_policy,
            timeout=timeout,
            keepalive=host_config.get_keepalive(),
            event_collector=event_collector,
            event_log_path=args.event_log,
        )
    except (ValueError, SSHError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        conn.connect()
    except SSHError as e:
        print(f"Error: {e}", file=sys.stderr)
        _print_events(event_collector)
        return 1

    def on_lost(*_: Any) -> None:
        lost.set()
        stop_event.set()

    conn.disconnected.connect(on_lost)
    # The session may have ended before the handler was connected
    if not conn.is_connected:
        on_lost()
    reason = DisconnectReason.NORMAL
    try:
        for intent in intents:
            try:
                started = conn.establish_forward(intent)
            except (SSHError, OSError) as e:
                print(f"Warning: forward {intent.to_dict()} failed: {e}", file=sys.stderr)
                if exit_on_forward_failure:
                    reason = DisconnectReason.FORWARD_FAILURE
                    exit_code = 1
                    return exit_code
                continue
            if args.verbose > 0:
                print(_describe(started), file=sys.stderr)

        if args.verbose > 0:
            print("Forwarding mode active. Press Ctrl+C to exit.", file=sys.stderr)

        while not stop_event.wait(WAIT_INTERVAL):
            pass

        if lost.is_set():
            print(f"Connection to {host} closed.", file=sys.stderr)
            reason = DisconnectReason.NETWORK_ERROR
            exit_code = 1
        else:
            reason = DisconnectReason.USER_INTERRUPT
    finally:
        conn.disconnected.disconnect(on_lost)
        conn.close(reason)
        _print_events(event_collector)

    return exit_code


def _print_events(event_collector: Any) -> None:
    if event_collector is None:
        return
    for event in event_collector.events:
        print(event.to_json(), file=sys.stderr)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    stop_event = threading.Event()

    def handle_signal(signum: int, frame: Any) -> None:
        logger.debug("Received signal %d, shutting down", signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, handle_signal)

    return run_forwarding(args, stop_event)


if __name__ == "__main__":
    sys.exit(main())
