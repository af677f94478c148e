"""nbs-tunnel: Inspectable SSH port forwarding client."""

__version__ = "0.1.0"

from nbs_tunnel.auth import (
    AuthConfig,
    AuthMethod,
    check_agent_available,
    create_agent_auth,
    create_key_auth,
    create_password_auth,
    load_private_key,
)
from nbs_tunnel.channel import TunnelChannel
from nbs_tunnel.config import SSHConfig, SSHHostConfig, get_ssh_config, parse_forward_spec
from nbs_tunnel.connection import HostKeyPolicy, SSHConnection
from nbs_tunnel.countdown import PendingConnectionTracker
from nbs_tunnel.errors import (
    AuthenticationError,
    AuthFailed,
    ConnectionRefused,
    ConnectionTimeout,
    DisconnectReason,
    ErrorContext,
    ForwardingError,
    HostKeyMismatch,
    HostUnreachable,
    IllegalTransitionError,
    KeyLoadError,
    PortDisposedError,
    PortStateError,
    RemoteForwardRejected,
    SessionNotConnected,
    SocksError,
    SSHConnectionError,
    SSHError,
    TrackerClosedError,
)
from nbs_tunnel.events import (
    Event,
    EventCollector,
    EventEmitter,
    EventType,
    ForwardRequest,
    ForwardStatus,
    Signal,
)
from nbs_tunnel.forward_dynamic import DynamicForward
from nbs_tunnel.forward_local import LocalForward
from nbs_tunnel.forward_remote import RemoteForward
from nbs_tunnel.forwarded_port import ForwardedPort
from nbs_tunnel.forwarding import ForwardIntent, ForwardManager, ForwardType
from nbs_tunnel.keepalive import KeepaliveConfig
from nbs_tunnel.platform import (
    expand_path,
    get_agent_available,
    get_default_key_paths,
    get_known_hosts_path,
    get_ssh_dir,
    is_windows,
)
from nbs_tunnel.session import ChannelOpenRequest, ForwardingSession, GlobalRequest
from nbs_tunnel.status import PortStatus
from nbs_tunnel.validation import (
    validate_bind_host,
    validate_hostname,
    validate_port,
    validate_username,
)

__all__ = [
    # Connection
    "SSHConnection",
    "HostKeyPolicy",
    # Config
    "SSHConfig",
    "SSHHostConfig",
    "get_ssh_config",
    "parse_forward_spec",
    # Auth
    "AuthConfig",
    "AuthMethod",
    "create_password_auth",
    "create_key_auth",
    "create_agent_auth",
    "check_agent_available",
    "load_private_key",
    # Forwarded ports
    "ForwardedPort",
    "LocalForward",
    "RemoteForward",
    "DynamicForward",
    "PortStatus",
    "TunnelChannel",
    "PendingConnectionTracker",
    # Session interface
    "ForwardingSession",
    "GlobalRequest",
    "ChannelOpenRequest",
    # Forwarding
    "ForwardType",
    "ForwardIntent",
    "ForwardManager",
    # Errors
    "SSHError",
    "SSHConnectionError",
    "ConnectionRefused",
    "ConnectionTimeout",
    "HostUnreachable",
    "SessionNotConnected",
    "AuthenticationError",
    "AuthFailed",
    "HostKeyMismatch",
    "KeyLoadError",
    "ForwardingError",
    "PortStateError",
    "IllegalTransitionError",
    "PortDisposedError",
    "RemoteForwardRejected",
    "TrackerClosedError",
    "SocksError",
    "ErrorContext",
    "DisconnectReason",
    # Keepalive
    "KeepaliveConfig",
    # Events
    "Event",
    "EventCollector",
    "EventEmitter",
    "EventType",
    "ForwardRequest",
    "ForwardStatus",
    "Signal",
    # Platform
    "is_windows",
    "get_ssh_dir",
    "get_known_hosts_path",
    "get_default_key_paths",
    "expand_path",
    "get_agent_available",
    # Validation
    "validate_hostname",
    "validate_port",
    "validate_username",
    "validate_bind_host",
]
