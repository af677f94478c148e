"""
Testing utilities for nbs-tunnel.

Provides MockSSHServer for falsifiable integration testing without Docker,
and FakeSession for exercising forwarded ports without SSH at all.
"""
from nbs_tunnel.testing.fake_session import DirectChannel, FakeSession
from nbs_tunnel.testing.mock_server import MockServerConfig, MockSSHServer

__all__ = ["DirectChannel", "FakeSession", "MockSSHServer", "MockServerConfig"]
