"""
livetunnel: Tunnel a local directory to your own web server.

Opens an SSH session to a remote host, asks it to forward a remote port
back to a local port, and serves a directory on that local port with
miniserve until Ctrl+C or a failure ends the run.

Example:
    from pathlib import Path

    from livetunnel import TunnelConfig, TunnelOrchestrator

    config = TunnelConfig(host="example.org", remote_port=8080)
    reason = TunnelOrchestrator(config, Path("public")).run()
"""

__version__ = "0.1.0"

from livetunnel.config import Command, Credential, TunnelConfig, hash_password
from livetunnel.errors import (
    ConfigError,
    ConnectError,
    ForwardError,
    LivenessError,
    ShutdownError,
    SpawnError,
    TunnelError,
)
from livetunnel.orchestrator import (
    CancellationSignal,
    RunState,
    ServerExitPolicy,
    ShutdownReason,
    TunnelOrchestrator,
)
from livetunnel.session import RemoteSession, SSHSession
from livetunnel.supervisor import ServedProcessSupervisor

__all__ = [
    "__version__",
    # Config
    "Command",
    "Credential",
    "TunnelConfig",
    "hash_password",
    # Errors
    "TunnelError",
    "ConfigError",
    "ConnectError",
    "ForwardError",
    "SpawnError",
    "LivenessError",
    "ShutdownError",
    # Orchestration
    "CancellationSignal",
    "RunState",
    "ServerExitPolicy",
    "ShutdownReason",
    "TunnelOrchestrator",
    "RemoteSession",
    "SSHSession",
    "ServedProcessSupervisor",
]
