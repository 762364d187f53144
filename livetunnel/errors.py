"""
Error taxonomy for livetunnel.

Setup errors (ConfigError, ConnectError, ForwardError, SpawnError) are fatal
and end the run. LivenessError is raised while monitoring and is turned into
a graceful shutdown. ShutdownError is logged by the orchestrator and never
stops teardown from completing.
"""

from __future__ import annotations


class TunnelError(RuntimeError):
    """Base class for all livetunnel errors."""

    pass


class ConfigError(TunnelError):
    """Invalid or missing configuration (re-run the setup assistant)."""

    pass


class ConnectError(TunnelError):
    """The SSH session could not be established."""

    pass


class ForwardError(TunnelError):
    """The remote port forward was rejected."""

    pass


class SpawnError(TunnelError):
    """The served process could not be launched."""

    pass


class LivenessError(TunnelError):
    """The session or the served process could not be checked."""

    pass


class ShutdownError(TunnelError):
    """Closing the session or reaping the served process failed."""

    pass
