"""
TunnelOrchestrator: Sequences one tunnel from setup to teardown.

Provides the run loop that the CLI delegates to:

- **setup**: run pre-connection commands, connect, forward, spawn the server
- **monitor**: poll session liveness, the served process and cancellation
- **shutdown**: stop the server, then close the session (reverse of setup)

Everything happens on one thread. The only external interrupt is the
:class:`CancellationSignal`, observed once per monitoring iteration, so the
worst-case stop latency is one poll interval plus any in-flight call.

Typical usage::

    from livetunnel.config import load_config
    from livetunnel.orchestrator import CancellationSignal, TunnelOrchestrator

    cancel = CancellationSignal()
    orch = TunnelOrchestrator(load_config(), Path.cwd(), cancel=cancel)
    reason = orch.run()  # blocks until cancelled or something dies
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from pathlib import Path
from typing import Callable, Iterable, Sequence

from livetunnel.commands import CommandOutcome, run_commands
from livetunnel.config import Command, Credential, TunnelConfig
from livetunnel.display import LoggingStatusReporter, StatusReporter
from livetunnel.errors import ConfigError, LivenessError, ShutdownError, SpawnError
from livetunnel.session import RemoteSession, SSHSession
from livetunnel.supervisor import ServedProcessSupervisor

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL: float = 1.0


# ---------------------------------------------------------------------------
# States and policies
# ---------------------------------------------------------------------------


class RunState(enum.Enum):
    IDLE = "idle"
    RUNNING_PRE_COMMANDS = "running_pre_commands"
    CONNECTING = "connecting"
    FORWARDING = "forwarding"
    SERVING = "serving"
    MONITORING = "monitoring"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"
    CONNECT_FAILED = "connect_failed"
    FORWARD_FAILED = "forward_failed"
    SPAWN_FAILED = "spawn_failed"

    @property
    def failed(self) -> bool:
        return self in _FAILED_STATES

    @property
    def terminal(self) -> bool:
        return self is RunState.CLOSED or self.failed


_FAILED_STATES = frozenset(
    {RunState.CONNECT_FAILED, RunState.FORWARD_FAILED, RunState.SPAWN_FAILED}
)

# Setup phase -> state entered when that phase fails
_FAILURE_FOR_PHASE = {
    RunState.CONNECTING: RunState.CONNECT_FAILED,
    RunState.FORWARDING: RunState.FORWARD_FAILED,
    RunState.SERVING: RunState.SPAWN_FAILED,
}


class ShutdownReason(enum.Enum):
    USER_REQUESTED = "user_requested"
    SESSION_DIED = "session_died"
    SERVER_EXITED = "server_exited"
    SETUP_FAILED = "setup_failed"


class ServerExitPolicy(enum.Enum):
    """
    What to do when the served process exits while monitoring.

    - ``WARN``: report it and keep the tunnel open
    - ``SHUTDOWN``: close the tunnel
    - ``RESTART``: spawn the server again (falls back to ``WARN`` on failure)
    """

    WARN = "warn"
    SHUTDOWN = "shutdown"
    RESTART = "restart"


class CancellationSignal:
    """
    Stop flag shared with a signal handler.

    Backed by :class:`threading.Event`, so setting it from a handler or
    another thread is atomic and needs no further locking.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def set(self) -> None:
        """Request a stop."""
        self._event.set()

    def is_set(self) -> bool:
        """Check if a stop has been requested."""
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for a stop request; ``True`` if one arrived."""
        return self._event.wait(timeout)


CredentialPrompt = Callable[[], Iterable[Credential]]
CommandRunner = Callable[[Sequence[Command], StatusReporter], list[CommandOutcome]]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class TunnelOrchestrator:
    """
    Runs one tunnel: connect, forward, serve, monitor, shut down.

    Owns the remote session and the served-process supervisor exclusively.
    Setup errors are fatal and propagate from :meth:`run` after whatever was
    already acquired has been released. Liveness failures end in a graceful
    shutdown. Shutdown is best-effort and always reaches ``CLOSED``.

    Args:
        config: Tunnel configuration.
        directory: Directory to serve; must exist.
        session: Remote session (default: :class:`SSHSession` for *config*).
        supervisor: Served-process supervisor.
        reporter: Operator-facing status output.
        cancel: Stop flag, usually set by a SIGINT handler.
        poll_interval: Seconds to sleep between monitoring iterations.
        server_exit_policy: Reaction to the served process exiting.
        secure: Serve only to the configured users.
        credential_prompt: Collects new credentials in secure mode.
        confirm_add: Asks whether to add users when some already exist.
        command_runner: Runs the pre-connection commands.
        sleep: Sleep function used by the monitoring loop.
    """

    def __init__(
        self,
        config: TunnelConfig,
        directory: Path,
        *,
        session: RemoteSession | None = None,
        supervisor: ServedProcessSupervisor | None = None,
        reporter: StatusReporter | None = None,
        cancel: CancellationSignal | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        server_exit_policy: ServerExitPolicy = ServerExitPolicy.WARN,
        secure: bool = False,
        credential_prompt: CredentialPrompt | None = None,
        confirm_add: Callable[[], bool] | None = None,
        command_runner: CommandRunner = run_commands,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.directory = Path(directory)
        self.session = session if session is not None else SSHSession(config)
        self.supervisor = supervisor or ServedProcessSupervisor()
        self.reporter = reporter or LoggingStatusReporter()
        self.cancel = cancel or CancellationSignal()
        self.poll_interval = poll_interval
        self.server_exit_policy = server_exit_policy
        self.secure = secure
        self._credential_prompt = credential_prompt
        self._confirm_add = confirm_add
        self._command_runner = command_runner
        self._sleep = sleep

        self.history: list[RunState] = [RunState.IDLE]
        self.shutdown_reason: ShutdownReason | None = None
        self.command_outcomes: list[CommandOutcome] = []
        self.server_exit_status: int | None = None
        self._server_exit_reported = False

    @property
    def state(self) -> RunState:
        return self.history[-1]

    # ------------------------------------------------------------------
    # Public lifecycle operations
    # ------------------------------------------------------------------

    def run(self) -> ShutdownReason:
        """
        Run the tunnel until it is cancelled or something dies.

        Returns:
            Why the tunnel was shut down.

        Raises:
            ConfigError: If the directory is missing or secure mode has no users.
            ConnectError: If the session cannot be opened.
            ForwardError: If the port forward is rejected.
            SpawnError: If the file server cannot be started.
        """
        if self.state is not RunState.IDLE:
            raise RuntimeError(f"Tunnel already started (state={self.state.value})")

        try:
            self._setup()
        except Exception as e:
            self._fail(e)
            raise

        try:
            reason = self._monitor()
        except BaseException:
            # Children run in their own session and never see the interrupt
            self.shutdown(ShutdownReason.USER_REQUESTED)
            raise
        self.shutdown(reason)
        return reason

    def shutdown(
        self, reason: ShutdownReason = ShutdownReason.USER_REQUESTED
    ) -> RunState:
        """
        Stop the served process, then close the session.

        Each step runs even if the previous one failed. Calling this again
        once the tunnel is closed (or failed during setup) changes nothing.

        Returns:
            The final state.
        """
        if self.state.terminal:
            return self.state

        self.shutdown_reason = reason
        self._transition(RunState.SHUTTING_DOWN)
        logger.info("Shutting down (%s)", reason.value)

        steps = 2
        with self.reporter.status("Closing livetunnel"):
            if self._stop_server():
                self.reporter.success(f"[1/{steps}] Successfully exited file server")
            if self._close_session():
                self.reporter.success(f"[2/{steps}] Closed SSH connection")

        self._transition(RunState.CLOSED)
        self.reporter.success("Successfully closed livetunnel")
        return self.state

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _setup(self) -> None:
        config = self.config
        if not self.directory.is_dir():
            raise ConfigError(f"Directory {str(self.directory)!r} not found")

        self._collect_credentials()

        self._transition(RunState.RUNNING_PRE_COMMANDS)
        if config.before_commands:
            self.command_outcomes = self._command_runner(
                config.before_commands, self.reporter
            )
        if config.after_commands:
            logger.info(
                "%d post-connection command(s) configured; remote command "
                "execution is not supported and they are skipped",
                len(config.after_commands),
            )

        self._transition(RunState.CONNECTING)
        with self.reporter.status(f"Connecting to '{config.host}' via SSH"):
            self.session.connect()
        self.reporter.success(f"Connected to '{config.host}' via SSH")

        self._transition(RunState.FORWARDING)
        ports = f"local Port {config.local_port} to remote Port {config.remote_port}"
        with self.reporter.status(f"Starting port-forward from {ports} via SSH"):
            self.session.request_port_forward(config.remote_port, config.local_port)
        self.reporter.success(f"Started port-forward from {ports} via SSH")

        self._transition(RunState.SERVING)
        self._spawn_server()
        self.reporter.success(
            f"File server started. Serving content from '{self.directory}' "
            f"on local Port {config.local_port}"
        )

        self._transition(RunState.MONITORING)
        self.reporter.info("Press CTRL+C to exit")

    def _collect_credentials(self) -> None:
        """Secure-mode gate: make sure at least one user can log in."""
        if not self.secure:
            return

        if not self.config.users:
            self.reporter.info(
                "Secure sharing selected, but no user(s) set in config. "
                "Please add one now:"
            )
            added = list(self._credential_prompt()) if self._credential_prompt else []
            if not added:
                raise ConfigError("Secure sharing requires at least one user")
            self.config = self.config.with_users(added)
        elif self._credential_prompt and self._confirm_add and self._confirm_add():
            self.config = self.config.with_users(self._credential_prompt())

        logger.info("Secure sharing enabled for %d user(s)", len(self.config.users))

    def _spawn_server(self) -> None:
        credentials = self.config.users if self.secure else ()
        self.supervisor.spawn(self.directory, self.config.local_port, credentials)
        self._server_exit_reported = False

    def _fail(self, error: Exception) -> None:
        """Record a setup failure and release anything already acquired."""
        phase = self.state
        self._transition(_FAILURE_FOR_PHASE.get(phase, RunState.CLOSED))
        self.shutdown_reason = ShutdownReason.SETUP_FAILED
        logger.error("Setup failed in state %s: %s", phase.value, error)
        self.reporter.error(str(error))
        self._stop_server()
        self._close_session()

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def _monitor(self) -> ShutdownReason:
        while True:
            if not self._session_alive():
                self.reporter.warning("SSH Forward died! Closing livetunnel.")
                return ShutdownReason.SESSION_DIED

            reason = self._check_server()
            if reason is not None:
                return reason

            if self.cancel.is_set():
                logger.info("Stop requested")
                return ShutdownReason.USER_REQUESTED

            self._sleep(self.poll_interval)

    def _session_alive(self) -> bool:
        try:
            return self.session.check_liveness()
        except LivenessError as e:
            logger.warning("Session liveness check failed: %s", e)
            return False

    def _check_server(self) -> ShutdownReason | None:
        """Poll the served process and apply the exit policy once per exit."""
        if self._server_exit_reported:
            return None
        try:
            result = self.supervisor.poll()
        except LivenessError as e:
            self.reporter.warning(f"File server died: {e}")
            self._server_exit_reported = True
            return None
        if not result.exited:
            return None

        self.server_exit_status = result.returncode
        self._server_exit_reported = True
        logger.warning("File server exited with status %s", result.returncode)
        self.reporter.warning(
            f"File server exited unexpectedly (status {result.returncode})"
        )

        if self.server_exit_policy is ServerExitPolicy.SHUTDOWN:
            return ShutdownReason.SERVER_EXITED
        if self.server_exit_policy is ServerExitPolicy.RESTART:
            self._restart_server()
        return None

    def _restart_server(self) -> None:
        try:
            self.supervisor.terminate_and_reap()
            self._spawn_server()
        except (ShutdownError, SpawnError) as e:
            logger.warning("File server restart failed: %s", e)
            self.reporter.warning(f"Could not restart file server: {e}")
            return
        self.reporter.info("File server restarted")

    # ------------------------------------------------------------------
    # Teardown steps
    # ------------------------------------------------------------------

    def _stop_server(self) -> bool:
        try:
            status = self.supervisor.terminate_and_reap()
        except Exception as e:
            logger.warning(f"Failed to stop file server: {e}")
            self.reporter.warning(f"Could not close file server: {e}")
            return False
        if status is not None:
            self.server_exit_status = status
        return True

    def _close_session(self) -> bool:
        try:
            self.session.close()
        except Exception as e:
            logger.warning(f"Failed to close SSH session: {e}")
            self.reporter.warning(f"Could not close SSH connection: {e}")
            return False
        return True

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _transition(self, state: RunState) -> None:
        if state in self.history:
            raise RuntimeError(f"State {state.value!r} cannot be re-entered")
        logger.debug("%s -> %s", self.state.value, state.value)
        self.history.append(state)
