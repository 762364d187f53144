"""
Remote session: An authenticated SSH connection owned by the orchestrator.

The protocol is small:

- connect(): open the session
- request_port_forward(): ask the remote side to relay a port back to us
- check_liveness(): detect silent connection loss
- close(): tear the session down

SSHSession implements it on top of the OpenSSH client. A master connection
(``ssh -N -M -S <socket>``) runs as a managed subprocess; forwards and
liveness checks are issued through its control socket with ``ssh -O``.
This leverages the user's existing SSH config, agent, keys and jump hosts
without any SSH library.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Callable, Protocol, runtime_checkable

from livetunnel.config import TunnelConfig
from livetunnel.errors import ConnectError, ForwardError, ShutdownError

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"

# Session establishment settings
CONNECT_TIMEOUT: float = 30.0  # Seconds to wait for the master to come up
CHECK_TIMEOUT: float = 10.0  # Timeout for each ``ssh -O`` call
_PROBE_INTERVAL: float = 0.5  # Seconds between control-socket probes
_EXIT_GRACE: float = 5.0  # Seconds to wait for the master to exit


@runtime_checkable
class RemoteSession(Protocol):
    """
    Protocol for the remote side of the tunnel.

    The orchestrator owns exactly one session and calls it from a single
    thread; implementations need no locking.
    """

    def connect(self) -> None:
        """
        Open the session.

        Raises:
            ConnectError: If the session cannot be established.
        """
        ...

    def request_port_forward(
        self,
        remote_port: int,
        local_port: int,
        remote_host: str = LOOPBACK,
        local_host: str = LOOPBACK,
    ) -> None:
        """
        Relay connections to ``remote_host:remote_port`` back to
        ``local_host:local_port``.

        Raises:
            ForwardError: If the remote side rejects the forward.
        """
        ...

    def check_liveness(self) -> bool:
        """Return ``True`` while the session is usable."""
        ...

    def close(self) -> None:
        """
        Tear the session down. Safe to call more than once.

        Raises:
            ShutdownError: If cleanup failed.
        """
        ...


def build_master_command(
    config: TunnelConfig, control_path: Path, ssh: str = "ssh"
) -> list[str]:
    """
    Build the ``ssh`` master command for *config*.

    Command form::

        ssh -N -M -S control_path -o ControlPersist=no
            -o ExitOnForwardFailure=yes -o ServerAliveInterval=15
            -o BatchMode=yes [-p port] [-l user] [-i keyfile]
            [-J hop1,hop2] host
    """
    cmd: list[str] = [
        ssh,
        "-N",
        "-M",
        "-S",
        str(control_path),
        "-o",
        "ControlPersist=no",
        "-o",
        "ExitOnForwardFailure=yes",
        "-o",
        "ServerAliveInterval=15",
        "-o",
        "BatchMode=yes",
    ]
    if config.port is not None:
        cmd.extend(["-p", str(config.port)])
    if config.username:
        cmd.extend(["-l", config.username])
    if config.keyfile:
        cmd.extend(["-i", str(config.keyfile)])
    if config.jump_hosts:
        cmd.extend(["-J", ",".join(config.jump_hosts)])
    cmd.append(config.host)
    return cmd


def build_control_command(
    control_path: Path,
    operation: str,
    host: str,
    *extra: str,
    ssh: str = "ssh",
) -> list[str]:
    """Build an ``ssh -S control_path -O operation [extra...] host`` command."""
    return [ssh, "-S", str(control_path), "-O", operation, *extra, host]


class SSHSession:
    """
    Remote session backed by an OpenSSH master connection.

    Implements the RemoteSession protocol.

    Args:
        config: Tunnel configuration (host, port, user, key, jump hosts).
        ssh: ssh executable.
        connect_timeout: Seconds to wait for the master to become usable.
        popen: ``subprocess.Popen``-compatible factory.
        runner: ``subprocess.run``-compatible callable for ``ssh -O``.
        sleep: Sleep function used between probes.
    """

    def __init__(
        self,
        config: TunnelConfig,
        *,
        ssh: str = "ssh",
        connect_timeout: float = CONNECT_TIMEOUT,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.ssh = ssh
        self.connect_timeout = connect_timeout
        self._popen = popen
        self._run = runner
        self._sleep = sleep

        self._master: subprocess.Popen | None = None  # type: ignore[type-arg]
        self._control_dir: Path | None = None
        self._log_path: Path | None = None
        self._closed = False

    @property
    def control_path(self) -> Path | None:
        if self._control_dir is None:
            return None
        return self._control_dir / "ctl"

    @property
    def is_connected(self) -> bool:
        return self._master is not None and not self._closed

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """
        Start the master connection and wait until its control socket answers.

        Raises:
            ConnectError: If ssh cannot be started, exits early, or does not
                become usable within ``connect_timeout``.
        """
        if self.is_connected:
            return

        self._control_dir = Path(tempfile.mkdtemp(prefix="livetunnel-"))
        self._log_path = self._control_dir / "ssh.log"
        cmd = build_master_command(self.config, self.control_path, ssh=self.ssh)
        logger.info("Starting SSH master: %s", " ".join(cmd))

        try:
            with open(self._log_path, "w") as log_file:
                self._master = self._popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=log_file,
                    start_new_session=True,
                )
        except OSError as e:
            self._cleanup_control_dir()
            raise ConnectError(f"Could not start ssh: {e}") from e

        deadline = time.monotonic() + self.connect_timeout
        while True:
            if self._master.poll() is not None:
                detail = self._read_log()
                status = self._master.returncode
                self._master = None
                self._cleanup_control_dir()
                raise ConnectError(
                    f"Couldn't establish SSH connection to {self.config.host!r} "
                    f"(ssh exited with {status}): {detail}"
                )
            if self._control("check"):
                break
            if time.monotonic() >= deadline:
                detail = self._read_log()
                self._kill_master()
                self._master = None
                self._cleanup_control_dir()
                raise ConnectError(
                    f"SSH connection to {self.config.host!r} not established "
                    f"within {self.connect_timeout}s: {detail}"
                )
            self._sleep(_PROBE_INTERVAL)

        logger.info(
            "SSH session to %s established (pid=%d)",
            self.config.host,
            self._master.pid,
        )

    def request_port_forward(
        self,
        remote_port: int,
        local_port: int,
        remote_host: str = LOOPBACK,
        local_host: str = LOOPBACK,
    ) -> None:
        """
        Request a remote (reverse) forward through the master.

        Raises:
            ForwardError: If not connected or ssh reports a failure.
        """
        if not self.is_connected:
            raise ForwardError("Cannot forward a port without an SSH session")

        mapping = f"{remote_host}:{remote_port}:{local_host}:{local_port}"
        cmd = build_control_command(
            self.control_path, "forward", self.config.host, "-R", mapping, ssh=self.ssh
        )
        logger.info("Requesting port forward: %s", " ".join(cmd))
        try:
            result = self._run(
                cmd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=CHECK_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ForwardError(f"Port forward request failed: {e}") from e

        if result.returncode != 0:
            raise ForwardError(
                f"Remote port {remote_port} could not be forwarded to local "
                f"port {local_port}: {(result.stderr or '').strip()}"
            )

    def check_liveness(self) -> bool:
        """Return ``True`` if the master is running and answers ``-O check``."""
        if not self.is_connected:
            return False
        if self._master.poll() is not None:
            logger.warning(
                "SSH master (pid=%d) exited with %s",
                self._master.pid,
                self._master.returncode,
            )
            return False
        return self._control("check")

    def close(self) -> None:
        """
        Stop the master connection and remove the control socket.

        Every cleanup step is attempted; failures are collected and raised
        together at the end.

        Raises:
            ShutdownError: If the master could not be stopped.
        """
        if self._closed:
            return
        self._closed = True
        if self._master is None:
            self._cleanup_control_dir()
            return

        errors: list[str] = []
        if self._master.poll() is None and not self._control("exit"):
            logger.debug("ssh -O exit failed, terminating master directly")

        try:
            if self._master.poll() is None:
                self._master.terminate()
            self._master.wait(timeout=_EXIT_GRACE)
        except subprocess.TimeoutExpired:
            logger.warning(
                "SSH master (pid=%d) did not exit gracefully, sending SIGKILL.",
                self._master.pid,
            )
            try:
                self._kill_master()
            except OSError as e:
                errors.append(f"could not kill ssh master: {e}")
        except OSError as e:
            errors.append(f"could not stop ssh master: {e}")

        self._cleanup_control_dir()
        if errors:
            raise ShutdownError("; ".join(errors))
        logger.info("SSH session to %s closed", self.config.host)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _control(self, operation: str) -> bool:
        """Run ``ssh -O operation`` and return whether it succeeded."""
        cmd = build_control_command(
            self.control_path, operation, self.config.host, ssh=self.ssh
        )
        try:
            result = self._run(
                cmd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=CHECK_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("ssh -O %s failed: %s", operation, e)
            return False
        return result.returncode == 0

    def _kill_master(self) -> None:
        if self._master is None:
            return
        if self._master.poll() is None:
            self._master.kill()
        self._master.wait()

    def _read_log(self) -> str:
        if self._log_path is None:
            return ""
        try:
            return self._log_path.read_text(errors="replace").strip()
        except OSError:
            return ""

    def _cleanup_control_dir(self) -> None:
        if self._control_dir is not None:
            shutil.rmtree(self._control_dir, ignore_errors=True)
            self._control_dir = None
            self._log_path = None
