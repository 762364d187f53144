"""
Served-process supervisor: Owns the local file server subprocess.

Spawns exactly one ``miniserve`` process bound to the loopback interface,
polls it on request and terminates it on shutdown. The server's own output
is discarded.
"""

from __future__ import annotations

import enum
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

from livetunnel.config import Credential
from livetunnel.errors import LivenessError, ShutdownError, SpawnError
from livetunnel.session import LOOPBACK

logger = logging.getLogger(__name__)

DEFAULT_SERVER = "miniserve"
TERMINATE_TIMEOUT: float = 5.0  # Seconds to wait after SIGTERM before SIGKILL


class ProcessStatus(enum.Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    EXITED_OK = "exited_ok"
    EXITED_ERROR = "exited_error"


@dataclass(frozen=True)
class PollResult:
    """
    State of the served process at one poll.

    Attributes:
        status: Running, exited cleanly, exited with an error, or not started.
        returncode: Exit status once the process has exited.
    """

    status: ProcessStatus
    returncode: int | None = None

    @property
    def exited(self) -> bool:
        return self.status in (ProcessStatus.EXITED_OK, ProcessStatus.EXITED_ERROR)


def build_server_command(
    directory: Path,
    local_port: int,
    credentials: Sequence[Credential] = (),
    executable: str = DEFAULT_SERVER,
) -> list[str]:
    """
    Build the file server command line.

    Command form::

        miniserve -H -i 127.0.0.1 -p local_port
            [-a user:sha512:digest ...] directory

    ``-H`` includes hidden files; one ``-a`` is added per credential.
    """
    cmd: list[str] = [executable, "-H", "-i", LOOPBACK, "-p", str(local_port)]
    for credential in credentials:
        cmd.extend(["-a", credential.auth_parameter()])
    cmd.append(str(directory))
    return cmd


class ServedProcessSupervisor:
    """
    Lifecycle owner for the file server process.

    At most one process exists at a time. :meth:`terminate_and_reap` is
    idempotent and treats an already-exited process as success.

    Args:
        executable: File server executable.
        popen: ``subprocess.Popen``-compatible factory.
        terminate_timeout: Seconds to wait after SIGTERM before SIGKILL.
    """

    def __init__(
        self,
        executable: str = DEFAULT_SERVER,
        *,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        terminate_timeout: float = TERMINATE_TIMEOUT,
    ) -> None:
        self.executable = executable
        self.terminate_timeout = terminate_timeout
        self._popen = popen
        self._process: subprocess.Popen | None = None  # type: ignore[type-arg]
        self._returncode: int | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        """Exit status of the last process, once it has been collected."""
        return self._returncode

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def spawn(
        self,
        directory: Path,
        local_port: int,
        credentials: Sequence[Credential] = (),
    ) -> int:
        """
        Start the file server.

        Args:
            directory: Directory to serve.
            local_port: Loopback port to bind.
            credentials: Users allowed to log in (empty for open access).

        Returns:
            The process ID.

        Raises:
            SpawnError: If a server is already running or it cannot be started.
        """
        if self.running:
            raise SpawnError(f"File server already running (pid={self.pid})")

        cmd = build_server_command(
            directory, local_port, credentials, executable=self.executable
        )
        # Never log credential digests
        logger.info(
            "Starting %s on %s:%d serving %s (%d user(s))",
            self.executable,
            LOOPBACK,
            local_port,
            directory,
            len(credentials),
        )
        try:
            self._process = self._popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            self._process = None
            raise SpawnError(f"Couldn't spawn {self.executable}: {e}") from e

        self._returncode = None
        logger.info("%s started (pid=%d)", self.executable, self._process.pid)
        return self._process.pid

    def poll(self) -> PollResult:
        """
        Check the process without blocking.

        Raises:
            LivenessError: If the process state cannot be queried.
        """
        if self._process is None:
            return PollResult(ProcessStatus.NOT_STARTED)
        try:
            returncode = self._process.poll()
        except OSError as e:
            raise LivenessError(f"Could not poll {self.executable}: {e}") from e

        if returncode is None:
            return PollResult(ProcessStatus.RUNNING)
        self._returncode = returncode
        if returncode == 0:
            return PollResult(ProcessStatus.EXITED_OK, returncode)
        return PollResult(ProcessStatus.EXITED_ERROR, returncode)

    def terminate_and_reap(self) -> int | None:
        """
        Stop the process and collect its exit status.

        Sends SIGTERM, waits up to ``terminate_timeout`` seconds, then
        SIGKILL. A process that already exited is simply reaped. Calling
        this again after the process was reaped returns the cached status.

        Returns:
            The exit status, or ``None`` if nothing was ever spawned.

        Raises:
            ShutdownError: If the process could not be reaped.
        """
        process = self._process
        if process is None:
            return self._returncode

        try:
            if process.poll() is None:
                process.terminate()
                try:
                    process.wait(timeout=self.terminate_timeout)
                except subprocess.TimeoutExpired:
                    logger.warning(
                        "%s (pid=%d) did not exit gracefully, sending SIGKILL.",
                        self.executable,
                        process.pid,
                    )
                    process.kill()
            returncode = process.wait()
        except ProcessLookupError:
            # Process already gone
            returncode = process.poll()
        except OSError as e:
            raise ShutdownError(
                f"Could not reap {self.executable} (pid={process.pid}): {e}"
            ) from e

        self._process = None
        self._returncode = returncode
        logger.info(
            "%s (pid=%d) exited with %s", self.executable, process.pid, returncode
        )
        return returncode
