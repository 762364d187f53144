"""
Pre-connection command runner.

Runs the configured local commands one after another before the SSH session
is opened. A command that cannot be launched or exits non-zero is reported
as a warning; the remaining commands still run.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import Callable, Sequence

from livetunnel.config import Command
from livetunnel.display import LoggingStatusReporter, StatusReporter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandOutcome:
    """
    Result of running one command.

    Attributes:
        command: The command that was attempted.
        returncode: Exit status, or ``None`` if it never started.
        error: Launch error or captured stderr for failed commands.
    """

    command: Command
    returncode: int | None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def command_argv(command: Command) -> list[str]:
    """Build the argv list for *command* (args split shell-style)."""
    return [command.program, *shlex.split(command.args)]


def run_command(
    command: Command,
    *,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> CommandOutcome:
    """Run a single command and wait for it to finish."""
    try:
        argv = command_argv(command)
    except ValueError as e:
        return CommandOutcome(command=command, returncode=None, error=str(e))

    logger.debug("Running local command: %s", argv)
    try:
        result = runner(
            argv,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
        )
    except OSError as e:
        return CommandOutcome(command=command, returncode=None, error=str(e))

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        return CommandOutcome(
            command=command, returncode=result.returncode, error=stderr or None
        )
    return CommandOutcome(command=command, returncode=0)


def run_commands(
    commands: Sequence[Command],
    reporter: StatusReporter | None = None,
    *,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> list[CommandOutcome]:
    """
    Run *commands* sequentially, never aborting on failure.

    Args:
        commands: Commands in execution order.
        reporter: Where to report per-command progress.
        runner: ``subprocess.run``-compatible callable.

    Returns:
        One :class:`CommandOutcome` per command, in order.
    """
    reporter = reporter or LoggingStatusReporter()
    outcomes: list[CommandOutcome] = []
    total = len(commands)
    if total:
        reporter.info(
            f"Running {total} command(s) before establishing SSH connection"
        )

    for i, command in enumerate(commands, start=1):
        prefix = f"[{i}/{total}]"
        with reporter.status(f"{prefix} Running '{command}'"):
            outcome = run_command(command, runner=runner)
        outcomes.append(outcome)

        if outcome.ok:
            reporter.success(f"{prefix} Done: '{command}'")
        elif outcome.returncode is None:
            logger.warning("Command %r failed to start: %s", str(command), outcome.error)
            reporter.warning(f"{prefix} Error: '{command}' produced an error: {outcome.error}")
        else:
            logger.warning(
                "Command %r exited with %d: %s",
                str(command),
                outcome.returncode,
                outcome.error,
            )
            reporter.warning(
                f"{prefix} Error: '{command}' exited with {outcome.returncode}"
            )

    return outcomes
