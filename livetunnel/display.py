"""
Status display for the tunnel lifecycle.

Provides the StatusReporter protocol and two implementations:

- RichStatusReporter: Spinners and marked status lines on a rich console
- LoggingStatusReporter: Plain logging, for non-interactive use

Example:
    from livetunnel.display import RichStatusReporter

    reporter = RichStatusReporter()
    with reporter.status("Connecting to 'example.org' via SSH"):
        session.connect()
    reporter.success("Connected to 'example.org' via SSH")
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Protocol, runtime_checkable

from rich.console import Console
from rich.text import Text

logger = logging.getLogger(__name__)

INFO_MARK = "ℹ"
WARNING_MARK = "❗"
SUCCESS_MARK = "✓"


@runtime_checkable
class StatusReporter(Protocol):
    """
    Protocol for operator-facing status output.

    The orchestrator reports every phase through a reporter; diagnostics
    go to ``logging`` separately.
    """

    def info(self, message: str) -> None:
        """Report a neutral status line."""
        ...

    def success(self, message: str) -> None:
        """Report a completed step."""
        ...

    def warning(self, message: str) -> None:
        """Report a non-fatal problem."""
        ...

    def error(self, message: str) -> None:
        """Report a fatal problem."""
        ...

    def status(self, message: str):
        """Context manager showing *message* while a blocking step runs."""
        ...


class RichStatusReporter:
    """
    Status lines and spinners on a rich console.

    Lines are prefixed with ``ℹ`` (info), ``❗`` (warning/error) or ``✓``
    (success). :meth:`status` shows a spinner until the block exits.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(highlight=False)

    def _line(self, mark: str, message: str, style: str) -> None:
        text = Text(f"{mark} ", style=style)
        text.append(message)
        self.console.print(text)

    def info(self, message: str) -> None:
        self._line(INFO_MARK, message, "bold blue")

    def success(self, message: str) -> None:
        self._line(SUCCESS_MARK, message, "bold green")

    def warning(self, message: str) -> None:
        self._line(WARNING_MARK, message, "bold yellow")

    def error(self, message: str) -> None:
        self._line(WARNING_MARK, message, "bold red")

    @contextmanager
    def status(self, message: str) -> Iterator[None]:
        with self.console.status(message, spinner="dots"):
            yield

    def get_console(self) -> Console:
        """Get the rich Console instance for output routing."""
        return self.console


class LoggingStatusReporter:
    """Reporter that writes every status line to the module logger."""

    def info(self, message: str) -> None:
        logger.info(message)

    def success(self, message: str) -> None:
        logger.info(message)

    def warning(self, message: str) -> None:
        logger.warning(message)

    def error(self, message: str) -> None:
        logger.error(message)

    @contextmanager
    def status(self, message: str) -> Iterator[None]:
        logger.info(message)
        yield
