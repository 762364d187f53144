"""
Setup assistant: Builds a TunnelConfig from interactive prompts.

Prompts go through the :class:`Prompts` adapter over ``rich.prompt``, so
tests can substitute scripted answers. Passwords are hashed as soon as they
are entered; only the digest leaves this module.
"""

from __future__ import annotations

import enum
import logging
from pathlib import Path
from typing import Iterable

from rich.console import Console
from rich.prompt import Confirm, IntPrompt, Prompt

from livetunnel.config import (
    DEFAULT_LOCAL_PORT,
    DEFAULT_SSH_PORT,
    Command,
    Credential,
    TunnelConfig,
)

logger = logging.getLogger(__name__)


class OptionalFeature(enum.Enum):
    """Optional parts of the config the operator can opt into."""

    BEFORE_COMMANDS = "Run command (locally) before establishing SSH connection"
    AFTER_COMMANDS = "Run command (remotely) after establishing SSH connection"
    JUMP_HOSTS = "Use SSH jump-hosts"


class Prompts:
    """
    Thin wrapper over ``rich.prompt`` with the validation the wizard needs.

    Args:
        console: Rich console used for prompts and validation messages.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(highlight=False)

    def text(self, message: str, default: str | None = None) -> str:
        """Ask for a non-empty string."""
        while True:
            if default is None:
                value = Prompt.ask(message, console=self.console)
            else:
                value = Prompt.ask(message, console=self.console, default=default)
            value = (value or "").strip()
            if value:
                return value
            self.console.print("[red]A value is required[/red]")

    def password(self, message: str) -> str:
        """Ask for a non-empty string without echoing it."""
        while True:
            value = Prompt.ask(message, console=self.console, password=True)
            if value:
                return value
            self.console.print("[red]A value is required[/red]")

    def confirm(self, message: str, default: bool = False) -> bool:
        return Confirm.ask(message, console=self.console, default=default)

    def port(self, message: str, default: int | None = None) -> int:
        """Ask for a port number in range 1-65535."""
        while True:
            if default is None:
                value = IntPrompt.ask(message, console=self.console)
            else:
                value = IntPrompt.ask(message, console=self.console, default=default)
            if 1 <= value <= 65535:
                return value
            self.console.print("[red]Not a valid Port Number[/red]")

    def lines(self, message: str) -> list[str]:
        """Collect one entry per line until an empty line."""
        self.console.print(f"{message} (one per line, empty line to finish)")
        entries: list[str] = []
        while True:
            value = Prompt.ask(">", console=self.console, default="", show_default=False)
            value = value.strip()
            if not value:
                return entries
            entries.append(value)

    def warn(self, message: str) -> None:
        self.console.print(f"[yellow]{message}[/yellow]")


def collect_credentials(
    prompts: Prompts, taken: Iterable[str] = ()
) -> list[Credential]:
    """
    Ask for users until the operator declines to add another.

    Usernames already in *taken* (or entered earlier in this loop) are
    rejected and asked again.

    Returns:
        The new credentials, each holding only a password digest.
    """
    used = set(taken)
    credentials: list[Credential] = []
    while True:
        username = prompts.text("Username")
        if username in used:
            prompts.warn(f"User {username!r} already exists")
            continue
        if ":" in username:
            prompts.warn("Usernames must not contain ':'")
            continue

        credentials.append(Credential.create(username, prompts.password("Password")))
        used.add(username)

        if not prompts.confirm("Do you want to add another User?", default=False):
            return credentials


def _ask_keyfile(prompts: Prompts) -> Path:
    while True:
        path = Path(prompts.text("SSH Keyfile", default="~/.ssh/id_rsa")).expanduser()
        if not path.exists():
            prompts.warn("The given file does not exist")
        elif not path.is_file():
            prompts.warn("Not a file")
        else:
            return path


def _ask_commands(prompts: Prompts, message: str) -> tuple[Command, ...]:
    return tuple(Command.parse(line) for line in prompts.lines(message))


def build_config(prompts: Prompts | None = None) -> TunnelConfig:
    """
    Run the setup assistant.

    Args:
        prompts: Prompt adapter (a console-backed one is created if None).

    Returns:
        A validated :class:`TunnelConfig`. Persisting it is up to the caller.
    """
    prompts = prompts or Prompts()

    selected = {
        feature
        for feature in OptionalFeature
        if prompts.confirm(f"{feature.value}?", default=False)
    }

    host = prompts.text("SSH Host")

    port = None
    if prompts.confirm("Set Port?", default=False):
        port = prompts.port("SSH Port", default=DEFAULT_SSH_PORT)

    username = None
    if prompts.confirm("Set Username?", default=False):
        username = prompts.text("SSH user", default="root")

    keyfile = None
    if prompts.confirm("Set Keyfile?", default=False):
        keyfile = _ask_keyfile(prompts)

    remote_port = prompts.port("Remote Port to forward to")
    local_port = prompts.port(
        "Local Port to host on / forward", default=DEFAULT_LOCAL_PORT
    )

    users: list[Credential] = []
    if prompts.confirm(
        "Do you want to add Users for secure sharing now? "
        "(You can always add users later when using the -s option)",
        default=False,
    ):
        users = collect_credentials(prompts)

    before_commands: tuple[Command, ...] = ()
    after_commands: tuple[Command, ...] = ()
    jump_hosts: tuple[str, ...] = ()
    if OptionalFeature.BEFORE_COMMANDS in selected:
        before_commands = _ask_commands(
            prompts, "Which commands should be run before making the SSH connection"
        )
    if OptionalFeature.AFTER_COMMANDS in selected:
        after_commands = _ask_commands(
            prompts,
            "Which commands should be run (remotely) after making the SSH connection",
        )
    if OptionalFeature.JUMP_HOSTS in selected:
        jump_hosts = tuple(prompts.lines("Please specify your list of jump-hosts"))

    config = TunnelConfig(
        host=host,
        port=port,
        username=username,
        keyfile=keyfile,
        jump_hosts=jump_hosts,
        before_commands=before_commands,
        after_commands=after_commands,
        local_port=local_port,
        remote_port=remote_port,
        users=tuple(users),
    )
    logger.debug("Setup assistant built config for host %s", config.host)
    return config
