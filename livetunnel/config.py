"""
TunnelConfig: Persisted tunnel configuration for livetunnel.

This module provides:

- hash_password: One-way SHA-512 digest used for served-directory auth
- Command: A (program, argument string) pair run before/after connecting
- Credential: A (username, digest) pair passed to the file server
- TunnelConfig: Validated, immutable tunnel settings
- load_config / save_config: JSON persistence

The configuration is written by the setup assistant and read on every start.
It lives at ``~/.livetunnel/config.json`` unless another path is given, and
is stored with ``0o600`` permissions because it holds password digests.

Example:
    >>> config = TunnelConfig(host="example.org", remote_port=8080)
    >>> config.local_port
    3000
    >>> save_config(config, Path("/tmp/livetunnel.json"))
"""

from __future__ import annotations

import hashlib
import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from livetunnel.errors import ConfigError

DEFAULT_CONFIG_PATH = Path.home() / ".livetunnel" / "config.json"
DEFAULT_LOCAL_PORT = 3000
DEFAULT_SSH_PORT = 22

DIGEST_ALGORITHM = "sha512"
_DIGEST_RE = re.compile(r"^[0-9a-f]{128}$")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def hash_password(password: str) -> str:
    """
    Return the lowercase hex SHA-512 digest of *password*.

    The digest is what gets stored and handed to the file server; the
    plaintext is never kept.
    """
    return hashlib.sha512(password.encode("utf-8")).hexdigest()


def _check_port(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer port, got {value!r}")
    if not 1 <= value <= 65535:
        raise ConfigError(f"{name} must be in range 1-65535, got {value}")
    return value


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Command:
    """
    A local or remote command.

    Attributes:
        program: Executable name or path.
        args: Argument string, split shell-style when the command runs.
    """

    program: str
    args: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.program, str) or not isinstance(self.args, str):
            raise ConfigError(
                f"Command must be a pair of strings, got {self.program!r}, {self.args!r}"
            )
        if not self.program.strip():
            raise ConfigError("Command program must not be empty")

    @classmethod
    def parse(cls, line: str) -> Command:
        """Split ``"program arg1 arg2"`` on the first space."""
        program, _, args = line.strip().partition(" ")
        return cls(program=program, args=args.strip())

    def __str__(self) -> str:
        return f"{self.program} {self.args}".rstrip()


@dataclass(frozen=True)
class Credential:
    """
    A user allowed to access the served directory.

    Attributes:
        username: Login name (non-empty, no ``:``).
        digest: SHA-512 hex digest of the password.
    """

    username: str
    digest: str

    def __post_init__(self) -> None:
        if not isinstance(self.username, str) or not isinstance(self.digest, str):
            raise ConfigError(f"User entry must be a pair of strings: {self.username!r}")
        if not self.username:
            raise ConfigError("Username must not be empty")
        if ":" in self.username:
            raise ConfigError(f"Username {self.username!r} must not contain ':'")
        if not _DIGEST_RE.match(self.digest):
            raise ConfigError(
                f"Password digest for {self.username!r} is not a "
                f"{DIGEST_ALGORITHM} hex digest"
            )

    @classmethod
    def create(cls, username: str, password: str) -> Credential:
        """Hash *password* and build a credential; the plaintext is dropped."""
        return cls(username=username, digest=hash_password(password))

    def auth_parameter(self) -> str:
        """Render as ``user:sha512:digest`` for the file server."""
        return f"{self.username}:{DIGEST_ALGORITHM}:{self.digest}"


@dataclass(frozen=True)
class TunnelConfig:
    """
    Settings for one tunnel.

    Attributes:
        host: SSH host (required).
        remote_port: Port on the remote host that forwards to us.
        local_port: Local port the file server binds to.
        port: SSH port, ``None`` for the ssh default.
        username: SSH login, ``None`` for the ssh default.
        keyfile: SSH identity file.
        jump_hosts: ProxyJump hops, in order.
        before_commands: Local commands run before connecting.
        after_commands: Remote commands to run after connecting (stored only).
        users: Credentials for secure serving.
    """

    host: str
    remote_port: int
    local_port: int = DEFAULT_LOCAL_PORT
    port: int | None = None
    username: str | None = None
    keyfile: Path | None = None
    jump_hosts: tuple[str, ...] = ()
    before_commands: tuple[Command, ...] = ()
    after_commands: tuple[Command, ...] = ()
    users: tuple[Credential, ...] = field(default=())

    def __post_init__(self) -> None:
        if not isinstance(self.host, str) or not self.host.strip():
            raise ConfigError("host must not be empty")
        _check_port("local_port", self.local_port)
        _check_port("remote_port", self.remote_port)
        if self.port is not None:
            _check_port("port", self.port)
        if self.username is not None and not isinstance(self.username, str):
            raise ConfigError(f"username must be a string, got {self.username!r}")
        if self.keyfile is not None:
            if not isinstance(self.keyfile, (str, Path)):
                raise ConfigError(f"keyfile must be a path, got {self.keyfile!r}")
            object.__setattr__(self, "keyfile", Path(self.keyfile))
        # Normalize sequences so callers may pass lists
        for name in ("jump_hosts", "before_commands", "after_commands", "users"):
            value = getattr(self, name)
            if isinstance(value, (str, bytes)):
                raise ConfigError(f"{name} must be a list, got {value!r}")
            object.__setattr__(self, name, tuple(value))

        for hop in self.jump_hosts:
            if not isinstance(hop, str) or not hop.strip():
                raise ConfigError(f"Invalid jump host {hop!r}")
        for name, kind in (
            ("before_commands", Command),
            ("after_commands", Command),
            ("users", Credential),
        ):
            for item in getattr(self, name):
                if not isinstance(item, kind):
                    raise ConfigError(f"{name} entry must be a {kind.__name__}")

        seen: set[str] = set()
        for user in self.users:
            if user.username in seen:
                raise ConfigError(f"Duplicate username {user.username!r}")
            seen.add(user.username)

    def with_users(self, extra: Iterable[Credential]) -> TunnelConfig:
        """Return a copy with *extra* credentials appended (validated)."""
        return TunnelConfig(**{**self._fields(), "users": self.users + tuple(extra)})

    def _fields(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "remote_port": self.remote_port,
            "local_port": self.local_port,
            "port": self.port,
            "username": self.username,
            "keyfile": self.keyfile,
            "jump_hosts": self.jump_hosts,
            "before_commands": self.before_commands,
            "after_commands": self.after_commands,
            "users": self.users,
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "keyfile": str(self.keyfile) if self.keyfile else None,
            "jump_hosts": list(self.jump_hosts),
            "before_commands": [[c.program, c.args] for c in self.before_commands],
            "after_commands": [[c.program, c.args] for c in self.after_commands],
            "local_port": self.local_port,
            "remote_port": self.remote_port,
            "users": [[u.username, u.digest] for u in self.users],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TunnelConfig:
        """
        Create from dictionary.

        Raises:
            ConfigError: If a required field is missing or a field has the
                wrong shape.
        """
        if not isinstance(data, dict):
            raise ConfigError("Config must be a JSON object")
        for key in ("host", "remote_port"):
            if key not in data:
                raise ConfigError(f"Config is missing required field {key!r}")
        try:
            keyfile = data.get("keyfile")
            return cls(
                host=data["host"],
                port=data.get("port"),
                username=data.get("username"),
                keyfile=keyfile or None,
                jump_hosts=data.get("jump_hosts") or (),
                before_commands=tuple(
                    Command(program, args)
                    for program, args in data.get("before_commands") or ()
                ),
                after_commands=tuple(
                    Command(program, args)
                    for program, args in data.get("after_commands") or ()
                ),
                local_port=data.get("local_port", DEFAULT_LOCAL_PORT),
                remote_port=data["remote_port"],
                users=tuple(
                    Credential(username, digest)
                    for username, digest in data.get("users") or ()
                ),
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise ConfigError(f"Malformed config: {e}") from e


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def config_exists(path: Path = DEFAULT_CONFIG_PATH) -> bool:
    """Return ``True`` if a config file exists at *path*."""
    return path.is_file()


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> TunnelConfig:
    """
    Load a tunnel config from a JSON file.

    Args:
        path: Config file location.

    Returns:
        The validated :class:`TunnelConfig`.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid.
    """
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError:
        raise ConfigError(f"No config file at {path}") from None
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not read config {path}: {e}") from e
    return TunnelConfig.from_dict(data)


def save_config(config: TunnelConfig, path: Path = DEFAULT_CONFIG_PATH) -> None:
    """Save *config* to *path* as JSON (permissions 0o600)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_dict(), indent=2))
    # Restrict permissions (contains password digests)
    os.chmod(path, 0o600)
