"""
livetunnel CLI: Tunnel a local directory to your own web server.

Loads (or interactively builds) the tunnel config, then hands off to
:class:`TunnelOrchestrator` until Ctrl+C or a failure ends the run.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from livetunnel import __version__
from livetunnel.config import (
    DEFAULT_CONFIG_PATH,
    TunnelConfig,
    config_exists,
    load_config,
    save_config,
)
from livetunnel.display import RichStatusReporter, StatusReporter
from livetunnel.errors import ConfigError, TunnelError
from livetunnel.orchestrator import (
    DEFAULT_POLL_INTERVAL,
    CancellationSignal,
    ServerExitPolicy,
    TunnelOrchestrator,
)
from livetunnel.wizard import Prompts, build_config, collect_credentials

logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="livetunnel",
        description="Tunnel your local files to your own Webserver",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--reconfigure",
        action="store_true",
        help="Reconfigure the app via the config assistant",
    )
    parser.add_argument(
        "-s", "--secure",
        action="store_true",
        help="Set a password for the hosted site",
    )
    parser.add_argument(
        "-c", "--config",
        help=f"Config file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--on-server-exit",
        choices=[p.value for p in ServerExitPolicy],
        default=ServerExitPolicy.WARN.value,
        help="What to do if the file server exits (default: warn)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL,
        help=f"Seconds between health checks (default: {DEFAULT_POLL_INTERVAL})",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "directory",
        nargs="?",
        help="Which directory to host (default: cwd)",
    )
    return parser


def resolve_config(
    path: Path,
    reconfigure: bool,
    reporter: StatusReporter,
    prompts: Prompts,
) -> TunnelConfig:
    """
    Load the config, running the setup assistant when needed.

    The assistant runs if *reconfigure* is set, no config file exists, or
    the stored config is invalid. A freshly built config is saved to *path*.
    """
    if reconfigure or not config_exists(path):
        reporter.info("Starting setup assistant:")
    else:
        try:
            return load_config(path)
        except ConfigError as e:
            logger.debug("Stored config rejected: %s", e)
            reporter.warning(f"Config file invalid ({e}), starting setup assistant:")

    config = build_config(prompts)
    save_config(config, path)
    reporter.success(f"Config saved to {path}")
    return config


def install_signal_handlers(cancel: CancellationSignal) -> None:
    """Translate SIGINT/SIGTERM into a cancellation request."""

    def handler(signum: int, frame: object) -> None:
        cancel.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


@contextmanager
def interruptible() -> Iterator[None]:
    """Let Ctrl+C raise KeyboardInterrupt again (for interactive prompts)."""
    previous = signal.signal(signal.SIGINT, signal.default_int_handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Setup logging
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    reporter = RichStatusReporter()
    prompts = Prompts(reporter.get_console())
    config_path = Path(args.config).expanduser() if args.config else DEFAULT_CONFIG_PATH

    try:
        config = resolve_config(config_path, args.reconfigure, reporter, prompts)
    except (KeyboardInterrupt, EOFError):
        reporter.error("Setup aborted")
        return EXIT_INTERRUPTED
    except ConfigError as e:
        reporter.error(f"Error: {e}")
        return 1

    directory = Path(args.directory).expanduser() if args.directory else Path.cwd()
    if not directory.is_dir():
        reporter.error(f"Directory {str(directory)!r} not found. Quitting.")
        return 1
    directory = directory.resolve()

    cancel = CancellationSignal()
    orchestrator: TunnelOrchestrator

    def prompt_credentials():
        taken = [u.username for u in orchestrator.config.users]
        with interruptible():
            return collect_credentials(prompts, taken)

    def confirm_add() -> bool:
        with interruptible():
            return prompts.confirm(
                "Secure sharing selected. Do you want to add new users?",
                default=False,
            )

    orchestrator = TunnelOrchestrator(
        config,
        directory,
        reporter=reporter,
        cancel=cancel,
        poll_interval=args.poll_interval,
        server_exit_policy=ServerExitPolicy(args.on_server_exit),
        secure=args.secure,
        credential_prompt=prompt_credentials,
        confirm_add=confirm_add,
    )
    install_signal_handlers(cancel)

    try:
        reason = orchestrator.run()
    except (KeyboardInterrupt, EOFError):
        reporter.error("Aborted")
        return EXIT_INTERRUPTED
    except TunnelError:
        # Already reported by the orchestrator
        logger.debug("Run failed", exc_info=True)
        return 1
    finally:
        if orchestrator.config.users != config.users:
            try:
                save_config(orchestrator.config, config_path)
            except OSError as e:
                logger.warning(f"Failed to save config to {config_path}: {e}")
                reporter.warning(f"Could not save new user(s) to {config_path}: {e}")
            else:
                reporter.info(f"Saved new user(s) to {config_path}")

    logger.info("livetunnel finished (%s)", reason.value)
    return 0


if __name__ == "__main__":
    sys.exit(main())
