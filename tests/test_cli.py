"""Tests for livetunnel.cli module."""

from __future__ import annotations

import signal

import pytest

from livetunnel import cli
from livetunnel.config import Credential, TunnelConfig, load_config, save_config
from livetunnel.errors import ConnectError
from livetunnel.orchestrator import (
    CancellationSignal,
    DEFAULT_POLL_INTERVAL,
    ServerExitPolicy,
    ShutdownReason,
)


class SilentReporter:
    def __init__(self):
        self.messages: list[str] = []

    def info(self, message):
        self.messages.append(message)

    success = warning = error = info


class FakeOrchestrator:
    """Stands in for TunnelOrchestrator inside main()."""

    instances: list[FakeOrchestrator] = []
    outcome: object = ShutdownReason.USER_REQUESTED
    added_users: tuple = ()

    def __init__(self, config, directory, **kwargs):
        self.config = config
        self.directory = directory
        self.kwargs = kwargs
        FakeOrchestrator.instances.append(self)

    def run(self):
        if self.added_users:
            self.config = self.config.with_users(self.added_users)
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome


@pytest.fixture
def fake_orchestrator(monkeypatch):
    FakeOrchestrator.instances = []
    FakeOrchestrator.outcome = ShutdownReason.USER_REQUESTED
    FakeOrchestrator.added_users = ()
    monkeypatch.setattr(cli, "TunnelOrchestrator", FakeOrchestrator)
    monkeypatch.setattr(cli, "install_signal_handlers", lambda cancel: None)
    return FakeOrchestrator


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.json"
    save_config(TunnelConfig(host="example.org", remote_port=8080), path)
    return path


@pytest.fixture
def restore_signals():
    saved = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
    yield
    for sig, handler in saved.items():
        signal.signal(sig, handler)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


class TestBuildParser:
    def test_defaults(self):
        args = cli.build_parser().parse_args([])
        assert args.directory is None
        assert args.reconfigure is False
        assert args.secure is False
        assert args.config is None
        assert args.on_server_exit == "warn"
        assert args.poll_interval == DEFAULT_POLL_INTERVAL

    def test_all_flags(self):
        args = cli.build_parser().parse_args(
            [
                "--reconfigure", "-s", "-c", "/tmp/c.json",
                "--on-server-exit", "restart", "--poll-interval", "0.5",
                "-v", "public",
            ]
        )
        assert args.reconfigure
        assert args.secure
        assert args.config == "/tmp/c.json"
        assert ServerExitPolicy(args.on_server_exit) is ServerExitPolicy.RESTART
        assert args.poll_interval == 0.5
        assert args.verbose
        assert args.directory == "public"

    def test_invalid_policy(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["--on-server-exit", "explode"])


# ---------------------------------------------------------------------------
# resolve_config
# ---------------------------------------------------------------------------


class TestResolveConfig:
    def test_loads_existing(self, config_file, monkeypatch):
        monkeypatch.setattr(
            cli, "build_config", lambda prompts: pytest.fail("wizard should not run")
        )
        config = cli.resolve_config(config_file, False, SilentReporter(), None)
        assert config.host == "example.org"

    def test_wizard_when_missing(self, tmp_path, monkeypatch):
        path = tmp_path / "sub" / "config.json"
        built = TunnelConfig(host="new.example.org", remote_port=9000)
        monkeypatch.setattr(cli, "build_config", lambda prompts: built)

        assert cli.resolve_config(path, False, SilentReporter(), None) == built
        assert load_config(path) == built

    def test_reconfigure_overwrites(self, config_file, monkeypatch):
        built = TunnelConfig(host="other.example.org", remote_port=9000)
        monkeypatch.setattr(cli, "build_config", lambda prompts: built)

        cli.resolve_config(config_file, True, SilentReporter(), None)
        assert load_config(config_file).host == "other.example.org"

    def test_invalid_config_reruns_wizard(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        path.write_text('{"host": ""}')
        built = TunnelConfig(host="fixed.example.org", remote_port=9000)
        monkeypatch.setattr(cli, "build_config", lambda prompts: built)
        reporter = SilentReporter()

        assert cli.resolve_config(path, False, reporter, None) == built
        assert any("Config file invalid" in m for m in reporter.messages)


# ---------------------------------------------------------------------------
# Signal handling
# ---------------------------------------------------------------------------


class TestSignals:
    def test_handler_sets_cancellation(self, restore_signals):
        cancel = CancellationSignal()
        cli.install_signal_handlers(cancel)
        signal.getsignal(signal.SIGINT)(signal.SIGINT, None)
        assert cancel.is_set()

    def test_interruptible_restores_handler(self, restore_signals):
        cancel = CancellationSignal()
        cli.install_signal_handlers(cancel)
        installed = signal.getsignal(signal.SIGINT)

        with cli.interruptible():
            assert signal.getsignal(signal.SIGINT) is signal.default_int_handler
        assert signal.getsignal(signal.SIGINT) is installed


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------


class TestMain:
    def test_missing_directory(self, config_file, tmp_path, fake_orchestrator):
        code = cli.main(["-c", str(config_file), str(tmp_path / "nope")])
        assert code == 1
        assert fake_orchestrator.instances == []

    def test_success(self, config_file, tmp_path, fake_orchestrator):
        code = cli.main(
            ["-c", str(config_file), "--on-server-exit", "shutdown", str(tmp_path)]
        )
        assert code == 0
        orch = fake_orchestrator.instances[0]
        assert orch.directory == tmp_path.resolve()
        assert orch.kwargs["server_exit_policy"] is ServerExitPolicy.SHUTDOWN
        assert orch.kwargs["secure"] is False

    def test_setup_failure_exit_code(self, config_file, tmp_path, fake_orchestrator):
        fake_orchestrator.outcome = ConnectError("refused")
        assert cli.main(["-c", str(config_file), str(tmp_path)]) == 1

    def test_interrupt_exit_code(self, config_file, tmp_path, fake_orchestrator):
        fake_orchestrator.outcome = KeyboardInterrupt()
        assert cli.main(["-c", str(config_file), str(tmp_path)]) == cli.EXIT_INTERRUPTED

    def test_new_users_saved(self, config_file, tmp_path, fake_orchestrator):
        fake_orchestrator.added_users = (Credential.create("alice", "pw"),)
        assert cli.main(["-s", "-c", str(config_file), str(tmp_path)]) == 0
        assert [u.username for u in load_config(config_file).users] == ["alice"]

    def test_aborted_wizard(self, tmp_path, fake_orchestrator, monkeypatch):
        def abort(prompts):
            raise KeyboardInterrupt

        monkeypatch.setattr(cli, "build_config", abort)
        code = cli.main(["-c", str(tmp_path / "config.json"), str(tmp_path)])
        assert code == cli.EXIT_INTERRUPTED
        assert not (tmp_path / "config.json").exists()

    def test_failed_save_keeps_exit_code(
        self, config_file, tmp_path, fake_orchestrator, monkeypatch
    ):
        def broken_save(config, path):
            raise PermissionError("read-only filesystem")

        monkeypatch.setattr(cli, "save_config", broken_save)
        fake_orchestrator.added_users = (Credential.create("alice", "pw"),)
        fake_orchestrator.outcome = ConnectError("refused")

        assert cli.main(["-s", "-c", str(config_file), str(tmp_path)]) == 1
        assert load_config(config_file).users == ()

    def test_failed_save_after_clean_run(
        self, config_file, tmp_path, fake_orchestrator, monkeypatch
    ):
        def broken_save(config, path):
            raise OSError("disk full")

        monkeypatch.setattr(cli, "save_config", broken_save)
        fake_orchestrator.added_users = (Credential.create("alice", "pw"),)

        assert cli.main(["-s", "-c", str(config_file), str(tmp_path)]) == 0
