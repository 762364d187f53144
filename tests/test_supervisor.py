"""Tests for livetunnel.supervisor module."""

from __future__ import annotations

import subprocess
import sys
import time
from pathlib import Path

import pytest

from livetunnel.config import Credential, hash_password
from livetunnel.errors import SpawnError
from livetunnel.supervisor import (
    PollResult,
    ProcessStatus,
    ServedProcessSupervisor,
    build_server_command,
)

SLEEPER = "import time; time.sleep(60)"
IGNORES_SIGTERM = (
    "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
    "print('ready', flush=True); time.sleep(60)"
)


def python_popen(script, calls=None):
    """Popen factory that runs *script* in place of the file server."""

    def popen(cmd, **kwargs):
        if calls is not None:
            calls.append((cmd, kwargs))
        return subprocess.Popen([sys.executable, "-c", script], **kwargs)

    return popen


def wait_for_exit(supervisor, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = supervisor.poll()
        if result.exited:
            return result
        time.sleep(0.05)
    raise AssertionError("process did not exit")


@pytest.fixture
def supervisor():
    sup = ServedProcessSupervisor(popen=python_popen(SLEEPER), terminate_timeout=2.0)
    yield sup
    sup.terminate_and_reap()


# ---------------------------------------------------------------------------
# build_server_command
# ---------------------------------------------------------------------------


class TestBuildServerCommand:
    def test_open_access(self):
        cmd = build_server_command(Path("/srv/www"), 3000)
        assert cmd == ["miniserve", "-H", "-i", "127.0.0.1", "-p", "3000", "/srv/www"]

    def test_one_auth_flag_per_user(self):
        users = [Credential.create("alice", "a"), Credential.create("bob", "b")]
        cmd = build_server_command(Path("/srv/www"), 3000, users)
        auth = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-a"]
        assert auth == [
            f"alice:sha512:{hash_password('a')}",
            f"bob:sha512:{hash_password('b')}",
        ]
        assert cmd[-1] == "/srv/www"

    def test_custom_executable(self):
        cmd = build_server_command(Path("."), 8000, executable="/opt/miniserve")
        assert cmd[0] == "/opt/miniserve"


# ---------------------------------------------------------------------------
# PollResult
# ---------------------------------------------------------------------------


class TestPollResult:
    @pytest.mark.parametrize(
        "status,exited",
        [
            (ProcessStatus.NOT_STARTED, False),
            (ProcessStatus.RUNNING, False),
            (ProcessStatus.EXITED_OK, True),
            (ProcessStatus.EXITED_ERROR, True),
        ],
    )
    def test_exited(self, status, exited):
        assert PollResult(status).exited is exited


# ---------------------------------------------------------------------------
# Lifecycle with real child processes
# ---------------------------------------------------------------------------


class TestSpawn:
    def test_spawn_returns_pid(self, supervisor, tmp_path):
        pid = supervisor.spawn(tmp_path, 3000)
        assert pid == supervisor.pid
        assert supervisor.running
        assert supervisor.poll() == PollResult(ProcessStatus.RUNNING)

    def test_spawn_options(self, tmp_path):
        calls = []
        sup = ServedProcessSupervisor(popen=python_popen(SLEEPER, calls))
        sup.spawn(tmp_path, 3123, [Credential.create("alice", "pw")])
        try:
            cmd, kwargs = calls[0]
            assert cmd[0] == "miniserve"
            assert "3123" in cmd
            assert "-a" in cmd
            assert kwargs["start_new_session"] is True
            assert kwargs["stdout"] is subprocess.DEVNULL
        finally:
            sup.terminate_and_reap()

    def test_second_spawn_rejected_while_running(self, supervisor, tmp_path):
        supervisor.spawn(tmp_path, 3000)
        with pytest.raises(SpawnError, match="already running"):
            supervisor.spawn(tmp_path, 3000)

    def test_missing_executable(self, tmp_path):
        sup = ServedProcessSupervisor(executable="livetunnel-no-such-binary")
        with pytest.raises(SpawnError, match="livetunnel-no-such-binary"):
            sup.spawn(tmp_path, 3000)
        assert sup.pid is None
        assert sup.poll().status is ProcessStatus.NOT_STARTED


class TestPoll:
    def test_not_started(self):
        sup = ServedProcessSupervisor()
        assert sup.poll() == PollResult(ProcessStatus.NOT_STARTED)

    def test_clean_exit(self, tmp_path):
        sup = ServedProcessSupervisor(popen=python_popen("pass"))
        sup.spawn(tmp_path, 3000)
        result = wait_for_exit(sup)
        assert result == PollResult(ProcessStatus.EXITED_OK, 0)
        assert sup.returncode == 0

    def test_error_exit(self, tmp_path):
        sup = ServedProcessSupervisor(popen=python_popen("raise SystemExit(3)"))
        sup.spawn(tmp_path, 3000)
        result = wait_for_exit(sup)
        assert result == PollResult(ProcessStatus.EXITED_ERROR, 3)


class TestTerminateAndReap:
    def test_terminates_running_process(self, supervisor, tmp_path):
        supervisor.spawn(tmp_path, 3000)
        returncode = supervisor.terminate_and_reap()
        assert returncode == -15
        assert not supervisor.running
        assert supervisor.pid is None

    def test_idempotent(self, supervisor, tmp_path):
        supervisor.spawn(tmp_path, 3000)
        first = supervisor.terminate_and_reap()
        assert supervisor.terminate_and_reap() == first

    def test_never_spawned(self):
        assert ServedProcessSupervisor().terminate_and_reap() is None

    def test_already_exited(self, tmp_path):
        sup = ServedProcessSupervisor(popen=python_popen("raise SystemExit(4)"))
        sup.spawn(tmp_path, 3000)
        wait_for_exit(sup)
        assert sup.terminate_and_reap() == 4

    def test_kills_after_timeout(self, tmp_path):
        calls = []

        def popen(cmd, **kwargs):
            kwargs["stdout"] = subprocess.PIPE
            process = subprocess.Popen([sys.executable, "-c", IGNORES_SIGTERM], **kwargs)
            calls.append(process)
            return process

        sup = ServedProcessSupervisor(popen=popen, terminate_timeout=0.5)
        sup.spawn(tmp_path, 3000)
        # Wait until the SIGTERM handler is installed
        calls[0].stdout.readline()
        try:
            assert sup.terminate_and_reap() == -9
        finally:
            calls[0].stdout.close()

    def test_respawn_after_reap(self, supervisor, tmp_path):
        supervisor.spawn(tmp_path, 3000)
        supervisor.terminate_and_reap()
        assert supervisor.returncode == -15
        supervisor.spawn(tmp_path, 3000)
        assert supervisor.running
        assert supervisor.returncode is None
