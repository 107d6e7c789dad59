"""Tests for daemon.supervisor module.

The daemon is a fake ``ycmd`` package directory whose ``__main__.py`` is
chosen per test, run by the current interpreter exactly as ycmd would be.
"""

import asyncio
import json
import logging
import socket
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.config import Settings
from core.errors import SpawnError
from core.security import encode_secret
from daemon.process_group import PosixProcessGroup
from daemon.session import SessionManager
from daemon.supervisor import (
    EXIT_CAUSES,
    DaemonState,
    DaemonSupervisor,
    allocate_port,
    build_options,
    describe_exit,
    write_options_file,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="spawns POSIX subprocesses")

SLEEP_FOREVER = "import sys, time\nprint('ycmd up', ' '.join(sys.argv[1:]), flush=True)\ntime.sleep(60)\n"
EXIT_4 = "import sys\nsys.exit(4)\n"
EXIT_3_LATER = "import sys, time\ntime.sleep(0.5)\nsys.exit(3)\n"

DEFAULTS = {"filepath_completion_use_working_dir": 0, "min_num_of_chars_for_completion": 2}

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _fake_ycmd(root: Path, main: str, defaults: dict | None = DEFAULTS) -> Path:
    package = root / "ycmd"
    package.mkdir(parents=True)
    (package / "__main__.py").write_text(main)
    if defaults is not None:
        (package / "default_settings.json").write_text(json.dumps(defaults))
    return root


def _settings(root: Path, **overrides) -> Settings:
    values = {
        "ycmd_path": str(root),
        "python": sys.executable,
        "global_extra_config": str(root / ".ycm_extra_conf.py"),
        "settle_delay": 0.5,
        "startup_timeout": 5.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


async def _ready() -> bool:
    return True


async def _never_ready() -> bool:
    return False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestDescribeExit:
    @pytest.mark.parametrize("code", [3, 4, 5, 6, 7])
    def test_known_codes(self, code):
        assert describe_exit(code) == EXIT_CAUSES[code]

    def test_core_library_missing(self):
        assert "not detected" in describe_exit(4)

    def test_unknown_code(self):
        assert describe_exit(1) == "ycmd exited unexpectedly with code 1"


class TestOptions:
    def test_build_options_overlay(self, tmp_path):
        settings = _settings(
            tmp_path,
            confirm_extra_conf=False,
            daemon_options={"min_num_of_chars_for_completion": 4, "hmac_secret": "ignored"},
        )
        options = build_options(DEFAULTS, b"s" * 16, settings)
        assert options["filepath_completion_use_working_dir"] == 0
        assert options["min_num_of_chars_for_completion"] == 4
        assert options["hmac_secret"] == encode_secret(b"s" * 16)
        assert options["global_ycm_extra_conf"] == str(tmp_path / ".ycm_extra_conf.py")
        assert options["confirm_extra_conf"] == 0
        assert options["extra_conf_globlist"] == []

    def test_build_options_does_not_mutate_defaults(self, tmp_path):
        defaults = dict(DEFAULTS)
        build_options(defaults, b"s" * 16, _settings(tmp_path))
        assert defaults == DEFAULTS

    def test_write_options_file(self):
        path = write_options_file({"a": 1}, "tok123")
        try:
            assert "ycmbridge-options-tok123-" in path.name
            assert json.loads(path.read_text()) == {"a": 1}
        finally:
            path.unlink()

    def test_options_files_are_unique(self):
        a = write_options_file({}, "same")
        b = write_options_file({}, "same")
        try:
            assert a != b
        finally:
            a.unlink()
            b.unlink()

    def test_allocate_port_is_bindable(self):
        port = allocate_port()
        assert 0 < port < 65536
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", port))

    def test_command(self, tmp_path):
        supervisor = DaemonSupervisor(_settings(tmp_path, idle_suicide_seconds=42), str(tmp_path))
        supervisor.port = 1234
        supervisor.options_file = tmp_path / "opts.json"
        assert supervisor.command() == [
            sys.executable,
            str(tmp_path / "ycmd"),
            "--port=1234",
            f"--options_file={tmp_path / 'opts.json'}",
            "--idle_suicide_seconds=42",
        ]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@posix_only
class TestStartup:
    async def test_start_and_stop(self, tmp_path):
        root = _fake_ycmd(tmp_path / "ycmd_root", SLEEP_FOREVER)
        settings = _settings(root, daemon_options={"min_num_of_chars_for_completion": 3})
        supervisor = DaemonSupervisor(settings, str(tmp_path))

        await supervisor.start(_ready)

        assert supervisor.state is DaemonState.RUNNING
        assert supervisor.is_alive
        assert supervisor.pid is not None
        assert len(supervisor.secret) == 16
        options_file = supervisor.options_file
        options = json.loads(options_file.read_text())
        assert options["hmac_secret"] == encode_secret(supervisor.secret)
        assert options["min_num_of_chars_for_completion"] == 3
        assert options["confirm_extra_conf"] == 1

        shutdown = AsyncMock()
        await supervisor.stop(shutdown)

        shutdown.assert_awaited_once()
        assert supervisor.state is DaemonState.STOPPED
        assert not supervisor.is_alive
        assert not options_file.exists()

    async def test_each_start_gets_fresh_secret_and_options_file(self, tmp_path):
        root = _fake_ycmd(tmp_path / "ycmd_root", SLEEP_FOREVER)
        first = DaemonSupervisor(_settings(root), str(tmp_path))
        second = DaemonSupervisor(_settings(root), str(tmp_path))
        await first.start(_ready)
        await second.start(_ready)
        try:
            assert first.secret != second.secret
            assert first.options_file != second.options_file
            assert first.token != second.token
        finally:
            await first.stop()
            await second.stop()

    async def test_settle_delay_without_probe(self, tmp_path, caplog):
        caplog.set_level(logging.DEBUG, logger="ycmbridge.ycmd")
        root = _fake_ycmd(tmp_path / "ycmd_root", SLEEP_FOREVER)
        supervisor = DaemonSupervisor(_settings(root, settle_delay=0.5), str(tmp_path))

        await supervisor.start()
        try:
            assert supervisor.state is DaemonState.RUNNING
            assert "ycmd up --port=" in caplog.text
        finally:
            await supervisor.stop()

    async def test_exit_during_startup_maps_cause(self, tmp_path):
        root = _fake_ycmd(tmp_path / "ycmd_root", EXIT_4)
        supervisor = DaemonSupervisor(_settings(root), str(tmp_path))

        with pytest.raises(SpawnError) as exc_info:
            await supervisor.start(_never_ready)

        assert exc_info.value.exit_code == 4
        assert str(exc_info.value) == EXIT_CAUSES[4]
        assert supervisor.state is DaemonState.EXITED
        assert not supervisor.options_file.exists()

    async def test_exit_during_settle_delay(self, tmp_path):
        root = _fake_ycmd(tmp_path / "ycmd_root", EXIT_4)
        supervisor = DaemonSupervisor(_settings(root, settle_delay=10.0), str(tmp_path))

        with pytest.raises(SpawnError) as exc_info:
            await asyncio.wait_for(supervisor.start(), timeout=5.0)
        assert exc_info.value.exit_code == 4

    async def test_cancelled_start_terminates_daemon(self, tmp_path):
        root = _fake_ycmd(tmp_path / "ycmd_root", SLEEP_FOREVER)
        supervisor = DaemonSupervisor(_settings(root, settle_delay=10.0), str(tmp_path))

        task = asyncio.create_task(supervisor.start())
        await asyncio.sleep(0.5)
        assert supervisor.state is DaemonState.STARTING
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert supervisor.state is DaemonState.EXITED
        assert supervisor._process.returncode is not None
        assert not supervisor.options_file.exists()

    async def test_cancelled_acquire_leaves_no_daemon(self, tmp_path):
        root = _fake_ycmd(tmp_path / "ycmd_root", SLEEP_FOREVER)
        spawned = []
        group = PosixProcessGroup()
        real_spawn = group.spawn

        async def spawn(argv, cwd=None):
            process = await real_spawn(argv, cwd=cwd)
            spawned.append(process)
            return process

        group.spawn = spawn
        manager = SessionManager(transport=MagicMock(), process_group=group)
        settings = _settings(root, settle_delay=10.0, readiness_probe=False)

        task = asyncio.create_task(manager.acquire(str(tmp_path), settings))
        await asyncio.sleep(0.5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await manager.reset()

        assert manager.session is None
        assert len(spawned) == 1
        assert spawned[0].returncode is not None

    async def test_never_ready(self, tmp_path):
        root = _fake_ycmd(tmp_path / "ycmd_root", SLEEP_FOREVER)
        supervisor = DaemonSupervisor(_settings(root, startup_timeout=0.5), str(tmp_path))

        with pytest.raises(SpawnError, match="did not become ready"):
            await supervisor.start(_never_ready)
        assert supervisor.state is DaemonState.EXITED
        assert not supervisor.is_alive

    async def test_missing_default_settings(self, tmp_path):
        root = _fake_ycmd(tmp_path / "ycmd_root", SLEEP_FOREVER, defaults=None)
        supervisor = DaemonSupervisor(_settings(root), str(tmp_path))

        with pytest.raises(SpawnError, match="default settings"):
            await supervisor.start(_ready)
        assert supervisor.state is DaemonState.EXITED

    async def test_bad_interpreter(self, tmp_path):
        root = _fake_ycmd(tmp_path / "ycmd_root", SLEEP_FOREVER)
        supervisor = DaemonSupervisor(
            _settings(root, python=str(tmp_path / "no-such-python")), str(tmp_path),
        )

        with pytest.raises(SpawnError, match="Failed to launch"):
            await supervisor.start(_ready)
        assert not supervisor.options_file.exists()

    async def test_start_twice(self, tmp_path):
        root = _fake_ycmd(tmp_path / "ycmd_root", SLEEP_FOREVER)
        supervisor = DaemonSupervisor(_settings(root), str(tmp_path))
        await supervisor.start(_ready)
        try:
            with pytest.raises(RuntimeError):
                await supervisor.start(_ready)
        finally:
            await supervisor.stop()


@posix_only
class TestExitAndStop:
    async def test_unexpected_exit_reports_cause(self, tmp_path):
        root = _fake_ycmd(tmp_path / "ycmd_root", EXIT_3_LATER)
        exited = asyncio.Event()
        errors: list[SpawnError] = []

        def on_exit(error):
            errors.append(error)
            exited.set()

        supervisor = DaemonSupervisor(_settings(root), str(tmp_path), on_exit=on_exit)
        await supervisor.start(_ready)
        await asyncio.wait_for(exited.wait(), timeout=5.0)

        assert supervisor.state is DaemonState.EXITED
        assert supervisor.exit_code == 3
        assert errors[0].exit_code == 3
        assert str(errors[0]) == EXIT_CAUSES[3]
        await supervisor.stop()

    async def test_stop_does_not_report_exit(self, tmp_path):
        root = _fake_ycmd(tmp_path / "ycmd_root", SLEEP_FOREVER)
        errors: list[SpawnError] = []
        supervisor = DaemonSupervisor(_settings(root), str(tmp_path), on_exit=errors.append)
        await supervisor.start(_ready)
        await supervisor.stop()
        await asyncio.sleep(0.1)
        assert errors == []

    async def test_stop_is_idempotent(self, tmp_path):
        root = _fake_ycmd(tmp_path / "ycmd_root", SLEEP_FOREVER)
        supervisor = DaemonSupervisor(_settings(root), str(tmp_path))
        await supervisor.start(_ready)
        shutdown = AsyncMock()

        await supervisor.stop(shutdown)
        await supervisor.stop(shutdown)

        shutdown.assert_awaited_once()
        assert supervisor.state is DaemonState.STOPPED

    async def test_stop_before_start(self, tmp_path):
        supervisor = DaemonSupervisor(_settings(tmp_path), str(tmp_path))
        await supervisor.stop()
        assert supervisor.state is DaemonState.IDLE

    async def test_exit_watcher_requires_process(self, tmp_path):
        supervisor = DaemonSupervisor(_settings(tmp_path), str(tmp_path))
        with pytest.raises(RuntimeError, match="without a process"):
            await supervisor._watch_exit()

    async def test_failing_shutdown_hook_still_terminates(self, tmp_path):
        root = _fake_ycmd(tmp_path / "ycmd_root", SLEEP_FOREVER)
        supervisor = DaemonSupervisor(_settings(root), str(tmp_path))
        await supervisor.start(_ready)

        await supervisor.stop(AsyncMock(side_effect=ConnectionError("refused")))

        assert supervisor.state is DaemonState.STOPPED
        assert supervisor._process.returncode is not None
