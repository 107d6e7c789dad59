"""ycmd process supervision.

One DaemonSupervisor owns one daemon process for its whole life:

    IDLE -> STARTING -> RUNNING -> EXITED | STOPPED

Starting allocates a port, generates a fresh secret, writes a one-off
options file and spawns ycmd. A supervisor is never restarted in place; a
restart is always stop() on the old supervisor plus start() on a new one.
"""

import asyncio
import json
import logging
import os
import secrets
import socket
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from core.config import LOCALHOST, Settings
from core.errors import SpawnError
from core.logging import get_logger
from core.security import encode_secret, generate_secret
from daemon.process_group import ProcessGroup, get_process_group

POLL_INTERVAL = 0.1

# ycmd exit status -> user-facing cause
EXIT_CAUSES = {
    3: "Unexpected error while loading the YCM core library.",
    4: (
        "YCM core library not detected; you need to compile YCM before using it. "
        "Follow the instructions in the documentation."
    ),
    5: (
        "YCM core library compiled for Python 3 but loaded in Python 2. "
        "Set the Python executable setting to a Python 3 interpreter path."
    ),
    6: (
        "YCM core library compiled for Python 2 but loaded in Python 3. "
        "Set the Python executable setting to a Python 2 interpreter path."
    ),
    7: (
        "YCM core library too old; PLEASE RECOMPILE by running the install.py script. "
        "See the documentation for more details."
    ),
}

Probe = Callable[[], Awaitable[bool]]
ShutdownHook = Callable[[], Awaitable[Any]]


class DaemonState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    STOPPED = "stopped"


def describe_exit(code: int | None) -> str:
    """User-facing cause for a daemon exit status."""
    if code in EXIT_CAUSES:
        return EXIT_CAUSES[code]
    return f"ycmd exited unexpectedly with code {code}"


# ---------------------------------------------------------------------------
# Startup helpers
# ---------------------------------------------------------------------------


def allocate_port(host: str = LOCALHOST) -> int:
    """Ask the OS for a free port.

    The listener is closed immediately, so another process could grab the
    port before ycmd binds it.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


def read_default_options(settings: Settings) -> dict[str, Any]:
    """Load ycmd's published default_settings.json."""
    path = settings.default_settings_path
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise SpawnError(f"Cannot read ycmd default settings from {path}: {e}") from e


def build_options(defaults: dict[str, Any], secret: bytes, settings: Settings) -> dict[str, Any]:
    """Defaults, then per-workspace overrides, then the bridge-owned keys."""
    options = dict(defaults)
    options.update(settings.daemon_options)
    options["hmac_secret"] = encode_secret(secret)
    options["global_ycm_extra_conf"] = settings.global_extra_config
    options["confirm_extra_conf"] = int(settings.confirm_extra_conf)
    options["extra_conf_globlist"] = []
    return options


def write_options_file(options: dict[str, Any], token: str) -> Path:
    """Write options to a fresh temp file; ``token`` makes the name unique per start."""
    fd, name = tempfile.mkstemp(prefix=f"ycmbridge-options-{token}-", suffix=".json")
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(options, f)
    return Path(name)


# ---------------------------------------------------------------------------
# DaemonSupervisor
# ---------------------------------------------------------------------------


class DaemonSupervisor:
    """Owns a single ycmd process."""

    def __init__(
        self,
        settings: Settings,
        working_dir: str,
        process_group: ProcessGroup | None = None,
        logger: logging.Logger | None = None,
        on_exit: Callable[[SpawnError], None] | None = None,
    ) -> None:
        self.settings = settings
        self.working_dir = working_dir
        self.process_group = process_group or get_process_group()
        self.log = logger or get_logger("supervisor")
        self._daemon_log = get_logger("ycmd")
        self._on_exit = on_exit

        self.state = DaemonState.IDLE
        self.token = secrets.token_hex(8)
        self.port: int = 0
        self.secret: bytes = b""
        self.options_file: Path | None = None
        self.exit_code: int | None = None

        self._process: asyncio.subprocess.Process | None = None
        self._exit_watcher: asyncio.Task[None] | None = None
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def is_alive(self) -> bool:
        return (
            self.state is DaemonState.RUNNING
            and self._process is not None
            and self._process.returncode is None
        )

    def command(self) -> list[str]:
        return [
            self.settings.python,
            str(Path(self.settings.ycmd_path) / "ycmd"),
            f"--port={self.port}",
            f"--options_file={self.options_file}",
            f"--idle_suicide_seconds={self.settings.idle_suicide_seconds}",
        ]

    # -- Lifecycle --

    async def start(self, probe: Probe | None = None) -> None:
        """Spawn ycmd and wait until it is usable.

        With a probe, polls it until it answers or startup_timeout elapses.
        Without one, waits settle_delay and assumes the daemon is up.

        Raises:
            SpawnError: launch failed, the daemon exited during startup
                (message names the cause), or it never became ready
        """
        if self.state is not DaemonState.IDLE:
            raise RuntimeError(f"Supervisor already used (state={self.state.value})")

        self.state = DaemonState.STARTING
        try:
            self.port = allocate_port()
            self.secret = generate_secret()
            options = build_options(read_default_options(self.settings), self.secret, self.settings)
            self.options_file = write_options_file(options, self.token)

            argv = self.command()
            self.log.info(f"Starting ycmd on port {self.port} in {self.working_dir}")
            self.log.debug(f"ycmd command: {argv}")
            try:
                self._process = await self.process_group.spawn(argv, cwd=self.working_dir)
            except OSError as e:
                raise SpawnError(f"Failed to launch ycmd with {self.settings.python}: {e}") from e

            self.log.info(f"ycmd spawned (pid {self._process.pid})")
            if self._process.stdout is not None:
                self._tasks.append(asyncio.create_task(self._pump(self._process.stdout, "stdout")))
            if self._process.stderr is not None:
                self._tasks.append(asyncio.create_task(self._pump(self._process.stderr, "stderr")))
            self._exit_watcher = asyncio.create_task(self._watch_exit())

            await self._wait_until_ready(probe)
        except BaseException:
            # Cancellation included: a half-started daemon must not outlive its supervisor
            self.state = DaemonState.EXITED
            await self._release()
            raise

        self.state = DaemonState.RUNNING
        self.log.info(f"ycmd ready on port {self.port}")

    async def stop(self, shutdown: ShutdownHook | None = None) -> None:
        """Stop the daemon: best-effort shutdown request, then forced termination.

        Safe to call in any state; stopping twice is a no-op.
        """
        if self.state in (DaemonState.IDLE, DaemonState.STOPPED):
            return

        was_running = self.is_alive
        self.state = DaemonState.STOPPED
        if was_running and shutdown is not None:
            try:
                await shutdown()
            except Exception as e:
                self.log.warning(f"ycmd shutdown request failed: {e}")

        await self._release()
        self.log.info(f"ycmd stopped (port {self.port})")

    # -- Internals --

    async def _wait_until_ready(self, probe: Probe | None) -> None:
        loop = asyncio.get_running_loop()
        if probe is None:
            await self._sleep_or_exit(self.settings.settle_delay)
            self._raise_if_exited()
            return

        deadline = loop.time() + self.settings.startup_timeout
        while True:
            self._raise_if_exited()
            if await probe():
                return
            if loop.time() >= deadline:
                raise SpawnError(
                    f"ycmd did not become ready within {self.settings.startup_timeout:.0f}s"
                )
            await self._sleep_or_exit(POLL_INTERVAL)

    async def _sleep_or_exit(self, delay: float) -> None:
        """Sleep ``delay`` seconds, returning early if the process exits."""
        if self._exit_watcher is None:
            await asyncio.sleep(delay)
            return
        await asyncio.wait({self._exit_watcher}, timeout=delay)

    def _raise_if_exited(self) -> None:
        if self._process is not None and self._process.returncode is not None:
            code = self._process.returncode
            raise SpawnError(describe_exit(code), code)

    async def _watch_exit(self) -> None:
        if self._process is None:
            raise RuntimeError("Exit watcher started without a process")
        code = await self._process.wait()
        self.exit_code = code
        if self.state is DaemonState.STOPPED:
            return

        was_running = self.state is DaemonState.RUNNING
        self.state = DaemonState.EXITED
        cause = describe_exit(code)
        self.log.warning(f"ycmd (pid {self._process.pid}) exited: {cause}")
        if was_running and self._on_exit is not None:
            self._on_exit(SpawnError(cause, code))

    async def _pump(self, stream: asyncio.StreamReader, name: str) -> None:
        async for line in stream:
            self._daemon_log.debug(f"{name}: {line.decode('utf-8', 'replace').rstrip()}")

    async def _release(self) -> None:
        """Terminate the process, cancel helper tasks, remove the options file."""
        if self._process is not None:
            await self.process_group.terminate(self._process)

        tasks = list(self._tasks)
        if self._exit_watcher is not None and self._exit_watcher is not asyncio.current_task():
            tasks.append(self._exit_watcher)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

        if self.options_file is not None:
            self.options_file.unlink(missing_ok=True)
