"""Process-group handling for the spawned daemon, per platform.

POSIX: the daemon runs in its own session, so the whole group is signalled
at once. Windows: the daemon is spawned through an intermediate cmd.exe
shell, and killing only that shell leaves the daemon orphaned and still
listening, so every descendant of the spawned PID is enumerated and killed.
"""

import asyncio
import os
import signal
import subprocess
import sys
from typing import Any

import psutil

from core.logging import get_logger

log = get_logger("process")

TERMINATE_GRACE_SECONDS = 3.0


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------


class ProcessGroup:
    """Base class for platform-specific spawn and termination."""

    async def spawn(self, argv: list[str], cwd: str | None = None) -> asyncio.subprocess.Process:
        """Start ``argv`` with piped stdout/stderr."""
        raise NotImplementedError

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        """Stop the process and everything it started."""
        raise NotImplementedError

    @staticmethod
    def _pipes() -> dict[str, Any]:
        return {
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.PIPE,
            "stderr": subprocess.PIPE,
        }

    @staticmethod
    async def _wait(process: asyncio.subprocess.Process, timeout: float) -> bool:
        """Wait for exit. Returns False if the process is still running after ``timeout``."""
        try:
            await asyncio.wait_for(process.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True


# ---------------------------------------------------------------------------
# POSIX - signal the process group
# ---------------------------------------------------------------------------


class PosixProcessGroup(ProcessGroup):
    """Spawn in a new session; terminate by signalling the whole group."""

    async def spawn(self, argv: list[str], cwd: str | None = None) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *argv, cwd=cwd, start_new_session=True, **self._pipes(),
        )

    def _signal(self, process: asyncio.subprocess.Process, sig: int) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            # Group already reaped and the pgid reused; fall back to the child
            try:
                process.send_signal(sig)
            except ProcessLookupError:
                pass

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        self._signal(process, signal.SIGTERM)
        if await self._wait(process, TERMINATE_GRACE_SECONDS):
            return
        log.warning(f"Daemon {process.pid} ignored SIGTERM, sending SIGKILL")
        self._signal(process, signal.SIGKILL)
        await self._wait(process, TERMINATE_GRACE_SECONDS)


# ---------------------------------------------------------------------------
# Windows - shell wrapper, enumerate and kill children
# ---------------------------------------------------------------------------


class WindowsProcessGroup(ProcessGroup):
    """Spawn through cmd.exe; terminate by killing every descendant first."""

    async def spawn(self, argv: list[str], cwd: str | None = None) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_shell(
            subprocess.list2cmdline(argv), cwd=cwd, **self._pipes(),
        )

    @staticmethod
    def descendants(pid: int) -> list[psutil.Process]:
        """Every process below ``pid`` in the process tree."""
        try:
            return psutil.Process(pid).children(recursive=True)
        except psutil.NoSuchProcess:
            return []

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        for child in self.descendants(process.pid):
            if child.pid == process.pid:
                continue
            try:
                child.kill()
                log.debug(f"Killed daemon child process {child.pid}")
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied as e:
                log.warning(f"Cannot kill daemon child process {child.pid}: {e}")
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await self._wait(process, TERMINATE_GRACE_SECONDS)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def get_process_group() -> ProcessGroup:
    """Return the platform-appropriate process group."""
    if sys.platform == "win32":
        return WindowsProcessGroup()
    return PosixProcessGroup()
