"""The current daemon session and the process-wide session manager.

A Session is one started ycmd for one working directory and one settings
snapshot. The SessionManager hands out the current Session, restarting the
daemon whenever the working directory or settings change or the process has
died. Starts are serialized by a lock, so concurrent callers during a start
wait for it and then share the new daemon.
"""

import asyncio
import logging
from typing import Any, Callable

from core.config import Settings
from core.errors import BridgeError
from core.logging import get_logger
from client.transport import DaemonTransport, Method
from daemon.process_group import ProcessGroup
from daemon.supervisor import DaemonState, DaemonSupervisor

# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class Session:
    """A started daemon plus the transport used to reach it."""

    def __init__(
        self,
        working_dir: str,
        settings: Settings,
        transport: DaemonTransport,
        supervisor: DaemonSupervisor,
    ) -> None:
        self.working_dir = working_dir
        self.settings = settings
        self.transport = transport
        self.supervisor = supervisor

    @property
    def port(self) -> int:
        return self.supervisor.port

    @property
    def secret(self) -> bytes:
        return self.supervisor.secret

    @property
    def state(self) -> DaemonState:
        return self.supervisor.state

    @property
    def is_alive(self) -> bool:
        return self.supervisor.is_alive

    def matches(self, working_dir: str, settings: Settings) -> bool:
        return self.working_dir == working_dir and self.settings == settings

    async def send(self, endpoint: str, payload: Any = None, method: Method = "POST") -> Any:
        return await self.transport.send(self, endpoint, payload, method)

    async def start(self) -> None:
        probe = self._probe if self.settings.readiness_probe else None
        await self.supervisor.start(probe)

    async def close(self) -> None:
        await self.supervisor.stop(shutdown=self._shutdown)

    async def _probe(self) -> bool:
        return await self.transport.ready(self)

    async def _shutdown(self) -> None:
        await self.send("shutdown")


# ---------------------------------------------------------------------------
# SessionManager
# ---------------------------------------------------------------------------


class SessionManager:
    """Owns the single live Session.

    Lifecycle:
        1. configure() records the working directory and settings
        2. current() / acquire() start the daemon on first use
        3. reset() stops it; the next acquire() starts a fresh one
    """

    def __init__(
        self,
        transport: DaemonTransport | None = None,
        process_group: ProcessGroup | None = None,
        on_warning: Callable[[str], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.transport = transport or DaemonTransport()
        self.process_group = process_group
        self.on_warning = on_warning
        self.log = logger or get_logger("session")

        self._session: Session | None = None
        self._lock = asyncio.Lock()
        self._configured = asyncio.Event()
        self._working_dir: str | None = None
        self._settings: Settings | None = None

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def starting(self) -> bool:
        return self._lock.locked()

    @property
    def settings(self) -> Settings | None:
        return self._settings

    @property
    def working_dir(self) -> str | None:
        return self._working_dir

    # -- Configuration --

    def configure(self, working_dir: str, settings: Settings) -> None:
        """Record where and how the daemon should run. Wakes any waiting current() call.

        Raises:
            ConfigurationError: the settings cannot start a daemon
        """
        settings.ensure_valid()
        self._working_dir = working_dir
        self._settings = settings
        self.transport.timeout = settings.request_timeout
        self._configured.set()

    async def current(self) -> Session:
        """Session for the configured working directory, waiting for configure() if needed."""
        await self._configured.wait()
        if self._working_dir is None or self._settings is None:
            raise RuntimeError("Session manager woke without a configuration")
        return await self.acquire(self._working_dir, self._settings)

    # -- Acquire / reset --

    async def acquire(self, working_dir: str, settings: Settings) -> Session:
        """Return a running session for ``working_dir`` and ``settings``.

        Reuses the current session while it matches and its daemon is alive;
        otherwise stops it and starts a new one.

        Raises:
            ConfigurationError: invalid settings
            SpawnError: the daemon could not be started
        """
        async with self._lock:
            session = self._session
            if session is not None and session.is_alive and session.matches(working_dir, settings):
                return session

            if session is not None:
                self.log.info(f"Restarting ycmd (state={session.state.value})")
                self._session = None
                await session.close()

            session = self._create_session(working_dir, settings)
            try:
                settings.ensure_valid()
                await session.start()
            except BridgeError as e:
                self._warn(f"ycmd startup failed: {e}")
                raise
            except asyncio.CancelledError:
                self.log.info("ycmd start cancelled, stopping the half-started daemon")
                await session.close()
                raise
            self._session = session
            return session

    async def reset(self) -> None:
        """Stop the current daemon, if any. Idempotent."""
        async with self._lock:
            session, self._session = self._session, None
            if session is not None:
                await session.close()

    async def aclose(self) -> None:
        await self.reset()
        await self.transport.aclose()

    # -- Internals --

    def _create_session(self, working_dir: str, settings: Settings) -> Session:
        supervisor = DaemonSupervisor(
            settings,
            working_dir,
            process_group=self.process_group,
            on_exit=lambda error: self._warn(f"ycmd exited: {error}"),
        )
        return Session(working_dir, settings, self.transport, supervisor)

    def _warn(self, message: str) -> None:
        self.log.warning(message)
        if self.on_warning is not None:
            self.on_warning(message)


_manager: SessionManager | None = None


def get_session_manager() -> SessionManager:
    """Return the process-wide session manager."""
    global _manager
    if _manager is None:
        _manager = SessionManager()
    return _manager
