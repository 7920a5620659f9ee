"""Registry of language server sessions, one per outermost root."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from enum import Enum

import anyio

from .client import ProtocolClient
from .launcher import ExitStatus, ProcessHandle
from .workspace import RootFolder

logger = logging.getLogger(__name__)

DEBUG_PORT_BASE = 6011


class SessionState(Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(eq=False)
class ServerSession:
    """One launched language server bound to one protocol client."""

    root: RootFolder
    debug_port: int | None = None
    state: SessionState = SessionState.STARTING
    process: ProcessHandle | None = None
    client: ProtocolClient | None = None
    _settled: anyio.Event = field(default_factory=anyio.Event, repr=False)
    _stopped: anyio.Event = field(default_factory=anyio.Event, repr=False)
    _stop_requested: bool = field(default=False, repr=False)

    @property
    def key(self) -> str:
        return self.root.key

    @property
    def exit_status(self) -> ExitStatus | None:
        if self.process is None:
            return None
        return self.process.exit_status

    @property
    def alive(self) -> bool:
        """False once the process has exited, even if the entry is still registered."""
        return self.state is SessionState.RUNNING and self.exit_status is None

    async def wait_started(self) -> None:
        """Wait until the start attempt has succeeded or failed."""
        await self._settled.wait()

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    def _mark_stopped(self) -> None:
        self.state = SessionState.STOPPED
        self._stopped.set()


SessionStarter = Callable[[ServerSession], Awaitable[tuple[ProcessHandle, ProtocolClient]]]


class SessionRegistry:
    """Owns the root-key -> session map.

    The map is only mutated synchronously, before any ``await``: an entry is
    inserted before its start runs and removed before its stop runs, so a
    repeated event for the same root always sees a consistent map.
    """

    def __init__(self, debug_port_base: int = DEBUG_PORT_BASE) -> None:
        self._sessions: dict[str, ServerSession] = {}
        self._debug_port_base = debug_port_base

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, root: object) -> bool:
        return isinstance(root, RootFolder) and root.key in self._sessions

    def __iter__(self) -> Iterator[ServerSession]:
        return iter(list(self._sessions.values()))

    @property
    def roots(self) -> tuple[str, ...]:
        return tuple(self._sessions)

    def session_for(self, root: RootFolder) -> ServerSession | None:
        return self._sessions.get(root.key)

    def debug_port(self) -> int:
        """Inspector port for the next session: base + active session count."""
        return self._debug_port_base + len(self._sessions)

    async def ensure_started(self, root: RootFolder, starter: SessionStarter) -> ServerSession:
        """Start a session for ``root`` unless one is already starting or running."""
        existing = self._sessions.get(root.key)
        if existing is not None:
            return existing

        session = ServerSession(root=root, debug_port=self.debug_port())
        self._sessions[root.key] = session
        logger.info("Starting session for %s", root)

        try:
            session.process, session.client = await starter(session)
        except BaseException:
            if self._sessions.get(root.key) is session:
                del self._sessions[root.key]
            session._mark_stopped()
            session._settled.set()
            raise

        if session._stop_requested:
            # Stopped while starting: the start completes the stop, whether or
            # not whoever asked for it is still waiting.
            session._settled.set()
            with anyio.CancelScope(shield=True):
                await self._stop_client(session)
            return session

        if session.state is SessionState.STARTING:
            session.state = SessionState.RUNNING
        session._settled.set()
        return session

    async def stop(self, root: RootFolder) -> None:
        """Stop the session for ``root``, if any; other roots are untouched."""
        session = self._sessions.pop(root.key, None)
        if session is None:
            return
        await self._stop_session(session)

    async def stop_all(self, timeout: float | None = None) -> None:
        """Stop every session concurrently; return once all stops have settled.

        With ``timeout``, a stop still pending at the deadline is abandoned and
        its process killed. A session still starting at the deadline stays
        marked for stopping and is stopped by its start task.
        """
        sessions = list(self._sessions.values())
        self._sessions.clear()
        if not sessions:
            return

        logger.info("Stopping %d session(s)", len(sessions))
        async with anyio.create_task_group() as tg:
            for session in sessions:
                tg.start_soon(self._stop_bounded, session, timeout)

    async def _stop_bounded(self, session: ServerSession, timeout: float | None) -> None:
        if timeout is None:
            await self._stop_session(session)
            return

        with anyio.move_on_after(timeout) as scope:
            await self._stop_session(session)
        if not scope.cancelled_caught:
            return
        if session.state is SessionState.STARTING:
            logger.warning(
                "Timed out waiting for %s to start; it is stopped once the start settles",
                session.root,
            )
            return
        logger.warning("Timed out stopping session for %s; killing it", session.root)
        if session.process is not None:
            session.process.kill()
        session._mark_stopped()

    async def _stop_session(self, session: ServerSession) -> None:
        if session.state is SessionState.STARTING:
            # The start task performs the stop once it settles.
            logger.debug("Deferring stop of %s until its start settles", session.root)
            session._stop_requested = True
            await session.wait_stopped()
            return
        if session.state is SessionState.STOPPED:
            return
        await self._stop_client(session)

    async def _stop_client(self, session: ServerSession) -> None:
        if session.client is None:
            session._mark_stopped()
            return

        session.state = SessionState.STOPPING
        logger.info("Stopping session for %s", session.root)
        try:
            await session.client.stop()
        except Exception as exc:
            logger.warning("Error stopping session for %s: %s", session.root, exc)
            if session.process is not None:
                session.process.kill()
        finally:
            session._mark_stopped()
