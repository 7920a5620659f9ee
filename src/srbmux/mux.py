"""
Composition root: wires configuration, launcher, registry and router.

``Multiplexer`` is an async context manager. Entering it starts a task group
for per-session background work (stderr forwarding, exit monitoring);
leaving it stops every session and waits for them to settle.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from contextlib import AsyncExitStack
from typing import Any

import anyio
from anyio.abc import TaskGroup
from anyio.streams.text import TextReceiveStream

from .client import ClientFactory, ClientOptions, ProtocolClient, default_client_factory
from .command import build_command
from .config import SorbetConfig, load_config
from .events import FoldersChanged, HostEvent
from .launcher import LaunchOptions, ProcessHandle, launch
from .router import DocumentEventRouter
from .sessions import ServerSession, SessionRegistry, SessionState
from .watcher import SessionFileWatcher
from .workspace import RootFolder, TextDocument, WorkspaceHost

logger = logging.getLogger(__name__)

# Language server diagnostics (stderr) go to their own logger.
server_logger = logging.getLogger("srbmux.server")


class SessionFactory:
    """Launch the process and bind a client for one session."""

    def __init__(
        self,
        config: SorbetConfig,
        task_group: TaskGroup,
        *,
        client_factory: ClientFactory | None = None,
        platform: str | None = None,
        shell: str | None = None,
    ) -> None:
        self._config = config
        self._task_group = task_group
        self._client_factory = client_factory or default_client_factory(config.stop_timeout)
        self._platform = platform
        self._shell = shell

    def launch_options(self, session: ServerSession) -> LaunchOptions:
        return LaunchOptions(cwd=session.root.path, debug_port=session.debug_port)

    async def __call__(self, session: ServerSession) -> tuple[ProcessHandle, ProtocolClient]:
        command = build_command(self._config)
        process = await launch(
            command,
            self.launch_options(session),
            platform=self._platform,
            shell=self._shell,
        )

        try:
            client = self._client_factory(process, ClientOptions(workspace_folder=session.root))
            watcher = await self._start_watcher(session, client) if not process.failed else None
            self._task_group.start_soon(forward_stderr, process, session.root)
            self._task_group.start_soon(monitor_exit, process, session, watcher)
            await client.start()
        except BaseException:
            # Nothing owns the process until the session is returned.
            process.kill()
            raise
        return process, client

    async def _start_watcher(
        self, session: ServerSession, client: ProtocolClient
    ) -> SessionFileWatcher | None:
        if not self._config.watch_files:
            return None
        watcher = SessionFileWatcher(session.root.path, client.file_changed)
        try:
            await anyio.to_thread.run_sync(watcher.start)
        except (OSError, ValueError) as exc:
            logger.warning("Cannot watch %s: %s", session.root, exc)
            return None
        except BaseException:
            with anyio.CancelScope(shield=True):
                await anyio.to_thread.run_sync(watcher.stop)
            raise
        return watcher


async def forward_stderr(process: ProcessHandle, root: RootFolder) -> None:
    """Log the server's stderr line by line until EOF."""
    if process.stderr is None:
        return

    pending = ""
    try:
        async for chunk in TextReceiveStream(process.stderr, errors="replace"):
            pending += chunk
            *lines, pending = pending.split("\n")
            for line in lines:
                if line.strip():
                    server_logger.info("[%s] %s", root.name or root.uri, line.rstrip())
    except (anyio.BrokenResourceError, anyio.ClosedResourceError):
        pass
    if pending.strip():
        server_logger.info("[%s] %s", root.name or root.uri, pending.rstrip())


async def monitor_exit(
    process: ProcessHandle,
    session: ServerSession,
    watcher: SessionFileWatcher | None = None,
) -> None:
    """Log how the process ended; the registry entry is left in place."""
    try:
        status = await process.wait()
    finally:
        if watcher is not None:
            with anyio.CancelScope(shield=True):
                await anyio.to_thread.run_sync(watcher.stop)

    if status.failed_to_launch:
        logger.error("Sorbet for %s %s", session.root, status.describe())
    elif session.state in (SessionState.STARTING, SessionState.RUNNING):
        logger.warning("Sorbet for %s exited unexpectedly with %s", session.root, status.describe())
    else:
        logger.info("Sorbet exited with %s", status.describe())


class Multiplexer:
    """One language server per outermost workspace root."""

    def __init__(
        self,
        host: WorkspaceHost,
        config: SorbetConfig | None = None,
        *,
        client_factory: ClientFactory | None = None,
        platform: str | None = None,
        shell: str | None = None,
        shutdown_timeout: float | None = None,
    ) -> None:
        self.host = host
        self.config = config if config is not None else load_config()
        self.registry = SessionRegistry()
        self._client_factory = client_factory
        self._platform = platform
        self._shell = shell
        self._shutdown_timeout = shutdown_timeout
        self._stack: AsyncExitStack | None = None
        self._task_group: TaskGroup | None = None
        self._router: DocumentEventRouter | None = None

    @property
    def router(self) -> DocumentEventRouter:
        if self._router is None:
            raise RuntimeError("Multiplexer is not active; use 'async with'")
        return self._router

    async def __aenter__(self) -> Multiplexer:
        stack = AsyncExitStack()
        self._task_group = await stack.enter_async_context(anyio.create_task_group())
        self._stack = stack
        factory = SessionFactory(
            self.config,
            self._task_group,
            client_factory=self._client_factory,
            platform=self._platform,
            shell=self._shell,
        )
        self._router = DocumentEventRouter(self.host, self.registry, factory)
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> bool | None:
        stack, self._stack = self._stack, None
        if stack is None:
            return None
        try:
            with anyio.CancelScope(shield=True):
                await self.deactivate()
        finally:
            if self._task_group is not None:
                self._task_group.cancel_scope.cancel()
            self._router = None
            self._task_group = None
            suppressed = await stack.__aexit__(exc_type, exc, tb)
        return suppressed

    async def open_document(self, document: TextDocument) -> None:
        await self.router.document_opened(document)

    async def open_documents(self, documents: Iterable[TextDocument]) -> None:
        await self.router.open_existing(documents)

    async def folders_changed(self, event: FoldersChanged) -> None:
        await self.router.folders_changed(event)

    def post(self, event: HostEvent) -> None:
        """Handle an event in the background without waiting for it."""
        if self._task_group is None:
            raise RuntimeError("Multiplexer is not active; use 'async with'")
        self._task_group.start_soon(self.router.dispatch, event)

    async def deactivate(self) -> None:
        if self._router is not None:
            await self._router.deactivate(self._shutdown_timeout)
