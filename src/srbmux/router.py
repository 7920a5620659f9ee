"""Route host events to session starts and stops.

Planning is pure: ``plan_document_opened`` and ``plan_folders_changed`` turn an
event into ``StartSession``/``StopSession`` commands. ``DocumentEventRouter``
executes those commands against the registry.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

import anyio

from .events import (
    DocumentOpened,
    FoldersChanged,
    HostEvent,
    SessionCommand,
    StartSession,
    StopSession,
)
from .sessions import SessionRegistry, SessionStarter
from .workspace import RUBY_LANGUAGE_ID, TextDocument, WorkspaceFolderResolver, WorkspaceHost

logger = logging.getLogger(__name__)

FILE_SCHEME = "file"
UNTITLED_SCHEME = "untitled"


def plan_document_opened(
    document: TextDocument,
    host: WorkspaceHost,
    resolver: WorkspaceFolderResolver,
) -> list[SessionCommand]:
    """Decide which session, if any, an opened document needs."""
    if document.language_id != RUBY_LANGUAGE_ID:
        return []
    if document.scheme not in (FILE_SCHEME, UNTITLED_SCHEME):
        return []
    # Untitled buffers have no root to attach to.
    if document.scheme == UNTITLED_SCHEME:
        return []

    folder = host.get_workspace_folder(document.uri)
    if folder is None:
        logger.debug("No workspace folder for %s", document.uri)
        return []

    # With nested folders only the outermost one gets a server.
    return [StartSession(resolver.outermost(folder))]


def plan_folders_changed(event: FoldersChanged) -> list[SessionCommand]:
    return [StopSession(folder) for folder in event.removed]


class DocumentEventRouter:
    """Drives a ``SessionRegistry`` from editor events."""

    def __init__(
        self,
        host: WorkspaceHost,
        registry: SessionRegistry,
        starter: SessionStarter,
        resolver: WorkspaceFolderResolver | None = None,
    ) -> None:
        self.host = host
        self.registry = registry
        self.resolver = resolver or WorkspaceFolderResolver(host)
        self._starter = starter

    async def dispatch(self, event: HostEvent) -> None:
        if isinstance(event, DocumentOpened):
            await self.document_opened(event.document)
        elif isinstance(event, FoldersChanged):
            await self.folders_changed(event)
        else:
            raise TypeError(f"Unsupported host event: {event!r}")

    async def document_opened(self, document: TextDocument) -> None:
        await self.execute(plan_document_opened(document, self.host, self.resolver))

    async def open_existing(self, documents: Iterable[TextDocument]) -> None:
        """Replay documents that were already open before activation."""
        for document in documents:
            await self.document_opened(document)

    async def folders_changed(self, event: FoldersChanged) -> None:
        self.resolver.invalidate()
        await self.execute(plan_folders_changed(event))

    async def execute(self, commands: Iterable[SessionCommand]) -> None:
        commands = list(commands)
        starts = [c for c in commands if isinstance(c, StartSession)]
        stops = [c for c in commands if isinstance(c, StopSession)]

        for command in starts:
            await self._start(command)

        if stops:
            async with anyio.create_task_group() as tg:
                for command in stops:
                    tg.start_soon(self.registry.stop, command.root)

    async def _start(self, command: StartSession) -> None:
        try:
            await self.registry.ensure_started(command.root, self._starter)
        except Exception as exc:
            # One root failing to start must not affect the others.
            logger.warning("Failed to start session for %s: %s", command.root, exc)

    async def deactivate(self, timeout: float | None = None) -> None:
        """Stop every session and wait for all of them to settle."""
        await self.registry.stop_all(timeout)
