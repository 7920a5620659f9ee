"""Protocol-client seam for sessions.

The wire protocol is spoken by a collaborator client plugged in through
``ClientFactory``. ``ProcessBoundClient`` is the default: it owns the process
lifecycle and leaves stdin/stdout untouched for whoever speaks LSP over them.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import anyio

from .command import WATCH_PATTERNS
from .launcher import ProcessHandle
from .watcher import FileEvent
from .workspace import RUBY_LANGUAGE_ID, RootFolder

logger = logging.getLogger(__name__)

CLIENT_ID = "sorbetLanguageServer"
CLIENT_NAME = "Sorbet Language Server"


@dataclass(frozen=True)
class ClientOptions:
    """How a protocol client is bound to one session root."""

    workspace_folder: RootFolder
    document_selector: tuple[dict[str, str], ...] = (
        {"scheme": "file", "language": RUBY_LANGUAGE_ID},
    )
    watch_patterns: tuple[str, ...] = WATCH_PATTERNS
    output_channel_name: str = CLIENT_NAME
    reveal_output_channel: str = "never"


class ProtocolClient(Protocol):
    """Protocol for clients bound to one language server process."""

    async def start(self) -> None:
        """Begin serving the session."""
        ...

    async def stop(self) -> None:
        """Shut the session down and reap its process."""
        ...

    def file_changed(self, event: FileEvent) -> None:
        """A watched file under the session root changed; called from a watcher thread."""
        ...


ClientFactory = Callable[[ProcessHandle, ClientOptions], ProtocolClient]


class ProcessBoundClient:
    """Default client: manages the process, not the protocol."""

    def __init__(
        self,
        process: ProcessHandle,
        options: ClientOptions,
        *,
        stop_timeout: float = 5.0,
    ) -> None:
        self.process = process
        self.options = options
        self._stop_timeout = stop_timeout
        self._running = False
        self._events_lock = threading.Lock()
        self.file_events_seen = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        logger.debug(
            "%s bound to %s (pid %s)",
            self.options.output_channel_name,
            self.options.workspace_folder,
            self.process.pid,
        )

    async def stop(self) -> None:
        self._running = False
        if self.process.failed:
            return

        await self.process.aclose_stdin()
        self.process.terminate()
        with anyio.move_on_after(self._stop_timeout) as scope:
            await self.process.wait()
        if scope.cancelled_caught:
            logger.warning(
                "Language server for %s ignored SIGTERM; killing it",
                self.options.workspace_folder,
            )
            self.process.kill()
            await self.process.wait()

    def file_changed(self, event: FileEvent) -> None:
        with self._events_lock:
            self.file_events_seen += 1
        logger.debug("File %s: %s", event.kind, event.path)


def default_client_factory(stop_timeout: float = 5.0) -> ClientFactory:
    def _factory(process: ProcessHandle, options: ClientOptions) -> ProtocolClient:
        return ProcessBoundClient(process, options, stop_timeout=stop_timeout)

    return _factory
