"""
Per-session file watching.

Uses the watchdog library to notice changes to Ruby sources, gemspecs and
Gemfiles under a session root and forwards them to the session's client.
Callbacks run on watcher threads.
"""

from __future__ import annotations

import fnmatch
import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from .command import WATCH_PATTERNS

logger = logging.getLogger(__name__)

SKIP_DIRS = frozenset({".git", ".hg", "node_modules", ".bundle", "tmp"})

_EVENT_KINDS = {"modified": "changed", "created": "created", "deleted": "deleted"}


@dataclass(frozen=True)
class FileEvent:
    path: str
    kind: str  # "created", "changed" or "deleted"


def matches_watch_pattern(relative_path: str, patterns: Sequence[str] = WATCH_PATTERNS) -> bool:
    """Match a root-relative POSIX path against ``**/name``-style globs.

    ``**/`` matches zero or more leading directories, so ``**/Gemfile``
    matches both ``Gemfile`` and ``gems/foo/Gemfile``.
    """
    rel = PurePosixPath(relative_path)
    for pattern in patterns:
        if pattern.startswith("**/"):
            tail = pattern[3:]
            if "/" not in tail and fnmatch.fnmatchcase(rel.name, tail):
                return True
        elif fnmatch.fnmatchcase(rel.as_posix(), pattern):
            return True
    return False


class FileEventCoalescer:
    """Deliver one event per path once the path has been quiet for ``delay`` seconds.

    A "created" followed by "changed" is still reported as "created". A delete
    drops whatever is pending for the path and is delivered at once.
    """

    def __init__(self, on_event: Callable[[FileEvent], None], delay: float = 0.1) -> None:
        self._on_event = on_event
        self._delay = delay
        self._lock = threading.Lock()
        self._pending: dict[str, tuple[str, threading.Timer]] = {}
        self._closed = False

    def push(self, event: FileEvent) -> None:
        with self._lock:
            if self._closed:
                return
            previous = self._pending.pop(event.path, None)
            if previous is not None:
                previous[1].cancel()
            if event.kind == "deleted":
                deliver_now = True
            else:
                deliver_now = False
                kind = "created" if previous is not None and previous[0] == "created" else event.kind
                timer = threading.Timer(self._delay, self._fire, args=(event.path,))
                timer.daemon = True
                self._pending[event.path] = (kind, timer)
                timer.start()
        if deliver_now:
            self._deliver(event)

    def _fire(self, path: str) -> None:
        with self._lock:
            entry = self._pending.get(path)
            # A newer timer may have replaced this one.
            if self._closed or entry is None or entry[1] is not threading.current_thread():
                return
            del self._pending[path]
        self._deliver(FileEvent(path, entry[0]))

    def _deliver(self, event: FileEvent) -> None:
        try:
            self._on_event(event)
        except Exception:
            logger.exception("Error delivering %s event for %s", event.kind, event.path)

    def shutdown(self) -> None:
        """Drop pending events; later pushes are ignored."""
        with self._lock:
            self._closed = True
            pending, self._pending = self._pending, {}
        for _, timer in pending.values():
            timer.cancel()


class SessionFileHandler(FileSystemEventHandler):
    """Filters watchdog events down to watched files under one root."""

    def __init__(
        self,
        root_path: Path,
        on_event: Callable[[FileEvent], None],
        patterns: Sequence[str] = WATCH_PATTERNS,
        debounce_delay: float = 0.1,
    ) -> None:
        super().__init__()
        self._root_path = root_path
        self._patterns = tuple(patterns)
        self._events = FileEventCoalescer(on_event, debounce_delay)

    def is_watched(self, path: str) -> bool:
        try:
            rel = Path(path).relative_to(self._root_path)
        except ValueError:
            return False
        if any(part in SKIP_DIRS for part in rel.parts[:-1]):
            return False
        return matches_watch_pattern(rel.as_posix(), self._patterns)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        event_type = getattr(event, "event_type", "")
        src = str(event.src_path)

        if event_type == "moved":
            if self.is_watched(src):
                self._events.push(FileEvent(src, "deleted"))
            dest = str(getattr(event, "dest_path", ""))
            if dest and self.is_watched(dest):
                self._events.push(FileEvent(dest, "created"))
            return

        kind = _EVENT_KINDS.get(event_type)
        if kind is not None and self.is_watched(src):
            self._events.push(FileEvent(src, kind))

    def shutdown(self) -> None:
        self._events.shutdown()


class SessionFileWatcher:
    """Watches one session root recursively."""

    def __init__(
        self,
        root_path: str | Path,
        on_event: Callable[[FileEvent], None],
        patterns: Sequence[str] = WATCH_PATTERNS,
        debounce_delay: float = 0.1,
    ) -> None:
        self.root_path = Path(root_path).resolve()
        self._handler = SessionFileHandler(self.root_path, on_event, patterns, debounce_delay)
        self._observer: BaseObserver | None = None

    @property
    def is_watching(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        if self._observer is not None:
            return
        if not self.root_path.is_dir():
            raise ValueError(f"Watch path is not a directory: {self.root_path}")

        observer = Observer()
        observer.schedule(self._handler, str(self.root_path), recursive=True)
        observer.start()
        self._observer = observer
        logger.info("Started watching: %s", self.root_path)

    def stop(self) -> None:
        self._handler.shutdown()
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=5.0)
        logger.info("Stopped watching: %s", self.root_path)
