"""Workspace roots, documents and outermost-root resolution."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import urlparse
from urllib.request import url2pathname

from .events import FoldersChanged

logger = logging.getLogger(__name__)

RUBY_LANGUAGE_ID = "ruby"
_RUBY_SUFFIXES = frozenset({".rb", ".rbi", ".rake", ".gemspec", ".ru"})
_RUBY_FILENAMES = frozenset({"Gemfile", "Rakefile"})


def path_to_uri(path: str | Path) -> str:
    """Return a ``file://`` URI for an absolute or cwd-relative path."""
    resolved = Path(path).expanduser()
    if not resolved.is_absolute():
        resolved = (Path.cwd() / resolved).resolve()
    try:
        return resolved.as_uri()
    except ValueError:
        return f"file://{resolved.as_posix()}"


def uri_to_path(uri: str) -> str:
    """Return the local filesystem path of a ``file://`` URI."""
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        raise ValueError(f"Not a file URI: {uri}")
    return url2pathname(parsed.path)


def normalize_key(uri: str) -> str:
    """Canonical root identity: the URI with a trailing separator."""
    return uri if uri.endswith("/") else uri + "/"


@dataclass(frozen=True)
class RootFolder:
    """One top-level folder of a multi-root workspace."""

    uri: str
    name: str = ""
    index: int = 0

    @classmethod
    def from_path(cls, path: str | Path, *, index: int = 0) -> RootFolder:
        uri = path_to_uri(path)
        return cls(uri=uri, name=Path(uri_to_path(uri)).name, index=index)

    @property
    def key(self) -> str:
        return normalize_key(self.uri)

    @property
    def path(self) -> str:
        return uri_to_path(self.uri)

    def __str__(self) -> str:
        return self.uri


@dataclass(frozen=True)
class TextDocument:
    uri: str
    language_id: str

    @property
    def scheme(self) -> str:
        return urlparse(self.uri).scheme


def language_for_path(path: str | Path) -> str:
    p = Path(path)
    if p.suffix in _RUBY_SUFFIXES or p.name in _RUBY_FILENAMES:
        return RUBY_LANGUAGE_ID
    return "plaintext"


def document_for_path(path: str | Path, language_id: str | None = None) -> TextDocument:
    """Describe a file on disk the way an editor reports an opened document."""
    return TextDocument(uri=path_to_uri(path), language_id=language_id or language_for_path(path))


class WorkspaceHost(Protocol):
    """What the multiplexer needs to know about the editor's open roots."""

    @property
    def workspace_folders(self) -> tuple[RootFolder, ...]: ...

    def get_workspace_folder(self, uri: str) -> RootFolder | None: ...


class Workspace:
    """In-memory set of open root folders.

    ``get_workspace_folder`` answers like an editor does: the innermost open
    root containing the URI.
    """

    def __init__(self, folders: Iterable[RootFolder] = ()) -> None:
        self._folders: dict[str, RootFolder] = {}
        for folder in folders:
            self._folders.setdefault(folder.key, folder)

    @classmethod
    def from_paths(cls, paths: Iterable[str | Path]) -> Workspace:
        return cls(RootFolder.from_path(path, index=i) for i, path in enumerate(paths))

    @property
    def workspace_folders(self) -> tuple[RootFolder, ...]:
        return tuple(self._folders.values())

    def get_workspace_folder(self, uri: str) -> RootFolder | None:
        target = normalize_key(uri)
        best: RootFolder | None = None
        for key, folder in self._folders.items():
            if target.startswith(key) and (best is None or len(key) > len(best.key)):
                best = folder
        return best

    def add_folders(self, *folders: RootFolder) -> FoldersChanged:
        added = []
        for folder in folders:
            if folder.key not in self._folders:
                self._folders[folder.key] = folder
                added.append(folder)
        return FoldersChanged(added=tuple(added))

    def remove_folders(self, *folders: RootFolder) -> FoldersChanged:
        removed = []
        for folder in folders:
            existing = self._folders.pop(folder.key, None)
            if existing is not None:
                removed.append(existing)
        return FoldersChanged(removed=tuple(removed))


class WorkspaceFolderResolver:
    """Map any root to the outermost open root that contains it.

    Roots are kept sorted shortest-first; a longer key prefixed by a shorter
    one is nested inside it, so the first prefix match is the outermost root.
    The sorted set is cached until ``invalidate()``.
    """

    def __init__(self, host: WorkspaceHost) -> None:
        self._host = host
        self._sorted: tuple[str, ...] | None = None
        self._by_key: dict[str, RootFolder] = {}

    def invalidate(self) -> None:
        self._sorted = None
        self._by_key = {}

    def sorted_roots(self) -> tuple[str, ...]:
        if self._sorted is None:
            by_key: dict[str, RootFolder] = {}
            for folder in self._host.workspace_folders:
                by_key.setdefault(folder.key, folder)
            self._by_key = by_key
            self._sorted = tuple(sorted(by_key, key=len))
            logger.debug("Rebuilt sorted roots: %s", self._sorted)
        return self._sorted

    def outermost(self, folder: RootFolder) -> RootFolder:
        target = folder.key
        for key in self.sorted_roots():
            if target.startswith(key):
                return self._by_key[key]
        return folder
