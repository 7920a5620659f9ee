"""Host events and the session commands planned from them."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .workspace import RootFolder, TextDocument


@dataclass(frozen=True)
class DocumentOpened:
    document: TextDocument


@dataclass(frozen=True)
class FoldersChanged:
    added: tuple[RootFolder, ...] = ()
    removed: tuple[RootFolder, ...] = ()


HostEvent = DocumentOpened | FoldersChanged


@dataclass(frozen=True)
class StartSession:
    root: RootFolder


@dataclass(frozen=True)
class StopSession:
    root: RootFolder


SessionCommand = StartSession | StopSession
