"""Error kinds raised by the sync core and its collaborators."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .manifest import FileEntry


class SyncError(Exception):
    """Base class for every error surfaced by a sync pass."""

    kind = "sync"

    def __init__(self, message: str, source_id: Optional[str] = None):
        super().__init__(message)
        self.source_id = source_id


class FetchError(SyncError):
    """The manifest could not be retrieved or parsed."""

    kind = "fetch"


class EntryError(SyncError):
    """A single manifest entry failed to download or verify."""

    kind = "entry"

    def __init__(
        self,
        message: str,
        entry: Optional["FileEntry"] = None,
        source_id: Optional[str] = None,
    ):
        super().__init__(message, source_id=source_id)
        self.entry = entry


class PersistError(SyncError):
    """The committed token could not be read or written."""

    kind = "persist"


class SyncCancelled(SyncError):
    """The pass was cancelled before it could commit."""

    kind = "cancelled"


class SyncBusyError(SyncError):
    """Another pass already holds the source."""

    kind = "busy"


__all__ = [
    "SyncError",
    "FetchError",
    "EntryError",
    "PersistError",
    "SyncCancelled",
    "SyncBusyError",
]
