"""Interfaces the sync driver depends on."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from .manifest import FileEntry, ManifestSnapshot


class ManifestFetcher(ABC):
    """Retrieves the current manifest for a remote source."""

    @abstractmethod
    def fetch_manifest(self, source_id: str) -> ManifestSnapshot:
        """Return the token and complete entry list as seen at one instant.

        Raises FetchError on any transport or parse failure.
        """
        pass


class FileStore(ABC):
    """Makes a local file match a manifest entry."""

    @abstractmethod
    def ensure_file(self, entry: FileEntry) -> None:
        """Idempotently bring the local copy of ``entry`` up to date.

        Raises EntryError when the file cannot be downloaded or verified.
        """
        pass


class TokenStore(ABC):
    """Persists the last fully applied token per source."""

    @abstractmethod
    def get_committed_token(self, source_id: str) -> Optional[str]:
        """Return the committed token, or None before the first sync."""
        pass

    @abstractmethod
    def set_committed_token(self, source_id: str, token: str) -> None:
        """Atomically replace the committed token. Raises PersistError."""
        pass


__all__ = ["ManifestFetcher", "FileStore", "TokenStore"]
