"""Manifest snapshot values exchanged between the fetcher and the driver."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Set, Tuple

logger = logging.getLogger("etagsync.sync.manifest")


@dataclass(frozen=True)
class FileEntry:
    """One file expected to exist locally for a manifest version."""

    path: str  # Relative path, unique within a snapshot
    content_hash: str  # "<algo>:<hex>", bare hex means sha256
    size: Optional[int] = None
    content_type: Optional[str] = None
    download_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "content_hash": self.content_hash,
            "size": self.size,
            "content_type": self.content_type,
            "download_url": self.download_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileEntry":
        return cls(
            path=data["path"],
            content_hash=data["content_hash"],
            size=data.get("size"),
            content_type=data.get("content_type"),
            download_url=data.get("download_url"),
        )


@dataclass(frozen=True)
class ManifestSnapshot:
    """A manifest version token paired with the entries it describes.

    The token is the authoritative version marker: two snapshots with the same
    token compare equal even when their entry lists differ.
    """

    token: str
    entries: Tuple[FileEntry, ...] = field(default=())

    def __post_init__(self) -> None:
        if not isinstance(self.entries, tuple):
            object.__setattr__(self, "entries", tuple(self.entries))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ManifestSnapshot):
            return NotImplemented
        return self.token == other.token

    def __hash__(self) -> int:
        return hash(self.token)

    def __len__(self) -> int:
        return len(self.entries)

    @classmethod
    def create(cls, token: str, entries: Iterable[FileEntry] = ()) -> "ManifestSnapshot":
        return cls(token=token, entries=tuple(entries))

    def entry_paths(self) -> Set[str]:
        return {entry.path for entry in self.entries}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "entries": [entry.to_dict() for entry in self.entries],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManifestSnapshot":
        return cls(
            token=data["token"],
            entries=tuple(FileEntry.from_dict(item) for item in data.get("entries", [])),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, raw: str) -> "ManifestSnapshot":
        return cls.from_dict(json.loads(raw))

    def save(self, path: Path) -> None:
        """Save snapshot to a JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_json(), encoding="utf-8")
        logger.debug("Saved snapshot %s to %s (%d entries)", self.token, path, len(self.entries))

    @classmethod
    def load(cls, path: Path) -> Optional["ManifestSnapshot"]:
        """Load a snapshot from a JSON file, or None if absent."""
        if not path.exists():
            return None
        return cls.from_json(path.read_text(encoding="utf-8"))


__all__ = ["FileEntry", "ManifestSnapshot"]
