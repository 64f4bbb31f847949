"""Local file store that downloads and verifies manifest entries."""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Tuple
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .collaborators import FileStore
from .errors import EntryError
from .manifest import FileEntry

logger = logging.getLogger("etagsync.sync.storage")

CHUNK_SIZE = 8192


def split_content_hash(content_hash: str) -> Tuple[str, str]:
    """Split ``"md5:abc..."`` into ``("md5", "abc...")``. Bare digests are sha256."""
    algo, sep, digest = content_hash.partition(":")
    if not sep:
        return "sha256", content_hash.lower()
    return algo.lower(), digest.lower()


def compute_file_hash(file_path: Path, algo: str = "sha256") -> str:
    """Compute the hex digest of a file."""
    hasher = hashlib.new(algo)
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


class LocalFileStore(FileStore):
    """Keeps files under ``root`` in line with manifest entries."""

    def __init__(self, root: Path, timeout: float = 60.0):
        self.root = root
        self.timeout = timeout

    def resolve(self, entry: FileEntry) -> Path:
        root = self.root.resolve()
        target = (root / entry.path).resolve()
        if target == root or root not in target.parents:
            raise EntryError(f"Entry path escapes the store root: {entry.path}", entry)
        return target

    def matches(self, entry: FileEntry, path: Path) -> bool:
        """Return True if ``path`` already holds the content ``entry`` describes."""
        if not path.is_file():
            return False
        if entry.size is not None and path.stat().st_size != entry.size:
            return False
        algo, digest = split_content_hash(entry.content_hash)
        return compute_file_hash(path, algo) == digest

    def ensure_file(self, entry: FileEntry) -> None:
        target = self.resolve(entry)
        try:
            if self.matches(entry, target):
                logger.debug("Up to date: %s", entry.path)
                return
        except (OSError, ValueError) as e:
            raise EntryError(f"Failed to verify {entry.path}: {e}", entry) from e

        if not entry.download_url:
            raise EntryError(f"No download URL for out-of-date file {entry.path}", entry)

        self._download(entry, target)
        logger.debug("Downloaded: %s", entry.path)

    def _download(self, entry: FileEntry, target: Path) -> None:
        tmp_name = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".part")
            req = Request(entry.download_url, method="GET")
            with os.fdopen(fd, "wb") as handle, urlopen(req, timeout=self.timeout) as resp:
                shutil.copyfileobj(resp, handle, CHUNK_SIZE)
                handle.flush()
                os.fsync(handle.fileno())

            if not self.matches(entry, Path(tmp_name)):
                raise EntryError(f"Downloaded content does not match manifest for {entry.path}", entry)

            os.replace(tmp_name, target)
            tmp_name = None
        except HTTPError as e:
            raise EntryError(f"HTTP error downloading {entry.path}: {e.code} {e.reason}", entry) from e
        except URLError as e:
            raise EntryError(f"Connection error downloading {entry.path}: {e.reason}", entry) from e
        except (OSError, ValueError) as e:
            raise EntryError(f"Failed to download {entry.path}: {e}", entry) from e
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)


__all__ = ["LocalFileStore", "compute_file_hash", "split_content_hash"]
