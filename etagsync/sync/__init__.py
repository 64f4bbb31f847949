"""Manifest synchronization with deferred eTag commit."""

from __future__ import annotations

from .manifest import FileEntry, ManifestSnapshot
from .errors import EntryError, FetchError, PersistError, SyncBusyError, SyncCancelled, SyncError
from .collaborators import FileStore, ManifestFetcher, TokenStore
from .driver import SOURCE_LOCKS, SourceLocks, SyncDriver, SyncResult, SyncSettings, SyncState
from .fetch import HttpManifestFetcher, parse_manifest
from .storage import LocalFileStore, compute_file_hash, split_content_hash
from .state import JsonTokenStore, MemoryTokenStore, SqliteTokenStore
from .factory import build_driver, create_token_store, resolve_target_dir

__all__ = [
    # Manifest
    "FileEntry",
    "ManifestSnapshot",
    # Errors
    "SyncError",
    "FetchError",
    "EntryError",
    "PersistError",
    "SyncCancelled",
    "SyncBusyError",
    # Collaborators
    "ManifestFetcher",
    "FileStore",
    "TokenStore",
    "HttpManifestFetcher",
    "parse_manifest",
    "LocalFileStore",
    "compute_file_hash",
    "split_content_hash",
    "MemoryTokenStore",
    "JsonTokenStore",
    "SqliteTokenStore",
    # Driver
    "SOURCE_LOCKS",
    "SourceLocks",
    "SyncDriver",
    "SyncResult",
    "SyncSettings",
    "SyncState",
    "build_driver",
    "create_token_store",
    "resolve_target_dir",
]
