"""Sync driver: applies a manifest and commits its token only on full success."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from .collaborators import FileStore, ManifestFetcher, TokenStore
from .errors import (
    EntryError,
    FetchError,
    PersistError,
    SyncBusyError,
    SyncCancelled,
    SyncError,
)
from .manifest import FileEntry, ManifestSnapshot

logger = logging.getLogger("etagsync.sync.driver")

POLICIES = ("fail_fast", "aggregate")
# Interval at which parallel passes re-check the cancel event.
CANCEL_POLL_INTERVAL = 0.1


class SyncState(str, Enum):
    """Lifecycle of one sync pass for a source."""
    IDLE = "idle"
    FETCHING = "fetching"
    COMPARING = "comparing"
    APPLYING = "applying"
    COMMITTING = "committing"
    FAILED = "failed"


@dataclass
class SyncSettings:
    """Settings for sync passes."""

    policy: str = "fail_fast"  # fail_fast, aggregate
    workers: int = 1
    lock_timeout: float = 0.0
    fetch_timeout: float = 30.0
    file_timeout: float = 60.0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SyncSettings":
        raw = config.get("sync", {}) if config else {}
        policy = str(raw.get("policy", "fail_fast"))
        if policy not in POLICIES:
            raise ValueError(f"Unknown sync policy '{policy}' (expected one of {', '.join(POLICIES)})")
        return cls(
            policy=policy,
            workers=max(1, int(raw.get("workers", 1))),
            lock_timeout=float(raw.get("lock_timeout", 0.0)),
            fetch_timeout=float(raw.get("fetch_timeout", 30.0)),
            file_timeout=float(raw.get("file_timeout", 60.0)),
        )


@dataclass
class SyncResult:
    """Outcome of one ``sync()`` call."""

    source_id: str
    applied: bool = False
    new_token: Optional[str] = None
    previous_token: Optional[str] = None
    failed_entry: Optional[FileEntry] = None
    failed_entries: List[FileEntry] = field(default_factory=list)
    entries_processed: int = 0
    error: Optional[SyncError] = None
    message: str = ""

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "success": self.success,
            "applied": self.applied,
            "new_token": self.new_token,
            "previous_token": self.previous_token,
            "failed_entry": self.failed_entry.to_dict() if self.failed_entry else None,
            "failed_entries": [entry.path for entry in self.failed_entries],
            "entries_processed": self.entries_processed,
            "error": self.error.kind if self.error else None,
            "message": self.message,
        }


class SourceLocks:
    """Per-source locks giving each source a single in-flight pass."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def get(self, source_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(source_id, threading.Lock())

    @contextmanager
    def hold(self, source_id: str, timeout: float = 0.0) -> Iterator[None]:
        lock = self.get(source_id)
        acquired = lock.acquire(timeout=timeout) if timeout > 0 else lock.acquire(blocking=False)
        if not acquired:
            raise SyncBusyError(f"A sync pass for '{source_id}' is already running", source_id)
        try:
            yield
        finally:
            lock.release()


# Shared by every driver in the process so two drivers cannot commit the same source concurrently.
SOURCE_LOCKS = SourceLocks()


class _EntryFailures:
    """Collects entry failures from one apply step."""

    def __init__(self) -> None:
        self.errors: List[EntryError] = []
        self.processed = 0

    @property
    def first(self) -> Optional[EntryError]:
        return self.errors[0] if self.errors else None


class SyncDriver:
    """Drives fetch, apply and commit for remote sources.

    The committed token for a source changes only after every entry of a newly
    fetched manifest has been ensured. Any failure, cancellation or crash
    before that point leaves the previous token in place, so calling ``sync``
    again re-fetches and re-applies from scratch.
    """

    def __init__(
        self,
        fetcher: ManifestFetcher,
        file_store: FileStore,
        token_store: TokenStore,
        settings: Optional[SyncSettings] = None,
        locks: Optional[SourceLocks] = None,
        progress_callback: Optional[Callable[[str, int, int], None]] = None,
        state_callback: Optional[Callable[[str, SyncState], None]] = None,
    ):
        self.fetcher = fetcher
        self.file_store = file_store
        self.token_store = token_store
        self.settings = settings or SyncSettings()
        self.locks = locks or SOURCE_LOCKS
        self.progress_callback = progress_callback
        self.state_callback = state_callback
        self._states: Dict[str, SyncState] = {}
        self._states_lock = threading.Lock()

    def state(self, source_id: str) -> SyncState:
        with self._states_lock:
            return self._states.get(source_id, SyncState.IDLE)

    def committed_token(self, source_id: str) -> Optional[str]:
        return self._read_token(source_id)

    def sync(self, source_id: str, cancel_event: Optional[threading.Event] = None) -> SyncResult:
        """Bring ``source_id`` up to its latest manifest version."""
        result = SyncResult(source_id=source_id)
        try:
            with self.locks.hold(source_id, self.settings.lock_timeout):
                try:
                    self._run(source_id, result, cancel_event)
                except SyncError as e:
                    self._set_state(source_id, SyncState.FAILED)
                    self._fail(result, e)
                    if len(result.failed_entries) > 1:
                        result.message = f"{len(result.failed_entries)} entries failed; first: {e}"
                finally:
                    self._set_state(source_id, SyncState.IDLE)
        except SyncBusyError as e:
            self._fail(result, e)
        return result

    def sync_all(self, source_ids: Sequence[str]) -> List[SyncResult]:
        return [self.sync(source_id) for source_id in source_ids]

    def _run(
        self,
        source_id: str,
        result: SyncResult,
        cancel_event: Optional[threading.Event],
    ) -> None:
        committed = self._read_token(source_id)
        result.previous_token = committed

        self._set_state(source_id, SyncState.FETCHING)
        snapshot = self._fetch(source_id)

        self._set_state(source_id, SyncState.COMPARING)
        if snapshot.token == committed:
            result.new_token = committed
            result.message = "Already up to date"
            logger.info(
                "Source %s already at %s; nothing to apply",
                source_id,
                committed,
                extra={"source_id": source_id, "token": committed, "outcome": "noop"},
            )
            return

        self._set_state(source_id, SyncState.APPLYING)
        logger.info(
            "Applying %d entries for %s (%s -> %s)",
            len(snapshot.entries),
            source_id,
            committed or "none",
            snapshot.token,
        )
        failures = self._apply(source_id, snapshot, cancel_event)
        result.entries_processed = failures.processed
        if failures.errors:
            result.failed_entries = [err.entry for err in failures.errors if err.entry is not None]
            result.failed_entry = failures.first.entry
            raise failures.first
        # A cancel that arrives while the last entry runs still blocks the commit.
        self._check_cancelled(source_id, cancel_event)

        self._set_state(source_id, SyncState.COMMITTING)
        self._commit(source_id, snapshot.token)
        result.applied = True
        result.new_token = snapshot.token
        result.message = f"Applied {len(snapshot.entries)} entries"
        logger.info(
            "Committed %s for %s",
            snapshot.token,
            source_id,
            extra={
                "source_id": source_id,
                "token": snapshot.token,
                "previous_token": committed,
                "outcome": "committed",
            },
        )

    def _fetch(self, source_id: str) -> ManifestSnapshot:
        try:
            return self.fetcher.fetch_manifest(source_id)
        except FetchError as e:
            e.source_id = e.source_id or source_id
            raise
        except Exception as e:
            raise FetchError(f"Manifest fetch failed: {e}", source_id) from e

    def _read_token(self, source_id: str) -> Optional[str]:
        try:
            return self.token_store.get_committed_token(source_id)
        except PersistError as e:
            e.source_id = e.source_id or source_id
            raise
        except Exception as e:
            raise PersistError(f"Failed to read committed token: {e}", source_id) from e

    def _commit(self, source_id: str, token: str) -> None:
        try:
            self.token_store.set_committed_token(source_id, token)
        except PersistError as e:
            e.source_id = e.source_id or source_id
            raise
        except Exception as e:
            raise PersistError(f"Failed to commit token {token}: {e}", source_id) from e

    def _apply(
        self,
        source_id: str,
        snapshot: ManifestSnapshot,
        cancel_event: Optional[threading.Event],
    ) -> _EntryFailures:
        if self.settings.workers > 1 and len(snapshot.entries) > 1:
            return self._apply_parallel(source_id, snapshot, cancel_event)
        return self._apply_sequential(source_id, snapshot, cancel_event)

    def _apply_sequential(
        self,
        source_id: str,
        snapshot: ManifestSnapshot,
        cancel_event: Optional[threading.Event],
    ) -> _EntryFailures:
        failures = _EntryFailures()
        total = len(snapshot.entries)
        for entry in snapshot.entries:
            self._check_cancelled(source_id, cancel_event)
            error = self._ensure(source_id, entry)
            failures.processed += 1
            self._report_progress(entry.path, failures.processed, total)
            if error is not None:
                failures.errors.append(error)
                if self.settings.policy == "fail_fast":
                    break
        return failures

    def _apply_parallel(
        self,
        source_id: str,
        snapshot: ManifestSnapshot,
        cancel_event: Optional[threading.Event],
    ) -> _EntryFailures:
        failures = _EntryFailures()
        total = len(snapshot.entries)
        cancelled = False

        with ThreadPoolExecutor(
            max_workers=self.settings.workers,
            thread_name_prefix=f"etagsync-{source_id}",
        ) as executor:
            pending: Dict[Future, FileEntry] = {
                executor.submit(self._ensure, source_id, entry): entry
                for entry in snapshot.entries
            }
            stopping = False
            while pending:
                done, _ = wait(pending, timeout=CANCEL_POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for future in done:
                    entry = pending.pop(future)
                    if future.cancelled():
                        continue
                    error = future.result()
                    failures.processed += 1
                    self._report_progress(entry.path, failures.processed, total)
                    if error is not None:
                        failures.errors.append(error)
                        if self.settings.policy == "fail_fast":
                            stopping = True

                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    stopping = True
                if stopping:
                    # Queued entries are dropped; running ones are still awaited.
                    for future in pending:
                        future.cancel()

        if cancelled:
            raise SyncCancelled(f"Sync of '{source_id}' was cancelled", source_id)
        return failures

    def _ensure(self, source_id: str, entry: FileEntry) -> Optional[EntryError]:
        try:
            self.file_store.ensure_file(entry)
        except EntryError as e:
            e.entry = e.entry or entry
            e.source_id = e.source_id or source_id
            logger.warning(
                "Entry %s failed for %s: %s",
                entry.path,
                source_id,
                e,
                extra={"source_id": source_id, "path": entry.path},
            )
            return e
        except Exception as e:
            logger.warning(
                "Entry %s failed for %s: %s",
                entry.path,
                source_id,
                e,
                extra={"source_id": source_id, "path": entry.path},
            )
            error = EntryError(f"Failed to ensure {entry.path}: {e}", entry, source_id)
            error.__cause__ = e
            return error
        return None

    def _check_cancelled(self, source_id: str, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelled(f"Sync of '{source_id}' was cancelled", source_id)

    def _fail(self, result: SyncResult, error: SyncError) -> None:
        result.applied = False
        result.error = error
        result.message = str(error)
        fields = {
            "source_id": result.source_id,
            "token": result.previous_token,
            "error_kind": error.kind,
            "outcome": "failed",
        }
        if isinstance(error, SyncBusyError):
            logger.info("Skipped %s: %s", result.source_id, error, extra=fields)
        else:
            logger.error(
                "Sync of %s failed (%s): %s", result.source_id, error.kind, error, extra=fields
            )

    def _set_state(self, source_id: str, state: SyncState) -> None:
        with self._states_lock:
            self._states[source_id] = state
        logger.debug(
            "Source %s -> %s",
            source_id,
            state.value,
            extra={"source_id": source_id, "state": state.value},
        )
        if self.state_callback:
            try:
                self.state_callback(source_id, state)
            except Exception as e:
                logger.warning("State callback failed for %s (%s): %s", source_id, state.value, e)

    def _report_progress(self, message: str, current: int, total: int) -> None:
        """Report progress if callback is configured."""
        if self.progress_callback:
            self.progress_callback(message, current, total)
        logger.debug("Sync progress: %s (%d/%d)", message, current, total)


__all__ = [
    "POLICIES",
    "SOURCE_LOCKS",
    "SourceLocks",
    "SyncDriver",
    "SyncResult",
    "SyncSettings",
    "SyncState",
]
