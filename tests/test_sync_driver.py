"""Tests for the sync driver's commit gating."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from typing import Callable, Iterable, List, Optional

import pytest

from etagsync.sync import (
    EntryError,
    FetchError,
    FileEntry,
    FileStore,
    ManifestFetcher,
    ManifestSnapshot,
    MemoryTokenStore,
    PersistError,
    SourceLocks,
    SyncBusyError,
    SyncCancelled,
    SyncDriver,
    SyncSettings,
    SyncState,
)

SOURCE = "tables"


def _entries(count: int) -> List[FileEntry]:
    return [
        FileEntry(path=f"file{idx}.csv", content_hash=f"md5:{idx:032x}", size=idx)
        for idx in range(1, count + 1)
    ]


class FakeFetcher(ManifestFetcher):
    def __init__(self, snapshot: Optional[ManifestSnapshot] = None, error: Optional[Exception] = None):
        self.snapshot = snapshot
        self.error = error
        self.calls = 0

    def fetch_manifest(self, source_id: str) -> ManifestSnapshot:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.snapshot


class FakeFileStore(FileStore):
    def __init__(
        self,
        failing: Iterable[str] = (),
        hook: Optional[Callable[[FileEntry], None]] = None,
    ):
        self.failing = set(failing)
        self.hook = hook
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def ensure_file(self, entry: FileEntry) -> None:
        with self._lock:
            self.calls.append(entry.path)
        if self.hook is not None:
            self.hook(entry)
        if entry.path in self.failing:
            raise EntryError(f"checksum mismatch for {entry.path}", entry)


class RecordingTokenStore(MemoryTokenStore):
    def __init__(self, initial=None, fail_on_set: bool = False):
        super().__init__(initial)
        self.fail_on_set = fail_on_set
        self.set_calls: List[tuple] = []

    def set_committed_token(self, source_id: str, token: str) -> None:
        self.set_calls.append((source_id, token))
        if self.fail_on_set:
            raise PersistError("disk full", source_id)
        super().set_committed_token(source_id, token)


def _driver(
    fetcher: ManifestFetcher,
    file_store: FileStore,
    token_store: RecordingTokenStore,
    **settings,
) -> SyncDriver:
    return SyncDriver(
        fetcher=fetcher,
        file_store=file_store,
        token_store=token_store,
        settings=SyncSettings(**settings),
        locks=SourceLocks(),
    )


def test_full_success_commits_new_token():
    entries = _entries(3)
    tokens = RecordingTokenStore({SOURCE: "v1"})
    files = FakeFileStore()
    driver = _driver(FakeFetcher(ManifestSnapshot("v2", tuple(entries))), files, tokens)

    result = driver.sync(SOURCE)

    assert result.success
    assert result.applied is True
    assert result.new_token == "v2"
    assert result.previous_token == "v1"
    assert result.entries_processed == 3
    assert tokens.get_committed_token(SOURCE) == "v2"
    assert files.calls == [entry.path for entry in entries]
    assert driver.state(SOURCE) is SyncState.IDLE


def test_entry_failure_leaves_previous_token():
    entries = _entries(3)
    tokens = RecordingTokenStore({SOURCE: "v1"})
    files = FakeFileStore(failing={entries[1].path})
    driver = _driver(FakeFetcher(ManifestSnapshot("v2", tuple(entries))), files, tokens)

    result = driver.sync(SOURCE)

    assert result.applied is False
    assert result.failed_entry == entries[1]
    assert isinstance(result.error, EntryError)
    assert result.error.source_id == SOURCE
    assert tokens.get_committed_token(SOURCE) == "v1"
    assert tokens.set_calls == []
    # fail-fast stops at the failing entry
    assert files.calls == [entries[0].path, entries[1].path]
    assert driver.state(SOURCE) is SyncState.IDLE


def test_second_sync_without_server_change_is_a_noop():
    tokens = RecordingTokenStore({SOURCE: "v1"})
    files = FakeFileStore()
    fetcher = FakeFetcher(ManifestSnapshot("v2", tuple(_entries(3))))
    driver = _driver(fetcher, files, tokens)

    first = driver.sync(SOURCE)
    calls_after_first = list(files.calls)
    second = driver.sync(SOURCE)

    assert first.applied is True
    assert second.success
    assert second.applied is False
    assert second.new_token == "v2"
    assert second.entries_processed == 0
    assert files.calls == calls_after_first
    assert tokens.set_calls == [(SOURCE, "v2")]
    assert fetcher.calls == 2


def test_first_sync_commits_from_none():
    tokens = RecordingTokenStore()
    driver = _driver(FakeFetcher(ManifestSnapshot("v1", tuple(_entries(1)))), FakeFileStore(), tokens)

    result = driver.sync(SOURCE)

    assert result.previous_token is None
    assert result.applied is True
    assert tokens.get_committed_token(SOURCE) == "v1"


def test_empty_manifest_with_new_token_commits():
    tokens = RecordingTokenStore({SOURCE: "v1"})
    driver = _driver(FakeFetcher(ManifestSnapshot("v2", ())), FakeFileStore(), tokens)

    result = driver.sync(SOURCE)

    assert result.applied is True
    assert tokens.get_committed_token(SOURCE) == "v2"


def test_third_of_five_failing_never_invokes_commit():
    entries = _entries(5)
    tokens = RecordingTokenStore({SOURCE: "v1"})
    files = FakeFileStore(failing={entries[2].path})
    driver = _driver(FakeFetcher(ManifestSnapshot("v2", tuple(entries))), files, tokens)

    result = driver.sync(SOURCE)

    assert result.failed_entry == entries[2]
    assert tokens.set_calls == []


def test_aggregate_policy_attempts_every_entry_and_reports_all_failures():
    entries = _entries(5)
    tokens = RecordingTokenStore({SOURCE: "v1"})
    files = FakeFileStore(failing={entries[1].path, entries[3].path})
    driver = _driver(
        FakeFetcher(ManifestSnapshot("v2", tuple(entries))),
        files,
        tokens,
        policy="aggregate",
    )

    result = driver.sync(SOURCE)

    assert files.calls == [entry.path for entry in entries]
    assert result.failed_entries == [entries[1], entries[3]]
    assert result.failed_entry == entries[1]
    assert result.entries_processed == 5
    assert result.message.startswith("2 entries failed")
    assert tokens.set_calls == []


@pytest.mark.parametrize("failing_index", [None, 2])
def test_entry_order_does_not_change_outcome(failing_index):
    entries = _entries(4)
    failing = {entries[failing_index].path} if failing_index is not None else set()
    outcomes = set()

    for permutation in itertools.permutations(entries):
        tokens = RecordingTokenStore({SOURCE: "v1"})
        driver = _driver(
            FakeFetcher(ManifestSnapshot("v2", permutation)),
            FakeFileStore(failing=failing),
            tokens,
        )
        result = driver.sync(SOURCE)
        outcomes.add((result.success, result.applied, tokens.get_committed_token(SOURCE)))

    expected = (True, True, "v2") if failing_index is None else (False, False, "v1")
    assert outcomes == {expected}


def test_unexpected_collaborator_exception_is_an_entry_failure_and_recovery_commits():
    entries = _entries(3)
    tokens = RecordingTokenStore({SOURCE: "v1"})

    def crash(entry: FileEntry) -> None:
        if entry.path == entries[1].path:
            raise OSError("connection reset")

    fetcher = FakeFetcher(ManifestSnapshot("v2", tuple(entries)))
    interrupted = _driver(fetcher, FakeFileStore(hook=crash), tokens).sync(SOURCE)

    assert isinstance(interrupted.error, EntryError)
    assert isinstance(interrupted.error.__cause__, OSError)
    assert interrupted.failed_entry == entries[1]
    assert tokens.get_committed_token(SOURCE) == "v1"

    recovered = _driver(fetcher, FakeFileStore(), tokens).sync(SOURCE)

    assert recovered.applied is True
    assert tokens.get_committed_token(SOURCE) == "v2"


def test_process_interrupt_during_apply_never_commits():
    entries = _entries(3)
    tokens = RecordingTokenStore({SOURCE: "v1"})

    def interrupt(entry: FileEntry) -> None:
        if entry.path == entries[1].path:
            raise KeyboardInterrupt

    driver = _driver(FakeFetcher(ManifestSnapshot("v2", tuple(entries))), FakeFileStore(hook=interrupt), tokens)

    with pytest.raises(KeyboardInterrupt):
        driver.sync(SOURCE)

    assert tokens.set_calls == []
    assert tokens.get_committed_token(SOURCE) == "v1"
    assert driver.state(SOURCE) is SyncState.IDLE


def test_cancellation_mid_apply_behaves_like_failure():
    entries = _entries(3)
    tokens = RecordingTokenStore({SOURCE: "v1"})
    cancel = threading.Event()
    files = FakeFileStore(hook=lambda entry: cancel.set())
    driver = _driver(FakeFetcher(ManifestSnapshot("v2", tuple(entries))), files, tokens)

    result = driver.sync(SOURCE, cancel_event=cancel)

    assert isinstance(result.error, SyncCancelled)
    assert result.applied is False
    assert files.calls == [entries[0].path]
    assert tokens.set_calls == []


def test_cancel_during_last_sequential_entry_skips_commit():
    entries = _entries(2)
    tokens = RecordingTokenStore({SOURCE: "v1"})
    cancel = threading.Event()

    def cancel_on_last(entry: FileEntry) -> None:
        if entry == entries[-1]:
            cancel.set()

    files = FakeFileStore(hook=cancel_on_last)
    driver = _driver(FakeFetcher(ManifestSnapshot("v2", tuple(entries))), files, tokens, workers=1)

    result = driver.sync(SOURCE, cancel_event=cancel)

    assert isinstance(result.error, SyncCancelled)
    assert result.applied is False
    assert files.calls == [entry.path for entry in entries]
    assert tokens.set_calls == []
    assert tokens.get_committed_token(SOURCE) == "v1"
    assert driver.state(SOURCE) is SyncState.IDLE


def test_fetch_error_aborts_before_any_entry_work():
    tokens = RecordingTokenStore({SOURCE: "v1"})
    files = FakeFileStore()
    driver = _driver(FakeFetcher(error=FetchError("HTTP error: 503")), files, tokens)

    result = driver.sync(SOURCE)

    assert isinstance(result.error, FetchError)
    assert result.error.source_id == SOURCE
    assert files.calls == []
    assert tokens.get_committed_token(SOURCE) == "v1"


def test_unexpected_fetch_exception_is_wrapped():
    driver = _driver(FakeFetcher(error=ValueError("bad json")), FakeFileStore(), RecordingTokenStore())

    result = driver.sync(SOURCE)

    assert isinstance(result.error, FetchError)
    assert isinstance(result.error.__cause__, ValueError)


def test_persist_error_is_surfaced():
    tokens = RecordingTokenStore({SOURCE: "v1"}, fail_on_set=True)
    driver = _driver(FakeFetcher(ManifestSnapshot("v2", tuple(_entries(2)))), FakeFileStore(), tokens)

    result = driver.sync(SOURCE)

    assert isinstance(result.error, PersistError)
    assert result.applied is False
    assert tokens.set_calls == [(SOURCE, "v2")]
    assert tokens.get_committed_token(SOURCE) == "v1"


def test_busy_source_is_rejected_without_fetching():
    locks = SourceLocks()
    fetcher = FakeFetcher(ManifestSnapshot("v2", ()))
    driver = SyncDriver(fetcher, FakeFileStore(), RecordingTokenStore(), locks=locks)

    lock = locks.get(SOURCE)
    lock.acquire()
    try:
        result = driver.sync(SOURCE)
    finally:
        lock.release()

    assert isinstance(result.error, SyncBusyError)
    assert fetcher.calls == 0


def test_concurrent_passes_on_one_source_are_single_flight():
    locks = SourceLocks()
    entered = threading.Event()
    release = threading.Event()

    def block(entry: FileEntry) -> None:
        entered.set()
        release.wait(timeout=5)

    tokens = RecordingTokenStore({SOURCE: "v1"})
    fetcher = FakeFetcher(ManifestSnapshot("v2", tuple(_entries(1))))
    first_driver = SyncDriver(fetcher, FakeFileStore(hook=block), tokens, locks=locks)
    second_driver = SyncDriver(fetcher, FakeFileStore(), tokens, locks=locks)

    results = {}
    worker = threading.Thread(target=lambda: results.setdefault("first", first_driver.sync(SOURCE)))
    worker.start()
    assert entered.wait(timeout=5)

    results["second"] = second_driver.sync(SOURCE)
    release.set()
    worker.join(timeout=5)

    assert isinstance(results["second"].error, SyncBusyError)
    assert results["first"].applied is True
    assert tokens.set_calls == [(SOURCE, "v2")]


def test_parallel_apply_commits_after_all_entries():
    entries = _entries(8)
    tokens = RecordingTokenStore({SOURCE: "v1"})
    files = FakeFileStore(hook=lambda entry: time.sleep(0.01))
    driver = _driver(FakeFetcher(ManifestSnapshot("v2", tuple(entries))), files, tokens, workers=4)

    result = driver.sync(SOURCE)

    assert result.applied is True
    assert sorted(files.calls) == sorted(entry.path for entry in entries)
    assert result.entries_processed == 8
    assert tokens.get_committed_token(SOURCE) == "v2"


def test_parallel_failure_waits_for_running_entries_and_skips_commit():
    entries = _entries(6)
    tokens = RecordingTokenStore({SOURCE: "v1"})
    active = []
    finished = []
    guard = threading.Lock()

    def slow(entry: FileEntry) -> None:
        with guard:
            active.append(entry.path)
        time.sleep(0.05)
        with guard:
            finished.append(entry.path)

    files = FakeFileStore(failing={entries[0].path}, hook=slow)
    driver = _driver(FakeFetcher(ManifestSnapshot("v2", tuple(entries))), files, tokens, workers=3)

    result = driver.sync(SOURCE)

    assert result.applied is False
    assert result.failed_entry == entries[0]
    assert tokens.set_calls == []
    # every dispatched entry had finished before sync returned
    assert sorted(active) == sorted(finished)


def test_parallel_cancellation_skips_commit():
    entries = _entries(6)
    tokens = RecordingTokenStore({SOURCE: "v1"})
    cancel = threading.Event()
    cancel.set()
    driver = _driver(FakeFetcher(ManifestSnapshot("v2", tuple(entries))), FakeFileStore(), tokens, workers=2)

    result = driver.sync(SOURCE, cancel_event=cancel)

    assert isinstance(result.error, SyncCancelled)
    assert tokens.set_calls == []


def test_state_transitions_are_reported():
    seen: List[SyncState] = []
    tokens = RecordingTokenStore({SOURCE: "v1"})
    driver = SyncDriver(
        FakeFetcher(ManifestSnapshot("v2", tuple(_entries(1)))),
        FakeFileStore(),
        tokens,
        locks=SourceLocks(),
        state_callback=lambda source_id, state: seen.append(state),
    )

    driver.sync(SOURCE)
    applied_states = list(seen)
    seen.clear()
    driver.sync(SOURCE)

    assert applied_states == [
        SyncState.FETCHING,
        SyncState.COMPARING,
        SyncState.APPLYING,
        SyncState.COMMITTING,
        SyncState.IDLE,
    ]
    assert seen == [SyncState.FETCHING, SyncState.COMPARING, SyncState.IDLE]


def test_failed_state_is_reported_before_idle():
    seen: List[SyncState] = []
    entries = _entries(2)
    driver = SyncDriver(
        FakeFetcher(ManifestSnapshot("v2", tuple(entries))),
        FakeFileStore(failing={entries[0].path}),
        RecordingTokenStore(),
        locks=SourceLocks(),
        state_callback=lambda source_id, state: seen.append(state),
    )

    driver.sync(SOURCE)

    assert seen[-2:] == [SyncState.FAILED, SyncState.IDLE]
    assert SyncState.COMMITTING not in seen


def test_raising_state_callback_does_not_break_the_pass():
    def explode(source_id: str, state: SyncState) -> None:
        raise RuntimeError("observer crashed")

    tokens = RecordingTokenStore({SOURCE: "v1"})
    driver = SyncDriver(
        FakeFetcher(ManifestSnapshot("v2", tuple(_entries(2)))),
        FakeFileStore(),
        tokens,
        locks=SourceLocks(),
        state_callback=explode,
    )

    result = driver.sync(SOURCE)

    assert result.success
    assert tokens.get_committed_token(SOURCE) == "v2"
    assert driver.state(SOURCE) is SyncState.IDLE


def test_outcomes_are_logged_with_structured_fields(caplog: pytest.LogCaptureFixture):
    entries = _entries(2)
    tokens = RecordingTokenStore({SOURCE: "v1"})
    fetcher = FakeFetcher(ManifestSnapshot("v2", tuple(entries)))
    files = FakeFileStore(failing={entries[0].path})
    driver = _driver(fetcher, files, tokens)

    with caplog.at_level(logging.DEBUG, logger="etagsync"):
        driver.sync(SOURCE)
        files.failing.clear()
        driver.sync(SOURCE)
        driver.sync(SOURCE)

    outcomes = [
        (record.source_id, record.outcome, record.token)
        for record in caplog.records
        if hasattr(record, "outcome")
    ]
    assert outcomes == [
        (SOURCE, "failed", "v1"),
        (SOURCE, "committed", "v2"),
        (SOURCE, "noop", "v2"),
    ]
    failed = next(record for record in caplog.records if getattr(record, "outcome", None) == "failed")
    assert failed.error_kind == "entry"
    states = [record.state for record in caplog.records if hasattr(record, "state")]
    assert "committing" in states
    assert states[-1] == "idle"


def test_progress_callback_counts_entries():
    progress = []
    driver = SyncDriver(
        FakeFetcher(ManifestSnapshot("v2", tuple(_entries(3)))),
        FakeFileStore(),
        RecordingTokenStore(),
        locks=SourceLocks(),
        progress_callback=lambda message, current, total: progress.append((current, total)),
    )

    driver.sync(SOURCE)

    assert progress == [(1, 3), (2, 3), (3, 3)]


def test_sync_all_runs_each_source():
    tokens = RecordingTokenStore()
    driver = _driver(FakeFetcher(ManifestSnapshot("v1", ())), FakeFileStore(), tokens)

    results = driver.sync_all(["a", "b"])

    assert [result.source_id for result in results] == ["a", "b"]
    assert tokens.get_committed_token("a") == "v1"
    assert tokens.get_committed_token("b") == "v1"


def test_result_to_dict():
    entries = _entries(2)
    driver = _driver(
        FakeFetcher(ManifestSnapshot("v2", tuple(entries))),
        FakeFileStore(failing={entries[1].path}),
        RecordingTokenStore({SOURCE: "v1"}),
    )

    data = driver.sync(SOURCE).to_dict()

    assert data["success"] is False
    assert data["applied"] is False
    assert data["error"] == "entry"
    assert data["failed_entry"]["path"] == entries[1].path
    assert data["previous_token"] == "v1"


def test_settings_from_config():
    settings = SyncSettings.from_config({"sync": {"policy": "aggregate", "workers": 0, "lock_timeout": 2}})

    assert settings.policy == "aggregate"
    assert settings.workers == 1
    assert settings.lock_timeout == 2.0
    with pytest.raises(ValueError):
        SyncSettings.from_config({"sync": {"policy": "sometimes"}})
