"""Build sync drivers and collaborators from a configuration bundle."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from ..configuration import ConfigurationBundle
from .collaborators import TokenStore
from .driver import SyncDriver, SyncSettings
from .fetch import HttpManifestFetcher
from .state import JsonTokenStore, MemoryTokenStore, SqliteTokenStore
from .storage import LocalFileStore

logger = logging.getLogger("etagsync.sync.factory")


def _sync_config(bundle: ConfigurationBundle) -> Dict[str, Any]:
    return bundle.merged.get("sync", {}) if bundle.merged else {}


def create_token_store(bundle: ConfigurationBundle) -> TokenStore:
    """Create the configured committed-token backend."""
    sync_config = _sync_config(bundle)
    backend = str(sync_config.get("state_backend", "json"))
    state_path = bundle.home_dir / str(sync_config.get("state_path", "state/committed_tokens.json"))

    if backend == "json":
        return JsonTokenStore(state_path)
    if backend == "sqlite":
        store = SqliteTokenStore(state_path.with_suffix(".db"))
        store.initialize()
        return store
    if backend == "memory":
        return MemoryTokenStore()
    raise ValueError(f"Unknown state backend: {backend}")


def resolve_target_dir(bundle: ConfigurationBundle, source_id: str) -> Path:
    raw = bundle.source_config(source_id).get("target_dir") or str(Path("files") / source_id)
    target = Path(raw).expanduser()
    return target if target.is_absolute() else bundle.home_dir / target


def build_driver(
    bundle: ConfigurationBundle,
    source_id: str,
    token_store: Optional[TokenStore] = None,
) -> SyncDriver:
    """Wire a driver for one configured source."""
    source = bundle.source_config(source_id)
    if not source:
        raise KeyError(f"Unknown sync source '{source_id}'")

    settings = SyncSettings.from_config(bundle.merged)
    fetcher = HttpManifestFetcher(
        {source_id: str(source.get("manifest_url", ""))},
        timeout=settings.fetch_timeout,
    )
    file_store = LocalFileStore(resolve_target_dir(bundle, source_id), timeout=settings.file_timeout)
    logger.debug("Built driver for %s -> %s", source_id, file_store.root)
    return SyncDriver(
        fetcher=fetcher,
        file_store=file_store,
        token_store=token_store or create_token_store(bundle),
        settings=settings,
    )


__all__ = ["build_driver", "create_token_store", "resolve_target_dir"]
