"""Committed-token persistence backends."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from .collaborators import TokenStore
from .errors import PersistError

logger = logging.getLogger("etagsync.sync.state")


class MemoryTokenStore(TokenStore):
    """Process-local token store. Nothing survives a restart."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._tokens: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get_committed_token(self, source_id: str) -> Optional[str]:
        with self._lock:
            return self._tokens.get(source_id)

    def set_committed_token(self, source_id: str, token: str) -> None:
        with self._lock:
            self._tokens[source_id] = token


class JsonTokenStore(TokenStore):
    """Stores all committed tokens in one JSON document.

    Writes go to a temporary file in the same directory which is fsynced and
    then renamed over the previous document, so a crash leaves either the old
    or the new mapping on disk.
    """

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()

    def get_committed_token(self, source_id: str) -> Optional[str]:
        with self._lock:
            return self._read().get(source_id)

    def set_committed_token(self, source_id: str, token: str) -> None:
        with self._lock:
            tokens = self._read()
            tokens[source_id] = token
            self._write(tokens)
        logger.debug("Committed token %s for %s in %s", token, source_id, self.path)

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistError(f"Failed to read token store '{self.path}': {exc}") from exc
        if not isinstance(data, dict):
            raise PersistError(f"Token store '{self.path}' does not contain a mapping.")
        return {str(key): str(value) for key, value in data.items()}

    def _write(self, tokens: Dict[str, str]) -> None:
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(tokens, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as exc:
            raise PersistError(f"Failed to write token store '{self.path}': {exc}") from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.warning("Could not remove temporary file %s", tmp_name)


class SqliteTokenStore(TokenStore):
    """Token store backed by a single SQLite table."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def initialize(self) -> None:
        """Open the database and create the table."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            with self._conn:
                self._conn.execute("""
                    CREATE TABLE IF NOT EXISTS committed_tokens (
                        source_id TEXT PRIMARY KEY,
                        token TEXT NOT NULL,
                        committed_at TEXT NOT NULL
                    )
                """)
        except (OSError, sqlite3.Error) as exc:
            raise PersistError(f"Failed to open token database '{self.db_path}': {exc}") from exc

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self.initialize()
        return self._conn

    def get_committed_token(self, source_id: str) -> Optional[str]:
        with self._lock:
            try:
                row = self._connection().execute(
                    "SELECT token FROM committed_tokens WHERE source_id = ?",
                    (source_id,),
                ).fetchone()
            except sqlite3.Error as exc:
                raise PersistError(f"Failed to read token for '{source_id}': {exc}", source_id) from exc
        return row[0] if row else None

    def set_committed_token(self, source_id: str, token: str) -> None:
        committed_at = datetime.now(timezone.utc).isoformat()
        with self._lock:
            conn = self._connection()
            try:
                with conn:
                    conn.execute(
                        """
                        INSERT INTO committed_tokens (source_id, token, committed_at)
                        VALUES (?, ?, ?)
                        ON CONFLICT(source_id) DO UPDATE SET
                            token = excluded.token,
                            committed_at = excluded.committed_at
                        """,
                        (source_id, token, committed_at),
                    )
            except sqlite3.Error as exc:
                raise PersistError(f"Failed to commit token for '{source_id}': {exc}", source_id) from exc


__all__ = ["MemoryTokenStore", "JsonTokenStore", "SqliteTokenStore"]
