"""SQLite-backed single-collection stores for the prompt library and share handoff.

Beginner terms:
- Collection: one table holding JSON documents addressed by a string key.
- Upsert: insert a row, or update it in place when the key already exists.
- Read-then-delete: fetch a row and remove it inside one transaction.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from .models import PromptRecord

logger = logging.getLogger(__name__)

_STORE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")


class StorageError(RuntimeError):
    """Raised when a durable store read or write fails."""


class CollectionStore(Protocol):
    """Durable key-value collection with single-key operations only."""

    store_name: str

    def migrate(self) -> None: ...

    def get(self, key: str) -> dict[str, Any] | None: ...

    def get_all(self) -> list[dict[str, Any]]: ...

    def put(self, key: str, value: dict[str, Any]) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear(self) -> None: ...

    def take(self, key: str) -> dict[str, Any] | None: ...


class SqliteCollectionStore:
    """Thread-safe SQLite collection; one table per store name."""

    def __init__(self, db_path: Path | str, store_name: str) -> None:
        if not _STORE_NAME_PATTERN.match(store_name):
            raise ValueError(f"Invalid store name: {store_name!r}")
        self.db_path = Path(db_path).expanduser()
        self.store_name = store_name
        self._lock = threading.Lock()
        self.migrate()

    def migrate(self) -> None:
        """Create the collection table if it does not already exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock, self._connect() as conn:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS "{self.store_name}" (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """)

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f'SELECT value_json FROM "{self.store_name}" WHERE key = ?',
                (key,),
            ).fetchone()
        if row is None:
            return None
        return _decode(row["value_json"])

    def get_all(self) -> list[dict[str, Any]]:
        """Return every value in first-insert order."""
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f'SELECT value_json FROM "{self.store_name}" ORDER BY rowid ASC'
            ).fetchall()
        return [_decode(row["value_json"]) for row in rows]

    def put(self, key: str, value: dict[str, Any]) -> None:
        """Last-writer-wins upsert; an updated key keeps its original position."""
        payload = json.dumps(value, ensure_ascii=False)
        now = datetime.now(tz=UTC).isoformat()
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO "{self.store_name}" (key, value_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE
                SET value_json = excluded.value_json,
                    updated_at = excluded.updated_at
                """,
                (key, payload, now),
            )

    def delete(self, key: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(f'DELETE FROM "{self.store_name}" WHERE key = ?', (key,))

    def clear(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(f'DELETE FROM "{self.store_name}"')

    def take(self, key: str) -> dict[str, Any] | None:
        """Read and delete one key in a single transaction."""
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f'SELECT value_json FROM "{self.store_name}" WHERE key = ?',
                (key,),
            ).fetchone()
            if row is None:
                return None
            conn.execute(f'DELETE FROM "{self.store_name}" WHERE key = ?', (key,))
        return _decode(row["value_json"])

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, roll back and wrap errors on failure."""
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as exc:
            raise StorageError(f"Could not open store {self.store_name}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            logger.error("store event=error store=%s reason=%s", self.store_name, exc)
            raise StorageError(f"Store {self.store_name} operation failed: {exc}") from exc
        finally:
            conn.close()


class InMemoryCollectionStore:
    """In-memory collection for tests and ephemeral runs."""

    def __init__(self, store_name: str = "memory") -> None:
        self.store_name = store_name
        self._items: dict[str, dict[str, Any]] = {}

    def migrate(self) -> None:
        return None

    def get(self, key: str) -> dict[str, Any] | None:
        value = self._items.get(key)
        return json.loads(json.dumps(value)) if value is not None else None

    def get_all(self) -> list[dict[str, Any]]:
        return [json.loads(json.dumps(value)) for value in self._items.values()]

    def put(self, key: str, value: dict[str, Any]) -> None:
        self._items[key] = json.loads(json.dumps(value))

    def delete(self, key: str) -> None:
        self._items.pop(key, None)

    def clear(self) -> None:
        self._items.clear()

    def take(self, key: str) -> dict[str, Any] | None:
        return self._items.pop(key, None)


class PromptLibraryStore:
    """The durable library: prompt records keyed by their own id."""

    STORE_NAME = "prompts"

    def __init__(self, collection: CollectionStore) -> None:
        self.collection = collection

    def put(self, record: PromptRecord) -> None:
        self.collection.put(record.id, record.model_dump(mode="json"))

    def get(self, record_id: str) -> PromptRecord | None:
        raw = self.collection.get(record_id)
        return PromptRecord.model_validate(raw) if raw is not None else None

    def get_all(self) -> list[PromptRecord]:
        """Return records newest first."""
        records = [PromptRecord.model_validate(raw) for raw in self.collection.get_all()]
        records.reverse()
        return records

    def delete(self, record_id: str) -> None:
        self.collection.delete(record_id)

    def clear(self) -> None:
        self.collection.clear()


def _decode(raw: str) -> dict[str, Any]:
    parsed = json.loads(raw)
    if isinstance(parsed, dict):
        return parsed
    raise StorageError("Stored value is not a JSON object")
