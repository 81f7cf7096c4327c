"""
Client-local durable key-value storage.
Mirrors browser local storage: string values, whole-value replacement per key.
Default implementation uses SQLite; an in-memory variant serves tests and
throwaway sessions.
"""
from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

from .observability import get_logger

logger = get_logger(__name__)

# Index in this tuple + 1 is the schema version recorded in PRAGMA user_version.
_SCHEMA_MIGRATIONS: tuple[tuple[str, ...], ...] = (
    (
        """
        CREATE TABLE IF NOT EXISTS local_storage (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """,
    ),
    (
        "ALTER TABLE local_storage ADD COLUMN updated_at TEXT NOT NULL DEFAULT ''",
    ),
)


class KeyValueStorage(Protocol):
    def get_item(self, key: str) -> str | None:
        ...

    def set_item(self, key: str, value: str) -> None:
        ...

    def remove_item(self, key: str) -> None:
        ...


class InMemoryKeyValueStorage:
    def __init__(self, initial: dict[str, str] | None = None):
        self._items: dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> str | None:
        return self._items.get(str(key))

    def set_item(self, key: str, value: str) -> None:
        self._items[str(key)] = str(value)

    def remove_item(self, key: str) -> None:
        self._items.pop(str(key), None)


class SqliteKeyValueStorage:
    """Persistent key-value store backed by a single SQLite table."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = sqlite3.connect(
            str(self.db_path), check_same_thread=False, timeout=30.0
        )
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error:
            logger.warning("local_storage_wal_unavailable", db_path=str(self.db_path))
        self._ensure_schema()

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise RuntimeError("local storage connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _ensure_schema(self):
        with self._connection() as conn:
            current = int(conn.execute("PRAGMA user_version").fetchone()[0])
            for version, statements in enumerate(_SCHEMA_MIGRATIONS, start=1):
                if version <= current:
                    continue
                for statement in statements:
                    conn.execute(statement)
                conn.execute(f"PRAGMA user_version = {version}")
                logger.info("local_storage_migration_applied", version=version, db_path=str(self.db_path))

    @property
    def schema_version(self) -> int:
        with self._connection() as conn:
            return int(conn.execute("PRAGMA user_version").fetchone()[0])

    def get_item(self, key: str) -> str | None:
        with self._connection() as conn:
            row = conn.execute("SELECT value FROM local_storage WHERE key = ?", (str(key),)).fetchone()
        return None if row is None else str(row[0])

    def set_item(self, key: str, value: str) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO local_storage (key, value, updated_at)
                VALUES (?, ?, datetime('now'))
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (str(key), str(value)),
            )

    def remove_item(self, key: str) -> None:
        with self._connection() as conn:
            conn.execute("DELETE FROM local_storage WHERE key = ?", (str(key),))

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.commit()
            except sqlite3.Error:
                logger.warning("local_storage_final_commit_failed", db_path=str(self.db_path))
            self._conn.close()
            self._conn = None
