"""Persistent key-value stores backing the session record."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Protocol

TOKEN_KEY = "ra_admin_token"
ROLE_KEY = "ra_admin_role"
USER_KEY = "ra_admin_user"
REFRESH_KEY = "ra_admin_refresh"
EXPIRES_AT_KEY = "ra_admin_expires_at"

SESSION_KEYS = (TOKEN_KEY, ROLE_KEY, USER_KEY, REFRESH_KEY, EXPIRES_AT_KEY)


class KeyValueStore(Protocol):
    """String-keyed store with a single logical namespace."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class SqliteKeyValueStore:
    """SQLite-backed store so a session survives process restarts.

    Writes are single statements without any cross-process locking; two
    processes sharing one database file can overwrite each other's session.
    """

    def __init__(self, *, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._schema_ready = False

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        if not self._schema_ready:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self._db_path)
        if not self._schema_ready:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL)")
            conn.commit()
            self._schema_ready = True
        return conn

    def get(self, key: str) -> str | None:
        conn = self._connect()
        try:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        return None if row is None else str(row[0])

    def set(self, key: str, value: str) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "INSERT INTO kv (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, value),
                )
        finally:
            conn.close()

    def remove(self, key: str) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        finally:
            conn.close()


__all__ = [
    "EXPIRES_AT_KEY",
    "REFRESH_KEY",
    "ROLE_KEY",
    "SESSION_KEYS",
    "TOKEN_KEY",
    "USER_KEY",
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "SqliteKeyValueStore",
]
