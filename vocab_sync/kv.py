"""Key-value backends for the local replica."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from copy import deepcopy
from pathlib import Path
from typing import Any, Protocol


class KeyValueStore(Protocol):
    """Minimal storage interface the local store is written against."""

    def get(self, key: str) -> Any | None: ...

    def get_many(self, keys: Iterable[str]) -> dict[str, Any]: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> list[str]: ...

    def write_batch(self, sets: Mapping[str, Any] | None = None, removes: Iterable[str] = ()) -> None:
        """Apply every write and removal together or not at all."""
        ...


class MemoryKeyValueStore:
    """Dict-backed store used by tests and throwaway replicas."""

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = deepcopy(dict(initial or {}))

    def get(self, key: str) -> Any | None:
        value = self._data.get(key)
        return deepcopy(value)

    def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        return {key: deepcopy(self._data[key]) for key in keys if key in self._data}

    def set(self, key: str, value: Any) -> None:
        self._data[key] = deepcopy(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(key for key in self._data if key.startswith(prefix))

    def write_batch(self, sets: Mapping[str, Any] | None = None, removes: Iterable[str] = ()) -> None:
        staged = {key: deepcopy(value) for key, value in (sets or {}).items()}
        for key in removes:
            self._data.pop(key, None)
        self._data.update(staged)


class SQLiteKeyValueStore:
    """SQLite-backed store keeping one JSON document per key."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._is_memory = str(path) == ":memory:"
        if not self._is_memory:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._shared_conn: sqlite3.Connection | None = None
        self._ensure_schema()

    # ------------------------------------------------------------------
    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self._is_memory:
            if self._shared_conn is None:
                self._shared_conn = sqlite3.connect(":memory:")
                self._shared_conn.row_factory = sqlite3.Row
            yield self._shared_conn
        else:
            conn = sqlite3.connect(self.path)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_items (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.commit()

    # ------------------------------------------------------------------
    def get(self, key: str) -> Any | None:
        with self._connection() as conn:
            row = conn.execute("SELECT value FROM kv_items WHERE key = ?", (key,)).fetchone()
        if not row:
            return None
        return json.loads(row["value"])

    def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        wanted = list(dict.fromkeys(keys))
        if not wanted:
            return {}
        placeholders = ",".join("?" for _ in wanted)
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT key, value FROM kv_items WHERE key IN ({placeholders})",
                tuple(wanted),
            ).fetchall()
        return {row["key"]: json.loads(row["value"]) for row in rows}

    def set(self, key: str, value: Any) -> None:
        self.write_batch({key: value})

    def remove(self, key: str) -> None:
        self.write_batch(removes=(key,))

    def keys(self, prefix: str = "") -> list[str]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT key FROM kv_items WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        return [row["key"] for row in rows]

    def write_batch(self, sets: Mapping[str, Any] | None = None, removes: Iterable[str] = ()) -> None:
        encoded = [(key, json.dumps(value, separators=(",", ":"), ensure_ascii=False)) for key, value in (sets or {}).items()]
        with self._connection() as conn:
            try:
                conn.executemany("DELETE FROM kv_items WHERE key = ?", ((key,) for key in removes))
                conn.executemany("INSERT OR REPLACE INTO kv_items(key, value) VALUES(?, ?)", encoded)
            except sqlite3.Error:
                conn.rollback()
                raise
            conn.commit()

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None


__all__ = ["KeyValueStore", "MemoryKeyValueStore", "SQLiteKeyValueStore"]
