from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from persona_chat.memory.models import utc_now


@runtime_checkable
class KeyValueStore(Protocol):
    async def get(self, key: str, default: Any = None) -> Any: ...

    async def set(self, key: str, value: Any) -> None: ...


class SqliteKeyValueStore:
    """JSON values keyed by name in a single sqlite table."""

    def __init__(self, db_path: str):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._initialize_schema()

    def close(self) -> None:
        self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        return self._conn.execute(query, params)

    def executemany(self, query: str, seq_of_params: list[tuple[Any, ...]]) -> sqlite3.Cursor:
        return self._conn.executemany(query, seq_of_params)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            yield
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise

    def read(self, key: str, default: Any = None) -> Any:
        row = self._conn.execute("SELECT value_json FROM kv WHERE key = ? LIMIT 1", (key,)).fetchone()
        if row is None:
            return default
        return json.loads(row["value_json"])

    def write_many(self, items: list[tuple[str, Any]]) -> None:
        now = utc_now()
        params = [(key, json.dumps(value, ensure_ascii=True), now) for key, value in items]
        with self.transaction():
            self._conn.executemany(
                """
                INSERT INTO kv (key, value_json, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, updated_at = excluded.updated_at
                """,
                params,
            )

    async def get(self, key: str, default: Any = None) -> Any:
        return self.read(key, default)

    async def set(self, key: str, value: Any) -> None:
        self.write_many([(key, value)])

    def keys(self) -> list[str]:
        return [row["key"] for row in self._conn.execute("SELECT key FROM kv ORDER BY key").fetchall()]

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            """
        )
        self._conn.commit()
