"""
Shared SQLite connection handling for the persistence collaborators.
"""
from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, TypeVar

from .config import CACHE_DIR
from .db_migrations import SqliteMigration, apply_sqlite_migrations

T = TypeVar("T")

DEFAULT_DB_PATH = CACHE_DIR / "graphchat.sqlite"


def dump_vector(vector) -> str | None:
    if not vector:
        return None
    return json.dumps([float(value) for value in vector])


def load_vector(raw: str | None) -> tuple[float, ...] | None:
    if not raw:
        return None
    try:
        values = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return None
    if not isinstance(values, list) or not values:
        return None
    return tuple(float(value) for value in values)


class SqliteStore:
    """One connection per store, serialized by an RLock; async methods hop to a worker thread."""

    component = ""

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect()
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.Error:
            pass
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise RuntimeError(f"{self.component} connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.commit()
            except sqlite3.Error:
                pass
            self._conn.close()
            self._conn = None

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass

    def migrations(self) -> list[SqliteMigration]:
        raise NotImplementedError

    def _ensure_schema(self):
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component=self.component, migrations=self.migrations())

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(func, *args)
