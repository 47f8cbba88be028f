"""
Persistence for extracted memories, one row per (scope, normalized text).
"""
from __future__ import annotations

import sqlite3
from typing import Protocol

from .db_migrations import SqliteMigration
from .models import MemoryItem, MemoryScopeType
from .observability import get_logger
from .sqlite_store import SqliteStore, dump_vector, load_vector

logger = get_logger(__name__)


class MemoryStore(Protocol):
    async def load_memories_for_scope(self, scope_type: MemoryScopeType, scope_id: str) -> list[MemoryItem]:
        ...

    async def find_memory_by_normalized_text(
        self, scope_type: MemoryScopeType, scope_id: str, normalized_text: str
    ) -> MemoryItem | None:
        ...

    async def save_memory(self, memory: MemoryItem):
        ...

    async def delete_memory(self, memory_id: str):
        ...


_SELECT_COLUMNS = """
    id, scope_type, scope_id, text, normalized_text, category, confidence, pinned,
    source_conversation_id, source_node_id, source_message_id, source_role,
    embedding, embedding_model, created_at, updated_at, last_used_at
"""


def _row_to_memory(row: sqlite3.Row) -> MemoryItem:
    return MemoryItem(
        id=row["id"],
        scope_type=row["scope_type"],
        scope_id=row["scope_id"],
        text=row["text"],
        normalized_text=row["normalized_text"],
        category=row["category"],
        confidence=float(row["confidence"]),
        pinned=bool(row["pinned"]),
        source_conversation_id=row["source_conversation_id"],
        source_node_id=row["source_node_id"],
        source_message_id=row["source_message_id"],
        source_role=row["source_role"],
        embedding=load_vector(row["embedding"]),
        embedding_model=row["embedding_model"],
        created_at=int(row["created_at"]),
        updated_at=int(row["updated_at"]),
        last_used_at=row["last_used_at"],
    )


class SqliteMemoryStore(SqliteStore):
    """SQLite-backed memory store; the normalized-text key is unique per scope."""

    component = "memory_store"

    def migrations(self) -> list[SqliteMigration]:
        return [
            SqliteMigration(
                version=1,
                name="create_memories_table",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS memories (
                        id TEXT PRIMARY KEY,
                        scope_type TEXT NOT NULL CHECK(scope_type IN ('conversation', 'project', 'user')),
                        scope_id TEXT NOT NULL,
                        text TEXT NOT NULL,
                        normalized_text TEXT NOT NULL,
                        category TEXT NOT NULL,
                        confidence REAL NOT NULL,
                        pinned INTEGER NOT NULL DEFAULT 0,
                        source_conversation_id TEXT,
                        source_node_id TEXT,
                        source_message_id TEXT,
                        source_role TEXT,
                        embedding TEXT,
                        embedding_model TEXT,
                        created_at INTEGER NOT NULL,
                        updated_at INTEGER NOT NULL,
                        last_used_at INTEGER
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_memories_scope ON memories(scope_type, scope_id)",
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_memories_normalized
                    ON memories(scope_type, scope_id, normalized_text)
                    """,
                ),
            ),
        ]

    def scope_memories(self, scope_type: MemoryScopeType, scope_id: str) -> list[MemoryItem]:
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM memories
                WHERE scope_type = ? AND scope_id = ?
                ORDER BY pinned DESC, updated_at DESC
                """,
                (scope_type, scope_id),
            ).fetchall()
        return [_row_to_memory(row) for row in rows]

    def find_by_normalized_text(
        self, scope_type: MemoryScopeType, scope_id: str, normalized_text: str
    ) -> MemoryItem | None:
        with self._connection() as conn:
            row = conn.execute(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM memories
                WHERE scope_type = ? AND scope_id = ? AND normalized_text = ?
                """,
                (scope_type, scope_id, normalized_text),
            ).fetchone()
        return _row_to_memory(row) if row else None

    def put(self, memory: MemoryItem):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO memories (
                    id, scope_type, scope_id, text, normalized_text, category, confidence, pinned,
                    source_conversation_id, source_node_id, source_message_id, source_role,
                    embedding, embedding_model, created_at, updated_at, last_used_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    text = excluded.text,
                    normalized_text = excluded.normalized_text,
                    category = excluded.category,
                    confidence = excluded.confidence,
                    pinned = excluded.pinned,
                    source_conversation_id = excluded.source_conversation_id,
                    source_node_id = excluded.source_node_id,
                    source_message_id = excluded.source_message_id,
                    source_role = excluded.source_role,
                    embedding = excluded.embedding,
                    embedding_model = excluded.embedding_model,
                    updated_at = excluded.updated_at,
                    last_used_at = excluded.last_used_at
                """,
                (
                    memory.id,
                    memory.scope_type,
                    memory.scope_id,
                    memory.text,
                    memory.normalized_text,
                    memory.category,
                    float(memory.confidence),
                    1 if memory.pinned else 0,
                    memory.source_conversation_id,
                    memory.source_node_id,
                    memory.source_message_id,
                    memory.source_role,
                    dump_vector(memory.embedding),
                    memory.embedding_model,
                    memory.created_at,
                    memory.updated_at,
                    memory.last_used_at,
                ),
            )

    def delete(self, memory_id: str):
        with self._connection() as conn:
            conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))

    def clear_scope(self, scope_type: MemoryScopeType, scope_id: str) -> int:
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM memories WHERE scope_type = ? AND scope_id = ?",
                (scope_type, scope_id),
            )
        logger.info("memory_scope_cleared", scope_type=scope_type, scope_id=scope_id, deleted=cursor.rowcount)
        return cursor.rowcount

    async def load_memories_for_scope(self, scope_type: MemoryScopeType, scope_id: str) -> list[MemoryItem]:
        return await self._run(self.scope_memories, scope_type, scope_id)

    async def find_memory_by_normalized_text(
        self, scope_type: MemoryScopeType, scope_id: str, normalized_text: str
    ) -> MemoryItem | None:
        return await self._run(self.find_by_normalized_text, scope_type, scope_id, normalized_text)

    async def save_memory(self, memory: MemoryItem):
        await self._run(self.put, memory)

    async def delete_memory(self, memory_id: str):
        await self._run(self.delete, memory_id)

    async def clear_memories_for_scope(self, scope_type: MemoryScopeType, scope_id: str):
        await self._run(self.clear_scope, scope_type, scope_id)
