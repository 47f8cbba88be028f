"""
Persistence for retrieval chunks, keyed by scope and source key.
"""
from __future__ import annotations

import sqlite3
from typing import Iterable, Protocol

from .db_migrations import SqliteMigration
from .models import RagChunk, RagScopeType
from .observability import get_logger
from .sqlite_store import SqliteStore, dump_vector, load_vector

logger = get_logger(__name__)


class RagChunkStore(Protocol):
    async def load_rag_chunks_for_scope(self, scope_type: RagScopeType, scope_id: str) -> list[RagChunk]:
        ...

    async def load_rag_chunks_for_source(
        self, scope_type: RagScopeType, scope_id: str, source_key: str
    ) -> list[RagChunk]:
        ...

    async def save_rag_chunks(self, chunks: list[RagChunk]):
        ...

    async def delete_rag_chunks_for_scope(self, scope_type: RagScopeType, scope_id: str):
        ...

    async def delete_rag_chunks_for_source(self, scope_type: RagScopeType, scope_id: str, source_key: str):
        ...

    async def replace_source_chunks(
        self, scope_type: RagScopeType, scope_id: str, source_key: str, chunks: list[RagChunk]
    ):
        ...


_SELECT_COLUMNS = """
    id, scope_type, scope_id, source_key, attachment_id, attachment_name, chunk_index,
    chunk_text, chunk_token_estimate, embedding, embedding_model, created_at, updated_at
"""


def _row_to_chunk(row: sqlite3.Row) -> RagChunk:
    return RagChunk(
        id=row["id"],
        scope_type=row["scope_type"],
        scope_id=row["scope_id"],
        source_key=row["source_key"],
        attachment_id=row["attachment_id"],
        attachment_name=row["attachment_name"],
        chunk_index=int(row["chunk_index"]),
        chunk_text=row["chunk_text"],
        chunk_token_estimate=int(row["chunk_token_estimate"]),
        embedding=load_vector(row["embedding"]),
        embedding_model=row["embedding_model"],
        created_at=int(row["created_at"]),
        updated_at=int(row["updated_at"]),
    )


class ChunkRegistry(SqliteStore):
    """SQLite-backed chunk store; a source's chunk set is replaced in one transaction."""

    component = "chunk_registry"

    def migrations(self) -> list[SqliteMigration]:
        return [
            SqliteMigration(
                version=1,
                name="create_rag_chunks_table",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS rag_chunks (
                        id TEXT NOT NULL,
                        scope_type TEXT NOT NULL CHECK(scope_type IN ('conversation', 'project')),
                        scope_id TEXT NOT NULL,
                        source_key TEXT NOT NULL,
                        attachment_id TEXT NOT NULL,
                        attachment_name TEXT NOT NULL,
                        chunk_index INTEGER NOT NULL,
                        chunk_text TEXT NOT NULL,
                        chunk_token_estimate INTEGER NOT NULL DEFAULT 0,
                        embedding TEXT,
                        embedding_model TEXT,
                        created_at INTEGER NOT NULL,
                        updated_at INTEGER NOT NULL,
                        PRIMARY KEY(scope_type, scope_id, id)
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_rag_chunks_scope ON rag_chunks(scope_type, scope_id)",
                    "CREATE INDEX IF NOT EXISTS idx_rag_chunks_source ON rag_chunks(scope_type, scope_id, source_key)",
                ),
            ),
        ]

    @staticmethod
    def _insert(conn: sqlite3.Connection, chunks: Iterable[RagChunk]):
        conn.executemany(
            """
            INSERT OR REPLACE INTO rag_chunks (
                id, scope_type, scope_id, source_key, attachment_id, attachment_name, chunk_index,
                chunk_text, chunk_token_estimate, embedding, embedding_model, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    chunk.id,
                    chunk.scope_type,
                    chunk.scope_id,
                    chunk.source_key,
                    chunk.attachment_id,
                    chunk.attachment_name,
                    chunk.chunk_index,
                    chunk.chunk_text,
                    chunk.chunk_token_estimate,
                    dump_vector(chunk.embedding),
                    chunk.embedding_model,
                    chunk.created_at,
                    chunk.updated_at,
                )
                for chunk in chunks
            ],
        )

    # --- synchronous API -------------------------------------------------
    def scope_chunks(self, scope_type: RagScopeType, scope_id: str) -> list[RagChunk]:
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM rag_chunks
                WHERE scope_type = ? AND scope_id = ?
                ORDER BY created_at, source_key, chunk_index
                """,
                (scope_type, scope_id),
            ).fetchall()
        return [_row_to_chunk(row) for row in rows]

    def source_chunks(self, scope_type: RagScopeType, scope_id: str, source_key: str) -> list[RagChunk]:
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM rag_chunks
                WHERE scope_type = ? AND scope_id = ? AND source_key = ?
                ORDER BY chunk_index
                """,
                (scope_type, scope_id, source_key),
            ).fetchall()
        return [_row_to_chunk(row) for row in rows]

    def save_chunks(self, chunks: list[RagChunk]):
        if not chunks:
            return
        with self._connection() as conn:
            self._insert(conn, chunks)

    def delete_scope(self, scope_type: RagScopeType, scope_id: str) -> int:
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM rag_chunks WHERE scope_type = ? AND scope_id = ?",
                (scope_type, scope_id),
            )
        logger.info("rag_scope_cleared", scope_type=scope_type, scope_id=scope_id, deleted=cursor.rowcount)
        return cursor.rowcount

    def delete_source(self, scope_type: RagScopeType, scope_id: str, source_key: str) -> int:
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM rag_chunks WHERE scope_type = ? AND scope_id = ? AND source_key = ?",
                (scope_type, scope_id, source_key),
            )
        return cursor.rowcount

    def replace_source(self, scope_type: RagScopeType, scope_id: str, source_key: str, chunks: list[RagChunk]):
        with self._connection() as conn:
            conn.execute(
                "DELETE FROM rag_chunks WHERE scope_type = ? AND scope_id = ? AND source_key = ?",
                (scope_type, scope_id, source_key),
            )
            self._insert(conn, chunks)
        logger.info(
            "rag_source_replaced",
            scope_type=scope_type,
            scope_id=scope_id,
            source_key=source_key,
            chunks=len(chunks),
        )

    # --- async collaborator API ------------------------------------------
    async def load_rag_chunks_for_scope(self, scope_type: RagScopeType, scope_id: str) -> list[RagChunk]:
        return await self._run(self.scope_chunks, scope_type, scope_id)

    async def load_rag_chunks_for_source(
        self, scope_type: RagScopeType, scope_id: str, source_key: str
    ) -> list[RagChunk]:
        return await self._run(self.source_chunks, scope_type, scope_id, source_key)

    async def save_rag_chunks(self, chunks: list[RagChunk]):
        await self._run(self.save_chunks, list(chunks))

    async def delete_rag_chunks_for_scope(self, scope_type: RagScopeType, scope_id: str):
        await self._run(self.delete_scope, scope_type, scope_id)

    async def delete_rag_chunks_for_source(self, scope_type: RagScopeType, scope_id: str, source_key: str):
        await self._run(self.delete_source, scope_type, scope_id, source_key)

    async def replace_source_chunks(
        self, scope_type: RagScopeType, scope_id: str, source_key: str, chunks: list[RagChunk]
    ):
        await self._run(self.replace_source, scope_type, scope_id, source_key, list(chunks))
