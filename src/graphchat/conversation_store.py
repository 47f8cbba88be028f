"""
SQLite persistence for conversations: the conversation row, its nodes,
messages and edges. A save replaces the whole conversation in one transaction.
"""
from __future__ import annotations

import dataclasses
import json
import sqlite3
from dataclasses import dataclass
from typing import Any

from .conversation_state import ConversationState
from .db_migrations import SqliteMigration
from .models import (
    ContextSummary,
    Conversation,
    ConversationEdge,
    ConversationNode,
    FileAttachment,
    Message,
    NodeId,
)
from .observability import get_logger
from .settings import AttachmentProcessingSettings, ContextSettings
from .sqlite_store import SqliteStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class MessageSearchResult:
    message_id: str
    node_id: NodeId
    conversation_id: str
    role: str
    content: str
    created_at: int
    conversation_title: str
    project_id: str | None = None
    is_reply: bool = False
    parent_node_id: NodeId | None = None


def _dump_attachments(attachments) -> str:
    return json.dumps([dataclasses.asdict(item) for item in attachments])


def _load_attachments(raw: str | None) -> tuple[FileAttachment, ...]:
    if not raw:
        return ()
    return tuple(FileAttachment(**item) for item in json.loads(raw))


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        node_id=row["node_id"],
        role=row["role"],
        content=row["content"],
        created_at=int(row["created_at"]),
        is_streaming=bool(row["is_streaming"]),
        model=row["model"],
        token_count=row["token_count"],
        finish_reason=row["finish_reason"],
        attachments=_load_attachments(row["attachments"]),
        is_attachment_context=bool(row["is_attachment_context"]),
        is_custom_instruction=bool(row["is_custom_instruction"]),
        is_project_instruction=bool(row["is_project_instruction"]),
        is_project_attachment_context=bool(row["is_project_attachment_context"]),
    )


def _row_to_node(row: sqlite3.Row, messages: tuple[Message, ...]) -> ConversationNode:
    summary = None
    if row["context_summary"]:
        payload: dict[str, Any] = json.loads(row["context_summary"])
        summary = ContextSummary(content=payload["content"], created_at=int(payload["created_at"]))
    return ConversationNode(
        id=row["id"],
        conversation_id=row["conversation_id"],
        messages=messages,
        status=row["status"],
        error=row["error"],
        created_at=int(row["created_at"]),
        updated_at=int(row["updated_at"]),
        label=row["label"],
        branched_from_message_id=row["branched_from_message_id"],
        is_reply=bool(row["is_reply"]),
        parent_node_id=row["parent_node_id"],
        model=row["model"],
        context_summary=summary,
    )


class SqliteConversationStore(SqliteStore):
    component = "conversation_store"

    def migrations(self) -> list[SqliteMigration]:
        return [
            SqliteMigration(
                version=1,
                name="create_conversation_tables",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS conversations (
                        id TEXT PRIMARY KEY,
                        title TEXT NOT NULL,
                        root_node_id TEXT NOT NULL,
                        system_prompt TEXT NOT NULL DEFAULT '',
                        model TEXT,
                        project_id TEXT,
                        context_settings TEXT NOT NULL,
                        attachment_processing TEXT NOT NULL,
                        attachments TEXT NOT NULL DEFAULT '[]',
                        created_at INTEGER NOT NULL,
                        updated_at INTEGER NOT NULL
                    )
                    """,
                    """
                    CREATE TABLE IF NOT EXISTS nodes (
                        id TEXT PRIMARY KEY,
                        conversation_id TEXT NOT NULL,
                        status TEXT NOT NULL,
                        error TEXT,
                        created_at INTEGER NOT NULL,
                        updated_at INTEGER NOT NULL,
                        label TEXT,
                        branched_from_message_id TEXT,
                        is_reply INTEGER NOT NULL DEFAULT 0,
                        parent_node_id TEXT,
                        model TEXT,
                        context_summary TEXT
                    )
                    """,
                    """
                    CREATE TABLE IF NOT EXISTS messages (
                        id TEXT PRIMARY KEY,
                        node_id TEXT NOT NULL,
                        conversation_id TEXT NOT NULL,
                        role TEXT NOT NULL,
                        content TEXT NOT NULL,
                        created_at INTEGER NOT NULL,
                        is_streaming INTEGER NOT NULL DEFAULT 0,
                        model TEXT,
                        token_count INTEGER,
                        finish_reason TEXT,
                        attachments TEXT NOT NULL DEFAULT '[]',
                        is_attachment_context INTEGER NOT NULL DEFAULT 0,
                        is_custom_instruction INTEGER NOT NULL DEFAULT 0,
                        is_project_instruction INTEGER NOT NULL DEFAULT 0,
                        is_project_attachment_context INTEGER NOT NULL DEFAULT 0
                    )
                    """,
                    """
                    CREATE TABLE IF NOT EXISTS edges (
                        id TEXT PRIMARY KEY,
                        conversation_id TEXT NOT NULL,
                        source TEXT NOT NULL,
                        target TEXT NOT NULL,
                        created_at INTEGER NOT NULL
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_nodes_conversation ON nodes(conversation_id)",
                    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id)",
                    "CREATE INDEX IF NOT EXISTS idx_edges_conversation ON edges(conversation_id)",
                ),
            ),
        ]

    def _delete_rows(self, conn: sqlite3.Connection, conversation_id: str):
        for table in ("messages", "nodes", "edges"):
            conn.execute(f"DELETE FROM {table} WHERE conversation_id = ?", (conversation_id,))

    def save(self, state: ConversationState):
        conversation = state.conversation
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO conversations (
                    id, title, root_node_id, system_prompt, model, project_id,
                    context_settings, attachment_processing, attachments, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation.id,
                    conversation.title,
                    conversation.root_node_id,
                    conversation.system_prompt,
                    conversation.model,
                    conversation.project_id,
                    conversation.context_settings.model_dump_json(),
                    conversation.attachment_processing.model_dump_json(),
                    _dump_attachments(conversation.attachments),
                    conversation.created_at,
                    conversation.updated_at,
                ),
            )
            self._delete_rows(conn, conversation.id)
            conn.executemany(
                """
                INSERT INTO nodes (
                    id, conversation_id, status, error, created_at, updated_at, label,
                    branched_from_message_id, is_reply, parent_node_id, model, context_summary
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        node.id,
                        conversation.id,
                        node.status,
                        node.error,
                        node.created_at,
                        node.updated_at,
                        node.label,
                        node.branched_from_message_id,
                        1 if node.is_reply else 0,
                        node.parent_node_id,
                        node.model,
                        json.dumps(dataclasses.asdict(node.context_summary)) if node.context_summary else None,
                    )
                    for node in state.nodes.values()
                ],
            )
            conn.executemany(
                """
                INSERT INTO messages (
                    id, node_id, conversation_id, role, content, created_at, is_streaming, model,
                    token_count, finish_reason, attachments, is_attachment_context,
                    is_custom_instruction, is_project_instruction, is_project_attachment_context
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        message.id,
                        node.id,
                        conversation.id,
                        message.role,
                        message.content,
                        message.created_at,
                        1 if message.is_streaming else 0,
                        message.model,
                        message.token_count,
                        message.finish_reason,
                        _dump_attachments(message.attachments),
                        1 if message.is_attachment_context else 0,
                        1 if message.is_custom_instruction else 0,
                        1 if message.is_project_instruction else 0,
                        1 if message.is_project_attachment_context else 0,
                    )
                    for node in state.nodes.values()
                    for message in node.messages
                ],
            )
            conn.executemany(
                "INSERT INTO edges (id, conversation_id, source, target, created_at) VALUES (?, ?, ?, ?, ?)",
                [
                    (edge.id, conversation.id, edge.source, edge.target, edge.created_at)
                    for edge in state.edges.values()
                ],
            )
        logger.info(
            "conversation_saved",
            conversation_id=conversation.id,
            nodes=len(state.nodes),
            edges=len(state.edges),
        )

    def load(self, conversation_id: str) -> ConversationState | None:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
            if row is None:
                return None
            node_rows = conn.execute(
                "SELECT * FROM nodes WHERE conversation_id = ?", (conversation_id,)
            ).fetchall()
            message_rows = conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY created_at", (conversation_id,)
            ).fetchall()
            edge_rows = conn.execute(
                "SELECT * FROM edges WHERE conversation_id = ?", (conversation_id,)
            ).fetchall()

        messages_by_node: dict[str, list[Message]] = {}
        for message_row in message_rows:
            messages_by_node.setdefault(message_row["node_id"], []).append(_row_to_message(message_row))

        conversation = Conversation(
            id=row["id"],
            title=row["title"],
            root_node_id=row["root_node_id"],
            system_prompt=row["system_prompt"],
            model=row["model"],
            project_id=row["project_id"],
            context_settings=ContextSettings.model_validate_json(row["context_settings"]),
            attachment_processing=AttachmentProcessingSettings.model_validate_json(row["attachment_processing"]),
            attachments=_load_attachments(row["attachments"]),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
        )
        nodes = [
            _row_to_node(node_row, tuple(messages_by_node.get(node_row["id"], ())))
            for node_row in node_rows
        ]
        edges = [
            ConversationEdge(
                id=edge_row["id"],
                source=edge_row["source"],
                target=edge_row["target"],
                conversation_id=edge_row["conversation_id"],
                created_at=int(edge_row["created_at"]),
            )
            for edge_row in edge_rows
        ]
        return ConversationState.load(conversation, nodes, edges)

    def delete(self, conversation_id: str):
        with self._connection() as conn:
            self._delete_rows(conn, conversation_id)
            conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        logger.info("conversation_deleted", conversation_id=conversation_id)

    def search(self, query: str, limit: int = 100) -> list[MessageSearchResult]:
        """Case-insensitive substring search over every stored message, newest first."""
        normalized = (query or "").strip().lower()
        if not normalized:
            return []
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT m.id AS message_id, m.node_id, m.role, m.content, m.created_at,
                       c.id AS conversation_id, c.title, c.project_id, n.is_reply, n.parent_node_id
                FROM messages m
                JOIN nodes n ON n.id = m.node_id
                JOIN conversations c ON c.id = n.conversation_id
                WHERE m.content <> '' AND instr(lower(m.content), ?) > 0
                ORDER BY m.created_at DESC
                LIMIT ?
                """,
                (normalized, max(1, int(limit))),
            ).fetchall()
        return [
            MessageSearchResult(
                message_id=row["message_id"],
                node_id=row["node_id"],
                conversation_id=row["conversation_id"],
                role=row["role"],
                content=row["content"],
                created_at=int(row["created_at"]),
                conversation_title=row["title"],
                project_id=row["project_id"],
                is_reply=bool(row["is_reply"]),
                parent_node_id=row["parent_node_id"],
            )
            for row in rows
        ]

    async def save_conversation(self, state: ConversationState):
        await self._run(self.save, state)

    async def load_conversation(self, conversation_id: str) -> ConversationState | None:
        return await self._run(self.load, conversation_id)

    async def delete_conversation(self, conversation_id: str):
        await self._run(self.delete, conversation_id)

    async def search_messages(self, query: str, limit: int = 100) -> list[MessageSearchResult]:
        return await self._run(self.search, query, limit)
