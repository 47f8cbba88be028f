"""
Core data records for conversations, retrieval chunks and memories.

Records are frozen; mutation is expressed by building a replacement with
``dataclasses.replace`` and handing it back to the caller to persist.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Literal

from .settings import AttachmentProcessingSettings, ContextSettings

NodeId = str
Role = Literal["user", "assistant", "system"]
NodeStatus = Literal["idle", "streaming", "error", "cancelled"]
RagScopeType = Literal["conversation", "project"]
MemoryScopeType = Literal["conversation", "project", "user"]
MemoryCategory = Literal["fact", "preference", "constraint", "context"]
SemanticIndexStatus = Literal["ready", "stale", "unavailable"]

SYSTEM_NODE_ID = "system"


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class FileAttachment:
    """Metadata for a file attached to a conversation, project or message."""
    id: str
    name: str
    size: int
    type: str = ""
    last_modified: int = 0
    source: Literal["handle", "memory"] = "memory"
    handle_id: str | None = None


@dataclass(frozen=True)
class Message:
    id: str
    node_id: NodeId
    role: Role
    content: str
    created_at: int
    is_streaming: bool = False
    model: str | None = None
    token_count: int | None = None
    finish_reason: str | None = None
    attachments: tuple[FileAttachment, ...] = ()
    is_attachment_context: bool = False
    is_custom_instruction: bool = False
    is_project_instruction: bool = False
    is_project_attachment_context: bool = False


@dataclass(frozen=True)
class ContextSummary:
    content: str
    created_at: int


@dataclass(frozen=True)
class ConversationNode:
    id: NodeId
    conversation_id: str
    messages: tuple[Message, ...] = ()
    status: NodeStatus = "idle"
    error: str | None = None
    created_at: int = 0
    updated_at: int = 0
    label: str | None = None
    branched_from_message_id: str | None = None
    is_reply: bool = False
    parent_node_id: NodeId | None = None
    model: str | None = None
    context_summary: ContextSummary | None = None


@dataclass(frozen=True)
class ConversationEdge:
    id: str
    source: NodeId
    target: NodeId
    conversation_id: str
    created_at: int


@dataclass(frozen=True)
class Project:
    id: str
    name: str
    custom_profile: str = ""
    custom_response_style: str = ""
    attachments: tuple[FileAttachment, ...] = ()


@dataclass(frozen=True)
class CustomInstructions:
    profile: str = ""
    response_style: str = ""
    project_profile: str = ""
    project_response_style: str = ""


@dataclass(frozen=True)
class ComputedContext:
    nodes: tuple[ConversationNode, ...]
    messages: tuple[Message, ...]
    token_estimate: int


@dataclass(frozen=True)
class CycleCheckResult:
    has_cycle: bool
    cycle_nodes: tuple[NodeId, ...] = ()


@dataclass(frozen=True)
class RagChunk:
    id: str
    scope_type: RagScopeType
    scope_id: str
    source_key: str
    attachment_id: str
    attachment_name: str
    chunk_index: int
    chunk_text: str
    chunk_token_estimate: int
    embedding: tuple[float, ...] | None = None
    embedding_model: str | None = None
    created_at: int = 0
    updated_at: int = 0


@dataclass(frozen=True)
class MemoryCandidate:
    text: str
    normalized_text: str
    category: MemoryCategory
    confidence: float


@dataclass(frozen=True)
class MemoryItem:
    id: str
    scope_type: MemoryScopeType
    scope_id: str
    text: str
    normalized_text: str
    category: MemoryCategory
    confidence: float
    pinned: bool = False
    source_conversation_id: str | None = None
    source_node_id: str | None = None
    source_message_id: str | None = None
    source_role: Literal["user", "assistant"] | None = None
    embedding: tuple[float, ...] | None = None
    embedding_model: str | None = None
    created_at: int = 0
    updated_at: int = 0
    last_used_at: int | None = None


@dataclass(frozen=True)
class MemoryScope:
    scope_type: MemoryScopeType
    scope_id: str


@dataclass(frozen=True)
class RetrievedMemoryItem:
    item: MemoryItem
    score: float
    lexical_score: float
    semantic_score: float


@dataclass(frozen=True)
class MemoryRetrievalPreview:
    query: str
    embedding_model: str
    items: tuple[RetrievedMemoryItem, ...] = ()
    prompt: str = ""
    preview: str = ""
    generated_at: int = 0


@dataclass(frozen=True)
class AttachmentContextResult:
    content: str
    mode: Literal["retrieval", "summarize"]
    semantic_status: SemanticIndexStatus | None = None
    chunk_count: int = 0
    notes: tuple[str, ...] = ()
    rebuilt_sources: tuple[str, ...] = ()


@dataclass
class RagScopeStats:
    chunk_count: int = 0
    source_count: int = 0
    latest_updated_at: int | None = None


@dataclass
class RagScopeEmbeddingStats:
    chunk_count: int = 0
    source_count: int = 0
    matching_embedding_chunks: int = 0
    matching_embedding_sources: int = 0
    stale_embedding_chunks: int = 0


@dataclass(frozen=True)
class Conversation:
    id: str
    title: str
    root_node_id: NodeId
    system_prompt: str = ""
    model: str | None = None
    project_id: str | None = None
    context_settings: ContextSettings = field(default_factory=ContextSettings)
    attachment_processing: AttachmentProcessingSettings = field(default_factory=AttachmentProcessingSettings)
    attachments: tuple[FileAttachment, ...] = ()
    created_at: int = 0
    updated_at: int = 0
