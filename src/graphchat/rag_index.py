"""
Attachment retrieval index: chunking, source keys, embedding, hybrid scoring
and rendering of the attachment-context block sent to the model.

Chunks are keyed by a source key built from the attachment identity, its size
and modification time, and the chunking settings, so a change to any of them
lands under a new key instead of mutating the old chunk set.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .cancellation import CancelSignal, raise_if_cancelled
from .chunk_registry import RagChunkStore
from .config import EMBEDDING_BATCH_SIZE, RETRIEVAL_MAX_CHUNKS_PER_FILE, SEMANTIC_SCORE_WEIGHT
from .errors import OperationCancelled
from .file_source import (
    FileSource,
    FileSourceProvider,
    format_file_size,
    is_text_like_file,
    stream_file_overlapping_chunks,
)
from .model_client import ModelClient
from .models import (
    AttachmentContextResult,
    FileAttachment,
    RagChunk,
    RagScopeEmbeddingStats,
    RagScopeStats,
    RagScopeType,
    SemanticIndexStatus,
    now_ms,
)
from .observability import get_logger
from .settings import AttachmentProcessingSettings
from .summarization import summarize_file_hierarchical
from .tokenization import estimate_tokens_from_text, tokenize_retrieval_text

logger = get_logger(__name__)

RETRIEVED_HEADER = "Attachment context (retrieved):"
SUMMARY_HEADER = "Attachment context (summary):"
NO_ATTACHMENT_CONTENT = "No attachment content available."
RETRIEVAL_MODE_LINE = "Mode: retrieval (hybrid lexical + embedding)"

_SEMANTIC_STATUS_TEXT = {
    "ready": "ready",
    "stale": "stale (partial mismatch, reindex recommended)",
    "unavailable": "unavailable (lexical-only until reindex)",
}
_ORDER_TIEBREAK = 0.001
_MATCH_BONUS = 0.25


@dataclass(frozen=True)
class RetrievalChunkCandidate:
    attachment_name: str
    chunk_index: int
    chunk_text: str
    score: float
    order: int
    lexical_score: float = 0.0
    semantic_score: float = 0.0


# --- text helpers -------------------------------------------------------------

def split_text_with_overlap(text: str, chunk_size: int, chunk_overlap: int) -> list[str]:
    """
    Fixed-size sliding window. Every window starts ``chunk_size - overlap`` after the
    previous one, so the tail of the text can appear as a short final chunk.
    """
    if not text:
        return []
    size = max(1, int(chunk_size))
    overlap = max(0, min(size - 1, int(chunk_overlap)))
    step = max(1, size - overlap)
    return [text[offset : offset + size] for offset in range(0, len(text), step)]


def compute_lexical_chunk_score(chunk: str, query_terms: Sequence[str]) -> float:
    """Whole-word match count per term, plus a flat bonus for every term that matched."""
    if not query_terms:
        return 0.0
    normalized = chunk.lower()
    score = 0.0
    for term in query_terms:
        matches = re.findall(rf"\b{re.escape(term)}\b", normalized, flags=re.ASCII)
        if not matches:
            continue
        score += len(matches) + _MATCH_BONUS
    return score


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    length = min(len(a), len(b))
    if length == 0:
        return 0.0
    left = np.asarray(a[:length], dtype=float)
    right = np.asarray(b[:length], dtype=float)
    norm = float(np.linalg.norm(left) * np.linalg.norm(right))
    if norm == 0.0:
        return 0.0
    return float(np.dot(left, right) / norm)


def pick_top_retrieval_chunks(
    candidates: Sequence[RetrievalChunkCandidate], top_k: int
) -> list[RetrievalChunkCandidate]:
    ordered = sorted(candidates, key=lambda c: (-c.score, c.order, c.chunk_index))
    return ordered[: max(1, int(top_k))]


def compact_attachment_context_message(content: str) -> str:
    """Shortens a stored retrieval block to its header line for display."""
    if content.strip().startswith(RETRIEVED_HEADER):
        return f"{RETRIEVED_HEADER} {RETRIEVAL_MODE_LINE}"
    return content


def _has_embedding(chunk: RagChunk) -> bool:
    return bool(chunk.embedding)


def semantic_index_status(chunks: Sequence[RagChunk], embedding_model: str) -> SemanticIndexStatus:
    matching = sum(1 for chunk in chunks if chunk.embedding_model == embedding_model and _has_embedding(chunk))
    if matching == 0:
        return "unavailable"
    stale = any(chunk.embedding_model != embedding_model and _has_embedding(chunk) for chunk in chunks)
    return "stale" if stale else "ready"


def score_retrieval_chunks(
    chunks: Sequence[RagChunk],
    query_terms: Sequence[str],
    query_embedding: Sequence[float] | None,
    embedding_model: str,
) -> list[RetrievalChunkCandidate]:
    """
    Hybrid score per chunk. The semantic part only counts when the chunk was embedded
    with ``embedding_model`` and is floored at zero; without any query signal, earlier
    chunks win ties.
    """
    no_query_signal = not query_terms and query_embedding is None
    candidates = []
    for order, chunk in enumerate(chunks):
        lexical = compute_lexical_chunk_score(chunk.chunk_text, query_terms) if query_terms else 0.0
        semantic = 0.0
        if query_embedding is not None and chunk.embedding_model == embedding_model and _has_embedding(chunk):
            semantic = max(0.0, cosine_similarity(query_embedding, chunk.embedding))
        score = lexical + semantic * SEMANTIC_SCORE_WEIGHT
        if no_query_signal:
            score -= order * _ORDER_TIEBREAK
        candidates.append(
            RetrievalChunkCandidate(
                attachment_name=chunk.attachment_name,
                chunk_index=chunk.chunk_index,
                chunk_text=chunk.chunk_text,
                score=score,
                order=order,
                lexical_score=lexical,
                semantic_score=semantic,
            )
        )
    return candidates


def format_retrieval_block(candidate: RetrievalChunkCandidate, chunk_size: int) -> str:
    max_length = max(200, int(chunk_size))
    text = candidate.chunk_text
    preview = f"{text[:max_length]}..." if len(text) > max_length else text
    score_text = f"hybrid={candidate.score:.3f}" if math.isfinite(candidate.score) else "hybrid=n/a"
    return f"[{candidate.attachment_name}  chunk {candidate.chunk_index + 1}  {score_text}]\n{preview}"


# --- indexing -------------------------------------------------------------------

def build_rag_source_key(
    attachment: FileAttachment, source: FileSource, chunk_size: int, chunk_overlap: int
) -> str:
    stable_id = attachment.handle_id or attachment.id
    return ":".join(
        str(part)
        for part in (stable_id, attachment.name, source.size, source.last_modified, chunk_size, chunk_overlap)
    )


def can_reuse_chunks(existing: Sequence[RagChunk], embedding_model: str) -> bool:
    return bool(existing) and all(
        not chunk.embedding_model or chunk.embedding_model == embedding_model for chunk in existing
    )


async def safe_embed_query(
    client: ModelClient, query: str, embedding_model: str, signal: CancelSignal | None = None
) -> tuple[float, ...] | None:
    """Embeds a query, or returns None when the embedding service fails."""
    try:
        vectors = await client.embeddings(embedding_model, [query], signal)
    except OperationCancelled:
        raise
    except Exception as exc:
        logger.warning("query_embedding_failed", embedding_model=embedding_model, error=str(exc))
        return None
    if not vectors or not vectors[0]:
        return None
    return tuple(float(value) for value in vectors[0])


async def embed_texts_in_batches(
    client: ModelClient,
    texts: Sequence[str],
    embedding_model: str,
    signal: CancelSignal | None = None,
    *,
    batch_size: int = EMBEDDING_BATCH_SIZE,
) -> list[tuple[float, ...] | None]:
    """One vector per text; a failed batch leaves its slots as None."""
    vectors: list[tuple[float, ...] | None] = [None] * len(texts)
    batch_size = max(1, int(batch_size))
    for start in range(0, len(texts), batch_size):
        raise_if_cancelled(signal, "embedding")
        batch = list(texts[start : start + batch_size])
        try:
            embedded = await client.embeddings(embedding_model, batch, signal)
        except OperationCancelled:
            raise
        except Exception as exc:
            logger.warning(
                "embedding_batch_failed",
                embedding_model=embedding_model,
                batch_start=start,
                batch_size=len(batch),
                error=str(exc),
            )
            continue
        for offset, vector in enumerate(embedded[: len(batch)]):
            if vector:
                vectors[start + offset] = tuple(float(value) for value in vector)
    return vectors


async def index_attachment_chunks(
    *,
    scope_type: RagScopeType,
    scope_id: str,
    source_key: str,
    attachment: FileAttachment,
    source: FileSource,
    settings: AttachmentProcessingSettings,
    embedding_model: str,
    client: ModelClient,
    signal: CancelSignal | None = None,
    max_chunks: int = RETRIEVAL_MAX_CHUNKS_PER_FILE,
) -> list[RagChunk]:
    """
    Builds the full chunk set for one source in memory. Nothing is persisted here;
    the caller commits the returned rows in a single replace.
    """
    pending: list[tuple[int, str]] = []
    chunk_index = 0
    async for window in stream_file_overlapping_chunks(
        source, settings.chunk_size, settings.chunk_overlap, signal
    ):
        raise_if_cancelled(signal, "indexing")
        if len(pending) >= max_chunks:
            break
        text = window.strip()
        if text:
            pending.append((chunk_index, text))
        chunk_index += 1

    vectors = await embed_texts_in_batches(client, [text for _, text in pending], embedding_model, signal)
    now = now_ms()
    return [
        RagChunk(
            id=f"{source_key}:{index}",
            scope_type=scope_type,
            scope_id=scope_id,
            source_key=source_key,
            attachment_id=attachment.id,
            attachment_name=attachment.name,
            chunk_index=index,
            chunk_text=text,
            chunk_token_estimate=estimate_tokens_from_text(text),
            embedding=vector,
            embedding_model=embedding_model,
            created_at=now,
            updated_at=now,
        )
        for (index, text), vector in zip(pending, vectors)
    ]


async def _resolve_source(provider: FileSourceProvider, attachment: FileAttachment) -> FileSource | None:
    try:
        return await provider.resolve(attachment)
    except OSError as exc:
        logger.warning("attachment_unreadable", attachment_id=attachment.id, error=str(exc))
        return None


def _access_denied_block(attachment: FileAttachment) -> str:
    return f"{attachment.name} ({format_file_size(attachment.size)}): access denied. Please reattach."


def _binary_skipped_block(name: str, size: int) -> str:
    return f"{name} ({format_file_size(size)}): binary file skipped."


# --- context builders -------------------------------------------------------------

async def build_attachment_retrieval_context(
    attachments: Sequence[FileAttachment],
    user_content: str,
    settings: AttachmentProcessingSettings,
    *,
    embedding_model: str,
    scope_type: RagScopeType,
    scope_id: str,
    client: ModelClient,
    chunk_store: RagChunkStore,
    file_provider: FileSourceProvider,
    signal: CancelSignal | None = None,
) -> AttachmentContextResult:
    query_terms = tokenize_retrieval_text(user_content)
    blocks: list[str] = []
    indexed_sources: list[str] = []
    rebuilt_sources: list[str] = []

    for attachment in attachments:
        raise_if_cancelled(signal, "attachment retrieval")
        source = await _resolve_source(file_provider, attachment)
        if source is None:
            blocks.append(_access_denied_block(attachment))
            continue
        if not is_text_like_file(source):
            blocks.append(_binary_skipped_block(attachment.name, attachment.size))
            continue

        try:
            source_size = source.size
            source_key = build_rag_source_key(attachment, source, settings.chunk_size, settings.chunk_overlap)
        except OSError as exc:
            logger.warning("attachment_unreadable", attachment_id=attachment.id, error=str(exc))
            blocks.append(_access_denied_block(attachment))
            continue
        indexed_sources.append(source_key)

        existing = await chunk_store.load_rag_chunks_for_source(scope_type, scope_id, source_key)
        if can_reuse_chunks(existing, embedding_model):
            logger.debug("rag_source_reused", source_key=source_key, chunks=len(existing))
            continue

        try:
            created = await index_attachment_chunks(
                scope_type=scope_type,
                scope_id=scope_id,
                source_key=source_key,
                attachment=attachment,
                source=source,
                settings=settings,
                embedding_model=embedding_model,
                client=client,
                signal=signal,
            )
        except OSError as exc:
            logger.warning("attachment_unreadable", attachment_id=attachment.id, error=str(exc))
            indexed_sources.pop()
            blocks.append(_access_denied_block(attachment))
            continue

        await chunk_store.replace_source_chunks(scope_type, scope_id, source_key, created)
        rebuilt_sources.append(source_key)
        logger.info(
            "rag_index_rebuilt",
            scope_type=scope_type,
            scope_id=scope_id,
            attachment=attachment.name,
            chunks=len(created),
            embedded=sum(1 for chunk in created if chunk.embedding),
        )
        if len(created) >= RETRIEVAL_MAX_CHUNKS_PER_FILE:
            blocks.append(
                f"{attachment.name} ({format_file_size(source_size)}): "
                f"retrieval indexed first {RETRIEVAL_MAX_CHUNKS_PER_FILE} chunks."
            )

    all_scope_chunks = await chunk_store.load_rag_chunks_for_scope(scope_type, scope_id)
    if indexed_sources:
        active_keys = set(indexed_sources)
        active_chunks = [chunk for chunk in all_scope_chunks if chunk.source_key in active_keys]
    else:
        active_chunks = list(all_scope_chunks)

    if not active_chunks:
        content = f"{RETRIEVED_HEADER}\n\n" + "\n\n".join(blocks) if blocks else NO_ATTACHMENT_CONTENT
        return AttachmentContextResult(
            content=content,
            mode="retrieval",
            notes=tuple(blocks),
            rebuilt_sources=tuple(rebuilt_sources),
        )

    query_embedding = None
    if user_content.strip():
        query_embedding = await safe_embed_query(client, user_content, embedding_model, signal)

    status = semantic_index_status(active_chunks, embedding_model)
    if status != "ready":
        logger.warning("semantic_index_degraded", status=status, scope_type=scope_type, scope_id=scope_id)

    candidates = score_retrieval_chunks(active_chunks, query_terms, query_embedding, embedding_model)
    top_chunks = pick_top_retrieval_chunks(candidates, settings.retrieval_top_k)
    retrieval_blocks = [format_retrieval_block(candidate, settings.chunk_size) for candidate in top_chunks]

    details = [
        RETRIEVAL_MODE_LINE,
        f"Query: {user_content.strip() or '(empty user prompt)'}",
        f"Top K: {settings.retrieval_top_k}",
        f"Embedding model: {embedding_model}",
        f"Semantic index: {_SEMANTIC_STATUS_TEXT[status]}",
    ]
    content = f"{RETRIEVED_HEADER}\n" + "\n".join(details) + "\n\n" + "\n\n".join([*blocks, *retrieval_blocks])
    return AttachmentContextResult(
        content=content,
        mode="retrieval",
        semantic_status=status,
        chunk_count=len(top_chunks),
        notes=tuple(blocks),
        rebuilt_sources=tuple(rebuilt_sources),
    )


async def build_attachment_summary_context(
    attachments: Sequence[FileAttachment],
    settings: AttachmentProcessingSettings,
    *,
    model: str,
    client: ModelClient,
    file_provider: FileSourceProvider,
    signal: CancelSignal | None = None,
) -> AttachmentContextResult:
    blocks: list[str] = []
    notes: list[str] = []

    for attachment in attachments:
        raise_if_cancelled(signal, "attachment summary")
        source = await _resolve_source(file_provider, attachment)
        if source is None:
            blocks.append(_access_denied_block(attachment))
            notes.append(blocks[-1])
            continue
        try:
            source_size = source.size
        except OSError as exc:
            logger.warning("attachment_unreadable", attachment_id=attachment.id, error=str(exc))
            blocks.append(_access_denied_block(attachment))
            notes.append(blocks[-1])
            continue
        if not is_text_like_file(source):
            blocks.append(_binary_skipped_block(attachment.name, source_size))
            notes.append(blocks[-1])
            continue

        try:
            result = await summarize_file_hierarchical(client, source, settings, model, signal)
        except OSError as exc:
            logger.warning("attachment_unreadable", attachment_id=attachment.id, error=str(exc))
            blocks.append(_access_denied_block(attachment))
            notes.append(blocks[-1])
            continue
        suffix = "\n\n[Truncated after initial chunks]" if result.truncated else ""
        blocks.append(
            f"{attachment.name} ({format_file_size(source_size)}):\n"
            f"{result.summary or 'No extractable text found.'}{suffix}"
        )

    if not blocks:
        return AttachmentContextResult(content=NO_ATTACHMENT_CONTENT, mode="summarize")
    return AttachmentContextResult(
        content=f"{SUMMARY_HEADER}\nMode: summarize\n\n" + "\n\n".join(blocks),
        mode="summarize",
        notes=tuple(notes),
    )


async def build_attachment_context(
    attachments: Sequence[FileAttachment],
    user_content: str,
    settings: AttachmentProcessingSettings,
    *,
    embedding_model: str,
    model: str,
    scope_type: RagScopeType,
    scope_id: str,
    client: ModelClient,
    chunk_store: RagChunkStore,
    file_provider: FileSourceProvider,
    signal: CancelSignal | None = None,
) -> AttachmentContextResult:
    if settings.mode == "summarize":
        return await build_attachment_summary_context(
            attachments,
            settings,
            model=model,
            client=client,
            file_provider=file_provider,
            signal=signal,
        )
    return await build_attachment_retrieval_context(
        attachments,
        user_content,
        settings,
        embedding_model=embedding_model,
        scope_type=scope_type,
        scope_id=scope_id,
        client=client,
        chunk_store=chunk_store,
        file_provider=file_provider,
        signal=signal,
    )


# --- scope statistics ----------------------------------------------------------

def compute_rag_scope_stats(chunks: Sequence[RagChunk]) -> RagScopeStats:
    if not chunks:
        return RagScopeStats()
    return RagScopeStats(
        chunk_count=len(chunks),
        source_count=len({chunk.source_key for chunk in chunks}),
        latest_updated_at=max(chunk.updated_at for chunk in chunks),
    )


def compute_rag_scope_embedding_stats(chunks: Sequence[RagChunk], embedding_model: str) -> RagScopeEmbeddingStats:
    stats = RagScopeEmbeddingStats(chunk_count=len(chunks))
    sources: set[str] = set()
    matching_sources: set[str] = set()
    for chunk in chunks:
        sources.add(chunk.source_key)
        if chunk.embedding_model == embedding_model:
            stats.matching_embedding_chunks += 1
            matching_sources.add(chunk.source_key)
        elif _has_embedding(chunk):
            stats.stale_embedding_chunks += 1
    stats.source_count = len(sources)
    stats.matching_embedding_sources = len(matching_sources)
    return stats


async def load_rag_scope_stats(store: RagChunkStore, scope_type: RagScopeType, scope_id: str) -> RagScopeStats:
    return compute_rag_scope_stats(await store.load_rag_chunks_for_scope(scope_type, scope_id))


async def load_rag_scope_embedding_stats(
    store: RagChunkStore, scope_type: RagScopeType, scope_id: str, embedding_model: str
) -> RagScopeEmbeddingStats:
    chunks = await store.load_rag_chunks_for_scope(scope_type, scope_id)
    return compute_rag_scope_embedding_stats(chunks, embedding_model)
