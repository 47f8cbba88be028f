"""
Long-lived memories: heuristic extraction from chat turns, per-scope upsert,
and hybrid retrieval into a prompt block.

Extraction is a pure function over one message body. Storage and retrieval go
through a ``MemoryStore`` and embed through a ``ModelClient``; an embedding
failure only removes the semantic signal, it never stops a turn.
"""
from __future__ import annotations

import dataclasses
import re
from typing import Sequence

from .cancellation import CancelSignal
from .config import MEMORY_PINNED_BONUS, MEMORY_RECENCY_WEIGHT, MEMORY_RECENCY_WINDOW_DAYS, SEMANTIC_SCORE_WEIGHT
from .errors import OperationCancelled
from .memory_store import MemoryStore
from .model_client import ModelClient
from .models import (
    MemoryCandidate,
    MemoryCategory,
    MemoryItem,
    MemoryRetrievalPreview,
    MemoryScope,
    RetrievedMemoryItem,
    Role,
    new_id,
    now_ms,
)
from .observability import get_logger
from .rag_index import compute_lexical_chunk_score, cosine_similarity, safe_embed_query
from .settings import MemorySettings
from .tokenization import tokenize_retrieval_text

logger = get_logger(__name__)

# ==============================================================================
# EXTRACTION HEURISTICS
# ==============================================================================
PREFERENCE_RE = re.compile(
    r"\b(prefer|preferred|like|dislike|tone|style|format|verbose|brief|language)\b", re.IGNORECASE
)
CONSTRAINT_RE = re.compile(
    r"\b(must|should|need to|do not|don't|never|always|deadline|limit|constraint|required)\b", re.IGNORECASE
)
CONTEXT_RE = re.compile(
    r"\b(project|building|working on|stack|using|we use|goal|roadmap|architecture)\b", re.IGNORECASE
)
GENERIC_RE = re.compile(r"\b(hello|thanks|thank you|ok|sure|got it|great)\b", re.IGNORECASE)

FIRST_PERSON_RE = re.compile(r"\b(i|my|we|our)\b")
NUMBER_RE = re.compile(r"\b\d{2,4}\b")
ACTION_VERB_RE = re.compile(r"\b(use|using|works|working|build|implement)\b")

MIN_SENTENCE_CHARS = 12
MAX_SENTENCE_CHARS = 240
LONG_SENTENCE_CHARS = 180
CONFIDENCE_FLOOR = 0.2
MAX_CANDIDATES_PER_MESSAGE = 12

_BASE_CONFIDENCE = 0.35
_CATEGORY_BONUS = {"preference": 0.2, "constraint": 0.2, "context": 0.12, "fact": 0.0}

USER_SCOPE_ID = "global"
MEMORY_PROMPT_HEADER = "Relevant memories (use only when helpful and applicable):"
_MS_PER_DAY = 1000 * 60 * 60 * 24


def normalize_memory_text(value: str) -> str:
    return re.sub(r"\s+", " ", value or "").strip().lower()


def strip_markdown_noise(text: str) -> str:
    text = re.sub(r"```[\s\S]*?```", " ", text)
    text = re.sub(r"`[^`]*`", " ", text)
    text = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", text)
    text = re.sub(r"^>\s?", "", text, flags=re.MULTILINE)
    return re.sub(r"[#*_~]", " ", text)


def split_into_sentences(text: str) -> list[str]:
    parts = []
    for line in re.split(r"\r?\n+", text):
        parts.extend(re.split(r"(?<=[.!;])\s+", line))
    return [part.strip() for part in parts if part.strip()]


def classify_memory_category(text: str) -> MemoryCategory:
    if PREFERENCE_RE.search(text):
        return "preference"
    if CONSTRAINT_RE.search(text):
        return "constraint"
    if CONTEXT_RE.search(text):
        return "context"
    return "fact"


def score_memory_sentence(text: str, role: Role, category: MemoryCategory) -> float:
    score = _BASE_CONFIDENCE
    lower = text.lower()
    if FIRST_PERSON_RE.search(lower):
        score += 0.25
    if NUMBER_RE.search(lower):
        score += 0.12
    if ACTION_VERB_RE.search(lower):
        score += 0.1
    score += _CATEGORY_BONUS[category]
    if role == "assistant":
        score -= 0.08
    if len(text) > LONG_SENTENCE_CHARS:
        score -= 0.08
    return round(max(0.0, min(1.0, score)), 3)


def extract_memory_candidates(
    content: str,
    role: Role,
    max_candidates: int,
    *,
    min_confidence: float = CONFIDENCE_FLOOR,
) -> list[MemoryCandidate]:
    """
    Returns at most ``max_candidates`` candidates, highest confidence first.
    Questions, greetings and acknowledgements, and sentences outside 12..240
    chars never become candidates.
    """
    if not (content or "").strip():
        return []

    limit = max(1, min(MAX_CANDIDATES_PER_MESSAGE, int(max_candidates)))
    threshold = max(CONFIDENCE_FLOOR, float(min_confidence))
    seen: set[str] = set()
    candidates: list[MemoryCandidate] = []

    for sentence in split_into_sentences(strip_markdown_noise(content)):
        if len(sentence) < MIN_SENTENCE_CHARS or len(sentence) > MAX_SENTENCE_CHARS:
            continue
        if sentence.endswith("?") or GENERIC_RE.search(sentence):
            continue
        normalized = normalize_memory_text(sentence)
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)

        category = classify_memory_category(sentence)
        confidence = score_memory_sentence(sentence, role, category)
        if confidence < threshold:
            continue
        candidates.append(
            MemoryCandidate(text=sentence, normalized_text=normalized, category=category, confidence=confidence)
        )

    candidates.sort(key=lambda candidate: candidate.confidence, reverse=True)
    return candidates[:limit]


def get_memory_scopes(settings: MemorySettings, conversation_id: str, project_id: str | None = None) -> list[MemoryScope]:
    scopes = []
    if settings.include_conversation:
        scopes.append(MemoryScope("conversation", conversation_id))
    if settings.include_project and project_id:
        scopes.append(MemoryScope("project", project_id))
    if settings.include_user:
        scopes.append(MemoryScope("user", USER_SCOPE_ID))
    return scopes


def should_extract(settings: MemorySettings, role: Role) -> bool:
    if not settings.enabled:
        return False
    if role == "user":
        return settings.auto_extract_user
    if role == "assistant":
        return settings.auto_extract_assistant
    return False


# ==============================================================================
# STORAGE
# ==============================================================================
async def embed_memory_candidates(
    client: ModelClient,
    candidates: Sequence[MemoryCandidate],
    embedding_model: str,
    signal: CancelSignal | None = None,
) -> dict[str, tuple[float, ...]]:
    """Embeds every candidate in one call, keyed by normalized text."""
    if not candidates:
        return {}
    try:
        vectors = await client.embeddings(embedding_model, [candidate.text for candidate in candidates], signal)
    except OperationCancelled:
        raise
    except Exception as exc:
        logger.warning("memory_embedding_failed", embedding_model=embedding_model, error=str(exc))
        return {}
    output = {}
    for candidate, vector in zip(candidates, vectors):
        if vector:
            output[candidate.normalized_text] = tuple(float(value) for value in vector)
    return output


def merge_memory(
    existing: MemoryItem | None,
    candidate: MemoryCandidate,
    scope: MemoryScope,
    *,
    conversation_id: str,
    node_id: str,
    message_id: str | None,
    role: Role,
    vector: tuple[float, ...] | None,
    embedding_model: str,
    now: int,
) -> MemoryItem:
    """
    Builds the row to save for ``candidate``. An existing row keeps its id, pin and
    creation time; its confidence only ever goes up.
    """
    source_role = role if role in ("user", "assistant") else None
    if existing is not None:
        return dataclasses.replace(
            existing,
            text=candidate.text,
            category=candidate.category,
            confidence=max(existing.confidence, candidate.confidence),
            source_conversation_id=conversation_id,
            source_node_id=node_id,
            source_message_id=message_id,
            source_role=source_role,
            embedding=vector if vector is not None else existing.embedding,
            embedding_model=embedding_model if vector is not None else existing.embedding_model,
            updated_at=now,
        )
    return MemoryItem(
        id=new_id(),
        scope_type=scope.scope_type,
        scope_id=scope.scope_id,
        text=candidate.text,
        normalized_text=candidate.normalized_text,
        category=candidate.category,
        confidence=candidate.confidence,
        pinned=False,
        source_conversation_id=conversation_id,
        source_node_id=node_id,
        source_message_id=message_id,
        source_role=source_role,
        embedding=vector,
        embedding_model=embedding_model if vector is not None else None,
        created_at=now,
        updated_at=now,
    )


async def extract_and_store_memories(
    *,
    role: Role,
    content: str,
    conversation_id: str,
    node_id: str,
    settings: MemorySettings,
    embedding_model: str,
    client: ModelClient,
    store: MemoryStore,
    project_id: str | None = None,
    message_id: str | None = None,
    signal: CancelSignal | None = None,
) -> list[MemoryItem]:
    scopes = get_memory_scopes(settings, conversation_id, project_id)
    if not scopes:
        return []

    candidates = extract_memory_candidates(
        content, role, settings.max_per_message, min_confidence=settings.min_confidence
    )
    if not candidates:
        return []

    vectors = await embed_memory_candidates(client, candidates, embedding_model, signal)
    now = now_ms()
    saved = []
    for scope in scopes:
        for candidate in candidates:
            existing = await store.find_memory_by_normalized_text(
                scope.scope_type, scope.scope_id, candidate.normalized_text
            )
            memory = merge_memory(
                existing,
                candidate,
                scope,
                conversation_id=conversation_id,
                node_id=node_id,
                message_id=message_id,
                role=role,
                vector=vectors.get(candidate.normalized_text),
                embedding_model=embedding_model,
                now=now,
            )
            await store.save_memory(memory)
            saved.append(memory)

    logger.info(
        "memories_stored",
        conversation_id=conversation_id,
        role=role,
        candidates=len(candidates),
        scopes=[scope.scope_type for scope in scopes],
    )
    return saved


# ==============================================================================
# RETRIEVAL
# ==============================================================================
def score_memories(
    memories: Sequence[MemoryItem],
    query: str,
    query_embedding: Sequence[float] | None,
    embedding_model: str,
    now: int,
) -> list[RetrievedMemoryItem]:
    """Scores memories and sorts them by score, then pinned, then confidence."""
    query_terms = tokenize_retrieval_text(query)
    scored = []
    for memory in memories:
        lexical = compute_lexical_chunk_score(memory.text, query_terms) if query_terms else 0.0
        semantic = 0.0
        if query_embedding is not None and memory.embedding_model == embedding_model and memory.embedding:
            semantic = max(0.0, cosine_similarity(query_embedding, memory.embedding))
        age_days = max(0.0, (now - memory.updated_at) / _MS_PER_DAY)
        recency = max(0.0, 1 - age_days / MEMORY_RECENCY_WINDOW_DAYS)
        score = (
            lexical
            + semantic * SEMANTIC_SCORE_WEIGHT
            + (MEMORY_PINNED_BONUS if memory.pinned else 0.0)
            + max(0.0, memory.confidence)
            + recency * MEMORY_RECENCY_WEIGHT
        )
        scored.append(
            RetrievedMemoryItem(item=memory, score=score, lexical_score=lexical, semantic_score=semantic)
        )
    scored.sort(key=lambda entry: (-entry.score, not entry.item.pinned, -entry.item.confidence))
    return scored


def _memory_label(item: MemoryItem) -> str:
    pinned = "/pinned" if item.pinned else ""
    return f"[{item.scope_type}/{item.category}{pinned}]"


def render_memory_prompt(items: Sequence[RetrievedMemoryItem]) -> str:
    lines = [f"{index + 1}. {_memory_label(entry.item)} {entry.item.text}" for index, entry in enumerate(items)]
    return MEMORY_PROMPT_HEADER + "\n" + "\n".join(lines)


def render_memory_preview(query: str, embedding_model: str, items: Sequence[RetrievedMemoryItem]) -> str:
    lines = [
        f"{index + 1}. {_memory_label(entry.item)} score={entry.score:.3f} "
        f"confidence={entry.item.confidence:.2f}\n{entry.item.text}"
        for index, entry in enumerate(items)
    ]
    header = [
        "Memory context (retrieved):",
        "Mode: retrieval (hybrid lexical + embedding)",
        f"Query: {query.strip() or '(empty prompt)'}",
        f"Embedding model: {embedding_model}",
        f"Items: {len(items)}",
        "",
    ]
    return "\n".join(header + lines)


async def load_scope_memories(store: MemoryStore, scopes: Sequence[MemoryScope]) -> list[MemoryItem]:
    """Loads every scope and dedupes on (scope, normalized text); later rows win."""
    unique: dict[tuple[str, str, str], MemoryItem] = {}
    for scope in scopes:
        for memory in await store.load_memories_for_scope(scope.scope_type, scope.scope_id):
            unique[(memory.scope_type, memory.scope_id, memory.normalized_text)] = memory
    return list(unique.values())


async def build_memory_prompt(
    *,
    query: str,
    embedding_model: str,
    conversation_id: str,
    settings: MemorySettings,
    client: ModelClient,
    store: MemoryStore,
    project_id: str | None = None,
    signal: CancelSignal | None = None,
    now: int | None = None,
) -> MemoryRetrievalPreview | None:
    scopes = get_memory_scopes(settings, conversation_id, project_id)
    if not scopes:
        return None
    memories = await load_scope_memories(store, scopes)
    if not memories:
        return None

    query_embedding = None
    if query.strip():
        query_embedding = await safe_embed_query(client, query, embedding_model, signal)
    timestamp = now if now is not None else now_ms()
    top = score_memories(memories, query, query_embedding, embedding_model, timestamp)[: settings.max_retrieved]
    if not top:
        return None

    logger.info("memories_retrieved", conversation_id=conversation_id, items=len(top), scopes=len(scopes))
    return MemoryRetrievalPreview(
        query=query,
        embedding_model=embedding_model,
        items=tuple(top),
        prompt=render_memory_prompt(top),
        preview=render_memory_preview(query, embedding_model, top),
        generated_at=timestamp,
    )
