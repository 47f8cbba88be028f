"""
Map-reduce summarization for attachments and conversation history.

File summaries: each overlapping chunk is summarized on its own, then the
chunk summaries are merged in fixed-size groups until a single summary is
left. When no model call produces anything, the first chunk is turned into an
extractive bullet list instead.

Conversation summaries: when the assembled prompt is over budget, everything
except the leading system messages and a short tail is collapsed into one
"Summary of earlier context" system message.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple, Sequence

from .cancellation import CancelSignal, raise_if_cancelled
from .config import (
    FILE_SUMMARY_MAX_CHUNKS,
    SUMMARY_REDUCE_GROUP_SIZE,
    SUMMARY_TAIL_MESSAGES,
    SUMMARY_TEMPERATURE,
)
from .errors import OperationCancelled
from .file_source import FileSource, stream_file_overlapping_chunks
from .model_client import ChatMessage, ModelClient
from .observability import get_logger
from .settings import AttachmentProcessingSettings
from .tokenization import estimate_tokens_for_contents

logger = get_logger(__name__)

CHUNK_SUMMARY_PROMPT = (
    "Summarize this chunk. Keep critical facts, entities, numbers, and decisions. "
    "Use concise bullet points."
)
MERGE_SUMMARIES_PROMPT = (
    "Merge the summaries into one compact summary. Preserve important details and "
    "unresolved questions. Use concise bullet points."
)
CONVERSATION_SUMMARY_PROMPT = (
    "Summarize the conversation so far. Preserve key facts, decisions, names, and "
    "open questions. Use concise bullet points."
)
SUMMARY_MESSAGE_PREFIX = "Summary of earlier context:"

CHUNK_SUMMARY_MAX_TOKENS = 384
MERGE_SUMMARY_MAX_TOKENS = 512
CONVERSATION_SUMMARY_MAX_TOKENS = 512

_FALLBACK_MAX_LINES = 8
_FALLBACK_MAX_LINE_CHARS = 200


class FileSummary(NamedTuple):
    summary: str
    truncated: bool


@dataclass(frozen=True)
class MessageSummaryResult:
    messages: list[ChatMessage]
    summary: str | None = None
    source_count: int = 0


def build_extractive_fallback_summary(text: str) -> str:
    lines = [line.strip() for line in (text or "").splitlines()]
    lines = [line for line in lines if line][:_FALLBACK_MAX_LINES]
    clipped = [
        f"{line[: _FALLBACK_MAX_LINE_CHARS - 3]}..." if len(line) > _FALLBACK_MAX_LINE_CHARS else line
        for line in lines
    ]
    return "\n".join(f"- {line}" for line in clipped)


async def summarize_text_chunk(
    client: ModelClient, chunk: str, model: str, signal: CancelSignal | None = None
) -> str:
    result = await client.chat_completion(
        model,
        [
            {"role": "system", "content": CHUNK_SUMMARY_PROMPT},
            {"role": "user", "content": chunk},
        ],
        temperature=SUMMARY_TEMPERATURE,
        max_tokens=CHUNK_SUMMARY_MAX_TOKENS,
        signal=signal,
    )
    return (result or "").strip()


async def reduce_summaries(
    client: ModelClient,
    summaries: Sequence[str],
    model: str,
    signal: CancelSignal | None = None,
    *,
    group_size: int = SUMMARY_REDUCE_GROUP_SIZE,
) -> str:
    """Merges summaries group by group until one is left; a round with no output yields ''."""
    current = [summary for summary in summaries if summary]
    if not current:
        return ""
    group_size = max(2, int(group_size))

    while len(current) > 1:
        merged_round: list[str] = []
        for start in range(0, len(current), group_size):
            raise_if_cancelled(signal, "summary reduce")
            group = current[start : start + group_size]
            body = "\n\n".join(f"Summary {idx + 1}:\n{entry}" for idx, entry in enumerate(group))
            try:
                merged = await client.chat_completion(
                    model,
                    [
                        {"role": "system", "content": MERGE_SUMMARIES_PROMPT},
                        {"role": "user", "content": body},
                    ],
                    temperature=SUMMARY_TEMPERATURE,
                    max_tokens=MERGE_SUMMARY_MAX_TOKENS,
                    signal=signal,
                )
            except OperationCancelled:
                raise
            except Exception as exc:
                logger.warning("summary_merge_failed", model=model, group_size=len(group), error=str(exc))
                continue
            merged = (merged or "").strip()
            if merged:
                merged_round.append(merged)
        if not merged_round:
            return ""
        current = merged_round

    return current[0]


async def summarize_file_hierarchical(
    client: ModelClient,
    source: FileSource,
    settings: AttachmentProcessingSettings,
    model: str,
    signal: CancelSignal | None = None,
    *,
    max_chunks: int = FILE_SUMMARY_MAX_CHUNKS,
) -> FileSummary:
    chunk_summaries: list[str] = []
    chunk_count = 0
    truncated = False
    first_chunk = ""

    async for chunk in stream_file_overlapping_chunks(
        source, settings.chunk_size, settings.chunk_overlap, signal
    ):
        raise_if_cancelled(signal, "file summary")
        if not first_chunk:
            first_chunk = chunk
        if not chunk.strip():
            continue

        chunk_count += 1
        try:
            summary = await summarize_text_chunk(client, chunk, model, signal)
        except OperationCancelled:
            raise
        except Exception as exc:
            logger.warning("chunk_summary_failed", file=source.name, chunk=chunk_count, error=str(exc))
            summary = ""
        if summary:
            chunk_summaries.append(summary)

        if chunk_count >= max_chunks:
            truncated = True
            break

    summary = await reduce_summaries(client, chunk_summaries, model, signal)
    if not summary and first_chunk.strip():
        logger.info("file_summary_extractive_fallback", file=source.name, chunks=chunk_count)
        summary = build_extractive_fallback_summary(first_chunk)

    return FileSummary(summary=summary.strip(), truncated=truncated)


# --- conversation history -------------------------------------------------

def estimate_message_tokens(messages: Sequence[ChatMessage]) -> int:
    return estimate_tokens_for_contents(message.get("content", "") for message in messages)


def split_system_messages(messages: Sequence[ChatMessage]) -> tuple[list[ChatMessage], list[ChatMessage]]:
    """Splits off the leading run of system messages; later system messages stay in the rest."""
    index = 0
    while index < len(messages) and messages[index].get("role") == "system":
        index += 1
    return list(messages[:index]), list(messages[index:])


def trim_to_token_limit(messages: Sequence[ChatMessage], max_input_tokens: int) -> list[ChatMessage]:
    """
    Drops the oldest message after the leading system run until the estimate fits.
    At least one message is always kept.
    """
    trimmed = list(messages)
    while len(trimmed) > 1 and estimate_message_tokens(trimmed) > max_input_tokens:
        system_messages, rest = split_system_messages(trimmed)
        if rest:
            trimmed = system_messages + rest[1:]
        else:
            # only system messages left
            trimmed = system_messages[1:]
    return trimmed


async def summarize_messages(
    client: ModelClient, messages: Sequence[ChatMessage], model: str, signal: CancelSignal | None = None
) -> str:
    summary = await client.chat_completion(
        model,
        [{"role": "system", "content": CONVERSATION_SUMMARY_PROMPT}, *messages],
        temperature=SUMMARY_TEMPERATURE,
        max_tokens=CONVERSATION_SUMMARY_MAX_TOKENS,
        signal=signal,
    )
    return (summary or "").strip()


async def maybe_summarize_messages(
    client: ModelClient,
    messages: Sequence[ChatMessage],
    max_input_tokens: int,
    model: str,
    signal: CancelSignal | None = None,
    *,
    tail_size: int = SUMMARY_TAIL_MESSAGES,
) -> MessageSummaryResult:
    """
    Returns the messages unchanged when they fit. Otherwise summarizes all but the
    last ``tail_size`` conversation messages; with too few messages to summarize it
    only trims.
    """
    messages = list(messages)
    if estimate_message_tokens(messages) <= max_input_tokens:
        return MessageSummaryResult(messages=messages)

    system_messages, conversation_messages = split_system_messages(messages)
    if len(conversation_messages) <= tail_size:
        return MessageSummaryResult(messages=trim_to_token_limit(messages, max_input_tokens))

    tail = conversation_messages[-tail_size:]
    to_summarize = conversation_messages[: len(conversation_messages) - tail_size]
    summary = await summarize_messages(client, to_summarize, model, signal)
    summary_message: ChatMessage = {"role": "system", "content": f"{SUMMARY_MESSAGE_PREFIX}\n{summary}"}
    combined = [*system_messages, summary_message, *tail]
    logger.info(
        "conversation_summarized",
        summarized_messages=len(to_summarize),
        kept_messages=len(tail),
        max_input_tokens=max_input_tokens,
    )

    if estimate_message_tokens(combined) > max_input_tokens:
        combined = trim_to_token_limit(combined, max_input_tokens)
    return MessageSummaryResult(messages=combined, summary=summary, source_count=len(to_summarize))
