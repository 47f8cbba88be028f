"""
Fixed-cost token estimates for prompt overhead that is not part of the
assembled conversation: tool schemas, MCP servers and injected memories.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Literal, Sequence

from .config import DEFAULT_CONTEXT_LENGTH, MIN_INPUT_TOKENS, RESERVED_OUTPUT_TOKENS
from .models import FileAttachment, MemoryRetrievalPreview
from .settings import MemorySettings, ToolSettings
from .tokenization import estimate_tokens_from_text

LOCAL_TOOL_TOKEN_COST = {
    "datetime_now": 18,
    "calculator": 32,
    "search_messages": 58,
    "search_context_chunks": 64,
    "attachment_reader": 72,
    "daytona_exec": 92,
}

TOOL_LOOP_BASE_TOKENS = 24
MCP_SERVER_BASE_TOKENS = 36
MCP_TOOL_TOKENS = 30
MCP_UNKNOWN_TOOL_COUNT = 6
MEMORY_HEADER_TOKENS = 16
MEMORY_ITEM_OVERHEAD_TOKENS = 10
MEMORY_FALLBACK_ITEM_TOKENS = 34
ATTACHMENT_TOKEN_CAP = 512


@dataclass(frozen=True)
class ToolTokenEstimate:
    total: int = 0
    local: int = 0
    mcp: int = 0
    local_tool_count: int = 0
    mcp_server_count: int = 0
    mcp_tool_count: int = 0


@dataclass(frozen=True)
class MemoryTokenEstimate:
    total: int
    item_count: int
    source: Literal["disabled", "preview", "fallback"]


@dataclass(frozen=True)
class ContextExtraTokenEstimate:
    total: int
    tools: ToolTokenEstimate
    memory: MemoryTokenEstimate


def estimate_attachment_tokens(attachments: Sequence[FileAttachment]) -> int:
    return sum(min(ATTACHMENT_TOKEN_CAP, math.ceil(attachment.size / 4)) for attachment in attachments)


def estimate_tool_context_tokens(tool_settings: ToolSettings) -> ToolTokenEstimate:
    if not tool_settings.enabled:
        return ToolTokenEstimate()

    toggles = {
        "datetime_now": tool_settings.datetime_now,
        "calculator": tool_settings.calculator,
        "search_messages": tool_settings.search_messages,
        "search_context_chunks": tool_settings.search_context_chunks,
        "attachment_reader": tool_settings.attachment_reader,
        "daytona_exec": tool_settings.daytona_exec,
    }
    enabled_tools = [name for name, enabled in toggles.items() if enabled]
    local = TOOL_LOOP_BASE_TOKENS + sum(LOCAL_TOOL_TOKEN_COST[name] for name in enabled_tools)

    mcp = 0
    server_count = 0
    tool_count = 0
    if tool_settings.mcp_enabled:
        servers = [server for server in tool_settings.mcp_servers if server.enabled and server.url.strip()]
        server_count = len(servers)
        for server in servers:
            # tool list not discovered yet
            count = len(server.enabled_tools) or MCP_UNKNOWN_TOOL_COUNT
            tool_count += count
            mcp += MCP_SERVER_BASE_TOKENS + count * MCP_TOOL_TOKENS

    return ToolTokenEstimate(
        total=local + mcp,
        local=local,
        mcp=mcp,
        local_tool_count=len(enabled_tools),
        mcp_server_count=server_count,
        mcp_tool_count=tool_count,
    )


def estimate_memory_context_tokens(
    memory_settings: MemorySettings, memory_preview: MemoryRetrievalPreview | None = None
) -> MemoryTokenEstimate:
    if not memory_settings.enabled:
        return MemoryTokenEstimate(total=0, item_count=0, source="disabled")

    if memory_preview is not None and memory_preview.items:
        total = MEMORY_HEADER_TOKENS + sum(
            estimate_tokens_from_text(entry.item.text) + MEMORY_ITEM_OVERHEAD_TOKENS
            for entry in memory_preview.items
        )
        return MemoryTokenEstimate(total=total, item_count=len(memory_preview.items), source="preview")

    item_count = max(1, memory_settings.max_retrieved)
    return MemoryTokenEstimate(
        total=MEMORY_HEADER_TOKENS + item_count * MEMORY_FALLBACK_ITEM_TOKENS,
        item_count=item_count,
        source="fallback",
    )


def estimate_context_extra_tokens(
    tool_settings: ToolSettings,
    memory_settings: MemorySettings,
    memory_preview: MemoryRetrievalPreview | None = None,
) -> ContextExtraTokenEstimate:
    tools = estimate_tool_context_tokens(tool_settings)
    memory = estimate_memory_context_tokens(memory_settings, memory_preview)
    return ContextExtraTokenEstimate(total=tools.total + memory.total, tools=tools, memory=memory)


def compute_max_input_tokens(context_length: int | None, extra_tokens: int = 0) -> int:
    """Input budget left after reserving output room and fixed overhead, never below the floor."""
    window = context_length or DEFAULT_CONTEXT_LENGTH
    return max(MIN_INPUT_TOKENS, window - RESERVED_OUTPUT_TOKENS - extra_tokens)
