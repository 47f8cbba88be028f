"""
Normalized settings objects consumed by the conversation engine.

Raw values arrive from forms or stored JSON; every model clamps them into the
documented ranges so downstream code never re-validates.
"""
from __future__ import annotations

import math
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from . import config


def _finite_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp_int(value: Any, minimum: int, maximum: int, default: int) -> int:
    number = _finite_number(value)
    if number is None:
        return default
    return max(minimum, min(maximum, _round_half_up(number)))


def clamp_float(value: Any, minimum: float, maximum: float, default: float) -> float:
    number = _finite_number(value)
    if number is None:
        return default
    return round(max(minimum, min(maximum, number)), 3)


class AttachmentProcessingSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: Literal["retrieval", "summarize"] = "retrieval"
    retrieval_top_k: int = 6
    chunk_size: int = 1200
    chunk_overlap: int = 200

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        raw = dict(data) if isinstance(data, dict) else {}
        chunk_size = clamp_int(raw.get("chunk_size"), 400, 6000, 1200)
        return {
            "mode": "summarize" if raw.get("mode") == "summarize" else "retrieval",
            "retrieval_top_k": clamp_int(raw.get("retrieval_top_k"), 1, 20, 6),
            "chunk_size": chunk_size,
            "chunk_overlap": clamp_int(raw.get("chunk_overlap"), 0, chunk_size - 1, 200),
        }


def default_attachment_processing() -> AttachmentProcessingSettings:
    """Attachment settings seeded from environment configuration."""
    return AttachmentProcessingSettings(
        mode=config.ATTACHMENT_MODE,
        retrieval_top_k=config.RETRIEVAL_TOP_K,
        chunk_size=config.CHUNK_SIZE,
        chunk_overlap=config.CHUNK_OVERLAP,
    )


class MemorySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    include_conversation: bool = True
    include_project: bool = True
    include_user: bool = True
    auto_extract_user: bool = config.MEMORY_AUTO_EXTRACT_DEFAULT
    auto_extract_assistant: bool = False
    max_per_message: int = 4
    max_retrieved: int = 8
    min_confidence: float = 0.55

    @field_validator("max_per_message", mode="before")
    @classmethod
    def _clamp_per_message(cls, value: Any) -> int:
        return clamp_int(value, 1, 12, 4)

    @field_validator("max_retrieved", mode="before")
    @classmethod
    def _clamp_retrieved(cls, value: Any) -> int:
        return clamp_int(value, 1, 24, 8)

    @field_validator("min_confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        return clamp_float(value, 0.1, 1.0, 0.55)


class ContextSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    excluded_node_ids: tuple[str, ...] = ()
    include_system_prompt: bool = True
    include_custom_instructions: bool = True
    include_project_instructions: bool = True
    include_attachment_context: bool = True
    include_project_attachment_context: bool = True


class McpServerSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    enabled: bool = True
    url: str = ""
    transport: Literal["http", "sse"] = "http"
    enabled_tools: tuple[str, ...] = ()

    @field_validator("enabled_tools", mode="before")
    @classmethod
    def _clean_tools(cls, value: Any) -> tuple[str, ...]:
        if not isinstance(value, (list, tuple)):
            return ()
        return tuple(entry.strip() for entry in value if isinstance(entry, str) and entry.strip())


class ToolSettings(BaseModel):
    """Local tool toggles and MCP servers; only their token cost matters here."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    max_steps: int = 4
    datetime_now: bool = True
    calculator: bool = True
    search_messages: bool = True
    search_context_chunks: bool = True
    attachment_reader: bool = True
    daytona_exec: bool = False
    mcp_enabled: bool = False
    mcp_servers: tuple[McpServerSettings, ...] = Field(default_factory=tuple)

    @field_validator("max_steps", mode="before")
    @classmethod
    def _clamp_steps(cls, value: Any) -> int:
        number = _finite_number(value)
        if number is None:
            return 4
        return max(1, min(12, int(math.floor(number))))
