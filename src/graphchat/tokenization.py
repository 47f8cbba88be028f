"""
Shared tokenization and token-estimation helpers.
"""
from __future__ import annotations

import math
import re

_RETRIEVAL_SPLIT_RE = re.compile(r"[^a-z0-9_]+")
_WHITESPACE_RE = re.compile(r"\s+")

CHARS_PER_TOKEN = 4


def tokenize_retrieval_text(text: str, *, min_len: int = 2) -> list[str]:
    """
    Splits text into lowercase ASCII word terms used by lexical scoring.
    Duplicates are kept; callers decide whether repeated terms count twice.
    """
    tokens = _RETRIEVAL_SPLIT_RE.split(str(text or "").lower())
    return [token for token in tokens if len(token) >= min_len]


def estimate_tokens_from_text(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_tokens_for_contents(contents) -> int:
    """Estimates tokens over the summed character count, not per item."""
    total_chars = sum(len(content or "") for content in contents)
    return math.ceil(total_chars / CHARS_PER_TOKEN)


def compact_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", str(text or "")).strip()
