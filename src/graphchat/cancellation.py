"""Cooperative cancellation helpers shared by indexing, summarization and streaming."""
from __future__ import annotations

import asyncio

from .errors import OperationCancelled

CancelSignal = asyncio.Event


def is_cancelled(signal: CancelSignal | None) -> bool:
    return signal is not None and signal.is_set()


def raise_if_cancelled(signal: CancelSignal | None, stage: str = ""):
    if is_cancelled(signal):
        raise OperationCancelled(f"cancelled during {stage}" if stage else "cancelled")
