"""
Send and reindex metrics for the conversation engine.

Tracks: send latency, outcome (completed / cancelled / failed), prompt token
estimates, summarization triggers, index rebuilds and process memory.
Logs structured entries to metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import threading
import time
from pathlib import Path
from typing import Literal

import psutil

from .config import METRICS_DIR

SendOutcome = Literal["completed", "cancelled", "failed"]


class MetricsCollector:
    """Thread-safe send/index metrics tracker with JSONL file logging."""

    def __init__(self, log_dir: str | Path = METRICS_DIR):
        self._lock = threading.Lock()
        self._start_time: float = time.time()

        # Send counters.
        self._total_sends: int = 0
        self._outcomes: dict[str, int] = {"completed": 0, "cancelled": 0, "failed": 0}
        self._total_latency_ms: float = 0.0
        self._min_latency_ms: float = float("inf")
        self._max_latency_ms: float = 0.0
        self._total_prompt_tokens: int = 0
        self._summarized_sends: int = 0

        # Index counters.
        self._index_rebuilds: int = 0
        self._indexed_chunks: int = 0

        self._log_dir = Path(log_dir)
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._log_path = self._log_dir / "metrics.jsonl"

        self._process = psutil.Process(os.getpid())

    @property
    def log_path(self) -> Path:
        return self._log_path

    def _append(self, entry: dict):
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError:
            pass

    def record_send(
        self,
        latency_ms: float,
        outcome: SendOutcome,
        prompt_tokens: int = 0,
        summarized: bool = False,
        model: str = "",
    ) -> None:
        """Records one send and appends it to the JSONL log."""
        entry = {
            "event": "send",
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "latency_ms": round(latency_ms, 2),
            "outcome": outcome,
            "prompt_tokens": prompt_tokens,
            "summarized": summarized,
            "model": model,
        }

        with self._lock:
            self._total_sends += 1
            self._outcomes[outcome] = self._outcomes.get(outcome, 0) + 1
            self._total_latency_ms += latency_ms
            self._min_latency_ms = min(self._min_latency_ms, latency_ms)
            self._max_latency_ms = max(self._max_latency_ms, latency_ms)
            self._total_prompt_tokens += prompt_tokens
            if summarized:
                self._summarized_sends += 1

        self._append(entry)

    def record_index_rebuild(self, scope_type: str, scope_id: str, sources: int, chunks: int = 0) -> None:
        entry = {
            "event": "index_rebuild",
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "scope_type": scope_type,
            "scope_id": scope_id,
            "sources": sources,
            "chunks": chunks,
        }
        with self._lock:
            self._index_rebuilds += sources
            self._indexed_chunks += chunks
        self._append(entry)

    def get_summary(self) -> dict:
        """Returns a metrics snapshot."""
        with self._lock:
            total = self._total_sends
            avg_lat = (self._total_latency_ms / total) if total > 0 else 0.0
            min_lat = self._min_latency_ms if total > 0 else 0.0
            max_lat = self._max_latency_ms if total > 0 else 0.0
            outcomes = dict(self._outcomes)
            prompt_tokens = self._total_prompt_tokens
            summarized = self._summarized_sends
            rebuilds = self._index_rebuilds
            chunks = self._indexed_chunks

        uptime_s = time.time() - self._start_time
        mem_info = self._process.memory_info()

        return {
            "latency": {
                "avg_ms": round(avg_lat, 2),
                "min_ms": round(min_lat, 2),
                "max_ms": round(max_lat, 2),
            },
            "sends": {
                "total": total,
                "outcomes": outcomes,
                "summarized": summarized,
                "avg_prompt_tokens": round(prompt_tokens / total, 1) if total > 0 else 0.0,
                "uptime_seconds": round(uptime_s, 1),
            },
            "index": {
                "rebuilt_sources": rebuilds,
                "indexed_chunks": chunks,
            },
            "memory": {
                "rss_mb": round(mem_info.rss / (1024 * 1024), 1),
                "vms_mb": round(mem_info.vms / (1024 * 1024), 1),
            },
        }
