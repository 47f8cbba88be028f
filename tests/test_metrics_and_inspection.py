import io
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from rich.console import Console

from graphchat import inspection
from graphchat.conversation_state import ConversationState
from graphchat.metrics import MetricsCollector
from graphchat.models import MemoryItem, MemoryRetrievalPreview, RagScopeEmbeddingStats, RagScopeStats, RetrievedMemoryItem
from graphchat.settings import MemorySettings, ToolSettings
from graphchat.token_budget import estimate_context_extra_tokens


class TestMetricsCollector(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.metrics = MetricsCollector(log_dir=Path(self.tmp.name))

    def tearDown(self):
        self.tmp.cleanup()

    def test_summary_aggregates_sends(self):
        self.metrics.record_send(100.0, "completed", prompt_tokens=300, summarized=True, model="m")
        self.metrics.record_send(50.0, "cancelled", prompt_tokens=100)
        summary = self.metrics.get_summary()

        self.assertEqual(summary["sends"]["total"], 2)
        self.assertEqual(summary["sends"]["outcomes"], {"completed": 1, "cancelled": 1, "failed": 0})
        self.assertEqual(summary["sends"]["summarized"], 1)
        self.assertEqual(summary["sends"]["avg_prompt_tokens"], 200.0)
        self.assertEqual(summary["latency"], {"avg_ms": 75.0, "min_ms": 50.0, "max_ms": 100.0})
        self.assertGreater(summary["memory"]["rss_mb"], 0)

    def test_empty_summary(self):
        summary = self.metrics.get_summary()
        self.assertEqual(summary["latency"]["min_ms"], 0.0)
        self.assertEqual(summary["sends"]["avg_prompt_tokens"], 0.0)

    def test_events_are_logged_as_jsonl(self):
        self.metrics.record_send(10.0, "failed")
        self.metrics.record_index_rebuild("conversation", "c1", sources=2, chunks=14)

        entries = [json.loads(line) for line in self.metrics.log_path.read_text(encoding="utf-8").splitlines()]
        self.assertEqual([entry["event"] for entry in entries], ["send", "index_rebuild"])
        self.assertEqual(entries[1]["chunks"], 14)
        self.assertEqual(self.metrics.get_summary()["index"], {"rebuilt_sources": 2, "indexed_chunks": 14})


class TestInspection(unittest.TestCase):
    def setUp(self):
        self.buffer = io.StringIO()
        self.console = Console(file=self.buffer, width=200, color_system=None)

    def _render(self, renderable):
        self.console.print(renderable)
        return self.buffer.getvalue()

    def test_context_table_lists_messages(self):
        state = ConversationState.new_conversation("Trip", system_prompt="Be brief.")
        state, _ = state.add_message(state.root_node_id, "user", "Book a hotel in Lisbon")
        output = self._render(inspection.render_context_table(state.compute_context(state.root_node_id)))

        self.assertIn("Computed Context (2 messages", output)
        self.assertIn("Book a hotel in Lisbon", output)
        self.assertIn("system", output)

    def test_memory_panel(self):
        self.assertIn("No memories retrieved.", self._render(inspection.render_memory_preview_panel(None)))

        item = MemoryItem(
            id="m", scope_type="user", scope_id="global", text="Prefers tables",
            normalized_text="prefers tables", category="preference", confidence=0.8,
        )
        preview = MemoryRetrievalPreview(
            query="q", embedding_model="e", items=(RetrievedMemoryItem(item, 1.0, 0.0, 0.0),), preview="1. Prefers tables"
        )
        self.assertIn("Memory Retrieval (1 items)", self._render(inspection.render_memory_preview_panel(preview)))

    def test_rag_stats_table_marks_stale_embeddings(self):
        rows = [("conversation", "c1", RagScopeStats(chunk_count=4, source_count=2, latest_updated_at=0))]
        coverage = {("conversation", "c1"): RagScopeEmbeddingStats(chunk_count=4, matching_embedding_chunks=3, stale_embedding_chunks=1)}
        output = self._render(inspection.render_rag_stats_table(rows, coverage))
        self.assertIn("3/4 (1 stale)", output)

    def test_token_budget_panel(self):
        state = ConversationState.new_conversation("Trip", system_prompt="x" * 40)
        context = state.compute_context(state.root_node_id)
        extra = estimate_context_extra_tokens(ToolSettings(), MemorySettings())
        output = self._render(inspection.render_token_budget_panel(context, extra, 512))
        self.assertIn("Total: 10 / 512", output)

    def test_show_rag_stats_without_rows(self):
        with patch.object(inspection, "console", self.console):
            inspection.show_rag_stats([])
        self.assertIn("No indexed attachment scopes.", self.buffer.getvalue())


if __name__ == "__main__":
    unittest.main()
