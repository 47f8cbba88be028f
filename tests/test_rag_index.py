import asyncio
import unittest

from graphchat.errors import OperationCancelled
from graphchat.file_source import InMemoryFileSource, InMemoryFileSourceProvider
from graphchat.models import FileAttachment, RagChunk
from graphchat.rag_index import (
    NO_ATTACHMENT_CONTENT,
    RETRIEVAL_MODE_LINE,
    RETRIEVED_HEADER,
    RetrievalChunkCandidate,
    build_attachment_context,
    build_rag_source_key,
    can_reuse_chunks,
    compact_attachment_context_message,
    compute_lexical_chunk_score,
    compute_rag_scope_embedding_stats,
    compute_rag_scope_stats,
    cosine_similarity,
    pick_top_retrieval_chunks,
    score_retrieval_chunks,
    semantic_index_status,
    split_text_with_overlap,
)
from graphchat.settings import AttachmentProcessingSettings

_VOCAB = ("flight", "hotel", "museum", "dinner", "train", "beach")


def _embed(text):
    lower = text.lower()
    return [float(lower.count(word)) + 0.01 for word in _VOCAB]


class _FakeModelClient:
    def __init__(self, fail_embeddings=False):
        self.fail_embeddings = fail_embeddings
        self.embedding_calls = []
        self.completion_calls = []

    async def embeddings(self, model, inputs, signal=None):
        self.embedding_calls.append((model, list(inputs)))
        if self.fail_embeddings:
            raise RuntimeError("embedding service down")
        return [_embed(text) for text in inputs]

    async def chat_completion(self, model, messages, *, temperature=None, max_tokens=None, signal=None):
        self.completion_calls.append(list(messages))
        return "- summarized: " + messages[-1]["content"][:20]

    async def stream_chat_completion(self, model, messages, *, temperature=None, max_tokens=None, signal=None):
        yield "unused"


class _InMemoryChunkStore:
    def __init__(self):
        self.rows = {}
        self.replace_calls = 0

    async def load_rag_chunks_for_scope(self, scope_type, scope_id):
        rows = [c for c in self.rows.values() if c.scope_type == scope_type and c.scope_id == scope_id]
        return sorted(rows, key=lambda c: (c.created_at, c.source_key, c.chunk_index))

    async def load_rag_chunks_for_source(self, scope_type, scope_id, source_key):
        rows = await self.load_rag_chunks_for_scope(scope_type, scope_id)
        return [c for c in rows if c.source_key == source_key]

    async def save_rag_chunks(self, chunks):
        for chunk in chunks:
            self.rows[(chunk.scope_type, chunk.scope_id, chunk.id)] = chunk

    async def delete_rag_chunks_for_scope(self, scope_type, scope_id):
        self.rows = {k: c for k, c in self.rows.items() if (c.scope_type, c.scope_id) != (scope_type, scope_id)}

    async def delete_rag_chunks_for_source(self, scope_type, scope_id, source_key):
        self.rows = {
            k: c
            for k, c in self.rows.items()
            if (c.scope_type, c.scope_id, c.source_key) != (scope_type, scope_id, source_key)
        }

    async def replace_source_chunks(self, scope_type, scope_id, source_key, chunks):
        self.replace_calls += 1
        await self.delete_rag_chunks_for_source(scope_type, scope_id, source_key)
        await self.save_rag_chunks(chunks)


def _chunk(index, text, source_key="s1", embedding=None, embedding_model=None, updated_at=0):
    return RagChunk(
        id=f"{source_key}:{index}",
        scope_type="conversation",
        scope_id="c1",
        source_key=source_key,
        attachment_id="a1",
        attachment_name="notes.md",
        chunk_index=index,
        chunk_text=text,
        chunk_token_estimate=len(text) // 4,
        embedding=embedding,
        embedding_model=embedding_model,
        updated_at=updated_at,
    )


class _VanishedFileSource:
    """A text file that was deleted after it was resolved."""

    name = "gone.txt"
    type = "text/plain"

    @property
    def size(self):
        raise FileNotFoundError("gone.txt")

    @property
    def last_modified(self):
        raise FileNotFoundError("gone.txt")

    async def iter_text(self):
        raise FileNotFoundError("gone.txt")
        yield ""


TRIP_TEXT = "\n".join(
    f"Day {day}: flight check-in, hotel transfer and museum visit before dinner." for day in range(1, 80)
)


class TestRetrievalHelpers(unittest.TestCase):
    def test_split_text_with_overlap_keeps_tail_window(self):
        self.assertEqual(split_text_with_overlap("abcdefghij", 4, 1), ["abcd", "defg", "ghij", "j"])
        self.assertEqual(split_text_with_overlap("", 4, 1), [])

    def test_lexical_score_counts_whole_words(self):
        score = compute_lexical_chunk_score("The cat sat on the cat mat. Concatenate!", ["cat", "dog"])
        self.assertEqual(score, 2.25)
        self.assertEqual(compute_lexical_chunk_score("anything", []), 0.0)

    def test_lexical_score_is_monotonic_in_matches(self):
        terms = ["hotel"]
        base = compute_lexical_chunk_score("hotel near the beach", terms)
        more = compute_lexical_chunk_score("hotel near the beach, hotel lobby", terms)
        self.assertGreater(more, base)

    def test_cosine_similarity_truncates_to_shorter_vector(self):
        self.assertAlmostEqual(cosine_similarity([1.0, 0.0], [1.0, 0.0, 5.0]), 1.0)
        self.assertEqual(cosine_similarity([], [1.0]), 0.0)
        self.assertEqual(cosine_similarity([0.0, 0.0], [1.0, 1.0]), 0.0)

    def test_pick_top_breaks_ties_by_order(self):
        candidates = [
            RetrievalChunkCandidate("a", 0, "x", score=1.0, order=1),
            RetrievalChunkCandidate("a", 1, "y", score=1.0, order=0),
            RetrievalChunkCandidate("a", 2, "z", score=3.0, order=2),
        ]
        picked = pick_top_retrieval_chunks(candidates, 2)
        self.assertEqual([c.chunk_index for c in picked], [2, 1])

    def test_semantic_status(self):
        ready = [_chunk(0, "x", embedding=(1.0,), embedding_model="m")]
        stale = ready + [_chunk(1, "y", embedding=(1.0,), embedding_model="old")]
        self.assertEqual(semantic_index_status(ready, "m"), "ready")
        self.assertEqual(semantic_index_status(stale, "m"), "stale")
        self.assertEqual(semantic_index_status(ready, "other"), "unavailable")

    def test_stale_embeddings_add_no_semantic_score(self):
        chunks = [_chunk(0, "hotel", embedding=(1.0, 1.0), embedding_model="old")]
        candidates = score_retrieval_chunks(chunks, ["hotel"], [1.0, 1.0], "new")
        self.assertEqual(candidates[0].semantic_score, 0.0)
        self.assertEqual(candidates[0].score, candidates[0].lexical_score)

    def test_opposed_embedding_never_lowers_lexical_score(self):
        plain = score_retrieval_chunks([_chunk(0, "hotel booking")], ["hotel"], [1.0, 0.0], "m")[0]
        opposed = score_retrieval_chunks(
            [_chunk(0, "hotel booking", embedding=(-1.0, 0.0), embedding_model="m")], ["hotel"], [1.0, 0.0], "m"
        )[0]
        self.assertEqual(opposed.semantic_score, 0.0)
        self.assertGreaterEqual(opposed.score, plain.score)

    def test_no_query_signal_prefers_earlier_chunks(self):
        chunks = [_chunk(0, "first"), _chunk(1, "second")]
        candidates = score_retrieval_chunks(chunks, [], None, "m")
        self.assertGreater(candidates[0].score, candidates[1].score)

    def test_reuse_rule(self):
        self.assertFalse(can_reuse_chunks([], "m"))
        self.assertTrue(can_reuse_chunks([_chunk(0, "x", embedding_model="m"), _chunk(1, "y")], "m"))
        self.assertFalse(can_reuse_chunks([_chunk(0, "x", embedding_model="old")], "m"))

    def test_source_key_tracks_chunk_settings(self):
        attachment = FileAttachment(id="att", name="trip.ics", size=10, handle_id="h1")
        source = InMemoryFileSource("trip.ics", "x" * 10, last_modified=99)
        self.assertEqual(build_rag_source_key(attachment, source, 1200, 200), "h1:trip.ics:10:99:1200:200")
        self.assertNotEqual(
            build_rag_source_key(attachment, source, 1200, 200), build_rag_source_key(attachment, source, 1200, 100)
        )

    def test_compact_message(self):
        block = f"{RETRIEVED_HEADER}\n{RETRIEVAL_MODE_LINE}\n\n[notes.md  chunk 1  hybrid=1.000]\ntext"
        self.assertEqual(compact_attachment_context_message(block), f"{RETRIEVED_HEADER} {RETRIEVAL_MODE_LINE}")
        self.assertEqual(compact_attachment_context_message("plain"), "plain")

    def test_scope_stats(self):
        chunks = [
            _chunk(0, "x", source_key="s1", embedding=(1.0,), embedding_model="m", updated_at=5),
            _chunk(1, "y", source_key="s2", embedding=(1.0,), embedding_model="old", updated_at=9),
        ]
        stats = compute_rag_scope_stats(chunks)
        self.assertEqual((stats.chunk_count, stats.source_count, stats.latest_updated_at), (2, 2, 9))
        embedding_stats = compute_rag_scope_embedding_stats(chunks, "m")
        self.assertEqual(embedding_stats.matching_embedding_chunks, 1)
        self.assertEqual(embedding_stats.matching_embedding_sources, 1)
        self.assertEqual(embedding_stats.stale_embedding_chunks, 1)


class TestAttachmentRetrievalContext(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.client = _FakeModelClient()
        self.store = _InMemoryChunkStore()
        self.attachment = FileAttachment(id="att-1", name="trip.ics", size=len(TRIP_TEXT), type="text/calendar")
        self.provider = InMemoryFileSourceProvider(
            {"att-1": InMemoryFileSource("trip.ics", TRIP_TEXT, type="text/calendar", last_modified=42)}
        )
        self.settings = AttachmentProcessingSettings(chunk_size=1200, chunk_overlap=200, retrieval_top_k=3)

    async def _build(self, attachments, query="where is the museum", settings=None, model="embed-a", signal=None):
        return await build_attachment_context(
            attachments,
            query,
            settings or self.settings,
            embedding_model=model,
            model="chat",
            scope_type="conversation",
            scope_id="c1",
            client=self.client,
            chunk_store=self.store,
            file_provider=self.provider,
            signal=signal,
        )

    async def test_first_call_indexes_and_renders_block(self):
        result = await self._build([self.attachment])

        self.assertEqual(result.mode, "retrieval")
        self.assertEqual(result.semantic_status, "ready")
        self.assertEqual(result.chunk_count, 3)
        self.assertEqual(len(result.rebuilt_sources), 1)
        self.assertTrue(result.content.startswith(RETRIEVED_HEADER))
        self.assertIn("Top K: 3", result.content)
        self.assertIn("Semantic index: ready", result.content)
        self.assertIn("[trip.ics  chunk ", result.content)
        chunks = await self.store.load_rag_chunks_for_scope("conversation", "c1")
        self.assertTrue(all(chunk.embedding_model == "embed-a" for chunk in chunks))

    async def test_reindex_is_idempotent(self):
        await self._build([self.attachment])
        before = await self.store.load_rag_chunks_for_scope("conversation", "c1")
        self.client.embedding_calls.clear()

        result = await self._build([self.attachment])

        after = await self.store.load_rag_chunks_for_scope("conversation", "c1")
        self.assertEqual(result.rebuilt_sources, ())
        self.assertEqual(before, after)
        self.assertEqual(self.store.replace_calls, 1)
        # only the query embedding
        self.assertEqual(len(self.client.embedding_calls), 1)

    async def test_overlap_change_indexes_under_new_source_key(self):
        first = await self._build([self.attachment])
        changed = AttachmentProcessingSettings(chunk_size=1200, chunk_overlap=100, retrieval_top_k=3)
        second = await self._build([self.attachment], settings=changed)

        self.assertNotEqual(first.rebuilt_sources, second.rebuilt_sources)
        chunks = await self.store.load_rag_chunks_for_scope("conversation", "c1")
        self.assertEqual({chunk.source_key for chunk in chunks}, {*first.rebuilt_sources, *second.rebuilt_sources})

    async def test_embedding_model_change_rebuilds_source(self):
        await self._build([self.attachment], model="embed-a")
        result = await self._build([self.attachment], model="embed-b")

        self.assertEqual(len(result.rebuilt_sources), 1)
        self.assertEqual(result.semantic_status, "ready")
        chunks = await self.store.load_rag_chunks_for_scope("conversation", "c1")
        self.assertTrue(all(chunk.embedding_model == "embed-b" for chunk in chunks))

    async def test_scope_without_attachments_reports_stale_models(self):
        await self._build([self.attachment], model="embed-a")
        result = await self._build([], model="embed-b")
        self.assertEqual(result.semantic_status, "unavailable")
        self.assertIn("lexical-only", result.content)

    async def test_embedding_failure_degrades_to_lexical(self):
        self.client.fail_embeddings = True
        result = await self._build([self.attachment])

        self.assertEqual(result.semantic_status, "unavailable")
        self.assertIn("museum", result.content)
        chunks = await self.store.load_rag_chunks_for_scope("conversation", "c1")
        self.assertTrue(chunks)
        self.assertTrue(all(chunk.embedding is None for chunk in chunks))

    async def test_missing_source_becomes_placeholder(self):
        missing = FileAttachment(id="gone", name="old.txt", size=2048)
        result = await self._build([missing])
        self.assertEqual(result.content, f"{RETRIEVED_HEADER}\n\nold.txt (2.0 KB): access denied. Please reattach.")

    async def test_vanished_source_only_affects_its_attachment(self):
        self.provider.register("gone", _VanishedFileSource())
        gone = FileAttachment(id="gone", name="gone.txt", size=10)

        result = await self._build([gone, self.attachment])

        self.assertIn("gone.txt (10 B): access denied. Please reattach.", result.content)
        self.assertIn("museum", result.content)
        self.assertEqual(len(result.rebuilt_sources), 1)

    async def test_vanished_source_in_summarize_mode(self):
        self.provider.register("gone", _VanishedFileSource())
        result = await self._build(
            [FileAttachment(id="gone", name="gone.txt", size=10)],
            settings=AttachmentProcessingSettings(mode="summarize"),
        )
        self.assertIn("gone.txt (10 B): access denied. Please reattach.", result.content)

    async def test_binary_source_is_skipped(self):
        self.provider.register("img", InMemoryFileSource("photo.png", "\x89PNG", type="image/png"))
        result = await self._build([FileAttachment(id="img", name="photo.png", size=4)])
        self.assertIn("photo.png (4 B): binary file skipped.", result.content)

    async def test_empty_scope_without_attachments(self):
        result = await self._build([])
        self.assertEqual(result.content, NO_ATTACHMENT_CONTENT)

    async def test_cancellation_leaves_store_untouched(self):
        await self._build([self.attachment])
        before = await self.store.load_rag_chunks_for_scope("conversation", "c1")
        signal = asyncio.Event()
        signal.set()
        changed = AttachmentProcessingSettings(chunk_size=800, chunk_overlap=100)

        with self.assertRaises(OperationCancelled):
            await self._build([self.attachment], settings=changed, signal=signal)

        self.assertEqual(await self.store.load_rag_chunks_for_scope("conversation", "c1"), before)

    async def test_summarize_mode_merges_chunk_summaries(self):
        settings = AttachmentProcessingSettings(mode="summarize", chunk_size=1200, chunk_overlap=200)
        result = await self._build([self.attachment], settings=settings)

        self.assertEqual(result.mode, "summarize")
        self.assertTrue(result.content.startswith("Attachment context (summary):\nMode: summarize"))
        self.assertIn("trip.ics (", result.content)
        self.assertIn("- summarized:", result.content)
        self.assertEqual(self.store.rows, {})


if __name__ == "__main__":
    unittest.main()
