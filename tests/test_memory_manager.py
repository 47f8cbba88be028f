import dataclasses
import tempfile
import unittest
from pathlib import Path

from graphchat.memory_manager import (
    MEMORY_PROMPT_HEADER,
    USER_SCOPE_ID,
    build_memory_prompt,
    classify_memory_category,
    extract_and_store_memories,
    extract_memory_candidates,
    get_memory_scopes,
    normalize_memory_text,
    score_memories,
    should_extract,
    strip_markdown_noise,
)
from graphchat.memory_store import SqliteMemoryStore
from graphchat.models import MemoryItem
from graphchat.settings import MemorySettings

_DAY_MS = 24 * 60 * 60 * 1000


class _FakeModelClient:
    def __init__(self, fail_embeddings=False):
        self.fail_embeddings = fail_embeddings

    async def embeddings(self, model, inputs, signal=None):
        if self.fail_embeddings:
            raise RuntimeError("embedding service down")
        return [[float("concise" in text.lower()), float("python" in text.lower()), 0.1] for text in inputs]

    async def chat_completion(self, model, messages, *, temperature=None, max_tokens=None, signal=None):
        return ""

    async def stream_chat_completion(self, model, messages, *, temperature=None, max_tokens=None, signal=None):
        yield ""


def _memory(memory_id, text, *, confidence=0.6, pinned=False, updated_at=0, category="fact"):
    return MemoryItem(
        id=memory_id,
        scope_type="user",
        scope_id=USER_SCOPE_ID,
        text=text,
        normalized_text=normalize_memory_text(text),
        category=category,
        confidence=confidence,
        pinned=pinned,
        created_at=updated_at,
        updated_at=updated_at,
    )


class TestMemoryExtraction(unittest.TestCase):
    def test_preference_sentence(self):
        candidates = extract_memory_candidates("I prefer concise answers in English.", "user", 4)
        self.assertEqual(len(candidates), 1)
        self.assertEqual(candidates[0].category, "preference")
        self.assertGreater(candidates[0].confidence, 0.5)
        self.assertEqual(candidates[0].normalized_text, "i prefer concise answers in english.")

    def test_questions_and_small_talk_are_dropped(self):
        content = "Can you help me with this?\nThanks, that works great.\nOk."
        self.assertEqual(extract_memory_candidates(content, "user", 4), [])

    def test_length_bounds(self):
        self.assertEqual(extract_memory_candidates("I use vim.", "user", 4), [])
        self.assertEqual(extract_memory_candidates("I use " + "x" * 260 + ".", "user", 4), [])

    def test_assistant_sentences_score_lower(self):
        text = "We use Postgres 15 for the billing project."
        user = extract_memory_candidates(text, "user", 4)[0]
        assistant = extract_memory_candidates(text, "assistant", 4)[0]
        self.assertAlmostEqual(user.confidence - assistant.confidence, 0.08)

    def test_cap_and_order(self):
        content = (
            "The office is in Lisbon. "
            "I always need answers before the 17 deadline. "
            "My team is building the payments project. "
            "I prefer tables over prose."
        )
        candidates = extract_memory_candidates(content, "user", 2)
        self.assertEqual(len(candidates), 2)
        self.assertGreaterEqual(candidates[0].confidence, candidates[1].confidence)

    def test_min_confidence_filters_before_cap(self):
        content = "The office is in Lisbon. I prefer tables over prose."
        candidates = extract_memory_candidates(content, "user", 4, min_confidence=0.55)
        self.assertEqual([c.category for c in candidates], ["preference"])

    def test_markdown_noise_is_stripped(self):
        cleaned = strip_markdown_noise("See [the docs](http://x) and `code` here\n```\nblock\n```")
        self.assertIn("the docs", cleaned)
        self.assertNotIn("http://x", cleaned)
        self.assertNotIn("block", cleaned)

    def test_category_precedence(self):
        self.assertEqual(classify_memory_category("I must use a formal tone"), "preference")
        self.assertEqual(classify_memory_category("Never deploy on Fridays"), "constraint")
        self.assertEqual(classify_memory_category("Our stack is Django"), "context")
        self.assertEqual(classify_memory_category("The sky is blue"), "fact")


class TestMemorySettings(unittest.TestCase):
    def test_scopes_follow_toggles(self):
        settings = MemorySettings(enabled=True, include_user=False)
        scopes = get_memory_scopes(settings, "c1", "p1")
        self.assertEqual([(s.scope_type, s.scope_id) for s in scopes], [("conversation", "c1"), ("project", "p1")])
        self.assertEqual(len(get_memory_scopes(MemorySettings(), "c1")), 2)

    def test_should_extract(self):
        self.assertFalse(should_extract(MemorySettings(), "user"))
        enabled = MemorySettings(enabled=True)
        self.assertTrue(should_extract(enabled, "user"))
        self.assertFalse(should_extract(enabled, "assistant"))
        self.assertFalse(should_extract(enabled, "system"))


class TestMemoryScoring(unittest.TestCase):
    def test_pinned_and_recent_rank_higher(self):
        now = 40 * _DAY_MS
        memories = [
            _memory("old", "Deploys happen weekly", updated_at=0),
            _memory("fresh", "Deploys happen daily", updated_at=now),
            _memory("pinned", "Deploys happen hourly", pinned=True, updated_at=0),
        ]
        ranked = score_memories(memories, "", None, "embed", now)
        self.assertEqual([entry.item.id for entry in ranked], ["pinned", "fresh", "old"])

    def test_semantic_score_requires_matching_model(self):
        memory = _memory("m", "Prefers concise replies")
        memory = dataclasses.replace(memory, embedding=(1.0, 0.0), embedding_model="old")
        ranked = score_memories([memory], "concise", (1.0, 0.0), "new", 0)
        self.assertEqual(ranked[0].semantic_score, 0.0)

    def test_opposed_embedding_scores_like_no_embedding(self):
        plain = _memory("m", "Prefers concise replies")
        opposed = dataclasses.replace(plain, embedding=(-1.0, 0.0), embedding_model="embed")
        plain_score = score_memories([plain], "concise", (1.0, 0.0), "embed", 0)[0].score
        opposed_entry = score_memories([opposed], "concise", (1.0, 0.0), "embed", 0)[0]
        self.assertEqual(opposed_entry.semantic_score, 0.0)
        self.assertGreaterEqual(opposed_entry.score, plain_score)


class TestMemoryStorage(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = SqliteMemoryStore(Path(self.tmp.name) / "memories.sqlite")
        self.client = _FakeModelClient()
        self.settings = MemorySettings(enabled=True, include_project=False, include_user=False)

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    async def _extract(self, content, role="user"):
        return await extract_and_store_memories(
            role=role,
            content=content,
            conversation_id="c1",
            node_id="n1",
            settings=self.settings,
            embedding_model="embed",
            client=self.client,
            store=self.store,
            message_id="msg-1",
        )

    async def test_repeated_candidate_is_deduplicated(self):
        first = await self._extract("I prefer concise answers in English.")
        second = await self._extract("I  prefer concise answers in English.")

        rows = await self.store.load_memories_for_scope("conversation", "c1")
        self.assertEqual(len(rows), 1)
        self.assertEqual(first[0].id, second[0].id)
        self.assertGreaterEqual(rows[0].confidence, first[0].confidence)
        self.assertEqual(rows[0].category, "preference")
        self.assertEqual(rows[0].source_message_id, "msg-1")
        self.assertEqual(rows[0].embedding_model, "embed")

    async def test_confidence_never_decreases(self):
        await self._extract("We use Python 3 for the billing project.", role="user")
        before = (await self.store.load_memories_for_scope("conversation", "c1"))[0].confidence
        await self._extract("We use Python 3 for the billing project.", role="assistant")
        after = (await self.store.load_memories_for_scope("conversation", "c1"))[0]
        self.assertEqual(after.confidence, before)
        self.assertEqual(after.source_role, "assistant")

    async def test_embedding_failure_still_stores(self):
        self.client.fail_embeddings = True
        saved = await self._extract("I prefer concise answers in English.")
        self.assertEqual(len(saved), 1)
        self.assertIsNone(saved[0].embedding)
        self.assertIsNone(saved[0].embedding_model)

    async def test_build_memory_prompt(self):
        await self._extract("I prefer concise answers in English. We use Python 3 for the billing project.")
        preview = await build_memory_prompt(
            query="keep it concise",
            embedding_model="embed",
            conversation_id="c1",
            settings=self.settings,
            client=self.client,
            store=self.store,
            now=1,
        )
        self.assertIsNotNone(preview)
        self.assertTrue(preview.prompt.startswith(MEMORY_PROMPT_HEADER + "\n1. [conversation/preference]"))
        self.assertIn("Query: keep it concise", preview.preview)
        self.assertEqual(preview.items[0].item.category, "preference")
        self.assertEqual(preview.generated_at, 1)

    async def test_build_memory_prompt_without_memories(self):
        preview = await build_memory_prompt(
            query="anything",
            embedding_model="embed",
            conversation_id="c1",
            settings=self.settings,
            client=self.client,
            store=self.store,
        )
        self.assertIsNone(preview)


if __name__ == "__main__":
    unittest.main()
