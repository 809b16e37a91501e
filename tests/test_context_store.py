"""Tests for the semantic context store."""

import asyncio
import math
from datetime import timedelta

import pytest

from context_memory.config import ContextStoreConfig
from context_memory.core.embeddings import EmbeddingClient
from context_memory.exceptions import EmbeddingUnavailable
from context_memory.models.context import ContextType, FilterCriteria, RankingWeights, utc_now
from context_memory.services.context_store import SemanticContextStore
from tests.conftest import FailingEmbeddingBackend, FailingTextGenerator, ScriptedTextGenerator


def distinct_content(i: int) -> str:
    return f"alpha{i} bravo{i} charlie{i} delta{i}"


class TestAdd:
    @pytest.mark.asyncio
    async def test_add_stores_cleaned_content(self, store):
        context = await store.add("chat-1", "  Deploys   run nightly at 2am!  ", confidence=0.7)

        assert context is not None
        assert context.content == "Deploys run nightly at 2am!"
        assert context.confidence == 0.7
        assert context.context_type is ContextType.QUERY_RESULT
        assert context.embedding
        assert context.metadata["original_length"] == len("  Deploys   run nightly at 2am!  ")
        assert context.metadata["processed_length"] == len(context.content)
        assert store.get_contexts("chat-1") == [context]

    @pytest.mark.asyncio
    async def test_short_content_is_ignored(self, store):
        assert await store.add("chat-1", "too short") is None
        assert store.get_contexts("chat-1") == []

    @pytest.mark.asyncio
    async def test_metadata_and_type_are_kept(self, store):
        context = await store.add(
            "chat-1",
            "The user prefers dark mode everywhere",
            context_type="user_input",
            metadata={"source": "settings"},
        )

        assert context.context_type is ContextType.USER_INPUT
        assert context.metadata["source"] == "settings"

    @pytest.mark.asyncio
    async def test_chats_are_isolated(self, store):
        await store.add("chat-1", "Paris is the capital of France.")
        await store.add("chat-2", "Paris is the capital of France.")

        assert len(store.get_contexts("chat-1")) == 1
        assert len(store.get_contexts("chat-2")) == 1
        assert set(store.chat_ids()) == {"chat-1", "chat-2"}

    @pytest.mark.asyncio
    async def test_embedding_failure_propagates(self):
        store = SemanticContextStore(EmbeddingClient(FailingEmbeddingBackend()))

        with pytest.raises(EmbeddingUnavailable):
            await store.add("chat-1", "Paris is the capital of France.")

        assert store.get_contexts("chat-1") == []


class TestDuplicates:
    @pytest.mark.asyncio
    async def test_identical_content_is_stored_once(self, store):
        first = await store.add("chat-1", "Paris is the capital of France.", confidence=0.8)
        second = await store.add("chat-1", "Paris is the capital of France.", confidence=0.8)

        assert first is not None
        assert second is None
        assert len(store.get_contexts("chat-1")) == 1

    @pytest.mark.asyncio
    async def test_higher_confidence_updates_in_place(self, store):
        first = await store.add("chat-1", "Paris is the capital of France.", confidence=0.8)
        updated = await store.add(
            "chat-1", "Paris is the capital of France.", confidence=0.9, metadata={"verified": True}
        )

        assert updated is not None
        assert updated.id == first.id
        assert updated.confidence == 0.9
        assert updated.metadata["verified"] is True
        assert len(store.get_contexts("chat-1")) == 1

    @pytest.mark.asyncio
    async def test_scenario_a_paraphrase_updates_confidence(self, store):
        await store.add("A", "Paris is the capital of France.", confidence=0.90)
        result = await store.add("A", "The capital city of France is Paris.", confidence=0.95)

        contexts = store.get_contexts("A")
        assert result is not None
        assert len(contexts) == 1
        assert contexts[0].confidence == 0.95
        assert contexts[0].content == "Paris is the capital of France."

    @pytest.mark.asyncio
    async def test_concurrent_identical_adds_store_once(self, store):
        results = await asyncio.gather(*[
            store.add("chat-1", "Concurrent writes must not duplicate entries", confidence=0.8)
            for _ in range(5)
        ])

        assert sum(result is not None for result in results) == 1
        assert len(store.get_contexts("chat-1")) == 1


class TestIncrementalExtraction:
    @pytest.mark.asyncio
    async def test_stores_only_new_information(self, embeddings):
        generator = ScriptedTextGenerator("The office also has free parking for visitors.")
        store = SemanticContextStore(embeddings, text_generator=generator)

        await store.add("chat-1", "The office is located on Main Street downtown.")
        context = await store.add(
            "chat-1", "Our office on Main Street downtown has free parking for visitors."
        )

        assert context.content == "The office also has free parking for visitors."
        assert "Main Street" in generator.prompts[0]
        assert len(store.get_contexts("chat-1")) == 2

    @pytest.mark.asyncio
    async def test_nothing_new_is_skipped(self, embeddings):
        store = SemanticContextStore(embeddings, text_generator=ScriptedTextGenerator("NONE"))

        await store.add("chat-1", "The office is located on Main Street downtown.")
        result = await store.add("chat-1", "Weather tomorrow looks sunny and warm")

        assert result is None
        assert len(store.get_contexts("chat-1")) == 1

    @pytest.mark.asyncio
    async def test_generation_failure_keeps_full_content(self, embeddings):
        store = SemanticContextStore(embeddings, text_generator=FailingTextGenerator())

        await store.add("chat-1", "The office is located on Main Street downtown.")
        context = await store.add("chat-1", "Weather tomorrow looks sunny and warm")

        assert context.content == "Weather tomorrow looks sunny and warm"

    @pytest.mark.asyncio
    async def test_first_context_skips_extraction(self, embeddings):
        generator = ScriptedTextGenerator("NONE")
        store = SemanticContextStore(embeddings, text_generator=generator)

        context = await store.add("chat-1", "The office is located on Main Street downtown.")

        assert context is not None
        assert generator.prompts == []

    @pytest.mark.asyncio
    async def test_compare_and_store_additional(self, embeddings):
        # Extraction runs once here and once more inside add
        generator = ScriptedTextGenerator(
            "Visitors can park for free in the garage.",
            "Visitors can park for free in the garage.",
        )
        store = SemanticContextStore(embeddings, text_generator=generator)
        existing = [await store.add("chat-1", "The office is located on Main Street downtown.")]

        context = await store.compare_and_store_additional(
            "chat-1", "Main Street office, free garage parking for visitors", existing
        )

        assert context is not None
        assert context.content == "Visitors can park for free in the garage."


class TestCapacity:
    @pytest.mark.asyncio
    async def test_scenario_c_keeps_top_fifteen(self, capped_store):
        for i in range(20):
            await capped_store.add("chat-1", distinct_content(i), confidence=0.5 + i * 0.02)

        remaining = {context.content for context in capped_store.get_contexts("chat-1")}
        assert len(remaining) == 15
        assert remaining == {distinct_content(i) for i in range(5, 20)}

    @pytest.mark.asyncio
    async def test_cap_holds_after_every_add(self, embeddings):
        store = SemanticContextStore(embeddings, config=ContextStoreConfig(max_contexts_per_chat=3))

        for i in range(8):
            await store.add("chat-1", distinct_content(i), confidence=0.9)
            assert len(store.get_contexts("chat-1")) <= 3

    @pytest.mark.asyncio
    async def test_evicted_new_context_returns_none(self, embeddings):
        store = SemanticContextStore(embeddings, config=ContextStoreConfig(max_contexts_per_chat=2))
        await store.add("chat-1", distinct_content(0), confidence=0.9)
        await store.add("chat-1", distinct_content(1), confidence=0.9)

        result = await store.add("chat-1", distinct_content(2), confidence=0.1)

        assert result is None
        assert len(store.get_contexts("chat-1")) == 2

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, store):
        old = await store.add("chat-1", distinct_content(0))
        await store.add("chat-1", distinct_content(1))
        old.timestamp = utc_now() - timedelta(hours=2)

        removed = await store.cleanup_expired()

        assert removed == 1
        assert [c.content for c in store.get_contexts("chat-1")] == [distinct_content(1)]

    @pytest.mark.asyncio
    async def test_clear_chat(self, store):
        await store.add("chat-1", distinct_content(0))
        await store.add("chat-1", distinct_content(1))

        assert await store.clear_chat("chat-1") == 2
        assert store.get_contexts("chat-1") == []
        assert "chat-1" not in store.chat_ids()
        assert "chat-1" not in store._locks

    @pytest.mark.asyncio
    async def test_remove_returns_removed_contexts(self, store):
        context = await store.add("chat-1", distinct_content(0))

        removed = await store.remove("chat-1", [context.id])

        assert removed == [context]
        assert store.chat_ids() == []
        assert "chat-1" not in store._locks

    @pytest.mark.asyncio
    async def test_lock_for_serializes_writers(self, store):
        order = []

        async def writer(tag):
            async with store.lock_for("chat-1"):
                order.append(f"{tag}-in")
                await asyncio.sleep(0.01)
                order.append(f"{tag}-out")

        await asyncio.gather(writer("a"), writer("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert "chat-1" not in store._locks

    @pytest.mark.asyncio
    async def test_lock_entry_kept_while_chat_has_contexts(self, store):
        await store.add("chat-1", distinct_content(0))

        assert "chat-1" in store._locks


class TestRetrieval:
    @pytest.mark.asyncio
    async def test_scenario_b_query_returns_stored_context(self, store):
        await store.add("A", "Paris is the capital of France.", confidence=0.90)
        await store.add("A", "The capital city of France is Paris.", confidence=0.95)

        results = await store.get_relevant("A", "capital of France")

        assert len(results) == 1
        assert results[0].relevance_score > 0
        assert store.get_contexts("A")[0].relevance_score is None

    @pytest.mark.asyncio
    async def test_results_are_ordered_and_limited(self, store):
        await store.add("chat-1", "Python asyncio runs coroutines on an event loop")
        await store.add("chat-1", "Gardening requires patience and good soil")
        await store.add("chat-1", "Python type hints document function signatures")

        results = await store.get_relevant("chat-1", "python asyncio event loop", top_k=2)

        assert len(results) == 2
        assert results[0].content.startswith("Python asyncio")
        assert results[0].relevance_score >= results[1].relevance_score

    @pytest.mark.asyncio
    async def test_score_formula(self, store):
        context = await store.add("chat-1", "Python asyncio runs coroutines", confidence=0.5)

        results = await store.get_relevant(
            "chat-1",
            "Python asyncio runs coroutines",
            weights=RankingWeights(semantic=1.0, confidence=0.0, recency=0.0, type=0.0),
        )

        assert results[0].id == context.id
        assert results[0].relevance_score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_filter_criteria(self, store):
        await store.add("chat-1", "Python asyncio runs coroutines", confidence=0.4)
        await store.add("chat-1", "Python threads share memory", confidence=0.9, context_type="synthesis")

        results = await store.get_relevant(
            "chat-1",
            "python",
            criteria=FilterCriteria(min_confidence=0.5, context_types=[ContextType.SYNTHESIS]),
        )

        assert [context.content for context in results] == ["Python threads share memory"]

    @pytest.mark.asyncio
    async def test_min_similarity_filter(self, store):
        await store.add("chat-1", "Gardening requires patience and good soil")

        results = await store.get_relevant(
            "chat-1", "python asyncio", criteria=FilterCriteria(min_similarity=0.5)
        )

        assert results == []

    @pytest.mark.asyncio
    async def test_recency_decays_with_age(self, store):
        context = await store.add("chat-1", "Python asyncio runs coroutines")
        weights = RankingWeights(semantic=0.0, confidence=0.0, recency=1.0, type=0.0)

        fresh = await store.get_relevant("chat-1", "python", weights=weights)
        context.timestamp = utc_now() - timedelta(seconds=store.config.max_context_age_seconds)
        aged = await store.get_relevant("chat-1", "python", weights=weights)

        assert fresh[0].relevance_score == pytest.approx(1.0, abs=1e-3)
        assert aged[0].relevance_score == pytest.approx(math.exp(-1), abs=1e-3)

    @pytest.mark.asyncio
    async def test_unknown_chat_returns_empty(self, store):
        assert await store.get_relevant("missing", "anything") == []


class TestStatsAndConfig:
    @pytest.mark.asyncio
    async def test_stats(self, store):
        await store.add("chat-1", distinct_content(0), confidence=0.6)
        await store.add("chat-1", distinct_content(1), confidence=0.8)
        await store.add("chat-2", distinct_content(2))

        stats = store.stats("chat-1")

        assert stats["total_chats"] == 2
        assert stats["total_contexts"] == 3
        assert stats["avg_contexts_per_chat"] == 1.5
        assert stats["chat_specific"]["contexts"] == 2
        assert stats["chat_specific"]["avg_confidence"] == 0.7

    def test_update_config(self, store):
        config = store.update_config(max_contexts_per_chat=5)

        assert config.max_contexts_per_chat == 5
        assert store.config.max_contexts_per_chat == 5

    def test_update_config_rejects_invalid_values(self, store):
        with pytest.raises(ValueError):
            store.update_config(max_contexts_per_chat=0)
