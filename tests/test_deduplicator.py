"""Tests for multi-tier duplicate detection."""

import pytest

from context_memory.config import DeduplicationConfig
from context_memory.core.deduplicator import Deduplicator, parse_adjudication
from context_memory.exceptions import MalformedAdjudicationResponse
from tests.conftest import FailingTextGenerator, ScriptedTextGenerator, make_context

# Cosine 4 / sqrt(4 * 6) ~= 0.816: inside the paraphrase band
PARAPHRASE_EXISTING = "Redis stores session tokens"
PARAPHRASE_NEW = "Redis stores session tokens and expiry timestamps"


class TestParseAdjudication:
    @pytest.mark.parametrize(
        "response, expected",
        [
            ("DUPLICATE", True),
            ("duplicate", True),
            ("  \"UNIQUE\".", False),
            ("UNIQUE - the second text adds dates", False),
            ("**DUPLICATE**", True),
        ],
    )
    def test_valid_answers(self, response, expected):
        assert parse_adjudication(response) is expected

    @pytest.mark.parametrize("response", ["", "maybe", "I think these are DUPLICATE"])
    def test_malformed_answers(self, response):
        with pytest.raises(MalformedAdjudicationResponse):
            parse_adjudication(response)


class TestCheckDuplication:
    @pytest.mark.asyncio
    async def test_empty_pool_is_unique(self, deduplicator):
        verdict = await deduplicator.check_duplication("anything at all", [], "chat-1")

        assert verdict.is_duplicate is False
        assert verdict.tier == "none"
        assert verdict.confidence == 1.0

    @pytest.mark.asyncio
    async def test_exact_tier_ignores_case_and_punctuation(self, deduplicator, backend):
        existing = make_context("Paris is the capital of France.", backend)

        verdict = await deduplicator.check_duplication("paris is the CAPITAL of france", [existing], "chat-1")

        assert verdict.is_duplicate is True
        assert verdict.tier == "exact"
        assert verdict.similarity == 1.0
        assert verdict.matched_id == existing.id

    @pytest.mark.asyncio
    async def test_exact_tier_near_identical_text(self, deduplicator, backend):
        existing = make_context("The deployment finished successfully at noon today", backend)

        verdict = await deduplicator.check_duplication(
            "The deployment finished successfully at noon todays", [existing], "chat-1"
        )

        assert verdict.is_duplicate is True
        assert verdict.tier == "exact"
        assert verdict.similarity >= 0.95

    @pytest.mark.asyncio
    async def test_exact_cache_only_matches_ids_in_pool(self, deduplicator, backend):
        first = make_context("Cached content about gardens", backend)
        await deduplicator.check_duplication("cached content about gardens", [first], "chat-1")

        other = make_context("Completely unrelated sentence here", backend)
        verdict = await deduplicator.check_duplication("cached content about gardens", [other], "chat-1")

        assert verdict.is_duplicate is False

    @pytest.mark.asyncio
    async def test_semantic_hash_tier(self, deduplicator, backend):
        existing = make_context("Python handles async tasks well", backend)

        verdict = await deduplicator.check_duplication(
            "Well, async tasks: Python handles", [existing], "chat-1"
        )

        assert verdict.is_duplicate is True
        assert verdict.tier == "semantic"
        assert verdict.similarity == 0.9

    @pytest.mark.asyncio
    async def test_embedding_similarity_above_semantic_threshold(self, deduplicator, backend):
        existing = make_context("Paris is the capital of France.", backend)

        verdict = await deduplicator.check_duplication(
            "The capital city of France is Paris.", [existing], "chat-1"
        )

        assert verdict.is_duplicate is True
        assert verdict.tier == "semantic"
        assert verdict.similarity >= 0.85
        assert verdict.confidence == 0.85

    @pytest.mark.asyncio
    async def test_low_similarity_is_unique(self, deduplicator, backend):
        existing = make_context("Paris is the capital of France.", backend)

        verdict = await deduplicator.check_duplication(
            "Kubernetes schedules containers onto nodes", [existing], "chat-1"
        )

        assert verdict.is_duplicate is False
        assert verdict.similarity < 0.75

    @pytest.mark.asyncio
    async def test_uses_precomputed_embedding(self, deduplicator, backend):
        existing = make_context("Paris is the capital of France.", backend)
        embedding = backend.vectorize("The capital city of France is Paris.")

        verdict = await deduplicator.check_duplication(
            "The capital city of France is Paris.", [existing], "chat-1", embedding=embedding
        )

        assert verdict.tier == "semantic"
        assert backend.embed_calls == 0


class TestParaphraseAdjudication:
    @pytest.mark.asyncio
    async def test_paraphrase_confirmed_duplicate(self, embeddings, backend):
        generator = ScriptedTextGenerator("DUPLICATE")
        deduplicator = Deduplicator(embeddings, generator)
        existing = make_context(PARAPHRASE_EXISTING, backend)

        verdict = await deduplicator.check_duplication(PARAPHRASE_NEW, [existing], "chat-1")

        assert verdict.is_duplicate is True
        assert verdict.tier == "paraphrase"
        assert 0.75 <= verdict.similarity < 0.85
        assert len(generator.prompts) == 1

    @pytest.mark.asyncio
    async def test_paraphrase_rejected_as_unique(self, embeddings, backend):
        deduplicator = Deduplicator(embeddings, ScriptedTextGenerator("UNIQUE"))
        existing = make_context(PARAPHRASE_EXISTING, backend)

        verdict = await deduplicator.check_duplication(PARAPHRASE_NEW, [existing], "chat-1")

        assert verdict.is_duplicate is False
        assert verdict.tier == "none"
        assert verdict.confidence == 0.8

    @pytest.mark.asyncio
    async def test_adjudication_result_is_cached(self, embeddings, backend):
        generator = ScriptedTextGenerator("DUPLICATE")
        deduplicator = Deduplicator(embeddings, generator)
        existing = make_context(PARAPHRASE_EXISTING, backend)

        await deduplicator.check_duplication(PARAPHRASE_NEW, [existing], "chat-1")
        await deduplicator.check_duplication(PARAPHRASE_NEW, [existing], "chat-1")

        assert len(generator.prompts) == 1

    @pytest.mark.asyncio
    async def test_generation_failure_fails_open(self, embeddings, backend):
        generator = FailingTextGenerator()
        deduplicator = Deduplicator(embeddings, generator)
        existing = make_context(PARAPHRASE_EXISTING, backend)

        verdict = await deduplicator.check_duplication(PARAPHRASE_NEW, [existing], "chat-1")

        assert verdict.is_duplicate is False
        assert len(deduplicator.adjudication_cache) == 0

    @pytest.mark.asyncio
    async def test_malformed_answer_fails_open_and_is_not_cached(self, embeddings, backend):
        generator = ScriptedTextGenerator("Maybe?", "DUPLICATE")
        deduplicator = Deduplicator(embeddings, generator)
        existing = make_context(PARAPHRASE_EXISTING, backend)

        first = await deduplicator.check_duplication(PARAPHRASE_NEW, [existing], "chat-1")
        second = await deduplicator.check_duplication(PARAPHRASE_NEW, [existing], "chat-1")

        assert first.is_duplicate is False
        assert second.is_duplicate is True
        assert len(generator.prompts) == 2

    @pytest.mark.asyncio
    async def test_no_generator_treats_paraphrase_as_unique(self, deduplicator, backend):
        existing = make_context(PARAPHRASE_EXISTING, backend)

        verdict = await deduplicator.check_duplication(PARAPHRASE_NEW, [existing], "chat-1")

        assert verdict.is_duplicate is False

    @pytest.mark.asyncio
    async def test_validation_disabled_keeps_paraphrase_verdict(self, embeddings, backend):
        generator = ScriptedTextGenerator("UNIQUE")
        deduplicator = Deduplicator(
            embeddings,
            generator,
            DeduplicationConfig(enable_llm_validation=False),
        )
        existing = make_context(PARAPHRASE_EXISTING, backend)

        verdict = await deduplicator.check_duplication(PARAPHRASE_NEW, [existing], "chat-1")

        assert verdict.is_duplicate is True
        assert verdict.tier == "paraphrase"
        assert generator.prompts == []

    @pytest.mark.asyncio
    async def test_long_content_skips_adjudication(self, embeddings, backend):
        generator = ScriptedTextGenerator("UNIQUE")
        deduplicator = Deduplicator(
            embeddings,
            generator,
            DeduplicationConfig(max_llm_validation_length=10),
        )
        existing = make_context(PARAPHRASE_EXISTING, backend)

        verdict = await deduplicator.check_duplication(PARAPHRASE_NEW, [existing], "chat-1")

        assert verdict.tier == "paraphrase"
        assert generator.prompts == []


class TestSimilarityAndMerge:
    @pytest.mark.asyncio
    async def test_find_similar_orders_by_similarity(self, deduplicator, backend):
        close = make_context("The capital city of France is Paris.", backend)
        exact = make_context("Paris is the capital of France.", backend)
        far = make_context("Kubernetes schedules containers", backend)

        matches = await deduplicator.find_similar(
            "Paris is the capital of France.", [close, exact, far], threshold=0.7
        )

        assert [context.id for context, _ in matches] == [exact.id, close.id]
        assert matches[0][1] == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_find_similar_empty_pool(self, deduplicator):
        assert await deduplicator.find_similar("anything", []) == []

    @pytest.mark.asyncio
    async def test_merge_uses_generator(self, embeddings):
        deduplicator = Deduplicator(embeddings, ScriptedTextGenerator("  merged text  "))
        assert await deduplicator.merge("new", "old", "chat-1") == "merged text"

    @pytest.mark.asyncio
    async def test_merge_falls_back_to_concatenation(self, embeddings):
        deduplicator = Deduplicator(embeddings, FailingTextGenerator())
        assert await deduplicator.merge("new facts", "old facts", "chat-1") == "old facts new facts"

    @pytest.mark.asyncio
    async def test_merge_without_generator(self, deduplicator):
        assert await deduplicator.merge("new", "old", "chat-1") == "old new"


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_clear_caches(self, deduplicator, backend):
        existing = make_context("Python handles async tasks well", backend)
        await deduplicator.check_duplication("Python handles async tasks well", [existing], "chat-1")
        assert len(deduplicator.exact_cache) == 1

        deduplicator.clear_caches()

        stats = deduplicator.cache_stats()
        assert stats["exact_match_cache"]["size"] == 0
        assert stats["semantic_hash_cache"]["size"] == 0
        assert stats["adjudication_cache"]["size"] == 0

    def test_update_config_validates_and_resizes_caches(self, deduplicator):
        config = deduplicator.update_config(semantic_similarity_threshold=0.9, cache_size=10)

        assert config.semantic_similarity_threshold == 0.9
        assert deduplicator.exact_cache.max_size == 10

    def test_shrinking_cache_size_trims_existing_entries(self, deduplicator):
        for i in range(100):
            deduplicator.exact_cache.put(f"hash-{i}", f"ctx-{i}")

        deduplicator.update_config(cache_size=10)
        deduplicator.exact_cache.put("hash-new", "ctx-new")

        assert len(deduplicator.exact_cache) <= 10
        assert "hash-0" not in deduplicator.exact_cache
        assert deduplicator.exact_cache.get("hash-new") == "ctx-new"

    def test_update_config_rejects_unknown_fields(self, deduplicator):
        with pytest.raises(ValueError):
            deduplicator.update_config(not_a_setting=1)

    def test_update_config_rejects_out_of_range(self, deduplicator):
        with pytest.raises(ValueError):
            deduplicator.update_config(exact_match_threshold=1.5)
