"""Three-tier duplicate detection for stored context.

Tiers are evaluated in order and short-circuit on the first match:

1. Exact: normalized content hash, or edit-distance similarity >= 0.95
2. Semantic hash: fingerprint over the content's distinctive words
3. Embedding: cosine similarity against the candidate pool, with an
   adjudication step for paraphrase-range matches
"""

import asyncio
import logging
from typing import Any, List, Sequence

from context_memory.config import DeduplicationConfig
from context_memory.core.cache import BoundedCache
from context_memory.core.embeddings import EmbeddingClient
from context_memory.core.llm_client import TextGenerator
from context_memory.exceptions import MalformedAdjudicationResponse, TextGenerationFailure
from context_memory.models.context import Context, DeduplicationVerdict
from context_memory.utils.logger import OperationLogger
from context_memory.utils.text import (
    character_similarity,
    content_hash,
    normalize_for_comparison,
    semantic_hash,
)

logger = logging.getLogger(__name__)

CACHE_EVICT_FRACTION = 0.2

ADJUDICATION_PROMPT = """Compare these two pieces of text and determine if they contain essentially the same information, even if worded differently.

Text 1: "{new_content}"
Text 2: "{existing_content}"

Consider them duplicates if they:
- Convey the same core facts or information
- Have the same meaning despite different wording
- Are paraphrases of each other
- One is a subset of the other with no additional meaningful information

Respond with only "DUPLICATE" or "UNIQUE":"""

MERGE_PROMPT = """Merge these two pieces of information into a single, comprehensive text that includes all unique information from both sources.

Existing information: "{existing_content}"
New information: "{new_content}"

Requirements:
- Include all unique facts and details from both sources
- Remove redundant information
- Maintain factual accuracy
- Keep the result concise but complete

Merged information:"""


def _not_duplicate(similarity: float = 0.0, confidence: float = 1.0) -> DeduplicationVerdict:
    return DeduplicationVerdict(
        is_duplicate=False,
        similarity=similarity,
        tier="none",
        confidence=confidence,
    )


def parse_adjudication(response: str) -> bool:
    """Parse a DUPLICATE/UNIQUE answer.

    Returns:
        True for DUPLICATE, False for UNIQUE

    Raises:
        MalformedAdjudicationResponse: For anything else
    """
    words = response.strip().split()
    first_word = words[0].strip("\"'.,:;!*`").upper() if words else ""
    if first_word == "DUPLICATE":
        return True
    if first_word == "UNIQUE":
        return False
    raise MalformedAdjudicationResponse(response)


class Deduplicator:
    """Decides whether new content duplicates a pool of existing contexts.

    The exact-hash, semantic-hash and adjudication caches are bounded and
    shared across chats; cached context ids only count as a match while the
    id is still present in the candidate pool being checked.
    """

    def __init__(
        self,
        embeddings: EmbeddingClient,
        text_generator: TextGenerator | None = None,
        config: DeduplicationConfig | None = None,
    ):
        """Initialize the deduplicator.

        Args:
            embeddings: Embedding client used for the similarity tier
            text_generator: Adjudication and merge collaborator, None to disable
            config: Thresholds (defaults 0.95 / 0.85 / 0.75)
        """
        self.embeddings = embeddings
        self.text_generator = text_generator
        self.config = config or DeduplicationConfig()

        self.exact_cache: BoundedCache[str, str] = BoundedCache(
            self.config.cache_size, CACHE_EVICT_FRACTION, name="exact_match_cache"
        )
        self.semantic_cache: BoundedCache[str, str] = BoundedCache(
            self.config.cache_size, CACHE_EVICT_FRACTION, name="semantic_hash_cache"
        )
        self.adjudication_cache: BoundedCache[str, bool] = BoundedCache(
            self.config.cache_size, CACHE_EVICT_FRACTION, name="adjudication_cache"
        )

    async def check_duplication(
        self,
        new_content: str,
        existing: Sequence[Context],
        chat_id: str,
        embedding: List[float] | None = None,
    ) -> DeduplicationVerdict:
        """Check new content against a pool of existing contexts.

        Args:
            new_content: Candidate content
            existing: Contexts to compare against
            chat_id: Chat scope, used for logging
            embedding: Precomputed embedding of ``new_content``, if available

        Returns:
            DeduplicationVerdict describing the first matching tier

        Raises:
            EmbeddingUnavailable: If the embedding tier cannot embed the content
        """
        if not existing:
            return _not_duplicate()

        with OperationLogger(logger, "check_duplication", chat_id=chat_id):
            pool = {context.id: context for context in existing}

            verdict = await asyncio.to_thread(self._check_exact, new_content, pool)
            if verdict.is_duplicate:
                logger.debug(f"Exact match found: {verdict.similarity:.3f}")
                return verdict

            verdict = self._check_semantic_hash(new_content, pool)
            if verdict.is_duplicate:
                logger.debug("Semantic hash match found")
                return verdict

            verdict = await self._check_embedding_similarity(new_content, pool, embedding)
            if verdict.tier != "paraphrase":
                return verdict

            return await self._adjudicate_paraphrase(new_content, pool, verdict, chat_id)

    def _check_exact(self, new_content: str, pool: dict[str, Context]) -> DeduplicationVerdict:
        normalized_new = normalize_for_comparison(new_content)
        new_hash = content_hash(normalized_new)

        cached_id = self.exact_cache.get(new_hash)
        if cached_id is not None and cached_id in pool:
            return DeduplicationVerdict(
                is_duplicate=True,
                similarity=1.0,
                tier="exact",
                matched_id=cached_id,
                confidence=1.0,
            )

        for context in pool.values():
            normalized_existing = normalize_for_comparison(context.content)

            if content_hash(normalized_existing) == new_hash:
                self.exact_cache.put(new_hash, context.id)
                return DeduplicationVerdict(
                    is_duplicate=True,
                    similarity=1.0,
                    tier="exact",
                    matched_id=context.id,
                    confidence=1.0,
                )

            similarity = character_similarity(
                normalized_new,
                normalized_existing,
                min_similarity=self.config.exact_match_threshold,
            )
            if similarity >= self.config.exact_match_threshold:
                return DeduplicationVerdict(
                    is_duplicate=True,
                    similarity=similarity,
                    tier="exact",
                    matched_id=context.id,
                    confidence=0.95,
                )

        return _not_duplicate()

    def _check_semantic_hash(self, new_content: str, pool: dict[str, Context]) -> DeduplicationVerdict:
        new_hash = semantic_hash(new_content)

        matched_id = self.semantic_cache.get(new_hash)
        if matched_id is None or matched_id not in pool:
            matched_id = next(
                (context.id for context in pool.values() if context.semantic_hash == new_hash),
                None,
            )
            if matched_id is None:
                return _not_duplicate()
            self.semantic_cache.put(new_hash, matched_id)

        return DeduplicationVerdict(
            is_duplicate=True,
            similarity=0.9,
            tier="semantic",
            matched_id=matched_id,
            confidence=0.9,
        )

    async def _check_embedding_similarity(
        self,
        new_content: str,
        pool: dict[str, Context],
        embedding: List[float] | None,
    ) -> DeduplicationVerdict:
        new_embedding = embedding or await self.embeddings.embed(new_content)

        best_similarity = 0.0
        best_context: Context | None = None
        for context in pool.values():
            if not context.embedding:
                continue
            similarity = self.embeddings.cosine_similarity(new_embedding, context.embedding)
            if similarity > best_similarity:
                best_similarity = similarity
                best_context = context

        if best_context is not None and best_similarity >= self.config.semantic_similarity_threshold:
            return DeduplicationVerdict(
                is_duplicate=True,
                similarity=best_similarity,
                tier="semantic",
                matched_id=best_context.id,
                confidence=0.85,
            )

        if best_context is not None and best_similarity >= self.config.paraphrase_threshold:
            return DeduplicationVerdict(
                is_duplicate=True,
                similarity=best_similarity,
                tier="paraphrase",
                matched_id=best_context.id,
                confidence=0.75,
            )

        return _not_duplicate(similarity=best_similarity)

    async def _adjudicate_paraphrase(
        self,
        new_content: str,
        pool: dict[str, Context],
        verdict: DeduplicationVerdict,
        chat_id: str,
    ) -> DeduplicationVerdict:
        if (
            not self.config.enable_llm_validation
            or len(new_content) > self.config.max_llm_validation_length
        ):
            return verdict

        existing_content = pool[verdict.matched_id].content
        is_duplicate = await self.adjudicate(new_content, existing_content, chat_id)
        if is_duplicate:
            return verdict

        logger.debug(f"Adjudication rejected paraphrase match ({verdict.similarity:.3f})")
        return _not_duplicate(similarity=verdict.similarity, confidence=0.8)

    async def adjudicate(self, new_content: str, existing_content: str, chat_id: str) -> bool:
        """Ask the text generator whether two texts carry the same information.

        Fails open: an unavailable generator, a generation failure or a
        malformed answer all count as UNIQUE and are not cached.
        """
        cache_key = content_hash(f"{new_content}|{existing_content}")
        cached = self.adjudication_cache.get(cache_key)
        if cached is not None:
            return cached

        if self.text_generator is None:
            logger.debug("Adjudication unavailable, treating paraphrase as unique")
            return False

        prompt = ADJUDICATION_PROMPT.format(
            new_content=new_content,
            existing_content=existing_content,
        )
        try:
            response = await self.text_generator.generate(prompt, temperature=0.1)
            result = parse_adjudication(response)
        except TextGenerationFailure as e:
            logger.warning(
                f"Duplicate adjudication failed, treating as unique: {e}",
                extra={"chat_id": chat_id, "operation": "adjudicate_duplicate"},
            )
            return False

        self.adjudication_cache.put(cache_key, result)
        return result

    async def find_similar(
        self,
        content: str,
        pool: Sequence[Context],
        threshold: float = 0.7,
        embedding: List[float] | None = None,
    ) -> List[tuple[Context, float]]:
        """Find contexts whose embedding similarity meets a threshold.

        Args:
            content: Content to compare
            pool: Candidate contexts
            threshold: Minimum cosine similarity
            embedding: Precomputed embedding of ``content``

        Returns:
            (context, similarity) pairs, most similar first
        """
        if not pool:
            return []

        query_embedding = embedding or await self.embeddings.embed(content)
        matches = [
            (context, self.embeddings.cosine_similarity(query_embedding, context.embedding))
            for context in pool
            if context.embedding
        ]
        matches = [item for item in matches if item[1] >= threshold]
        matches.sort(key=lambda item: item[1], reverse=True)
        return matches

    async def merge(self, new_content: str, existing_content: str, chat_id: str) -> str:
        """Merge two pieces of information, falling back to concatenation."""
        fallback = f"{existing_content} {new_content}".strip()
        if self.text_generator is None:
            return fallback

        prompt = MERGE_PROMPT.format(
            new_content=new_content,
            existing_content=existing_content,
        )
        try:
            merged = (await self.text_generator.generate(prompt, temperature=0.2)).strip()
        except TextGenerationFailure as e:
            logger.warning(
                f"Information merging failed, concatenating: {e}",
                extra={"chat_id": chat_id, "operation": "merge_information"},
            )
            return fallback

        return merged or fallback

    def clear_caches(self) -> None:
        self.exact_cache.clear()
        self.semantic_cache.clear()
        self.adjudication_cache.clear()

    def cache_stats(self) -> dict[str, Any]:
        return {
            "exact_match_cache": self.exact_cache.stats(),
            "semantic_hash_cache": self.semantic_cache.stats(),
            "adjudication_cache": self.adjudication_cache.stats(),
        }

    def update_config(self, **changes: Any) -> DeduplicationConfig:
        """Apply validated threshold changes at runtime."""
        self.config = self.config.updated(**changes)
        for cache in (self.exact_cache, self.semantic_cache, self.adjudication_cache):
            cache.resize(self.config.cache_size)
        logger.info(f"Deduplication config updated: {sorted(changes)}")
        return self.config
