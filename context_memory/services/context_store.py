"""Semantic context store: per-chat collections with dedup and eviction."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any, AsyncIterator, Iterable, Sequence

from context_memory.config import ContextStoreConfig
from context_memory.core.deduplicator import Deduplicator
from context_memory.core.embeddings import EmbeddingClient
from context_memory.core.llm_client import TextGenerator
from context_memory.exceptions import TextGenerationFailure
from context_memory.models.context import (
    DEFAULT_TYPE_WEIGHTS,
    UNKNOWN_TYPE_WEIGHT,
    Context,
    ContextType,
    FilterCriteria,
    RankingWeights,
    utc_now,
)
from context_memory.utils.logger import OperationLogger
from context_memory.utils.text import clean_content, semantic_hash

if TYPE_CHECKING:
    from context_memory.services.memory_manager import MemoryManager

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = """Compare these two pieces of information and extract only the NEW, ADDITIONAL information from the second piece that is not already covered in the first piece.

Existing information: "{existing_content}"
New information: "{new_content}"

Requirements:
- Extract only genuinely new facts, insights, or details
- Ignore redundant or duplicate information
- Focus on substantive additions, not minor variations
- Keep extracted information concise and factual
- If no meaningful additional information exists, respond with "NONE"
- Do not include explanations or reasoning

Additional information:"""


class _ChatLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class SemanticContextStore:
    """Per-chat store of semantic contexts.

    Each chat has its own ordered list of contexts, a semantic-hash index and
    an asyncio lock. Embedding and text generation happen before the lock is
    taken; the duplicate check is repeated under the lock before mutating.
    Reads take snapshots and never wait on the lock.
    """

    def __init__(
        self,
        embeddings: EmbeddingClient,
        deduplicator: Deduplicator | None = None,
        text_generator: TextGenerator | None = None,
        config: ContextStoreConfig | None = None,
    ):
        """Initialize the store.

        Args:
            embeddings: Embedding client
            deduplicator: Used for similarity lookups (default built from ``embeddings``)
            text_generator: Incremental-extraction collaborator, None to disable
            config: Per-chat limits
        """
        self.embeddings = embeddings
        self.deduplicator = deduplicator or Deduplicator(embeddings, text_generator)
        self.text_generator = text_generator
        self.config = config or ContextStoreConfig()
        self.memory_manager: MemoryManager | None = None

        self._contexts: dict[str, list[Context]] = {}
        self._hash_index: dict[str, dict[str, str]] = {}
        self._locks: dict[str, _ChatLock] = {}

    def attach_memory_manager(self, manager: MemoryManager) -> None:
        self.memory_manager = manager

    def _forget_chat(self, chat_id: str) -> None:
        if self.memory_manager is not None:
            self.memory_manager.forget_chat(chat_id)

    @asynccontextmanager
    async def lock_for(self, chat_id: str) -> AsyncIterator[None]:
        """Hold the single-writer lock guarding a chat's collection.

        The lock entry is dropped once nobody holds or awaits it and the chat
        has no contexts left.
        """
        entry = self._locks.get(chat_id)
        if entry is None:
            entry = self._locks[chat_id] = _ChatLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and chat_id not in self._contexts:
                self._locks.pop(chat_id, None)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(
        self,
        chat_id: str,
        content: str,
        context_type: ContextType | str = ContextType.QUERY_RESULT,
        confidence: float = 0.8,
        metadata: dict[str, Any] | None = None,
    ) -> Context | None:
        """Add content to a chat, deduplicating and extracting new information.

        Args:
            chat_id: Chat scope
            content: Raw content
            context_type: Kind of context
            confidence: Confidence in the content, 0-1
            metadata: Extra metadata to store

        Returns:
            The stored or updated Context, or None when nothing changed

        Raises:
            EmbeddingUnavailable: If the content cannot be embedded
            CapacityExceeded: If the memory manager cannot make room
        """
        started = time.perf_counter()
        context_type = ContextType(context_type)
        metadata = dict(metadata or {})

        cleaned = clean_content(content, self.config.max_content_length)
        if len(cleaned) < self.config.min_content_length:
            logger.debug(f"Content too short, skipping: {cleaned!r}")
            return None

        with OperationLogger(logger, "add_context", chat_id=chat_id):
            if self.memory_manager is not None:
                await self.memory_manager.ensure_capacity()

            embedding = await self.embeddings.embed(cleaned)
            fingerprint = semantic_hash(cleaned)

            snapshot = list(self._contexts.get(chat_id, []))
            duplicate = await self._find_duplicate(chat_id, snapshot, cleaned, fingerprint, embedding)

            extracted: str | None = None
            if duplicate is None:
                extracted = await self._extract_additional_info(chat_id, cleaned, snapshot)
                if len(extracted.strip()) < self.config.min_extracted_length:
                    logger.debug(f"No additional information found for chat {chat_id}")
                    return None

            evicted: list[Context] = []
            async with self.lock_for(chat_id):
                contexts = self._contexts.setdefault(chat_id, [])
                duplicate = await self._find_duplicate(chat_id, contexts, cleaned, fingerprint, embedding)

                if duplicate is not None:
                    result = self._update_existing(duplicate, confidence, metadata)
                else:
                    stored_content = extracted if extracted is not None else cleaned
                    result = Context(
                        chat_id=chat_id,
                        content=stored_content,
                        embedding=embedding,
                        semantic_hash=fingerprint,
                        confidence=confidence,
                        context_type=context_type,
                        metadata={
                            **metadata,
                            "original_length": len(content),
                            "processed_length": len(stored_content),
                            "compression_ratio": len(stored_content) / len(content) if content else 0.0,
                        },
                    )
                    contexts.append(result)
                    self._hash_index.setdefault(chat_id, {})[fingerprint] = result.id
                    evicted = self._enforce_limit_locked(chat_id)
                    logger.debug(
                        f"Added context for chat {chat_id} (confidence: {confidence})",
                        extra={"chat_id": chat_id, "context_id": result.id},
                    )

        if evicted and self.memory_manager is not None:
            await self.memory_manager.archive(chat_id, evicted)
        if self.memory_manager is not None:
            self.memory_manager.record_storage((time.perf_counter() - started) * 1000)

        if result is not None and any(context.id == result.id for context in evicted):
            return None
        return result

    async def _find_duplicate(
        self,
        chat_id: str,
        contexts: Sequence[Context],
        cleaned: str,
        fingerprint: str,
        embedding: list[float],
    ) -> Context | None:
        """Hash-index match first, then the closest context above the duplicate threshold."""
        matched_id = self._hash_index.get(chat_id, {}).get(fingerprint)
        if matched_id is not None:
            for context in contexts:
                if context.id == matched_id:
                    return context

        matches = await self.deduplicator.find_similar(
            cleaned,
            contexts,
            threshold=self.config.duplicate_threshold,
            embedding=embedding,
        )
        if matches:
            context, similarity = matches[0]
            logger.debug(f"High similarity detected: {similarity:.3f}")
            return context
        return None

    def _update_existing(
        self,
        context: Context,
        confidence: float,
        metadata: dict[str, Any],
    ) -> Context | None:
        if confidence <= context.confidence:
            return None

        context.confidence = confidence
        context.metadata = {**context.metadata, **metadata}
        context.timestamp = utc_now()
        logger.debug(
            f"Updated existing context confidence: {confidence}",
            extra={"chat_id": context.chat_id, "context_id": context.id},
        )
        return context

    async def _extract_additional_info(
        self,
        chat_id: str,
        new_content: str,
        existing: Sequence[Context] | None = None,
        existing_content: str | None = None,
    ) -> str:
        """Ask the text generator for the genuinely new part of ``new_content``.

        Returns the cleaned content itself when the chat is empty or the
        generator is unavailable, and an empty string when nothing is new.
        """
        if existing_content is None:
            existing_content = " ".join(context.content for context in existing or [])

        if not existing_content.strip() or self.text_generator is None:
            return clean_content(new_content, self.config.max_content_length)

        prompt = EXTRACTION_PROMPT.format(
            existing_content=existing_content,
            new_content=new_content,
        )
        try:
            response = await self.text_generator.generate(prompt, temperature=0.1)
        except TextGenerationFailure as e:
            logger.warning(
                f"Failed to extract additional info, keeping content: {e}",
                extra={"chat_id": chat_id, "operation": "extract_additional_info"},
            )
            return clean_content(new_content, self.config.max_content_length)

        result = response.strip()
        if result.upper() == "NONE" or len(result) < 10:
            return ""
        return clean_content(result, self.config.max_content_length)

    def _retention_score(self, context: Context, now: datetime) -> float:
        age = context.age_seconds(now)
        return context.confidence * math.exp(-age / self.config.max_context_age_seconds)

    def _enforce_limit_locked(self, chat_id: str) -> list[Context]:
        """Keep the top contexts by decayed confidence; caller holds the chat lock."""
        contexts = self._contexts.get(chat_id, [])
        if len(contexts) <= self.config.max_contexts_per_chat:
            return []

        now = utc_now()
        ranked = sorted(contexts, key=lambda c: self._retention_score(c, now), reverse=True)
        keep_ids = {context.id for context in ranked[: self.config.max_contexts_per_chat]}
        evicted = [context for context in contexts if context.id not in keep_ids]
        self._remove_locked(chat_id, {context.id for context in evicted})

        logger.info(
            f"Removed {len(evicted)} low-relevance contexts for chat {chat_id}",
            extra={"chat_id": chat_id, "operation": "enforce_limit"},
        )
        return evicted

    def _remove_locked(self, chat_id: str, context_ids: set[str]) -> list[Context]:
        contexts = self._contexts.get(chat_id, [])
        removed = [context for context in contexts if context.id in context_ids]
        if not removed:
            return []

        remaining = [context for context in contexts if context.id not in context_ids]
        index = self._hash_index.get(chat_id, {})
        for context in removed:
            if index.get(context.semantic_hash) == context.id:
                del index[context.semantic_hash]

        if remaining:
            self._contexts[chat_id] = remaining
        else:
            self._contexts.pop(chat_id, None)
            self._hash_index.pop(chat_id, None)
            self._forget_chat(chat_id)
        return removed

    async def remove(self, chat_id: str, context_ids: Iterable[str]) -> list[Context]:
        """Remove contexts by id and return them."""
        async with self.lock_for(chat_id):
            return self._remove_locked(chat_id, set(context_ids))

    async def compare_and_store_additional(
        self,
        chat_id: str,
        new_content: str,
        existing: Sequence[Context],
        context_type: ContextType | str = ContextType.QUERY_RESULT,
        confidence: float = 0.8,
    ) -> Context | None:
        """Store only what ``new_content`` adds beyond the given contexts."""
        existing_content = " ".join(context.content for context in existing)
        additional = await self._extract_additional_info(
            chat_id,
            new_content,
            existing_content=existing_content,
        )
        if len(additional.strip()) <= self.config.min_extracted_length:
            return None
        return await self.add(chat_id, additional, context_type, confidence)

    async def clear_chat(self, chat_id: str) -> int:
        """Destroy every active context of a chat."""
        async with self.lock_for(chat_id):
            removed = self._contexts.pop(chat_id, [])
            self._hash_index.pop(chat_id, None)
            self._forget_chat(chat_id)
        logger.info(f"Cleared {len(removed)} contexts for chat {chat_id}")
        return len(removed)

    async def cleanup_expired(self) -> int:
        """Remove contexts older than the configured max age from every chat."""
        total_removed = 0
        now = utc_now()

        for chat_id in self.chat_ids():
            async with self.lock_for(chat_id):
                expired = {
                    context.id
                    for context in self._contexts.get(chat_id, [])
                    if context.age_seconds(now) >= self.config.max_context_age_seconds
                }
                removed = self._remove_locked(chat_id, expired)

            if removed and self.memory_manager is not None:
                await self.memory_manager.archive(chat_id, removed)
            total_removed += len(removed)

        if total_removed:
            logger.info(f"Cleaned up {total_removed} expired contexts")
        return total_removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_relevant(
        self,
        chat_id: str,
        query: str,
        criteria: FilterCriteria | None = None,
        weights: RankingWeights | None = None,
        top_k: int = 5,
    ) -> list[Context]:
        """Score a chat's contexts against a query.

        Args:
            chat_id: Chat scope
            query: Query text
            criteria: Filters applied before scoring
            weights: Score weights (default 0.4/0.2/0.2/0.2)
            top_k: Maximum results

        Returns:
            Copies of the top contexts with ``relevance_score`` set
        """
        started = time.perf_counter()
        contexts = self.get_contexts(chat_id)

        try:
            if not contexts:
                return []

            query_embedding = await self.embeddings.embed(query)
            now = utc_now()
            if criteria is not None:
                contexts = [context for context in contexts if criteria.matches(context, now)]
            if not contexts:
                return []

            weights = weights or RankingWeights()
            scored = []
            for context in contexts:
                similarity = (
                    self.embeddings.cosine_similarity(query_embedding, context.embedding)
                    if context.embedding
                    else 0.0
                )
                if criteria is not None and criteria.min_similarity is not None:
                    if similarity < criteria.min_similarity:
                        continue

                recency = math.exp(-context.age_seconds(now) / self.config.max_context_age_seconds)
                type_weight = DEFAULT_TYPE_WEIGHTS.get(context.context_type.value, UNKNOWN_TYPE_WEIGHT)
                score = (
                    weights.semantic * similarity
                    + weights.confidence * context.confidence
                    + weights.recency * recency
                    + weights.type * type_weight
                )
                scored.append(context.with_score(score))

            scored.sort(key=lambda context: context.relevance_score or 0.0, reverse=True)
            logger.debug(f"Retrieved {min(len(scored), top_k)} relevant contexts for chat {chat_id}")
            return scored[:top_k]
        finally:
            if self.memory_manager is not None:
                self.memory_manager.record_retrieval(
                    chat_id,
                    (time.perf_counter() - started) * 1000,
                    hit=bool(self._contexts.get(chat_id)),
                )

    def get_contexts(self, chat_id: str) -> list[Context]:
        """Snapshot of a chat's active contexts in insertion order."""
        return list(self._contexts.get(chat_id, []))

    def chat_ids(self) -> list[str]:
        return list(self._contexts)

    def stats(self, chat_id: str | None = None) -> dict[str, Any]:
        total_chats = len(self._contexts)
        total_contexts = sum(len(contexts) for contexts in self._contexts.values())

        stats: dict[str, Any] = {
            "total_chats": total_chats,
            "total_contexts": total_contexts,
            "avg_contexts_per_chat": total_contexts / total_chats if total_chats else 0.0,
            "cache_stats": self.embeddings.cache_stats(),
        }

        if chat_id is not None:
            contexts = self.get_contexts(chat_id)
            now = utc_now()
            count = len(contexts)
            stats["chat_specific"] = {
                "contexts": count,
                "avg_confidence": round(sum(c.confidence for c in contexts) / count, 3) if count else 0.0,
                "avg_age_seconds": round(sum(c.age_seconds(now) for c in contexts) / count) if count else 0,
            }

        return stats

    def update_config(self, **changes: Any) -> ContextStoreConfig:
        """Apply validated limit changes at runtime."""
        self.config = self.config.updated(**changes)
        logger.info(f"Context store config updated: {sorted(changes)}")
        return self.config
