"""Cross-chat memory governance for the semantic context store.

Tracks estimated memory across every chat, runs the cleanup pipeline when
usage approaches the configured ceilings, compresses and archives old
contexts, and owns the periodic background cleanup task.
"""

import asyncio
import json
import logging
import math
import re
import time
from collections import deque
from datetime import datetime
from typing import Any, Sequence

from context_memory.config import MemoryConfig
from context_memory.db.archive import ArchiveStore, InMemoryArchiveStore
from context_memory.exceptions import CapacityExceeded
from context_memory.models.context import (
    ArchivedContext,
    Context,
    ContextType,
    MemorySnapshot,
    utc_now,
)
from context_memory.services.context_store import SemanticContextStore

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024
CONTEXT_OVERHEAD_BYTES = 200
CLEANUP_TRIGGER_RATIO = 0.9
ARCHIVE_TRIGGER_RATIO = 0.8
ARCHIVE_FRACTION = 0.3
INACTIVE_TRIGGER_RATIO = 0.8
INACTIVE_CHAT_FRACTION = 0.2
INACTIVE_KEEP_CONTEXTS = 5
COMPRESSION_MIN_AGE_SECONDS = 7 * 24 * 60 * 60
COMPRESSION_MIN_LENGTH = 200
ROLLING_WINDOW = 100

# (chat_id, contexts) removed during a cleanup pass, archived once it ends
Evicted = list[tuple[str, list[Context]]]

_STOPWORDS = re.compile(r"\b(the|a|an|and|or|but|in|on|at|to|for|of|with|by)\s+", re.IGNORECASE)
_PUNCTUATION_RUN = re.compile(r"[.,;:!?]+")
_WHITESPACE = re.compile(r"\s+")


def estimate_context_bytes(context: Context) -> int:
    """Rough in-memory footprint of a stored context."""
    metadata_size = len(json.dumps(context.metadata, default=str)) * 2
    return len(context.content) * 2 + len(context.embedding) * 8 + metadata_size + CONTEXT_OVERHEAD_BYTES


def compress_content(content: str) -> str:
    """Lossy compression: collapse whitespace, drop stopwords, normalize punctuation."""
    compressed = _WHITESPACE.sub(" ", content)
    compressed = _STOPWORDS.sub("", compressed)
    compressed = _PUNCTUATION_RUN.sub(".", compressed)
    return compressed.strip()


def _average(samples: Sequence[float]) -> float:
    return sum(samples) / len(samples) if samples else 0.0


class MemoryManager:
    """Capacity governance over every chat in a SemanticContextStore.

    Creating a manager attaches it to the store, so the store consults
    ``ensure_capacity`` before each add and archives evicted contexts here.
    """

    def __init__(
        self,
        store: SemanticContextStore,
        archive_store: ArchiveStore | None = None,
        config: MemoryConfig | None = None,
    ):
        """Initialize the manager.

        Args:
            store: Context store to govern
            archive_store: Destination for archived contexts (default in-memory)
            config: Capacity limits and cleanup schedule
        """
        self.store = store
        self.archive_store = archive_store or InMemoryArchiveStore()
        self.config = config or MemoryConfig()

        self._retrieval_times: deque[float] = deque(maxlen=ROLLING_WINDOW)
        self._storage_times: deque[float] = deque(maxlen=ROLLING_WINDOW)
        self._compression_times: deque[float] = deque(maxlen=ROLLING_WINDOW)
        self._cache_hits = 0
        self._cache_misses = 0
        self._archived_count = 0
        self._last_access: dict[str, datetime] = {}

        self._cleanup_task: asyncio.Task | None = None
        self._capacity_lock = asyncio.Lock()

        store.attach_memory_manager(self)

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    def usage(self) -> tuple[float, int]:
        """Current (estimated memory in MB, total active contexts)."""
        total_bytes = 0
        total_contexts = 0
        for chat_id in self.store.chat_ids():
            for context in self.store.get_contexts(chat_id):
                total_bytes += estimate_context_bytes(context)
                total_contexts += 1
        return total_bytes / BYTES_PER_MB, total_contexts

    def _at_ratio(self, memory_mb: float, total_contexts: int, ratio: float) -> bool:
        return (
            memory_mb >= self.config.max_total_memory_mb * ratio
            or total_contexts >= self.config.max_total_contexts * ratio
        )

    def record_retrieval(self, chat_id: str, duration_ms: float, hit: bool) -> None:
        """Record one retrieval; a hit means the chat had active contexts."""
        self._retrieval_times.append(duration_ms)
        if hit:
            self._cache_hits += 1
            self._last_access[chat_id] = utc_now()
        else:
            self._cache_misses += 1

    def record_storage(self, duration_ms: float) -> None:
        self._storage_times.append(duration_ms)

    def forget_chat(self, chat_id: str) -> None:
        """Drop access tracking for a chat that no longer has contexts."""
        self._last_access.pop(chat_id, None)

    # ------------------------------------------------------------------
    # Capacity pipeline
    # ------------------------------------------------------------------

    async def ensure_capacity(self) -> None:
        """Make room before a storage request.

        At 90% of either ceiling runs, in order: age cleanup, compression,
        archival of crowded chats and per-chat trimming. Evicted contexts are
        archived after the capacity lock is released.

        Raises:
            CapacityExceeded: If usage is still at a ceiling afterwards
        """
        memory_mb, total_contexts = self.usage()
        if not self._at_ratio(memory_mb, total_contexts, CLEANUP_TRIGGER_RATIO):
            return

        evicted: Evicted = []
        try:
            async with self._capacity_lock:
                memory_mb, total_contexts = self.usage()
                if not self._at_ratio(memory_mb, total_contexts, CLEANUP_TRIGGER_RATIO):
                    return

                logger.warning(
                    f"Memory near limit ({memory_mb:.2f}MB, {total_contexts} contexts), cleaning up",
                    extra={"operation": "ensure_capacity"},
                )
                await self._remove_expired(evicted)
                await self._compress_old_contexts()
                if self.config.archival_enabled:
                    await self._archive_crowded_chats(evicted)
                await self._trim_chats(evicted)

                memory_mb, total_contexts = self.usage()
                if self._at_ratio(memory_mb, total_contexts, 1.0):
                    logger.error(
                        f"Cleanup could not make room: {memory_mb:.2f}MB, {total_contexts} contexts",
                        extra={"operation": "ensure_capacity"},
                    )
                    raise CapacityExceeded(memory_mb, total_contexts)
        finally:
            await self._archive_evicted(evicted)

    async def run_cleanup(self) -> dict[str, Any]:
        """Periodic cleanup pass.

        Removes expired contexts, thins the least recently used chats when
        memory is above 80% of the ceiling, and compresses old contexts once
        usage passes the compression threshold.
        """
        initial_mb, _ = self.usage()
        initial_chats = len(self.store.chat_ids())

        evicted: Evicted = []
        removed = await self._remove_expired(evicted)

        memory_mb, _ = self.usage()
        if memory_mb > self.config.max_total_memory_mb * INACTIVE_TRIGGER_RATIO:
            removed += await self._reduce_inactive_chats(evicted)
        await self._archive_evicted(evicted)

        memory_mb, _ = self.usage()
        compressed = 0
        if memory_mb > self.config.max_total_memory_mb * self.config.compression_threshold:
            compressed = await self._compress_old_contexts()

        final_mb, _ = self.usage()
        report = {
            "contexts_removed": removed,
            "chats_removed": max(0, initial_chats - len(self.store.chat_ids())),
            "contexts_compressed": compressed,
            "memory_freed_mb": initial_mb - final_mb,
        }
        logger.info(
            f"Cleanup complete: {removed} contexts removed, {compressed} compressed, "
            f"{report['memory_freed_mb']:.4f}MB freed"
        )
        return report

    def _batches(self) -> list[list[str]]:
        chat_ids = self.store.chat_ids()
        size = self.config.cleanup_batch_size
        return [chat_ids[i:i + size] for i in range(0, len(chat_ids), size)]

    async def _evict(
        self,
        chat_id: str,
        context_ids: set[str],
        evicted: Evicted,
    ) -> int:
        """Remove contexts under the chat lock and queue them for archival."""
        if not context_ids:
            return 0
        removed = await self.store.remove(chat_id, context_ids)
        if removed:
            evicted.append((chat_id, removed))
        return len(removed)

    async def _archive_evicted(self, evicted: Evicted) -> None:
        for chat_id, contexts in evicted:
            await self.archive(chat_id, contexts)

    async def _remove_expired(self, evicted: Evicted) -> int:
        max_age = self.config.max_context_age_days * 24 * 60 * 60
        now = utc_now()
        removed = 0

        for batch in self._batches():
            for chat_id in batch:
                expired = {
                    context.id
                    for context in self.store.get_contexts(chat_id)
                    if context.age_seconds(now) >= max_age
                }
                removed += await self._evict(chat_id, expired, evicted)
            await asyncio.sleep(0)

        if removed:
            logger.info(f"Removed {removed} contexts older than {self.config.max_context_age_days} days")
        return removed

    async def _compress_old_contexts(self) -> int:
        started = time.perf_counter()
        now = utc_now()
        compressed = 0

        for batch in self._batches():
            for chat_id in batch:
                async with self.store.lock_for(chat_id):
                    for context in self.store.get_contexts(chat_id):
                        if (
                            context.metadata.get("compressed")
                            or len(context.content) <= COMPRESSION_MIN_LENGTH
                            or context.age_seconds(now) <= COMPRESSION_MIN_AGE_SECONDS
                        ):
                            continue

                        original_length = len(context.content)
                        context.content = compress_content(context.content)
                        context.metadata = {
                            **context.metadata,
                            "compressed": True,
                            "original_length": original_length,
                            "compression_ratio": len(context.content) / original_length,
                        }
                        compressed += 1
            await asyncio.sleep(0)

        duration_ms = (time.perf_counter() - started) * 1000
        self._compression_times.append(duration_ms)
        if compressed:
            logger.info(f"Compressed {compressed} contexts in {duration_ms:.1f}ms")
        return compressed

    async def _archive_crowded_chats(self, evicted: Evicted) -> int:
        threshold = self.config.max_contexts_per_chat * ARCHIVE_TRIGGER_RATIO
        archived = 0

        for batch in self._batches():
            for chat_id in batch:
                contexts = self.store.get_contexts(chat_id)
                if len(contexts) <= threshold:
                    continue
                oldest = sorted(contexts, key=lambda context: context.timestamp)
                count = math.floor(len(contexts) * ARCHIVE_FRACTION)
                archived += await self._evict(chat_id, {c.id for c in oldest[:count]}, evicted)
            await asyncio.sleep(0)

        return archived

    async def _trim_chats(self, evicted: Evicted) -> int:
        cap = self.config.max_contexts_per_chat
        trimmed = 0

        for batch in self._batches():
            for chat_id in batch:
                contexts = self.store.get_contexts(chat_id)
                if len(contexts) <= cap:
                    continue
                ranked = sorted(
                    contexts,
                    key=lambda c: (c.relevance_score or 0.0) * 0.7 + c.confidence * 0.3,
                    reverse=True,
                )
                trimmed += await self._evict(chat_id, {c.id for c in ranked[cap:]}, evicted)
                logger.info(f"Trimmed chat {chat_id} to {cap} contexts")
            await asyncio.sleep(0)

        return trimmed

    async def _reduce_inactive_chats(self, evicted: Evicted) -> int:
        """Cut the least recently accessed 20% of chats down to their newest contexts."""
        by_access = sorted(self._last_access.items(), key=lambda item: item[1])
        to_reduce = by_access[: math.ceil(len(by_access) * INACTIVE_CHAT_FRACTION)]
        removed = 0

        for chat_id, _ in to_reduce:
            contexts = self.store.get_contexts(chat_id)
            if len(contexts) > INACTIVE_KEEP_CONTEXTS:
                stale = {context.id for context in contexts[:-INACTIVE_KEEP_CONTEXTS]}
                removed += await self._evict(chat_id, stale, evicted)
            await asyncio.sleep(0)

        return removed

    # ------------------------------------------------------------------
    # Archive
    # ------------------------------------------------------------------

    async def archive(self, chat_id: str, contexts: Sequence[Context]) -> int:
        """Move evicted contexts to the archive store when archival is enabled."""
        if not self.config.archival_enabled or not contexts:
            return 0

        archived = [ArchivedContext.from_context(context) for context in contexts]
        try:
            await self.archive_store.put(chat_id, archived)
        except Exception as e:
            logger.error(
                f"Context archival failed: {e}",
                extra={"chat_id": chat_id, "operation": "archive"},
            )
            return 0

        self._archived_count += len(archived)
        logger.info(f"Archived {len(archived)} contexts for chat {chat_id}")
        return len(archived)

    async def get_archived(self, chat_id: str) -> list[ArchivedContext]:
        try:
            return await self.archive_store.get(chat_id)
        except Exception as e:
            logger.error(
                f"Archived context retrieval failed: {e}",
                extra={"chat_id": chat_id, "operation": "get_archived"},
            )
            return []

    @staticmethod
    def archived_to_context(archived: ArchivedContext) -> Context:
        return Context(
            id=archived.context_id,
            chat_id=archived.chat_id,
            content=archived.content,
            embedding=[],
            semantic_hash="",
            confidence=0.6,
            context_type=ContextType.QUERY_RESULT,
            metadata={
                **archived.metadata,
                "archived": True,
                "archived_at": archived.archived_at.isoformat(),
            },
            timestamp=archived.original_timestamp,
            relevance_score=0.5,
        )

    async def retrieve_contexts(self, chat_id: str, include_archived: bool = False) -> list[Context]:
        """Active contexts for a chat, optionally followed by archived ones."""
        started = time.perf_counter()
        active = self.store.get_contexts(chat_id)

        contexts = list(active)
        if include_archived and self.config.archival_enabled:
            archived = await self.get_archived(chat_id)
            contexts.extend(self.archived_to_context(item) for item in archived)

        self.record_retrieval(chat_id, (time.perf_counter() - started) * 1000, hit=bool(active))
        logger.debug(f"Retrieved {len(contexts)} contexts for chat {chat_id}")
        return contexts

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def snapshot(self) -> MemorySnapshot:
        now = utc_now()
        chat_ids = self.store.chat_ids()
        contexts = [context for chat_id in chat_ids for context in self.store.get_contexts(chat_id)]
        memory_mb = sum(estimate_context_bytes(context) for context in contexts) / BYTES_PER_MB

        ages = [context.age_seconds(now) for context in contexts]
        compressed = [context for context in contexts if context.metadata.get("compressed")]
        original_total = sum(int(context.metadata.get("original_length", 0)) for context in compressed)
        compression_ratio = (
            sum(len(context.content) for context in compressed) / original_total
            if compressed and original_total
            else 1.0
        )
        lookups = self._cache_hits + self._cache_misses

        return MemorySnapshot(
            total_chats=len(chat_ids),
            total_contexts=len(contexts),
            total_memory_mb=memory_mb,
            oldest_context_age_seconds=max(ages, default=0.0),
            newest_context_age_seconds=min(ages, default=0.0),
            average_context_size=_average([len(context.content) for context in contexts]),
            compression_ratio=compression_ratio,
            cache_hit_ratio=self._cache_hits / lookups if lookups else 0.0,
            average_retrieval_ms=_average(self._retrieval_times),
            average_storage_ms=_average(self._storage_times),
            average_compression_ms=_average(self._compression_times),
            archived_contexts=self._archived_count,
        )

    def update_config(self, **changes: Any) -> MemoryConfig:
        """Apply validated limit changes at runtime."""
        self.config = self.config.updated(**changes)
        logger.info(f"Memory config updated: {sorted(changes)}")
        return self.config

    # ------------------------------------------------------------------
    # Background cleanup
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def start(self) -> None:
        """Start the periodic cleanup background task."""
        if not self.is_running:
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup())
            logger.info(
                f"Memory manager started with {self.config.cleanup_interval_seconds}s cleanup interval"
            )

    async def _periodic_cleanup(self) -> None:
        """Run cleanup on the configured interval until cancelled."""
        while True:
            try:
                await asyncio.sleep(self.config.cleanup_interval_seconds)
                await self.run_cleanup()
            except asyncio.CancelledError:
                logger.info("Memory manager cleanup task stopped")
                break
            except Exception as e:
                logger.error(f"Periodic cleanup error: {e}", extra={"operation": "run_cleanup"})

    async def stop(self) -> None:
        """Cancel the cleanup task and wait for it to finish."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
