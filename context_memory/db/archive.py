"""Archive stores for contexts moved out of the active working set."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, Sequence
from urllib.parse import urlparse

from redis.asyncio import ConnectionPool, Redis

from context_memory.config import settings
from context_memory.models.context import ArchivedContext

logger = logging.getLogger(__name__)


class ArchiveStore(Protocol):
    """Keyed, append-only storage for archived contexts."""

    async def put(self, key: str, contexts: Sequence[ArchivedContext]) -> None: ...

    async def get(self, key: str) -> list[ArchivedContext]: ...

    async def delete(self, key: str) -> int: ...


class InMemoryArchiveStore:
    """Process-local archive, keyed by chat id."""

    def __init__(self):
        self._archives: dict[str, list[ArchivedContext]] = {}
        self._lock = asyncio.Lock()

    async def put(self, key: str, contexts: Sequence[ArchivedContext]) -> None:
        async with self._lock:
            self._archives.setdefault(key, []).extend(contexts)

    async def get(self, key: str) -> list[ArchivedContext]:
        return list(self._archives.get(key, []))

    async def delete(self, key: str) -> int:
        async with self._lock:
            removed = self._archives.pop(key, [])
        return len(removed)


class RedisArchiveStore:
    """Archive backed by Redis lists of JSON-encoded contexts.

    Each chat's archive lives under ``"{prefix}:{key}"``.
    """

    def __init__(self, client: Redis | None = None, prefix: str | None = None):
        """Initialize the store.

        Args:
            client: Optional pre-configured client (default built from settings.redis_url)
            prefix: Key prefix (default from settings)
        """
        self._client = client
        self.prefix = prefix or settings.redis_archive_prefix

    def get_client(self) -> Redis:
        """Get or create the client."""
        if self._client is None:
            if not settings.redis_url:
                raise RuntimeError("REDIS_URL is not configured")

            parsed = urlparse(settings.redis_url)
            pool = ConnectionPool(
                host=parsed.hostname or "localhost",
                port=parsed.port or 6379,
                db=int(parsed.path.lstrip("/") or 0),
                password=parsed.password,
                decode_responses=True,
                max_connections=20,
            )
            self._client = Redis(connection_pool=pool)
            logger.info(f"Redis archive store connected: {parsed.hostname}:{parsed.port or 6379}")
        return self._client

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def put(self, key: str, contexts: Sequence[ArchivedContext]) -> None:
        if not contexts:
            return
        client = self.get_client()
        await client.rpush(self._key(key), *[context.model_dump_json() for context in contexts])

    async def get(self, key: str) -> list[ArchivedContext]:
        client = self.get_client()
        values = await client.lrange(self._key(key), 0, -1)
        return [ArchivedContext.model_validate_json(value) for value in values]

    async def delete(self, key: str) -> int:
        client = self.get_client()
        return await client.delete(self._key(key))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def get_archive_store() -> ArchiveStore:
    """Redis archive when REDIS_URL is configured, else in-memory."""
    if settings.redis_url:
        return RedisArchiveStore()
    return InMemoryArchiveStore()
