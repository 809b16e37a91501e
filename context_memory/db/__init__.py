"""Storage adapters."""

from context_memory.db.archive import (
    ArchiveStore,
    InMemoryArchiveStore,
    RedisArchiveStore,
    get_archive_store,
)

__all__ = [
    "ArchiveStore",
    "InMemoryArchiveStore",
    "RedisArchiveStore",
    "get_archive_store",
]
