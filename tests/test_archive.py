"""Tests for archive stores."""

import pytest

from context_memory.db.archive import (
    InMemoryArchiveStore,
    RedisArchiveStore,
    get_archive_store,
)
from context_memory.models.context import ArchivedContext, utc_now


def archived(context_id: str, chat_id: str = "chat-1") -> ArchivedContext:
    return ArchivedContext(
        chat_id=chat_id,
        context_id=context_id,
        content=f"archived content {context_id}",
        original_timestamp=utc_now(),
    )


class TestInMemoryArchiveStore:
    @pytest.mark.asyncio
    async def test_put_appends_per_key(self):
        store = InMemoryArchiveStore()

        await store.put("chat-1", [archived("a")])
        await store.put("chat-1", [archived("b")])
        await store.put("chat-2", [archived("c", "chat-2")])

        assert [item.context_id for item in await store.get("chat-1")] == ["a", "b"]
        assert [item.context_id for item in await store.get("chat-2")] == ["c"]

    @pytest.mark.asyncio
    async def test_get_returns_a_copy(self):
        store = InMemoryArchiveStore()
        await store.put("chat-1", [archived("a")])

        (await store.get("chat-1")).clear()

        assert len(await store.get("chat-1")) == 1

    @pytest.mark.asyncio
    async def test_delete(self):
        store = InMemoryArchiveStore()
        await store.put("chat-1", [archived("a"), archived("b")])

        assert await store.delete("chat-1") == 2
        assert await store.get("chat-1") == []
        assert await store.delete("chat-1") == 0


class TestRedisArchiveStore:
    def test_key_prefix(self):
        store = RedisArchiveStore(prefix="ctx-archive")
        assert store._key("chat-1") == "ctx-archive:chat-1"

    def test_client_requires_url(self):
        with pytest.raises(RuntimeError):
            RedisArchiveStore().get_client()

    @pytest.mark.asyncio
    async def test_put_nothing_skips_redis(self):
        await RedisArchiveStore().put("chat-1", [])


def test_default_archive_store_is_in_memory():
    assert isinstance(get_archive_store(), InMemoryArchiveStore)
