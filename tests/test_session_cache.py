import asyncio
import time

import pytest

from warden.storage.redis_cache import (
    BLACKLIST_PREFIX,
    REFRESH_TOKEN_PREFIX,
    SWEEP_EVERY_WRITES,
    USER_SESSION_PREFIX,
    MemorySessionCache,
    RedisCache,
)


def _expire_now(cache: MemorySessionCache, key: str) -> None:
    value, _ = cache._entries[key]
    cache._entries[key] = (value, time.monotonic() - 1)


class TestMemorySessionCachePrimitives:
    async def test_entries_expire(self):
        cache = MemorySessionCache()
        await cache.set("k", "v", ttl=10)
        assert await cache.get("k") == "v"
        assert await cache.ttl("k") in (9, 10)

        _expire_now(cache, "k")
        assert await cache.get("k") is None
        assert await cache.exists("k") is False
        assert await cache.ttl("k") == -2

    async def test_ttl_sentinels(self):
        cache = MemorySessionCache()
        await cache.set("forever", "v")
        assert await cache.ttl("forever") == -1
        assert await cache.ttl("missing") == -2

    async def test_expire_and_delete(self):
        cache = MemorySessionCache()
        await cache.set("k", "v")
        assert await cache.expire("k", 5) is True
        assert await cache.expire("missing", 5) is False

        assert await cache.delete("k") == 1
        assert await cache.delete("k") == 0

    async def test_expired_entries_are_swept_on_write(self):
        cache = MemorySessionCache()
        for i in range(1000):
            await cache.blacklist(f"tok-{i}", 1)
        for key in list(cache._entries):
            _expire_now(cache, key)

        for i in range(SWEEP_EVERY_WRITES):
            await cache.blacklist(f"fresh-{i}", 60)

        assert len(cache._entries) <= SWEEP_EVERY_WRITES
        assert await cache.is_blacklisted(f"fresh-{SWEEP_EVERY_WRITES - 1}") is True

    async def test_sweep_keeps_live_and_persistent_entries(self):
        cache = MemorySessionCache()
        await cache.set("persistent", "v")
        await cache.set("live", "v", ttl=60)
        await cache.set("stale", "v", ttl=60)
        _expire_now(cache, "stale")

        cache._sweep()

        assert set(cache._entries) == {"persistent", "live"}

    async def test_zero_ttl_set_expires_immediately(self):
        cache = MemorySessionCache()
        await cache.set("k", "v", ttl=0)
        assert await cache.get("k") is None

    async def test_close_drops_everything(self):
        cache = MemorySessionCache()
        await cache.set("k", "v")
        await cache.close()
        assert await cache.get("k") is None


class TestTokenLifecycle:
    async def test_blacklist(self):
        cache = MemorySessionCache()
        await cache.blacklist("tok", 30)
        assert await cache.is_blacklisted("tok") is True
        assert await cache.exists(f"{BLACKLIST_PREFIX}tok")

        _expire_now(cache, f"{BLACKLIST_PREFIX}tok")
        assert await cache.is_blacklisted("tok") is False

    async def test_blacklist_with_no_remaining_life_is_noop(self):
        cache = MemorySessionCache()
        await cache.blacklist("tok", 0)
        await cache.blacklist("tok", -5)
        assert await cache.is_blacklisted("tok") is False

    async def test_pointers_compare_exactly(self):
        cache = MemorySessionCache()
        await cache.store_session(7, "access-a", 60)
        await cache.store_refresh_token(7, "refresh-a", 60)

        assert await cache.is_session_valid(7, "access-a") is True
        assert await cache.is_session_valid(7, "access-b") is False
        assert await cache.validate_refresh_token(7, "refresh-a") is True
        assert await cache.validate_refresh_token(8, "refresh-a") is False

        await cache.store_session(7, "access-b", 60)
        assert await cache.is_session_valid(7, "access-a") is False
        assert await cache.get(f"{USER_SESSION_PREFIX}7") == "access-b"
        assert await cache.get(f"{REFRESH_TOKEN_PREFIX}7") == "refresh-a"

    async def test_pointers_refuse_non_positive_ttl(self):
        cache = MemorySessionCache()
        with pytest.raises(ValueError):
            await cache.store_session(7, "access", 0)
        with pytest.raises(ValueError):
            await cache.store_refresh_token(7, "refresh", -1)
        assert await cache.get_session(7) is None

    async def test_clear_all_tokens(self):
        cache = MemorySessionCache(refresh_blacklist_ttl=100)
        await cache.store_session(7, "access", 60)
        await cache.store_refresh_token(7, "refresh", 600)

        await cache.clear_all_tokens(7, "access", "refresh", access_ttl_remaining=20)

        assert await cache.is_session_valid(7, "access") is False
        assert await cache.validate_refresh_token(7, "refresh") is False
        assert await cache.ttl(f"{BLACKLIST_PREFIX}access") in (19, 20)
        assert await cache.ttl(f"{BLACKLIST_PREFIX}refresh") in (99, 100)

    async def test_clear_all_tokens_without_remaining_ttl(self):
        cache = MemorySessionCache()
        await cache.store_session(7, "access", 60)

        await cache.clear_all_tokens(7, "access")

        assert await cache.is_blacklisted("access") is False
        assert await cache.is_session_valid(7, "access") is False

    async def test_clear_all_tokens_is_idempotent(self):
        cache = MemorySessionCache()
        await cache.clear_all_tokens(7, "access", "refresh", 10)
        await cache.clear_all_tokens(7, "access", "refresh", 10)
        assert await cache.is_blacklisted("refresh") is True


class TestRedisCacheLifecycle:
    def test_requires_connect(self):
        cache = RedisCache("redis://localhost:6379/0")
        with pytest.raises(RuntimeError):
            asyncio.run(cache.get("k"))

    def test_key_prefix(self):
        cache = RedisCache("redis://localhost:6379/0", key_prefix="warden:")
        assert cache._key(f"{BLACKLIST_PREFIX}abc") == "warden:blacklist:token:abc"

    def test_close_without_connect(self):
        cache = RedisCache("redis://localhost:6379/0")
        asyncio.run(cache.close())
        assert cache.client is None
