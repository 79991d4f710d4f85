from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from redis import Redis

from warden.logging import get_logger

logger = get_logger(__name__)

BLACKLIST_PREFIX = "blacklist:token:"
REFRESH_TOKEN_PREFIX = "refresh:token:"
USER_SESSION_PREFIX = "session:user:"

# Revoked refresh tokens stay blacklisted this long regardless of their real expiry
REFRESH_BLACKLIST_TTL_SECONDS = 30 * 24 * 60 * 60

# MemorySessionCache drops expired entries after this many writes
SWEEP_EVERY_WRITES = 64


class SessionCache(Protocol):
    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def blacklist(self, token: str, ttl_seconds: int) -> None: ...

    async def is_blacklisted(self, token: str) -> bool: ...

    async def store_refresh_token(
        self, user_id: int, token: str, ttl_seconds: int
    ) -> None: ...

    async def validate_refresh_token(self, user_id: int, token: str) -> bool: ...

    async def remove_refresh_token(self, user_id: int) -> None: ...

    async def store_session(
        self, user_id: int, access_token: str, ttl_seconds: int
    ) -> None: ...

    async def is_session_valid(self, user_id: int, access_token: str) -> bool: ...

    async def remove_session(self, user_id: int) -> None: ...

    async def clear_all_tokens(
        self,
        user_id: int,
        access_token: str,
        refresh_token: Optional[str] = None,
        access_ttl_remaining: Optional[int] = None,
    ) -> None: ...


def _require_positive_ttl(ttl_seconds: int) -> None:
    # Session pointers must always expire
    if ttl_seconds <= 0:
        raise ValueError(f"pointer ttl must be positive, got {ttl_seconds}")


class _TokenLifecycle:
    """Token bookkeeping shared by the Redis and in-memory caches.

    Subclasses provide the primitive ``get``/``set``/``delete``/``exists``
    operations; every write carries a TTL so entries self-expire.
    """

    refresh_blacklist_ttl = REFRESH_BLACKLIST_TTL_SECONDS

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> int:
        raise NotImplementedError

    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    async def blacklist(self, token: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        await self.set(f"{BLACKLIST_PREFIX}{token}", "1", ttl=ttl_seconds)

    async def is_blacklisted(self, token: str) -> bool:
        return await self.exists(f"{BLACKLIST_PREFIX}{token}")

    async def store_refresh_token(
        self, user_id: int, token: str, ttl_seconds: int
    ) -> None:
        _require_positive_ttl(ttl_seconds)
        await self.set(f"{REFRESH_TOKEN_PREFIX}{user_id}", token, ttl=ttl_seconds)

    async def validate_refresh_token(self, user_id: int, token: str) -> bool:
        stored = await self.get(f"{REFRESH_TOKEN_PREFIX}{user_id}")
        return stored is not None and stored == token

    async def remove_refresh_token(self, user_id: int) -> None:
        await self.delete(f"{REFRESH_TOKEN_PREFIX}{user_id}")

    async def store_session(
        self, user_id: int, access_token: str, ttl_seconds: int
    ) -> None:
        _require_positive_ttl(ttl_seconds)
        await self.set(f"{USER_SESSION_PREFIX}{user_id}", access_token, ttl=ttl_seconds)

    async def get_session(self, user_id: int) -> Optional[str]:
        return await self.get(f"{USER_SESSION_PREFIX}{user_id}")

    async def is_session_valid(self, user_id: int, access_token: str) -> bool:
        stored = await self.get_session(user_id)
        return stored is not None and stored == access_token

    async def remove_session(self, user_id: int) -> None:
        await self.delete(f"{USER_SESSION_PREFIX}{user_id}")

    async def clear_all_tokens(
        self,
        user_id: int,
        access_token: str,
        refresh_token: Optional[str] = None,
        access_ttl_remaining: Optional[int] = None,
    ) -> None:
        """Blacklist both tokens and drop the user's pointers concurrently."""
        operations = []
        if access_ttl_remaining:
            operations.append(self.blacklist(access_token, access_ttl_remaining))
        if refresh_token:
            operations.append(self.blacklist(refresh_token, self.refresh_blacklist_ttl))
        operations.append(self.remove_refresh_token(user_id))
        operations.append(self.remove_session(user_id))
        await asyncio.gather(*operations)
        logger.debug("user_tokens_cleared", user_id=user_id)


class RedisCache(_TokenLifecycle):
    """Redis-backed session cache with an explicit connect/close lifecycle."""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        key_prefix: str = "",
        refresh_blacklist_ttl: int = REFRESH_BLACKLIST_TTL_SECONDS,
    ):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.key_prefix = key_prefix
        self.refresh_blacklist_ttl = refresh_blacklist_ttl
        self.client: Optional[aioredis.Redis] = None

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off the startup loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def connect(self) -> None:
        if self.client is not None:
            return
        self.client = aioredis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        await self.client.ping()
        logger.info("redis_connected")

    def _require_client(self) -> aioredis.Redis:
        if self.client is None:
            raise RuntimeError("RedisCache.connect() must be awaited before use")
        return self.client

    async def get(self, key: str) -> Optional[str]:
        return await self._require_client().get(self._key(key))

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        client = self._require_client()
        if ttl is not None:
            await client.set(self._key(key), value, ex=ttl)
        else:
            await client.set(self._key(key), value)

    async def delete(self, key: str) -> int:
        return int(await self._require_client().delete(self._key(key)))

    async def exists(self, key: str) -> bool:
        return bool(await self._require_client().exists(self._key(key)))

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self._require_client().expire(self._key(key), ttl))

    async def ttl(self, key: str) -> int:
        return int(await self._require_client().ttl(self._key(key)))

    async def close(self) -> None:
        if self.client is None:
            return
        client, self.client = self.client, None
        await client.aclose()
        logger.info("redis_disconnected")


class MemorySessionCache(_TokenLifecycle):
    """In-process TTL cache used in tests and Redis-less development."""

    def __init__(
        self, *, refresh_blacklist_ttl: int = REFRESH_BLACKLIST_TTL_SECONDS
    ) -> None:
        self.refresh_blacklist_ttl = refresh_blacklist_ttl
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._writes = 0

    def _live_entry(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            self._entries.pop(key, None)
            return None
        return value

    def _sweep(self) -> None:
        now = time.monotonic()
        expired = [
            key
            for key, (_, expires_at) in self._entries.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in expired:
            del self._entries[key]

    def _record_write(self) -> None:
        self._writes += 1
        if self._writes >= SWEEP_EVERY_WRITES:
            self._writes = 0
            self._sweep()

    async def connect(self) -> None:
        return None

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_entry(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        expires_at = time.monotonic() + ttl if ttl is not None else None
        with self._lock:
            self._entries[key] = (value, expires_at)
            self._record_write()

    async def delete(self, key: str) -> int:
        with self._lock:
            present = self._live_entry(key) is not None
            self._entries.pop(key, None)
            return 1 if present else 0

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    async def expire(self, key: str, ttl: int) -> bool:
        with self._lock:
            value = self._live_entry(key)
            if value is None:
                return False
            self._entries[key] = (value, time.monotonic() + ttl)
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            if self._live_entry(key) is None:
                return -2
            _, expires_at = self._entries[key]
            if expires_at is None:
                return -1
            return max(0, int(expires_at - time.monotonic()))

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
