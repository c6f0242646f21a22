"""
Key-value store contract and the Redis-backed implementation.

Purpose:
- Persist subscriptions, the query index, the global query registry,
  per-query watermarks and alerts channels as JSON documents
- Provide an atomic read-modify-write primitive per key (update)

Key layout (before namespacing):
- user:<ownerId>            -> [{id, query, created}, ...]
- query:<storage key>       -> [ownerId, ...]
- meta:all_queries          -> [query, ...]
- lastSeen:<storage key>    -> {id, preAt}
- alertsChannel:<community> -> channel id

Production notes:
- update() uses WATCH/MULTI; contended keys are retried a bounded number of times
- Redis persistence (AOF/RDB) is what makes last-seen state survive restarts
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

logger = logging.getLogger(__name__)

UpdateFn = Callable[[Any], Any]


class StoreError(Exception):
    """Raised when the backing store cannot be read or written."""


class KeyValueStore(ABC):
    """Async JSON key-value store used by every component."""

    async def connect(self):
        """Open the underlying connection (no-op by default)."""

    async def disconnect(self):
        """Close the underlying connection (no-op by default)."""

    @abstractmethod
    async def get(self, key: str) -> Any:
        """Return the decoded value, or None when the key is missing."""

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key; missing keys are ignored."""

    @abstractmethod
    async def update(self, key: str, fn: UpdateFn) -> Any:
        """
        Atomically replace the value of `key` with fn(current).

        fn receives the decoded value (None when missing) and must be pure:
        it may be called more than once under contention. Returning None
        deletes the key. Exceptions raised by fn abort the update and
        propagate unchanged. Returns the new value.
        """


class RedisStore(KeyValueStore):
    """Async Redis store wrapper."""

    MAX_UPDATE_RETRIES = 10

    def __init__(self, url: str, namespace: str = "data"):
        self.url = url
        self.namespace = namespace
        self.redis: Optional[redis.Redis] = None

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    def _client(self) -> redis.Redis:
        if self.redis is None:
            raise StoreError("Redis store is not connected")
        return self.redis

    async def connect(self):
        """Initialize async Redis connection."""
        self.redis = redis.from_url(self.url, encoding="utf-8", decode_responses=True)
        try:
            await self.redis.ping()
        except RedisError as e:
            logger.error("[store] Failed to connect to Redis at %s: %s", self.url, e)
            raise StoreError(f"Redis unavailable: {e}") from e
        logger.info("[store] Connected to Redis at %s", self.url)

    async def disconnect(self):
        """Close Redis connection."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            logger.info("[store] Disconnected from Redis")

    async def get(self, key: str) -> Any:
        try:
            raw = await self._client().get(self._key(key))
        except RedisError as e:
            logger.error("[store] GET error for %s: %s", key, e)
            raise StoreError(str(e)) from e
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        try:
            await self._client().set(self._key(key), json.dumps(value))
        except RedisError as e:
            logger.error("[store] SET error for %s: %s", key, e)
            raise StoreError(str(e)) from e

    async def delete(self, key: str) -> None:
        try:
            await self._client().delete(self._key(key))
        except RedisError as e:
            logger.error("[store] DELETE error for %s: %s", key, e)
            raise StoreError(str(e)) from e

    async def update(self, key: str, fn: UpdateFn) -> Any:
        full_key = self._key(key)
        client = self._client()
        for attempt in range(1, self.MAX_UPDATE_RETRIES + 1):
            try:
                async with client.pipeline(transaction=True) as pipe:
                    await pipe.watch(full_key)
                    raw = await pipe.get(full_key)
                    current = json.loads(raw) if raw is not None else None
                    new_value = fn(current)
                    pipe.multi()
                    if new_value is None:
                        pipe.delete(full_key)
                    else:
                        pipe.set(full_key, json.dumps(new_value))
                    await pipe.execute()
                    return new_value
            except WatchError:
                logger.debug("[store] WATCH conflict on %s (attempt %s)", key, attempt)
                continue
            except RedisError as e:
                logger.error("[store] UPDATE error for %s: %s", key, e)
                raise StoreError(str(e)) from e
        raise StoreError(f"Too much contention updating {key}")
