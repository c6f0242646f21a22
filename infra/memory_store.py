"""
In-process key-value store.

Used for local development (STORE_BACKEND=memory) and tests. Values are
round-tripped through JSON so callers never share mutable state with the
store, mirroring what they get back from Redis.
"""
import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Dict

from infra.redis_client import KeyValueStore, UpdateFn

logger = logging.getLogger(__name__)


class InMemoryStore(KeyValueStore):
    def __init__(self):
        self._data: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, key: str) -> Any:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def update(self, key: str, fn: UpdateFn) -> Any:
        async with self._locks[key]:
            current = await self.get(key)
            new_value = fn(current)
            if new_value is None:
                await self.delete(key)
                return None
            await self.set(key, new_value)
            return json.loads(self._data[key])

    def keys(self):
        """Snapshot of stored keys (debug/tests)."""
        return sorted(self._data)
