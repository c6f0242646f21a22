"""
Global query registry and per-query last-seen watermarks.

The registry (meta:all_queries) is the poll scheduler's fan-out list: every
query that currently has at least one subscriber, in canonical form. The raw
text stays on the Subscription record. Watermarks
(lastSeen:<key>) record the newest release already delivered for a query;
a release is new for a query iff there is no watermark or its preAt is
strictly greater than the watermark's.
"""
import logging
from typing import Optional

from infra.redis_client import KeyValueStore
from models.release import Release
from models.subscription import Watermark
from services.matcher import canonical_query, storage_key

logger = logging.getLogger(__name__)

ALL_QUERIES_KEY = "meta:all_queries"


class GlobalQueryRegistry:
    def __init__(self, store: KeyValueStore):
        self.store = store

    async def register(self, query: str) -> None:
        """Add a query; no-op when already present."""
        query = canonical_query(query)

        def add(current):
            queries = list(current or [])
            if query not in queries:
                queries.append(query)
            return queries

        await self.store.update(ALL_QUERIES_KEY, add)

    async def unregister(self, query: str) -> None:
        query = canonical_query(query)

        def remove(current):
            queries = [q for q in (current or []) if q != query]
            return queries or None

        await self.store.update(ALL_QUERIES_KEY, remove)

    async def all(self) -> list[str]:
        return list(await self.store.get(ALL_QUERIES_KEY) or [])


def _last_seen_key(query: str) -> str:
    return f"lastSeen:{storage_key(query)}"


def is_newer(release: Release, watermark: Optional[Watermark]) -> bool:
    if watermark is None or watermark.preAt is None:
        return True
    return release.preAt > watermark.preAt


class LastSeenTracker:
    def __init__(self, store: KeyValueStore):
        self.store = store

    async def get_watermark(self, query: str) -> Optional[Watermark]:
        raw = await self.store.get(_last_seen_key(query))
        return Watermark.model_validate(raw) if raw else None

    async def is_new(self, query: str, release: Release) -> bool:
        return is_newer(release, await self.get_watermark(query))

    async def set_watermark(self, query: str, release: Release) -> Watermark:
        """Record `release` as seen; the watermark never moves backwards."""
        def keep_newest(current):
            existing = Watermark.model_validate(current) if current else None
            if is_newer(release, existing):
                return {"id": release.id, "preAt": release.preAt}
            return current

        return Watermark.model_validate(await self.store.update(_last_seen_key(query), keep_newest))

    async def advance(self, query: str, release: Release) -> bool:
        """
        Check-and-set in one step: move the watermark to `release` if it is
        new for this query. Returns True when it was new (caller should notify).
        """
        advanced = False

        def check_and_set(current):
            nonlocal advanced
            existing = Watermark.model_validate(current) if current else None
            advanced = is_newer(release, existing)
            if advanced:
                return {"id": release.id, "preAt": release.preAt}
            return current

        await self.store.update(_last_seen_key(query), check_and_set)
        return advanced

    async def reset(self, query: str) -> None:
        await self.store.delete(_last_seen_key(query))
        logger.info("[store] Watermark reset for query '%s'", canonical_query(query))
