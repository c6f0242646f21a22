"""
Subscription store backed by the key-value store.

Keeps three structures consistent:
- user:<ownerId>       ordered list of the owner's subscriptions
- query:<storage key>  owners subscribed to a normalized query
- meta:all_queries     global query registry (via GlobalQueryRegistry); holds
                       the canonical form (lowercase, single spaces, "+" read
                       as a space), not the raw text the owner typed, so each
                       entry maps to exactly one query:<storage key>

An owner is in a query's index entry iff it has a subscription with that
normalized query; the registry holds exactly the queries with a non-empty
entry. Removing the last owner of a query also resets its watermark.

Every public operation returns a core.response envelope: domain and store
failures are result values, never exceptions.
"""
import logging
import time
import uuid
from typing import Optional

from core import response
from core.response import ok, error
from infra.redis_client import KeyValueStore, StoreError
from models.subscription import QUERY_MAX_LENGTH, QUERY_MIN_LENGTH, Subscription
from services.matcher import canonical_query, is_similar, storage_key
from services.query_registry import GlobalQueryRegistry, LastSeenTracker

logger = logging.getLogger(__name__)


class _Rejected(Exception):
    """Aborts an update() from inside its update function."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def _user_key(owner_id: str) -> str:
    return f"user:{owner_id}"


def _query_key(query: str) -> str:
    return f"query:{storage_key(query)}"


class SubscriptionService:
    def __init__(
        self,
        store: KeyValueStore,
        registry: GlobalQueryRegistry,
        last_seen: LastSeenTracker,
        max_per_owner: int = 0,
    ):
        self.store = store
        self.registry = registry
        self.last_seen = last_seen
        # 0 = unlimited
        self.max_per_owner = max_per_owner

    async def _load(self, owner_id: str) -> list[Subscription]:
        raw = await self.store.get(_user_key(owner_id)) or []
        return [Subscription.model_validate(s) for s in raw]

    async def create(self, owner_id: str, query: str):
        """
        Add a subscription for `owner_id`.

        Rejected with `duplicate` when the owner already has the same
        normalized query, `limit_exceeded` at the per-owner maximum and
        `invalid_query` outside 4-50 characters. Rejections write nothing;
        a store failure after the owner list was written is rolled back.
        """
        query = query.strip()
        if not (QUERY_MIN_LENGTH <= len(query) <= QUERY_MAX_LENGTH):
            return error(
                response.INVALID_QUERY,
                f"Query must be between {QUERY_MIN_LENGTH} and {QUERY_MAX_LENGTH} characters.",
            )

        normalized = canonical_query(query)
        if not normalized:
            return error(response.INVALID_QUERY, "Query must contain at least one word.")
        sub = Subscription(id=uuid.uuid4().hex[:12], query=query, created=int(time.time() * 1000))

        def append(current):
            subs = list(current or [])
            if any(canonical_query(s["query"]) == normalized for s in subs):
                raise _Rejected(response.DUPLICATE, f'You\'re already monitoring "{query}".')
            if self.max_per_owner and len(subs) >= self.max_per_owner:
                raise _Rejected(
                    response.LIMIT_EXCEEDED,
                    f"Maximum {self.max_per_owner} subscriptions per user. Remove some first.",
                )
            subs.append(sub.model_dump())
            return subs

        try:
            await self.store.update(_user_key(owner_id), append)
        except _Rejected as r:
            logger.info("[store] create rejected for %s (%s): %s", owner_id, r.code, query)
            return error(r.code, r.message)
        except StoreError as e:
            logger.error("[store] create failed for %s: %s", owner_id, e)
            return error(response.STORE_ERROR, "Failed to add subscription. Try again later.")

        try:
            await self._index(owner_id, normalized)
        except StoreError as e:
            logger.error("[store] indexing '%s' for %s failed, rolling back: %s", normalized, owner_id, e)
            await self._rollback_create(owner_id, sub.id, normalized)
            return error(response.STORE_ERROR, "Failed to add subscription. Try again later.")

        logger.info("[store] %s subscribed to '%s' (%s)", owner_id, normalized, sub.id)
        return ok(sub)

    async def _index(self, owner_id: str, normalized: str):
        def add_owner(current):
            owners = list(current or [])
            if owner_id not in owners:
                owners.append(owner_id)
            return owners

        await self.store.update(_query_key(normalized), add_owner)
        await self.registry.register(normalized)

    async def _rollback_create(self, owner_id: str, subscription_id: str, normalized: str):
        """Undo a create whose index or registry write failed."""
        def drop(current):
            remaining = [s for s in (current or []) if s["id"] != subscription_id]
            return remaining or None

        try:
            await self.store.update(_user_key(owner_id), drop)
            await self._remove_owner(owner_id, normalized)
        except StoreError as e:
            logger.error("[store] rollback of %s for %s failed: %s", subscription_id, owner_id, e)

    async def similarity_check(self, owner_id: str, query: str):
        """Owner's existing subscriptions judged similar to `query` (advisory)."""
        try:
            subs = await self._load(owner_id)
        except StoreError as e:
            logger.error("[store] similarity check failed for %s: %s", owner_id, e)
            return error(response.STORE_ERROR, "Failed to check subscriptions. Try again later.")
        return ok([s for s in subs if is_similar(query, s.query)])

    async def delete(self, owner_id: str, subscription_id: str):
        removed: Optional[dict] = None

        def drop(current):
            nonlocal removed
            subs = list(current or [])
            removed = next((s for s in subs if s["id"] == subscription_id), None)
            if removed is None:
                raise _Rejected(response.NOT_FOUND, "Subscription not found.")
            remaining = [s for s in subs if s["id"] != subscription_id]
            return remaining or None

        try:
            remaining = await self.store.update(_user_key(owner_id), drop) or []
            deleted_query = removed["query"]
            normalized = canonical_query(deleted_query)
            if not any(canonical_query(s["query"]) == normalized for s in remaining):
                await self._remove_owner(owner_id, normalized)
        except _Rejected as r:
            return error(r.code, r.message)
        except StoreError as e:
            logger.error("[store] delete failed for %s/%s: %s", owner_id, subscription_id, e)
            return error(response.STORE_ERROR, "Failed to delete subscription. Try again later.")

        logger.info("[store] %s stopped monitoring '%s'", owner_id, deleted_query)
        return ok({"deleted_query": deleted_query})

    async def _remove_owner(self, owner_id: str, normalized: str):
        def remove(current):
            owners = [o for o in (current or []) if o != owner_id]
            return owners or None

        owners = await self.store.update(_query_key(normalized), remove)
        if not owners:
            # last subscriber gone: drop it from polling and forget what was seen
            await self.registry.unregister(normalized)
            await self.last_seen.reset(normalized)

    async def unsubscribe(self, owner_id: str, query: str):
        """Remove the owner's subscription whose normalized query equals `query`."""
        normalized = canonical_query(query)
        try:
            subs = await self._load(owner_id)
        except StoreError as e:
            logger.error("[store] unsubscribe failed for %s: %s", owner_id, e)
            return error(response.STORE_ERROR, "Failed to unsubscribe. Try again later.")
        match = next((s for s in subs if canonical_query(s.query) == normalized), None)
        if match is None:
            return error(response.NOT_FOUND, "You are not subscribed to this query.")
        return await self.delete(owner_id, match.id)

    async def list_by_owner(self, owner_id: str):
        try:
            return ok(await self._load(owner_id))
        except StoreError as e:
            logger.error("[store] list failed for %s: %s", owner_id, e)
            return error(response.STORE_ERROR, "Failed to load subscriptions. Try again later.")

    async def owners_for(self, query: str) -> list[str]:
        """Query index entry for `query`. Raises StoreError."""
        return list(await self.store.get(_query_key(query)) or [])
