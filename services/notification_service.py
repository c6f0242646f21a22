# services/notification_service.py
"""
Notification routing and dispatch.

For one release the dispatcher:
1. keeps only the matched queries whose watermark says the release is new
   (advancing the watermark in the same step),
2. routes every owner of those queries to a delivery target,
3. sends ONE deliver() call per distinct target, carrying the union of
   owners routed there and the queries that matched for them.

A failing target is logged and does not stop the others.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

from infra.redis_client import KeyValueStore
from models.release import Release
from models.subscription import QueryMatch
from services.query_registry import LastSeenTracker

logger = logging.getLogger(__name__)

MODE_DM = "dm"
MODE_CHANNEL = "channel"


@dataclass(frozen=True)
class DeliveryTarget:
    kind: str  # "user" | "channel"
    address: str

    def __str__(self):
        return f"{self.kind}:{self.address}"


class Deliverer(Protocol):
    async def deliver(
        self,
        target: DeliveryTarget,
        release: Release,
        matched_queries: list[str],
        owners: list[str],
    ) -> bool:
        ...


def split_owner(owner_id: str) -> tuple[Optional[str], str]:
    """'<communityId>:<userId>' -> (communityId, userId); plain ids have no community."""
    community, sep, user = owner_id.rpartition(":")
    if not sep or not community:
        return None, owner_id
    return community, user


def _alerts_channel_key(community_id: str) -> str:
    return f"alertsChannel:{community_id}"


class DeliveryRouter:
    """Resolves owners to delivery targets (direct user or community channel)."""

    def __init__(self, store: KeyValueStore, mode: str = MODE_CHANNEL, default_channel: Optional[str] = None):
        if mode not in (MODE_DM, MODE_CHANNEL):
            raise ValueError(f"Unknown notification mode: {mode}")
        self.store = store
        self.mode = mode
        self.default_channel = default_channel

    async def get_alerts_channel(self, community_id: str) -> Optional[str]:
        return await self.store.get(_alerts_channel_key(community_id))

    async def set_alerts_channel(self, community_id: str, channel_id: str) -> None:
        await self.store.set(_alerts_channel_key(community_id), channel_id)
        logger.info("[dispatch] Alerts channel for %s set to %s", community_id, channel_id)

    async def resolve(self, owner_id: str) -> Optional[DeliveryTarget]:
        community, user = split_owner(owner_id)
        if self.mode == MODE_DM:
            return DeliveryTarget("user", user)
        channel = None
        if community:
            channel = await self.get_alerts_channel(community)
        channel = channel or self.default_channel
        return DeliveryTarget("channel", channel) if channel else None


@dataclass
class DispatchReport:
    release_id: int
    delivered: list[DeliveryTarget] = field(default_factory=list)
    failed: list[DeliveryTarget] = field(default_factory=list)
    notified_queries: list[str] = field(default_factory=list)
    skipped_queries: list[str] = field(default_factory=list)
    unroutable_owners: list[str] = field(default_factory=list)


@dataclass
class _Batch:
    owners: list[str] = field(default_factory=list)
    queries: list[str] = field(default_factory=list)


class NotificationDispatcher:
    def __init__(self, last_seen: LastSeenTracker, router: DeliveryRouter, deliverer: Deliverer):
        self.last_seen = last_seen
        self.router = router
        self.deliverer = deliverer

    async def _should_notify(self, query: str, release: Release, bypass_dedup: bool) -> bool:
        is_new = await self.last_seen.advance(query, release)
        return is_new or bypass_dedup

    async def dispatch(self, release: Release, matches: list[QueryMatch], bypass_dedup: bool = False) -> DispatchReport:
        report = DispatchReport(release_id=release.id)
        batches: dict[DeliveryTarget, _Batch] = {}

        for match in matches:
            if not match.owners:
                continue
            if not await self._should_notify(match.query, release, bypass_dedup):
                logger.info("[dispatch] Dedup skip: '%s' already saw %s (preAt=%s)", match.query, release.name, release.preAt)
                report.skipped_queries.append(match.query)
                continue
            report.notified_queries.append(match.query)
            for owner_id in match.owners:
                target = await self.router.resolve(owner_id)
                if target is None:
                    logger.warning("[dispatch] No delivery target for owner %s", owner_id)
                    report.unroutable_owners.append(owner_id)
                    continue
                batch = batches.setdefault(target, _Batch())
                if owner_id not in batch.owners:
                    batch.owners.append(owner_id)
                if match.query not in batch.queries:
                    batch.queries.append(match.query)

        for target, batch in batches.items():
            try:
                delivered = await self.deliverer.deliver(target, release, batch.queries, batch.owners)
            except Exception as e:
                logger.exception("[dispatch] Delivery to %s failed: %s", target, e)
                delivered = False
            if delivered:
                report.delivered.append(target)
                logger.info(
                    "[dispatch] Notified %s owner(s) via %s about: %s (queries: %s)",
                    len(batch.owners), target, release.name, ", ".join(batch.queries),
                )
            else:
                report.failed.append(target)
                logger.error("[dispatch] Delivery to %s was not accepted for %s", target, release.name)

        return report
