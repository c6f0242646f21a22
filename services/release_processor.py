"""
Matching pipeline shared by the stream ingest and the poll scheduler.

insert event -> every registered query is checked against the release name
-> matching queries and their owners -> NotificationDispatcher.
"""
import logging
import random
import time
from typing import Optional

from infra.redis_client import StoreError
from models.release import Release, ReleaseEvent
from models.subscription import QueryMatch
from services.matcher import matches
from services.notification_service import DispatchReport, NotificationDispatcher
from services.query_registry import GlobalQueryRegistry
from services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


class ReleaseProcessor:
    def __init__(
        self,
        registry: GlobalQueryRegistry,
        subscriptions: SubscriptionService,
        dispatcher: NotificationDispatcher,
    ):
        self.registry = registry
        self.subscriptions = subscriptions
        self.dispatcher = dispatcher

    async def find_matches(self, release: Release) -> list[QueryMatch]:
        found = []
        for query in await self.registry.all():
            if not matches(query, release.name):
                continue
            owners = await self.subscriptions.owners_for(query)
            if owners:
                found.append(QueryMatch(query=query, owners=owners))
        return found

    async def process(self, event: ReleaseEvent, bypass_dedup: bool = False) -> Optional[DispatchReport]:
        """
        Handle one feed event. Only inserts are matched; everything else is
        ignored. Errors are logged and swallowed so a bad release never
        stops the feed.
        """
        if event.action != "insert":
            return None
        release = event.row
        try:
            found = await self.find_matches(release)
            if not found:
                return DispatchReport(release_id=release.id)
            logger.info("[dispatch] Found %s matching queries for: %s", len(found), release.name)
            return await self.dispatcher.dispatch(release, found, bypass_dedup=bypass_dedup)
        except StoreError as e:
            logger.error("[dispatch] Store error processing %s: %s", release.name, e)
        except Exception as e:
            logger.exception("[dispatch] Error processing release %s: %s", release.name, e)
        return None

    async def simulate_release(self, release_name: str) -> Optional[DispatchReport]:
        """Run a mock release through the pipeline, bypassing dedup."""
        release = Release(
            id=random.randint(0, 10_000_000),
            name=release_name,
            team="TEST",
            cat="X264-HD-720P",
            size=2048 * 1024 * 1024,
            files=15,
            preAt=int(time.time()),
        )
        logger.info("[dispatch] Simulating release: %s", release_name)
        return await self.process(ReleaseEvent(action="insert", row=release), bypass_dedup=True)
