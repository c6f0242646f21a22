import sys
from pathlib import Path

import pytest


# Ensure project root is on sys.path so `services.*`, `infra.*` imports work
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))


# Explicitly enable pytest-asyncio plugin for async tests/fixtures
pytest_plugins = ("pytest_asyncio",)


from infra.memory_store import InMemoryStore
from models.release import Release, ReleaseEvent
from services.notification_service import DeliveryRouter, NotificationDispatcher
from services.query_registry import GlobalQueryRegistry, LastSeenTracker
from services.release_processor import ReleaseProcessor
from services.subscription_service import SubscriptionService


class RecordingDeliverer:
    """Deliverer double: records every deliver() call; can fail chosen targets."""

    def __init__(self, fail_targets=()):
        self.calls = []
        self.fail_targets = set(fail_targets)

    async def deliver(self, target, release, matched_queries, owners):
        self.calls.append({
            "target": target,
            "release": release,
            "queries": list(matched_queries),
            "owners": list(owners),
        })
        if str(target) in self.fail_targets:
            raise ConnectionError(f"{target} unreachable")
        return True


def make_release(name="Some.Release-GRP", id=1, pre_at=1_700_000_000, **extra) -> Release:
    return Release(id=id, name=name, team=extra.pop("team", "GRP"), cat=extra.pop("cat", "TV"), preAt=pre_at, **extra)


def insert(release: Release) -> ReleaseEvent:
    return ReleaseEvent(action="insert", row=release)


@pytest.fixture()
def store():
    return InMemoryStore()


@pytest.fixture()
def registry(store):
    return GlobalQueryRegistry(store)


@pytest.fixture()
def last_seen(store):
    return LastSeenTracker(store)


@pytest.fixture()
def subscriptions(store, registry, last_seen):
    return SubscriptionService(store, registry, last_seen, max_per_owner=5)


@pytest.fixture()
def deliverer():
    return RecordingDeliverer()


@pytest.fixture()
def router(store):
    return DeliveryRouter(store, mode="channel", default_channel="alerts")


@pytest.fixture()
def dispatcher(last_seen, router, deliverer):
    return NotificationDispatcher(last_seen, router, deliverer)


@pytest.fixture()
def processor(registry, subscriptions, dispatcher):
    return ReleaseProcessor(registry, subscriptions, dispatcher)
