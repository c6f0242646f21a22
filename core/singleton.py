# core/singleton.py
"""
Component wiring.

One store handle is opened at startup and injected into every component;
nothing reaches for a module-level store. The FastAPI app keeps the
resulting ServiceContainer on app.state.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from config.settings import Settings
from infra.memory_store import InMemoryStore
from infra.rabbitmq_client import QueueDeliverer, RabbitMQClient
from infra.redis_client import KeyValueStore, RedisStore
from infra.release_api import ReleaseApiClient
from infra.release_stream import StreamIngest
from services.notification_service import Deliverer, DeliveryRouter, NotificationDispatcher
from services.query_registry import GlobalQueryRegistry, LastSeenTracker
from services.release_processor import ReleaseProcessor
from services.subscription_service import SubscriptionService
from tools.notifier import ConsoleDeliverer
from workers.poll_scheduler import PollScheduler

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    store: KeyValueStore
    registry: GlobalQueryRegistry
    last_seen: LastSeenTracker
    subscriptions: SubscriptionService
    router: DeliveryRouter
    dispatcher: NotificationDispatcher
    processor: ReleaseProcessor
    api: ReleaseApiClient
    stream: StreamIngest
    poller: PollScheduler
    rabbitmq: Optional[RabbitMQClient] = None
    stop_polling: asyncio.Event = field(default_factory=asyncio.Event)
    tasks: list[asyncio.Task] = field(default_factory=list)


def build_store(settings: Settings) -> KeyValueStore:
    if settings.STORE_BACKEND == "memory":
        return InMemoryStore()
    return RedisStore(settings.REDIS_URL, namespace=settings.REDIS_NAMESPACE)


def build_services(
    settings: Settings,
    store: Optional[KeyValueStore] = None,
    deliverer: Optional[Deliverer] = None,
    api: Optional[ReleaseApiClient] = None,
) -> ServiceContainer:
    store = store or build_store(settings)
    rabbitmq = None
    if deliverer is None:
        if settings.DELIVERY_BACKEND == "rabbitmq":
            rabbitmq = RabbitMQClient(settings.RABBITMQ_URL)
            deliverer = QueueDeliverer(rabbitmq)
        else:
            deliverer = ConsoleDeliverer()

    registry = GlobalQueryRegistry(store)
    last_seen = LastSeenTracker(store)
    subscriptions = SubscriptionService(store, registry, last_seen, max_per_owner=settings.MAX_SUBSCRIPTIONS_PER_USER)
    router = DeliveryRouter(store, mode=settings.NOTIFICATION_MODE, default_channel=settings.NOTIFICATION_CHANNEL)
    dispatcher = NotificationDispatcher(last_seen, router, deliverer)
    processor = ReleaseProcessor(registry, subscriptions, dispatcher)
    api = api or ReleaseApiClient(settings.API_URL)
    stream = StreamIngest(settings.stream_url, processor.process, reconnect_delay_sec=settings.STREAM_RECONNECT_DELAY_SEC)
    poller = PollScheduler(
        api,
        registry,
        last_seen,
        processor,
        base_interval_sec=settings.POLL_BASE_INTERVAL_SEC,
        safe_requests_per_minute=settings.SAFE_REQUESTS_PER_MINUTE,
        page_count=settings.POLL_PAGE_COUNT,
    )
    return ServiceContainer(
        settings=settings,
        store=store,
        registry=registry,
        last_seen=last_seen,
        subscriptions=subscriptions,
        router=router,
        dispatcher=dispatcher,
        processor=processor,
        api=api,
        stream=stream,
        poller=poller,
        rabbitmq=rabbitmq,
    )


async def start(services: ServiceContainer):
    """Open the store and launch the enabled background feeds."""
    await services.store.connect()
    await services.api.check_health()
    if services.settings.STREAM_ENABLED:
        services.tasks.append(asyncio.create_task(services.stream.run(), name="stream-ingest"))
    if services.settings.POLLING_ENABLED:
        services.tasks.append(asyncio.create_task(services.poller.run(services.stop_polling), name="poll-scheduler"))
    logger.info(
        "Started (stream=%s, polling=%s, mode=%s)",
        services.settings.STREAM_ENABLED, services.settings.POLLING_ENABLED, services.settings.NOTIFICATION_MODE,
    )


async def stop(services: ServiceContainer):
    services.stop_polling.set()
    for task in services.tasks:
        if task.get_name() == "stream-ingest":
            # the stream has no stop signal of its own; shutdown cancels it
            task.cancel()
    await asyncio.gather(*services.tasks, return_exceptions=True)
    services.tasks.clear()
    await services.api.close()
    if services.rabbitmq:
        await services.rabbitmq.disconnect()
    await services.store.disconnect()
