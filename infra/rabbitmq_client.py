"""
RabbitMQ client for notification delivery.

Purpose:
- Publish batched release notifications to RabbitMQ
- Let workers.notification_worker deliver them out of process
- Scale delivery horizontally with multiple consumers

Queue:
- release_notifications: one message per (release, delivery target)

Production notes:
- Use message acknowledgment for reliability (no message loss)
- Use durable queues and persistent messages
- Implement dead-letter queues (DLQ) for failed messages
"""
import json
import logging
from typing import Optional

import aio_pika  # async RabbitMQ client

from models.release import Release
from tools.notifier import ConsoleDeliverer

logger = logging.getLogger(__name__)

NOTIFICATIONS_QUEUE = "release_notifications"


def build_notification_payload(target, release: Release, matched_queries: list[str], owners: list[str]) -> dict:
    """
    Payload shape:
    {
      "type": "release_notification",
      "target": {"kind": "channel|user", "address": "..."},
      "release": {...},
      "matched_queries": [...],
      "owners": [...]
    }
    """
    return {
        "type": "release_notification",
        "target": {"kind": target.kind, "address": target.address},
        "release": release.model_dump(),
        "matched_queries": list(matched_queries),
        "owners": list(owners),
    }


class RabbitMQClient:
    """Simple async RabbitMQ publisher client."""

    def __init__(self, url: str):
        self.url = url
        self._connection: Optional[aio_pika.abc.AbstractRobustConnection] = None
        self._channel: Optional[aio_pika.abc.AbstractChannel] = None

    async def _ensure_connection(self):
        """
        Lazily connect to RabbitMQ and open a channel.
        """
        if self._connection and not self._connection.is_closed:
            return
        logger.info("[RabbitMQClient] Connecting to %s", self.url)
        self._connection = await aio_pika.connect_robust(self.url)
        self._channel = await self._connection.channel()
        # Ensure queue exists (idempotent)
        await self._channel.declare_queue(NOTIFICATIONS_QUEUE, durable=True)
        logger.info("[RabbitMQClient] Connected and queue declared")

    async def publish(self, payload: dict) -> bool:
        await self._ensure_connection()
        assert self._channel is not None
        body = json.dumps(payload).encode("utf-8")
        await self._channel.default_exchange.publish(
            aio_pika.Message(
                body=body,
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            ),
            routing_key=NOTIFICATIONS_QUEUE,
        )
        return True

    async def disconnect(self):
        if self._connection and not self._connection.is_closed:
            await self._connection.close()
            logger.info("[RabbitMQClient] Disconnected")


class QueueDeliverer:
    """
    Deliverer that publishes to RabbitMQ; falls back to the console notifier
    when publishing fails so the notification is at least recorded.
    """

    def __init__(self, client: RabbitMQClient, fallback=None):
        self.client = client
        self.fallback = fallback or ConsoleDeliverer()

    async def deliver(self, target, release: Release, matched_queries: list[str], owners: list[str]) -> bool:
        payload = build_notification_payload(target, release, matched_queries, owners)
        try:
            logger.info("[RabbitMQClient] Publishing notification for %s -> %s", release.name, target)
            return await self.client.publish(payload)
        except Exception as e:
            logger.error("[RabbitMQClient] Publish failed (%s), using console fallback", e)
            return await self.fallback.deliver(target, release, matched_queries, owners)
