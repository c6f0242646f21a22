"""
Notification delivery worker.

Purpose:
- Consume release notifications from the RabbitMQ queue
- Render and deliver each one through tools.notifier
- Run as a separate process (scale horizontally)

Usage:
- python -m workers.notification_worker
"""
import asyncio
import json
import logging

import aio_pika
from pydantic import ValidationError

from config.settings import settings
from core.logging import configure_logging
from infra.rabbitmq_client import NOTIFICATIONS_QUEUE
from models.release import Release
from tools import notifier

logger = logging.getLogger(__name__)


class NotificationDeliveryWorker:
    """Worker to deliver notifications from RabbitMQ queue."""

    def __init__(self, url: str = settings.RABBITMQ_URL):
        self.url = url
        self.delivered = 0
        self.failed = 0

    def deliver(self, payload: dict) -> bool:
        """
        Deliver a single queued notification.

        Args:
            payload: {type, target: {kind, address}, release, matched_queries, owners}

        Returns:
            True if delivered, False otherwise
        """
        if payload.get("type") != "release_notification":
            logger.info("[worker] Ignoring message type=%s", payload.get("type"))
            return False

        target = payload.get("target") or {}
        kind, address = target.get("kind"), target.get("address")
        if not kind or not address:
            logger.warning("[worker] Missing target in payload: %s", payload)
            self.failed += 1
            return False

        try:
            release = Release.model_validate(payload.get("release"))
        except ValidationError as e:
            logger.warning("[worker] Invalid release in payload: %s", e)
            self.failed += 1
            return False

        message = notifier.format_release_notification(
            release,
            payload.get("matched_queries") or [],
            payload.get("owners") or [],
            mention=kind == "channel",
        )
        notifier.send_notification(f"{kind}:{address}", message, channel=kind)
        self.delivered += 1
        return True

    async def handle_message(self, message: aio_pika.abc.AbstractIncomingMessage):
        async with message.process():
            try:
                payload = json.loads(message.body.decode("utf-8"))
            except ValueError as e:
                logger.warning("[worker] Dropping unparseable message: %s", e)
                self.failed += 1
                return
            self.deliver(payload)

    async def run(self):
        """
        Start consuming and delivering notifications.
        """
        logger.info("[worker] Connecting to RabbitMQ at %s", self.url)
        connection = await aio_pika.connect_robust(self.url)
        try:
            channel = await connection.channel()
            queue = await channel.declare_queue(NOTIFICATIONS_QUEUE, durable=True)
            logger.info("[worker] Waiting for messages in queue '%s'", NOTIFICATIONS_QUEUE)
            await queue.consume(self.handle_message, no_ack=False)
            await asyncio.Future()
        finally:
            await connection.close()
            logger.info("[worker] Stopped. Delivered: %s, Failed: %s", self.delivered, self.failed)


async def main():
    """Entry point for running the worker."""
    configure_logging(settings.LOG_LEVEL)
    worker = NotificationDeliveryWorker()
    await worker.run()


if __name__ == "__main__":
    asyncio.run(main())
