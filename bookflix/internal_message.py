import json
import logging
from typing import Iterable, Optional

import aio_pika
from fastapi import FastAPI

from bookflix.config import settings
from bookflix.schemas import NotificationIntent

logger = logging.getLogger(__name__)


class RabbitMQManager:
    """Publishes notification intents for the delivery service to consume."""

    def __init__(self, url: Optional[str] = None, queue_name: Optional[str] = None):
        self.url = url or settings.rabbitmq_url
        self.queue_name = queue_name or settings.notification_queue
        self.connection = None
        self.channel = None

    async def connect(self):
        logger.info("Initializing RabbitMQ connection")
        try:
            self.connection = await aio_pika.connect_robust(self.url)
            self.channel = await self.connection.channel()
            logger.info("RabbitMQ connection established successfully")
        except Exception as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            raise

    async def setup_queue(self):
        await self.channel.declare_queue(self.queue_name, durable=True)
        logger.info(f"Queue '{self.queue_name}' set up successfully")

    async def publish_intent(self, intent: NotificationIntent):
        body = json.dumps({"intent": intent.model_dump(mode="json")})
        await self.channel.default_exchange.publish(
            aio_pika.Message(
                body=body.encode(),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                type=intent.kind,
            ),
            routing_key=self.queue_name,
        )

    async def publish_intents(self, intents: Iterable[NotificationIntent]) -> int:
        published = 0
        for intent in intents:
            try:
                await self.publish_intent(intent)
                published += 1
            except Exception as e:
                logger.error(
                    f"Failed to publish {intent.kind} for member {intent.recipient_id}: {e}"
                )
        if published:
            logger.info(f"Published {published} notification intent(s) to {self.queue_name}")
        return published

    async def close(self):
        if self.connection:
            await self.connection.close()
            logger.info("RabbitMQ connection closed")


async def setup_messaging(app: FastAPI):
    manager = RabbitMQManager()
    await manager.connect()
    await manager.setup_queue()
    app.state.rabbitmq_manager = manager


async def cleanup_messaging(app: FastAPI):
    await app.state.rabbitmq_manager.close()


async def publish_intents(app: FastAPI, intents: list) -> int:
    """Background task run after the action's transaction has committed."""
    if not intents:
        return 0
    manager = getattr(app.state, "rabbitmq_manager", None)
    if manager is None:
        logger.info(f"Messaging disabled; {len(intents)} intent(s) kept in-app only")
        return 0
    return await manager.publish_intents(intents)
