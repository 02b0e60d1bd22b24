import json
import logging
from typing import List, Optional

import aio_pika
from fastapi import FastAPI

from .config import Settings
from .reporting import group_by_reader
from .schemas import OverdueLendingSchema

logger = logging.getLogger(__name__)


class RabbitMQManager:
    def __init__(self, url: str):
        self.url = url
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

    async def close(self):
        if self.connection:
            await self.connection.close()
            logger.info("RabbitMQ connection closed")

    async def setup_queue(self, queue_name: str):
        await self.channel.declare_queue(queue_name, durable=True)
        logger.info(f"Queue '{queue_name}' set up successfully")

    async def publish_message(self, queue_name: str, message: dict | str):
        if not isinstance(message, str):
            message = json.dumps(message, default=str)
        await self.channel.default_exchange.publish(
            aio_pika.Message(
                body=message.encode(),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            ),
            routing_key=queue_name,
        )
        logger.info(f"Message published to queue: {queue_name}")


def build_overdue_notices(lendings: List[OverdueLendingSchema]) -> List[dict]:
    """One notice per reader listing every overdue title."""
    notices = []
    for group in group_by_reader(lendings):
        lines = [
            f"- {item.book.title if item.book else 'Unknown book'}"
            f" (Due: {item.due_date:%Y-%m-%d}, {item.days_overdue} day(s) overdue)"
            for item in group.items
        ]
        notices.append(
            {
                "reader_id": group.reader_id,
                "reader_name": group.reader_name,
                "lending_ids": [item.id for item in group.items],
                "message": f"To: {group.reader_name}\n\nYou have overdue books:\n"
                + "\n".join(lines),
            }
        )
    return notices


async def publish_overdue_notices(
    manager: RabbitMQManager, queue_name: str, lendings: List[OverdueLendingSchema]
) -> List[str]:
    notices = build_overdue_notices(lendings)
    for notice in notices:
        await manager.publish_message(queue_name, notice)
    return [notice["reader_name"] for notice in notices]


async def setup_messaging(app: FastAPI, settings: Settings) -> Optional[RabbitMQManager]:
    if not settings.rabbitmq_url:
        logger.info("RABBIT_MQ_CONN_STR not set, overdue notices are disabled")
        app.state.rabbitmq_manager = None
        return None

    manager = RabbitMQManager(settings.rabbitmq_url)
    await manager.connect()
    await manager.setup_queue(settings.overdue_queue)
    app.state.rabbitmq_manager = manager
    logger.info("All queues set up and ready")
    return manager


async def cleanup_messaging(app: FastAPI):
    manager = getattr(app.state, "rabbitmq_manager", None)
    if manager:
        await manager.close()
