"""Order event publication to RabbitMQ.

Downstream fulfillment consumes ``order.created`` from the ``order_exchange``
topic exchange and owns every later status transition.
"""

import json
import logging
from typing import Optional, Sequence
from uuid import uuid4

import aio_pika

from chat_orders.models import Order, utcnow

logger = logging.getLogger(__name__)

ORDER_EXCHANGE = "order_exchange"
ORDER_CREATED_KEY = "order.created"


class EventPublisher:
    def __init__(self, rabbitmq_url: Optional[str]):
        self._url = rabbitmq_url
        self._connection = None
        self._channel = None
        self._exchange = None

    @property
    def connected(self) -> bool:
        return self._exchange is not None

    async def connect(self) -> None:
        if not self._url:
            logger.info("RABBITMQ_URL not set, order events are disabled.")
            return
        try:
            self._connection = await aio_pika.connect_robust(self._url)
            self._channel = await self._connection.channel()
            self._exchange = await self._channel.declare_exchange(
                ORDER_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True
            )
            logger.info("RabbitMQ setup complete.")
        except Exception:
            logger.exception("Error setting up RabbitMQ, order events are disabled.")
            self._exchange = None

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
        self._connection = self._channel = self._exchange = None

    async def publish(self, routing_key: str, message_data: dict) -> None:
        if self._exchange is None:
            logger.debug("RabbitMQ channel not available, dropping %s event.", routing_key)
            return

        message = aio_pika.Message(
            json.dumps(message_data, default=str).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            await self._exchange.publish(message, routing_key=routing_key)
            logger.info("Published event to %s: %s", routing_key, message_data["event_type"])
        except Exception:
            # The order is already committed, publication is best effort.
            logger.exception("Error publishing %s event", routing_key)

    async def publish_order_created(self, order: Order, lines: Sequence) -> None:
        await self.publish(
            ORDER_CREATED_KEY,
            {
                "event_id": str(uuid4()),
                "event_type": "OrderCreated",
                "timestamp": utcnow().isoformat(),
                "order_id": order.id,
                "customer_reference": order.customer_reference,
                "total": str(order.total),
                "items": [
                    {
                        "product_id": line.product_id,
                        "quantity": line.quantity,
                        "unit_price": str(line.unit_price),
                    }
                    for line in lines
                ],
            },
        )
