from typing import Dict, Any, Optional
import asyncio
import json
import aio_pika
from aio_pika import connect_robust, Message
from urllib.parse import quote

from common.core.config import settings
from .interface import MessageQueueInterface
from common.core.otel_axiom_exporter import get_logger, inject_trace_context

logger = get_logger(__name__)

EXCHANGE_TYPES = {
    "direct": aio_pika.ExchangeType.DIRECT,
    "topic": aio_pika.ExchangeType.TOPIC,
    "fanout": aio_pika.ExchangeType.FANOUT,
    "headers": aio_pika.ExchangeType.HEADERS,
}


class RabbitMQClient(MessageQueueInterface):
    def __init__(self):
        self.connection: Optional[aio_pika.abc.AbstractRobustConnection] = None
        self.channel: Optional[aio_pika.abc.AbstractChannel] = None
        self.host = settings.rabbitmq_host
        self.port = settings.rabbitmq_port
        self.username = settings.rabbitmq_username
        self.password = settings.rabbitmq_password
        self.vhost = settings.rabbitmq_vhost
        self._exchanges: Dict[str, aio_pika.abc.AbstractExchange] = {}
        self._connect_lock = asyncio.Lock()

    async def connect(self) -> bool:
        async with self._connect_lock:
            if self.channel and not self.channel.is_closed:
                return True
            try:
                url = f"amqp://{quote(self.username)}:{quote(self.password)}@{self.host}:{self.port}/{quote(self.vhost, safe='')}"

                # Robust connection reconnects on its own
                self.connection = await connect_robust(url)
                self.channel = await self.connection.channel(publisher_confirms=True)
                self._exchanges = {}

                logger.info("Connected to RabbitMQ with publisher confirms enabled")
                return True
            except Exception as e:
                logger.error(f"Failed to connect to RabbitMQ: {e}")
                return False

    async def disconnect(self) -> None:
        try:
            if self.channel and not self.channel.is_closed:
                await self.channel.close()
            if self.connection and not self.connection.is_closed:
                await self.connection.close()
            self._exchanges = {}
            logger.info("Disconnected from RabbitMQ")
        except Exception as e:
            logger.error(f"Error disconnecting from RabbitMQ: {e}")

    async def declare_exchange(
        self, exchange: str, exchange_type: str = "topic", durable: bool = True
    ) -> bool:
        try:
            if not await self.connect():
                return False

            self._exchanges[exchange] = await self.channel.declare_exchange(
                name=exchange,
                type=EXCHANGE_TYPES.get(exchange_type, aio_pika.ExchangeType.TOPIC),
                durable=durable,
            )
            logger.info(f"Declared exchange: {exchange}")
            return True
        except Exception as e:
            logger.error(f"Failed to declare exchange {exchange}: {e}")
            return False

    async def publish(
        self, routing_key: str, message: Dict[str, Any], exchange: str = ""
    ) -> bool:
        try:
            if not await self.connect():
                return False

            if exchange and exchange not in self._exchanges:
                if not await self.declare_exchange(exchange):
                    return False
            target = self._exchanges[exchange] if exchange else self.channel.default_exchange

            # Carry the trace context to consumers
            headers = inject_trace_context()

            msg = Message(
                body=json.dumps(message, default=str).encode(),
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                content_type="application/json",
                headers=headers,
            )
            await target.publish(msg, routing_key=routing_key)

            logger.debug(f"Published message with routing key {routing_key}")
            return True
        except Exception as e:
            logger.error(f"Failed to publish message {routing_key}: {e}")
            return False
