from typing import Optional

from .interface import MessageQueueInterface
from .rabbitmq_async import RabbitMQClient

_message_queue: Optional[MessageQueueInterface] = None


def get_message_queue() -> MessageQueueInterface:
    """Get the process-wide RabbitMQ client (async)."""
    global _message_queue

    if _message_queue is None:
        _message_queue = RabbitMQClient()
    return _message_queue
