from .interface import MessageQueueInterface
from .rabbitmq_async import RabbitMQClient
from .factory import get_message_queue
from .event_publisher import EventPublisher
from .messages import DomainEventMessage

__all__ = [
    "MessageQueueInterface",
    "RabbitMQClient",
    "get_message_queue",
    "EventPublisher",
    "DomainEventMessage",
]
