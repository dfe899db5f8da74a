from typing import Any, Dict, Optional

from common.core.config import settings
from common.core.otel_axiom_exporter import get_logger
from .factory import get_message_queue
from .interface import MessageQueueInterface
from .messages import DomainEventMessage

logger = get_logger(__name__)


class EventPublisher:
    """
    Fire-and-forget publisher for domain events.

    Publishing happens after the originating write has committed. A failure
    is logged and swallowed: it never fails or rolls back the operation that
    produced the event.
    """

    def __init__(
        self,
        message_queue: Optional[MessageQueueInterface] = None,
        exchange: Optional[str] = None,
    ):
        self.message_queue = message_queue or get_message_queue()
        self.exchange = exchange or settings.billing_events_exchange

    async def publish(self, event_name: str, payload: Dict[str, Any]) -> bool:
        event_name = str(getattr(event_name, "value", event_name))
        try:
            message = DomainEventMessage(event_name=event_name, payload=payload)
            published = await self.message_queue.publish(
                event_name, message.model_dump(mode="json"), exchange=self.exchange
            )
            if not published:
                logger.warning(
                    f"Event {event_name} was not published",
                    extra={"event_name": event_name, "event_id": message.event_id},
                )
            return bool(published)
        except Exception as e:
            logger.error(
                f"Failed to publish event {event_name}: {e}",
                extra={"event_name": event_name},
            )
            return False
