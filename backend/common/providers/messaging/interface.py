from abc import ABC, abstractmethod
from typing import Dict, Any


class MessageQueueInterface(ABC):
    @abstractmethod
    async def connect(self) -> bool:
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def declare_exchange(
        self, exchange: str, exchange_type: str = "topic", durable: bool = True
    ) -> bool:
        pass

    @abstractmethod
    async def publish(
        self, routing_key: str, message: Dict[str, Any], exchange: str = ""
    ) -> bool:
        """Publish one JSON message. Returns False instead of raising on failure."""
        pass
