import asyncio
from abc import ABC, abstractmethod
from typing import Optional
from uuid import uuid4

from common.providers.messaging.factory import get_message_queue
from common.providers.messaging.interface import MessageQueueInterface
from common.core.otel_axiom_exporter import get_logger

logger = get_logger(__name__)


class BaseWorker(ABC):
    """
    Base class for polling workers.

    Subclasses implement ``poll_once``. The loop polls again immediately
    while there is work and sleeps ``poll_interval`` seconds when a poll
    comes back empty.
    """

    def __init__(
        self,
        name: str,
        poll_interval: float,
        worker_id: Optional[str] = None,
    ):
        self.name = name
        self.poll_interval = poll_interval
        self.worker_id = worker_id or f"{name}_worker_{uuid4()}"
        self.message_queue: Optional[MessageQueueInterface] = None
        self.running = False

    async def setup(self):
        """Initialize worker dependencies."""
        try:
            # Domain events are published from handlers, connect up front
            self.message_queue = get_message_queue()
            await self.message_queue.connect()
            logger.info(f"Worker {self.worker_id} setup completed")
        except Exception as e:
            logger.error(f"Error setting up worker {self.worker_id}: {e}")
            raise

    async def cleanup(self):
        """Cleanup worker resources."""
        try:
            if self.message_queue:
                await self.message_queue.disconnect()
            logger.info(f"Worker {self.worker_id} cleanup completed")
        except Exception as e:
            logger.error(f"Error cleaning up worker {self.worker_id}: {e}")

    async def start(self):
        """Run the poll loop until stop() is called."""
        if self.running:
            logger.warning(f"Worker {self.worker_id} is already running")
            return

        self.running = True
        logger.info(f"Starting worker {self.worker_id}")

        try:
            await self.setup()
            while self.running:
                try:
                    processed = await self.poll_once()
                except Exception as e:
                    logger.error(
                        f"Poll failed in worker {self.worker_id}: {e}", exc_info=True
                    )
                    processed = 0

                if processed == 0 and self.running:
                    await asyncio.sleep(self.poll_interval)
        finally:
            self.running = False
            await self.cleanup()

    async def stop(self):
        """Stop the worker after the current poll."""
        self.running = False
        logger.info(f"Stopping worker {self.worker_id}")

    @abstractmethod
    async def poll_once(self) -> int:
        """Process one batch of due work. Returns the number of items handled."""
        pass
