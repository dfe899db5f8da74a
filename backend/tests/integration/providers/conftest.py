import uuid
import pytest

from common.providers.messaging.rabbitmq_async import RabbitMQClient


@pytest.fixture
async def rabbitmq_client():
    """
    Provide a RabbitMQ client for integration tests.
    Requires RabbitMQ to be running (e.g., via docker-compose).
    """
    client = RabbitMQClient()

    # Skip when no broker is reachable
    if not await client.connect():
        pytest.skip("RabbitMQ is not available for integration tests")

    yield client

    await client.disconnect()


@pytest.fixture
def test_exchange_name():
    """Provide a unique test exchange name."""
    return f"test_billing_events_{uuid.uuid4().hex[:8]}"


@pytest.fixture
def sample_event_payload():
    return {
        "tenant_id": "tenant-integration",
        "transaction_id": 42,
        "credits": "550.00",
    }
