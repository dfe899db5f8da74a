import pytest
from unittest.mock import AsyncMock, MagicMock

from packages.billing.models.domain.enums import PaymentProviderName


@pytest.fixture
def mock_span():
    """Create a mock span instance for testing telemetry."""
    span = MagicMock()
    span.__enter__ = MagicMock(return_value=span)
    span.__exit__ = MagicMock(return_value=None)
    span.__aenter__ = AsyncMock(return_value=span)
    span.__aexit__ = AsyncMock(return_value=None)
    return span


@pytest.fixture
def mock_provider():
    """Payment provider double for failure paths the simulators never take."""
    provider = AsyncMock()
    provider.name = PaymentProviderName.STRIPE
    provider.authorize = AsyncMock()
    provider.charge = AsyncMock()
    provider.refund = AsyncMock()
    return provider
