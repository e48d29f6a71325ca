"""
Shared fixtures for the Service Bus engine tests.
"""

import pytest

from sbtoolkit.servicebus.drain import DrainOptions
from sbtoolkit.servicebus.memory_broker import InMemoryBroker
from sbtoolkit.servicebus.metrics import reset_metrics


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Every test starts with empty counters."""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
async def broker():
    """In-memory broker with one plain and one session-enabled queue."""
    broker = InMemoryBroker()
    await broker.create_queue("orders")
    await broker.create_queue("sessions", requires_session=True)
    yield broker
    await broker.close()


@pytest.fixture
def fast_options():
    """Short windows so that empty sources end quickly."""
    return DrainOptions(
        batch_size=10,
        default_window=0.1,
        idle_delay=0.02,
        session_accept_window=0.1,
    )
