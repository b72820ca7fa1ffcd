"""
Pytest configuration and fixtures.
"""

from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio

from teller.core.config import Settings
from teller.core.database import init_database, close_database, DatabaseManager
from teller.services.queue_service import PriorityQueue

from tests.fakes import (
    ManualClock, FakeChainClient, FakeProvisioningBackend,
    TEST_DATABASE_URL, SAFE_ADDRESS
)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        environment="test",
        database_url=TEST_DATABASE_URL,
        safe_address=SAFE_ADDRESS,
        queue_cooldown_seconds=0,
        simulated_latency_seconds=0,
        background_tasks_enabled=False,
        log_level="DEBUG",
        log_format="console",
    )


@pytest_asyncio.fixture
async def database(test_settings) -> AsyncGenerator[None, Any]:
    """Fresh in-memory database per test."""
    await init_database(test_settings.database_url)
    await DatabaseManager.create_tables()
    yield
    await close_database()


@pytest.fixture
def queue() -> PriorityQueue:
    return PriorityQueue()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def chain_client() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def backend() -> FakeProvisioningBackend:
    return FakeProvisioningBackend()
