"""Pytest configuration and fixtures."""

from unittest.mock import AsyncMock

import pytest

from crypto_tracker_indexer.chain.memory import InMemoryChain
from crypto_tracker_indexer.config import clear_settings_cache
from crypto_tracker_indexer.storage.database import DatabaseManager


@pytest.fixture
async def db(tmp_path):
    """File-backed SQLite database with the full schema."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'indexer.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def memory_chain() -> InMemoryChain:
    """Empty in-memory chain."""
    return InMemoryChain()


@pytest.fixture
def mock_bus() -> AsyncMock:
    """Create a mock event-bus client."""
    bus = AsyncMock()
    bus.publish = AsyncMock(return_value=None)
    bus.drain = AsyncMock()
    bus.aclose = AsyncMock()
    return bus


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path):
    """Isolate settings from the developer's environment and .env file."""
    for name in (
        "DATABASE_URL",
        "NATS_URL",
        "REDIS_URL",
        "EVENT_BUS",
        "ETHEREUM_RPC_URL",
        "POLYGON_RPC_URL",
        "ARBITRUM_RPC_URL",
        "BASE_RPC_URL",
        "BLOCK_BATCH_SIZE",
        "WORKER_COUNT",
        "LOG_LEVEL",
        "OTEL_EXPORTER_OTLP_ENDPOINT",
        "OTEL_ENABLED",
        "SERVICE_NAME",
        "ENVIRONMENT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    clear_settings_cache()
    yield monkeypatch
    clear_settings_cache()
