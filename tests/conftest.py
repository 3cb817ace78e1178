"""
Pytest configuration and fixtures for ha_sentinel tests.

Provides:
- Configuration fixtures for various scenarios
- A simulated Sentinel quorum wired into SentinelClient
- Integration test markers and CLI options
"""

import pytest
from unittest.mock import AsyncMock, MagicMock
from typing import AsyncGenerator

from ha_sentinel import SentinelClient, SentinelConfig, SentinelPool

from fakes import FakeQuorum


SENTINEL_A = "sentinel1.example.com:26379"
SENTINEL_B = "sentinel2.example.com:26379"
SENTINEL_C = "sentinel3.example.com:26379"
MASTER = "10.0.0.1:6379"


# ============================================================================
# Pytest Hooks for Integration Tests
# ============================================================================

def pytest_addoption(parser):
    """Add custom command line options for pytest."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests (requires a running Sentinel quorum)",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires running Sentinels)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running (e.g., failover tests)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --run-integration is provided."""
    if config.getoption("--run-integration"):
        return

    skip_integration = pytest.mark.skip(reason="need --run-integration option to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def default_config() -> SentinelConfig:
    """Create a default configuration."""
    return SentinelConfig()


@pytest.fixture
def sentinel_config() -> SentinelConfig:
    """Create a three-Sentinel configuration with fast test timings."""
    return SentinelConfig(
        sentinel_hosts=[
            ("sentinel1.example.com", 26379),
            ("sentinel2.example.com", 26379),
            ("sentinel3.example.com", 26379),
        ],
        master_name="mymaster",
        password="data_password",
        max_connections=100,
        resubscribe_base_delay=0.01,
        resubscribe_max_delay=0.05,
        watch_poll_timeout=0.05,
        retry_base_delay=0.01,
    )


@pytest.fixture
def empty_config() -> SentinelConfig:
    """Create a configuration without any Sentinel."""
    return SentinelConfig(sentinel_hosts=[], master_name="mymaster")


# ============================================================================
# Simulated Quorum Fixtures
# ============================================================================

@pytest.fixture
def quorum() -> FakeQuorum:
    """Three healthy Sentinels agreeing on the same master."""
    quorum = FakeQuorum()
    peers = (SENTINEL_A, SENTINEL_B, SENTINEL_C)
    for addr in peers:
        quorum.add(
            addr,
            master=MASTER,
            replicas=("10.0.0.2:6379", "10.0.0.3:6379"),
            sentinels=tuple(p for p in peers if p != addr),
        )
    return quorum


@pytest.fixture
async def sentinel_client(sentinel_config, quorum) -> AsyncGenerator[SentinelClient, None]:
    """SentinelClient talking to the simulated quorum."""
    client = SentinelClient(sentinel_config, pool_factory=quorum.factory)

    yield client

    await client.close()


@pytest.fixture
async def sentinel_pool(sentinel_config, sentinel_client) -> AsyncGenerator[SentinelPool, None]:
    """Uninitialized SentinelPool over the simulated quorum."""
    pool = SentinelPool(sentinel_config, sentinel=sentinel_client)

    yield pool

    await pool.close()


# ============================================================================
# Mock Fixtures
# ============================================================================

@pytest.fixture
def mock_sentinel() -> MagicMock:
    """Create a mock SentinelClient."""
    mock = MagicMock(spec=SentinelClient)
    mock.master_addr = AsyncMock(return_value=MASTER)
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def mocked_pool(sentinel_config, mock_sentinel) -> SentinelPool:
    """SentinelPool whose master refresh is mocked out."""
    pool = SentinelPool(sentinel_config, sentinel=mock_sentinel)
    pool.refresh_master = AsyncMock(return_value=MASTER)
    return pool


# ============================================================================
# Exception Fixtures
# ============================================================================

@pytest.fixture
def connection_error():
    """Create a Redis ConnectionError."""
    from redis.exceptions import ConnectionError
    return ConnectionError("Connection refused")


@pytest.fixture
def timeout_error():
    """Create a Redis TimeoutError."""
    from redis.exceptions import TimeoutError
    return TimeoutError("Operation timed out")


# ============================================================================
# Logger Fixtures
# ============================================================================

@pytest.fixture
def mock_logger() -> MagicMock:
    """Create a mock logger for testing log output."""
    logger = MagicMock()
    logger.info = MagicMock()
    logger.warning = MagicMock()
    logger.error = MagicMock()
    logger.debug = MagicMock()
    return logger
