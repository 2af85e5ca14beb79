"""
Pytest configuration and shared fixtures for AEC engine tests.

This module provides shared fixtures and test configuration including:
- A manual block clock
- Fully deployed protocol instances with isolated metrics
- Flask app setup with test configuration
- API authentication headers
- Rate limiting reset between tests
"""

import os
import sys

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

# Set up test environment before any imports
os.environ["AEC_API_KEY"] = "test-api-key-12345"
os.environ["AEC_REQUIRE_AUTH"] = "false"
os.environ["RATE_LIMIT_REQUESTS"] = "10000"
os.environ["RATE_LIMIT_WINDOW"] = "1"

from clock import ManualClock  # noqa: E402
from engine_config import EngineConfig  # noqa: E402
from monitoring.metrics import MetricsCollector  # noqa: E402
from protocol import build_protocol  # noqa: E402
from token_ledger import ONE_TOKEN  # noqa: E402

ALICE = "0x000000000000000000000000000000000000a11c"
BOB = "0x0000000000000000000000000000000000000b0b"
KEEPER = "0x000000000000000000000000000000000000beef"


@pytest.fixture
def clock():
    """Manual clock starting at a fixed timestamp."""
    return ManualClock(start=1_700_000_000)


@pytest.fixture
def metrics():
    """Isolated metrics collector."""
    return MetricsCollector(prefix="test")


@pytest.fixture
def config():
    """Default deployment parameters."""
    return EngineConfig()


@pytest.fixture
def protocol(config, clock, metrics):
    """Freshly deployed protocol on a manual clock."""
    return build_protocol(config, clock, metrics=metrics)


@pytest.fixture
def funded_protocol(protocol):
    """Protocol with 10,000 AEC of tax waiting to be collected."""
    protocol.fund_tax(10_000 * ONE_TOKEN)
    return protocol


@pytest.fixture(scope="function")
def flask_app(config, protocol):
    """Create Flask test app serving a fresh protocol for each test."""
    from api import create_app
    from api.utils import rate_limit_store

    app = create_app(config, protocol=protocol, testing=True)
    rate_limit_store.clear()
    return app


@pytest.fixture(scope="function")
def flask_client(flask_app):
    """Create Flask test client."""
    return flask_app.test_client()


@pytest.fixture
def test_auth_headers():
    """Headers for authenticated requests."""
    return {
        "Content-Type": "application/json",
        "X-API-Key": "test-api-key-12345"
    }
