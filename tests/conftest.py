"""
Pytest configuration and fixtures for the test suite.
"""
import os
import sys

import pytest

# Add src and the project root (for tests.fixtures) to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from token_relay.credential_store import CredentialStore  # noqa: E402
from token_relay.failure_logger import configure_failure_logger  # noqa: E402
from token_relay.storage import MemoryStorage  # noqa: E402

from tests.fixtures.credentials import FakeClock, make_pair  # noqa: E402


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "asyncio: mark test as an async test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


@pytest.fixture(autouse=True)
def failure_log_dir(tmp_path):
    """Keep failures.log out of the working directory."""
    logs_dir = tmp_path / "logs"
    configure_failure_logger(logs_dir)
    yield logs_dir
    configure_failure_logger(None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_storage():
    return MemoryStorage()


@pytest.fixture
def store(memory_storage, clock):
    return CredentialStore(memory_storage, clock=clock)


@pytest.fixture
def valid_pair(clock):
    return make_pair(clock.now)
