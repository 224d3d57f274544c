"""Pytest configuration and fixtures."""

import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set test environment
os.environ["APP_ENV"] = "development"
os.environ["DEBUG"] = "true"
os.environ["LOGS_PATH"] = "./test_data/logs"
os.environ["RELAY_ENABLED"] = "false"
os.environ["RELAY_PROVIDER_URL"] = ""

from relayrace.proxy.provider import RelayCandidate, RelayLease  # noqa: E402

NOW = 1_700_000_000.0


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Setup test environment."""
    # Create test data directory
    test_data_dir = project_root / "test_data"
    test_data_dir.mkdir(exist_ok=True)

    yield

    # Cleanup
    import shutil
    if test_data_dir.exists():
        shutil.rmtree(test_data_dir)


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    """Fake clock starting at a fixed epoch."""
    return FakeClock()


@pytest.fixture
def make_lease():
    """Factory for http relay leases expiring 100s after NOW."""

    def factory(host: str, port: int = 8000, expire_at: float = NOW + 100) -> RelayLease:
        candidate = RelayCandidate(host=host, port=port)
        return RelayLease(candidate=candidate, address=candidate.address("http"), safe_expire_at=expire_at)

    return factory


@pytest.fixture
def provider():
    """Provider client stand-in with no relays configured."""
    mock = Mock()
    mock.fetch_one = AsyncMock()
    mock.fetch_addresses = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def sample_provider_payload():
    """Provider feed response with mixed host field spellings."""
    return {
        "status": "0",
        "count": "2",
        "expire": "",
        "list": [
            {"sever": "1.2.3.4", "port": 8080},
            {"ip": "5.6.7.8", "port": "3128"},
        ],
    }


@pytest.fixture
def sample_submit_body():
    """Quota submission body with two quotas."""
    return {
        "uniqueId": "U-1001",
        "ticket": "T-abc",
        "quotas": [
            {"tourismSubsidyId": "A", "foodSubsidyId": "F1"},
            {"tourismSubsidyId": "B"},
        ],
    }
