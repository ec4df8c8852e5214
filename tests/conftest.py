"""
Shared test configuration for crawlplane.

Provides configuration fixtures with temporary storage, a controllable
clock, and an httpx mock transport for robots.txt fetches.
"""

# Standard library imports
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

# Third-party imports
import httpx
import pytest

# Local imports
from crawlplane.config import AccountPoolConfig, AdaptiveDelayConfig, Config, RateMonitoringConfig, RobotsConfig
from crawlplane.messaging import ConsumerSettings

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")


# ============================================================================
# Clocks
# ============================================================================


class FakeClock:
    """Wall clock in seconds that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDatetimeClock:
    """Aware UTC datetime clock for hour-bucketed stats."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def datetime_clock() -> FakeDatetimeClock:
    return FakeDatetimeClock(datetime(2024, 1, 10, 12, 30, tzinfo=timezone.utc))


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Default configuration with storage redirected to a temporary directory."""
    config = Config()
    config.stats.db_path = tmp_path / "stats.db"
    return config


@pytest.fixture
def rate_config() -> RateMonitoringConfig:
    """Small window with round factors so expected delays are easy to compute."""
    return RateMonitoringConfig(
        window_size_ms=60_000,
        max_requests_per_window=10,
        max_history_size=1000,
        adaptive_delay=AdaptiveDelayConfig(
            min_delay_ms=1000,
            max_delay_ms=30_000,
            increase_factor=2.0,
            decrease_factor=1.0,
        ),
    )


@pytest.fixture
def no_wait_rate_config() -> RateMonitoringConfig:
    """Rate monitoring that never sleeps, for worker tests."""
    return RateMonitoringConfig(adaptive_delay=AdaptiveDelayConfig(min_delay_ms=0, max_delay_ms=0))


@pytest.fixture
def robots_config() -> RobotsConfig:
    return RobotsConfig(user_agent="CrawlPlaneBot")


@pytest.fixture
def account_config() -> AccountPoolConfig:
    return AccountPoolConfig()


@pytest.fixture
def consumer_settings() -> ConsumerSettings:
    return ConsumerSettings(
        queue_url="memory://",
        queue_name="task_status_queue",
        consumer_tag="test-consumer",
        prefetch_count=5,
        max_retries=3,
    )


# ============================================================================
# robots.txt transport
# ============================================================================


RobotsResponse = Union[Tuple[int, str], Exception]


class RobotsServer:
    """Serves canned robots.txt responses per host and records requests."""

    def __init__(self, responses: Optional[Dict[str, RobotsResponse]] = None):
        self.responses: Dict[str, RobotsResponse] = dict(responses or {})
        self.requests: List[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request.url.host)
        response = self.responses.get(request.url.host, (404, ""))
        if isinstance(response, Exception):
            raise response
        status, text = response
        return httpx.Response(status, text=text)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def count(self, host: str) -> int:
        return self.requests.count(host)


@pytest.fixture
def robots_server() -> RobotsServer:
    return RobotsServer()


@pytest.fixture
def make_robots_server() -> Callable[..., RobotsServer]:
    return RobotsServer
