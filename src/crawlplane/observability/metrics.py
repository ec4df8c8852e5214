"""
Defines and manages Prometheus metrics for the control plane.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict

import psutil
import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from crawlplane.config.config import MonitoringConfig

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Defined before any metric creation so that re-importing this module (as the
# test suite does) reuses the registered collectors instead of failing.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race, fall back to the now-existing collector.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    """Create all crawlplane collectors under the ``crawlplane_`` prefix."""
    return {
        # Rate controller
        "rate_current_delay_ms": Gauge(
            "crawlplane_rate_current_delay_ms",
            "Current adaptive inter-request delay",
            ["scope"],
        ),
        "rate_throttling": Gauge(
            "crawlplane_rate_throttling",
            "1 while the request window is at or above its limit",
            ["scope"],
        ),
        "rate_requests_total": Counter(
            "crawlplane_rate_requests_total",
            "Requests recorded by the rate controller",
            ["scope", "outcome"],
        ),
        # Robots policy
        "robots_checks_total": Counter(
            "crawlplane_robots_checks_total",
            "robots.txt allow/deny decisions",
            ["decision"],
        ),
        "robots_fetch_failures_total": Counter(
            "crawlplane_robots_fetch_failures_total",
            "robots.txt fetches that failed open",
        ),
        # Account pool
        "accounts_issued_total": Counter(
            "crawlplane_accounts_issued_total",
            "Accounts handed out to crawl workers",
        ),
        "accounts_pool_empty_total": Counter(
            "crawlplane_accounts_pool_empty_total",
            "Account requests that found no eligible account",
        ),
        "account_transitions_total": Counter(
            "crawlplane_account_transitions_total",
            "Account status transitions",
            ["to_status"],
        ),
        # Consumer
        "consumer_messages_total": Counter(
            "crawlplane_consumer_messages_total",
            "Task-status messages by processing outcome",
            ["result"],
        ),
        "consumer_processing_seconds": Histogram(
            "crawlplane_consumer_processing_seconds",
            "Time taken to process a task-status message",
            buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
        ),
        "consumer_in_flight": Gauge(
            "crawlplane_consumer_in_flight",
            "Task-status messages currently being processed",
        ),
        # Process
        "cpu_usage_percent": Gauge(
            "crawlplane_cpu_usage_percent",
            "Current CPU utilization of the system",
        ),
        "memory_usage_percent": Gauge(
            "crawlplane_memory_usage_percent",
            "Current memory utilization of the system",
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


class MetricsManager:
    """Manages the lifecycle of metrics collection and exporting."""

    def __init__(self, config: MonitoringConfig) -> None:
        self.config = config
        self._started = False

    def start(self) -> None:
        """Starts the Prometheus exporter if a port is configured."""
        if self._started:
            return
        if self.config.prometheus_port:
            logger.info("Starting Prometheus metrics server", port=self.config.prometheus_port)
            start_http_server(self.config.prometheus_port)
        self._started = True

    def update_system_metrics(self) -> Dict[str, float]:
        """Updates CPU and memory gauges and returns the sampled values."""
        cpu_usage = psutil.cpu_percent()
        memory_usage = psutil.virtual_memory().percent

        METRICS["cpu_usage_percent"].set(cpu_usage)
        METRICS["memory_usage_percent"].set(memory_usage)

        return {"cpu_usage": cpu_usage, "memory_usage": memory_usage}
