"""
Adaptive Request-Rate Controller

Keeps a sliding window of request outcomes and derives the pause a crawl
worker must take before its next request. The delay widens while the window
is saturated, while requests fail, or while the target responds slowly, and
narrows again when the window is under-utilised.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Deque, Dict, List, Optional
from urllib.parse import urlparse

import structlog

from crawlplane.config.config import RateMonitoringConfig
from crawlplane.observability.metrics import METRICS

logger = structlog.get_logger(__name__)

# Thresholds of the adaptive update
UNDERUSE_RATIO = 0.7
LOW_SUCCESS_RATE = 0.8
LOW_SUCCESS_PENALTY = 1.2
SLOW_RESPONSE_MS = 10_000
SLOW_RESPONSE_PENALTY = 1.1

# Delay changes smaller than this are applied silently
DELAY_LOG_THRESHOLD_MS = 100


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class RequestRecord:
    """One fetch attempt as seen by the rate controller."""

    timestamp_ms: float
    url: str
    success: bool
    duration_ms: float
    domain: str
    status_code: Optional[int] = None
    error_type: Optional[str] = None


@dataclass
class RateWindow:
    """Live statistics over the trailing window. Never persisted."""

    requests_per_second: float
    success_rate: float
    average_response_time_ms: float
    is_throttling: bool
    request_count: int
    current_delay_ms: int
    window_size_seconds: float
    max_requests_per_window: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RateController:
    """
    Sliding-window rate monitor with an adaptive inter-request delay.

    Features:
    - Trailing window statistics (rate, success rate, mean latency)
    - Multiplicative delay adjustment clamped to configured bounds
    - Bounded history, pruned by age and by size
    - Cancellable waiting for crawl workers
    """

    def __init__(self, config: RateMonitoringConfig, scope: str = "global"):
        self.config = config
        self.scope = scope
        self._history: Deque[RequestRecord] = deque(maxlen=config.max_history_size)
        self._current_delay_ms: int = config.adaptive_delay.min_delay_ms
        self._lock = threading.Lock()

        METRICS["rate_current_delay_ms"].labels(scope=scope).set(self._current_delay_ms)
        logger.debug(
            "Rate controller initialized",
            scope=scope,
            window_size_ms=config.window_size_ms,
            max_requests_per_window=config.max_requests_per_window,
        )

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_request(
        self,
        url: str,
        success: bool,
        duration_ms: float,
        status_code: Optional[int] = None,
        error_type: Optional[str] = None,
    ) -> None:
        """Record one fetch outcome and recompute the adaptive delay."""
        record = RequestRecord(
            timestamp_ms=_now_ms(),
            url=url,
            success=success,
            duration_ms=float(duration_ms),
            domain=urlparse(url).hostname or "unknown",
            status_code=status_code,
            error_type=error_type,
        )

        with self._lock:
            self._history.append(record)
            self._prune_locked(record.timestamp_ms)
            if self.config.adaptive_delay.enabled:
                self._update_adaptive_delay_locked()

        METRICS["rate_requests_total"].labels(scope=self.scope, outcome="success" if success else "failure").inc()

        if not success:
            logger.debug(
                "Request failed",
                scope=self.scope,
                url=_sanitize_url(url),
                duration_ms=duration_ms,
                status_code=status_code,
                error_type=error_type,
            )

    def _prune_locked(self, now_ms: float) -> None:
        cutoff = now_ms - self.config.window_size_ms * 2
        while self._history and self._history[0].timestamp_ms < cutoff:
            self._history.popleft()

    def _update_adaptive_delay_locked(self) -> None:
        stats = self._compute_window(list(self._history), _now_ms())
        adaptive = self.config.adaptive_delay
        window_seconds = self.config.window_size_ms / 1000

        new_delay = self._current_delay_ms
        if stats.is_throttling:
            new_delay = round(new_delay * adaptive.increase_factor)
        elif stats.requests_per_second < UNDERUSE_RATIO * (self.config.max_requests_per_window / window_seconds):
            new_delay = round(new_delay * adaptive.decrease_factor)

        if stats.success_rate < LOW_SUCCESS_RATE:
            new_delay = round(new_delay * LOW_SUCCESS_PENALTY)

        if stats.average_response_time_ms > SLOW_RESPONSE_MS:
            new_delay = round(new_delay * SLOW_RESPONSE_PENALTY)

        new_delay = self._clamp(new_delay)
        if new_delay != self._current_delay_ms:
            self._store_delay_locked(new_delay, stats)

    # ------------------------------------------------------------------
    # Delay
    # ------------------------------------------------------------------

    def get_current_delay(self) -> int:
        return self._current_delay_ms

    def set_current_delay(self, delay_ms: float) -> None:
        """Clamp ``delay_ms`` into the configured bounds and store it."""
        with self._lock:
            self._store_delay_locked(self._clamp(round(delay_ms)), None)

    def _clamp(self, delay_ms: int) -> int:
        adaptive = self.config.adaptive_delay
        return max(adaptive.min_delay_ms, min(adaptive.max_delay_ms, int(delay_ms)))

    def _store_delay_locked(self, delay_ms: int, stats: Optional[RateWindow]) -> None:
        previous = self._current_delay_ms
        self._current_delay_ms = delay_ms
        METRICS["rate_current_delay_ms"].labels(scope=self.scope).set(delay_ms)

        if abs(delay_ms - previous) > DELAY_LOG_THRESHOLD_MS:
            logger.info(
                "Request delay adjusted",
                scope=self.scope,
                previous_delay_ms=previous,
                new_delay_ms=delay_ms,
                direction="up" if delay_ms > previous else "down",
                is_throttling=stats.is_throttling if stats else None,
                success_rate=round(stats.success_rate, 3) if stats else None,
            )

    async def wait_for_next_request(self) -> None:
        """
        Sleep for the current delay.

        Cancelling the calling task interrupts the wait, so a shutdown never
        hangs on a long delay.
        """
        if not self.config.enabled:
            return

        stats = self.get_current_stats()
        if stats.is_throttling:
            logger.warning(
                "Request window saturated, throttling",
                scope=self.scope,
                current_delay_ms=stats.current_delay_ms,
                requests_in_window=stats.request_count,
                max_requests_per_window=stats.max_requests_per_window,
            )

        delay_ms = self._current_delay_ms
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def _snapshot(self) -> List[RequestRecord]:
        with self._lock:
            return list(self._history)

    def _compute_window(self, records: List[RequestRecord], now_ms: float) -> RateWindow:
        window_start = now_ms - self.config.window_size_ms
        window = [r for r in records if r.timestamp_ms >= window_start]
        return _summarize(
            window,
            window_seconds=self.config.window_size_ms / 1000,
            max_requests=self.config.max_requests_per_window,
            current_delay_ms=self._current_delay_ms,
        )

    def get_current_stats(self) -> RateWindow:
        """Statistics over records with ``timestamp >= now - window_size``."""
        stats = self._compute_window(self._snapshot(), _now_ms())
        METRICS["rate_throttling"].labels(scope=self.scope).set(1 if stats.is_throttling else 0)
        return stats

    def get_detailed_stats(self) -> Dict[str, Any]:
        """Last-minute and last-hour windows plus the busiest and failing URLs."""
        records = self._snapshot()
        now = _now_ms()
        max_requests = self.config.max_requests_per_window

        last_minute = [r for r in records if r.timestamp_ms >= now - 60_000]
        last_hour = [r for r in records if r.timestamp_ms >= now - 3_600_000]

        url_counts: Dict[str, List[int]] = {}
        errors: Dict[str, List[float]] = {}
        for record in records:
            counts = url_counts.setdefault(record.url, [0, 0])
            counts[0] += 1
            if record.success:
                counts[1] += 1
            else:
                error = errors.setdefault(record.url, [0, 0.0])
                error[0] += 1
                error[1] = max(error[1], record.timestamp_ms)

        top_urls = sorted(
            (
                {"url": url, "count": count, "success_rate": successes / count}
                for url, (count, successes) in url_counts.items()
            ),
            key=lambda item: item["count"],
            reverse=True,
        )[:10]

        error_pattern = sorted(
            (
                {"url": url, "error_count": int(count), "last_error_ms": last}
                for url, (count, last) in errors.items()
            ),
            key=lambda item: item["error_count"],
            reverse=True,
        )[:10]

        return {
            "scope": self.scope,
            "total_requests": len(records),
            "last_minute": _summarize(last_minute, 60, max_requests, self._current_delay_ms).to_dict(),
            "last_hour": _summarize(last_hour, 3600, max_requests, self._current_delay_ms).to_dict(),
            "top_urls": top_urls,
            "error_pattern": error_pattern,
        }

    def get_health_status(self) -> Dict[str, Any]:
        """Health verdict with the issues that prevent a healthy rating."""
        stats = self.get_current_stats()
        recent_failures = self._recent_failure_count(minutes=5)
        issues: List[str] = []
        recommendations: List[str] = []

        if stats.success_rate < LOW_SUCCESS_RATE:
            issues.append("low_success_rate")
            recommendations.append("Check network connectivity and the target site's status")
        if stats.average_response_time_ms > SLOW_RESPONSE_MS:
            issues.append("high_response_time")
            recommendations.append("Consider a longer request delay or check network conditions")
        if stats.is_throttling:
            issues.append("rate_limit_active")
            recommendations.append("The request window is saturated; requests are being slowed down")
        if recent_failures > 5:
            issues.append("recent_failures_high")
            recommendations.append("Many recent failures; review crawler configuration")
        if self._current_delay_ms > self.config.adaptive_delay.max_delay_ms * 0.8:
            issues.append("delay_near_maximum")
            recommendations.append("Delay is close to its ceiling; the target may be rate limiting heavily")

        return {
            "scope": self.scope,
            "is_healthy": not issues and stats.success_rate > 0.9,
            "issues": issues,
            "metrics": {
                "current_delay_ms": self._current_delay_ms,
                "success_rate": round(stats.success_rate * 100),
                "average_response_time_ms": round(stats.average_response_time_ms),
                "requests_per_second": round(stats.requests_per_second, 2),
                "recent_failures": recent_failures,
            },
            "recommendations": recommendations,
        }

    def _recent_failure_count(self, minutes: int) -> int:
        cutoff = _now_ms() - minutes * 60_000
        return sum(1 for r in self._snapshot() if r.timestamp_ms >= cutoff and not r.success)

    def history_size(self) -> int:
        with self._lock:
            return len(self._history)

    def reset(self) -> None:
        """Clear history and restore the delay to the configured minimum."""
        with self._lock:
            cleared = len(self._history)
            previous = self._current_delay_ms
            self._history.clear()
            self._current_delay_ms = self.config.adaptive_delay.min_delay_ms

        METRICS["rate_current_delay_ms"].labels(scope=self.scope).set(self._current_delay_ms)
        logger.info(
            "Request monitor reset",
            scope=self.scope,
            cleared_records=cleared,
            previous_delay_ms=previous,
            new_delay_ms=self._current_delay_ms,
        )


class HostRateControllers:
    """Hands out one RateController per host, all sharing one configuration."""

    def __init__(self, config: RateMonitoringConfig):
        self.config = config
        self._controllers: Dict[str, RateController] = {}
        self._lock = threading.Lock()

    def for_host(self, host: str) -> RateController:
        with self._lock:
            controller = self._controllers.get(host)
            if controller is None:
                controller = RateController(self.config, scope=host)
                self._controllers[host] = controller
            return controller

    def for_url(self, url: str) -> RateController:
        return self.for_host(urlparse(url).hostname or "unknown")

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            controllers = dict(self._controllers)
        return {host: controller.get_current_stats().to_dict() for host, controller in controllers.items()}

    def reset_host(self, host: str) -> None:
        with self._lock:
            controller = self._controllers.pop(host, None)
        if controller is not None:
            controller.reset()


def _summarize(
    records: List[RequestRecord], window_seconds: float, max_requests: int, current_delay_ms: int
) -> RateWindow:
    count = len(records)
    successes = sum(1 for r in records if r.success)
    total_duration = sum(r.duration_ms for r in records)
    return RateWindow(
        requests_per_second=count / window_seconds,
        success_rate=successes / count if count else 1.0,
        average_response_time_ms=total_duration / count if count else 0.0,
        is_throttling=count >= max_requests,
        request_count=count,
        current_delay_ms=current_delay_ms,
        window_size_seconds=window_seconds,
        max_requests_per_window=max_requests,
    )


def _sanitize_url(url: str) -> str:
    """Drop query strings and truncate long URLs before logging."""
    parsed = urlparse(url)
    sanitized = f"{parsed.scheme}://{parsed.netloc}{parsed.path}" if parsed.netloc else url
    return sanitized if len(sanitized) <= 100 else sanitized[:100] + "..."
