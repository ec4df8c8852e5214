"""
Hour-bucketed consumer statistics.

Values are summed into UTC hour buckets per statistic type. Queries return
every hour of the requested range, zero-filled, with a small summary.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiosqlite
import structlog

logger = structlog.get_logger(__name__)


class HourlyStatsType(Enum):
    MESSAGE_PROCESSING = "message_processing"
    PERFORMANCE = "performance"
    TASK_EXECUTION = "task_execution"


@dataclass
class HourlyStatPoint:
    hour: datetime
    value: float = 0.0
    samples: int = 0
    percentage: Optional[float] = None
    trend: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hour": self.hour.isoformat(),
            "value": self.value,
            "samples": self.samples,
            "percentage": self.percentage,
            "trend": self.trend,
        }


@dataclass
class HourlyStatsSummary:
    total: float = 0.0
    average: float = 0.0
    peak_hour: Optional[datetime] = None
    peak_value: float = 0.0
    growth: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "average": self.average,
            "peak_hour": self.peak_hour.isoformat() if self.peak_hour else None,
            "peak_value": self.peak_value,
            "growth": self.growth,
        }


@dataclass
class HourlyStatsResponse:
    type: HourlyStatsType
    start: datetime
    end: datetime
    data: List[HourlyStatPoint] = field(default_factory=list)
    summary: HourlyStatsSummary = field(default_factory=HourlyStatsSummary)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "data": [point.to_dict() for point in self.data],
            "summary": self.summary.to_dict(),
        }


def floor_to_hour(moment: datetime) -> datetime:
    """Truncate to the start of the UTC hour. Naive values are taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def summarize(points: List[HourlyStatPoint]) -> HourlyStatsSummary:
    total = sum(p.value for p in points)
    summary = HourlyStatsSummary(total=total, average=round(total / len(points), 2) if points else 0.0)

    for point in points:
        if point.value > summary.peak_value:
            summary.peak_hour = point.hour
            summary.peak_value = point.value

    if len(points) >= 2:
        middle = len(points) // 2
        first_half = sum(p.value for p in points[:middle])
        second_half = sum(p.value for p in points[middle:])
        if first_half > 0:
            summary.growth = round((second_half - first_half) / first_half * 100, 2)
    return summary


def _annotate(points: List[HourlyStatPoint]) -> None:
    total = sum(p.value for p in points)
    previous: Optional[HourlyStatPoint] = None
    for point in points:
        if total > 0:
            point.percentage = round(point.value / total * 100, 2)
        if previous is not None:
            if point.value > previous.value:
                point.trend = "up"
            elif point.value < previous.value:
                point.trend = "down"
            else:
                point.trend = "stable"
        previous = point


class HourlyStatsStore:
    """SQLite-backed hour buckets, one row per (type, hour)."""

    def __init__(
        self,
        db_path: Path,
        max_query_days: int = 31,
        retention_days: int = 30,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_query_days = max_query_days
        self.retention_days = retention_days
        self._clock = clock
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self._db is not None:
            return
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS hourly_stats (
                type TEXT NOT NULL,
                hour TEXT NOT NULL,
                value REAL NOT NULL DEFAULT 0,
                samples INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (type, hour)
            )
            """
        )
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Hourly stats store is not initialized")
        return self._db

    async def record_hourly_stat(self, stat_type: HourlyStatsType, timestamp: datetime, value: float = 1.0) -> None:
        """Add ``value`` to the hour bucket containing ``timestamp``."""
        db = self._conn()
        hour = floor_to_hour(timestamp).isoformat()
        async with self._lock:
            await db.execute(
                """
                INSERT INTO hourly_stats (type, hour, value, samples) VALUES (?, ?, ?, 1)
                ON CONFLICT (type, hour) DO UPDATE SET
                    value = value + excluded.value,
                    samples = samples + 1
                """,
                (stat_type.value, hour, float(value)),
            )
            await db.commit()
        logger.debug("Hourly stat recorded", type=stat_type.value, hour=hour, value=value)

    def _validate_range(self, start: datetime, end: datetime) -> None:
        start = floor_to_hour(start)
        end = floor_to_hour(end)
        if start > end:
            raise ValueError("start must not be after end")
        if start > self._clock():
            raise ValueError("start must not be in the future")
        if end - start > timedelta(days=self.max_query_days):
            raise ValueError(f"query range must not exceed {self.max_query_days} days")

    async def get_hourly_stats(
        self, stat_type: HourlyStatsType, start: datetime, end: datetime
    ) -> HourlyStatsResponse:
        """Every hour from ``start`` to ``end`` inclusive, zero-filled."""
        self._validate_range(start, end)
        first, last = floor_to_hour(start), floor_to_hour(end)

        db = self._conn()
        async with db.execute(
            "SELECT hour, value, samples FROM hourly_stats WHERE type = ? AND hour >= ? AND hour <= ?",
            (stat_type.value, first.isoformat(), last.isoformat()),
        ) as cursor:
            rows = await cursor.fetchall()
        stored = {row[0]: (row[1], row[2]) for row in rows}

        points: List[HourlyStatPoint] = []
        hour = first
        while hour <= last:
            value, samples = stored.get(hour.isoformat(), (0.0, 0))
            points.append(HourlyStatPoint(hour=hour, value=value, samples=samples))
            hour += timedelta(hours=1)

        _annotate(points)
        return HourlyStatsResponse(type=stat_type, start=first, end=last, data=points, summary=summarize(points))

    async def aggregate_stats(
        self, stat_type: HourlyStatsType, start: datetime, end: datetime, interval: str = "day"
    ) -> List[HourlyStatPoint]:
        """Roll hourly buckets up by day, or by ISO week starting Monday."""
        if interval not in ("day", "week"):
            raise ValueError(f"unsupported interval: {interval}")

        hourly = await self.get_hourly_stats(stat_type, start, end)
        buckets: Dict[datetime, HourlyStatPoint] = {}
        for point in hourly.data:
            key = point.hour.replace(hour=0)
            if interval == "week":
                key -= timedelta(days=key.weekday())
            bucket = buckets.setdefault(key, HourlyStatPoint(hour=key))
            bucket.value += point.value
            bucket.samples += point.samples

        result = [buckets[key] for key in sorted(buckets)]
        _annotate(result)
        return result

    async def cleanup_expired(self, retention_days: Optional[int] = None) -> int:
        """Delete buckets older than the retention period. Returns rows removed."""
        days = retention_days if retention_days is not None else self.retention_days
        cutoff = floor_to_hour(self._clock() - timedelta(days=days)).isoformat()
        db = self._conn()
        async with self._lock:
            cursor = await db.execute("DELETE FROM hourly_stats WHERE hour < ?", (cutoff,))
            removed = cursor.rowcount
            await db.commit()
        logger.info("Expired hourly stats removed", removed=removed, retention_days=days)
        return removed
