"""Consumer statistics: durable counters and hour buckets."""

from .hourly import HourlyStatPoint, HourlyStatsResponse, HourlyStatsStore, HourlyStatsType
from .store import InMemoryStatsStore, SQLiteStatsStore, StatsStore

__all__ = [
    "HourlyStatPoint",
    "HourlyStatsResponse",
    "HourlyStatsStore",
    "HourlyStatsType",
    "InMemoryStatsStore",
    "SQLiteStatsStore",
    "StatsStore",
]
