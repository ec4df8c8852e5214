"""
Durable counters for the task-status consumer.

Each processed delivery contributes one outcome and one latency sample. The
average processing time is taken over the last ``max_samples`` latencies
only, so old traffic does not dominate it.
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, List, Optional, Protocol

import aiosqlite
import structlog

from crawlplane.protocols import ConsumerStats, DetailedConsumerStats, MessageProcessResult

logger = structlog.get_logger(__name__)

_COUNTER_COLUMNS = {
    MessageProcessResult.SUCCESS: "success_count",
    MessageProcessResult.FAILED: "failure_count",
    MessageProcessResult.RETRY: "retry_count",
}


class StatsStore(Protocol):
    async def initialize(self) -> None:
        ...

    async def close(self) -> None:
        ...

    def is_available(self) -> bool:
        ...

    async def update_stats(self, result: MessageProcessResult, processing_time_ms: float) -> None:
        ...

    async def get_stats(self) -> ConsumerStats:
        ...

    async def get_detailed_stats(self) -> DetailedConsumerStats:
        ...

    async def get_processing_times(self) -> List[float]:
        ...

    async def reset_stats(self) -> None:
        ...


class InMemoryStatsStore:
    """Same semantics as the SQLite store, kept in process memory."""

    def __init__(self, max_samples: int = 100):
        self.max_samples = max_samples
        self._stats = ConsumerStats()
        self._samples: Deque[float] = deque(maxlen=max_samples)
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def is_available(self) -> bool:
        return True

    async def update_stats(self, result: MessageProcessResult, processing_time_ms: float) -> None:
        async with self._lock:
            stats = self._stats
            stats.total_messages += 1
            column = _COUNTER_COLUMNS[result]
            setattr(stats, column, getattr(stats, column) + 1)
            stats.last_processed_at = datetime.now(timezone.utc)
            self._samples.append(float(processing_time_ms))
            stats.avg_processing_time_ms = sum(self._samples) / len(self._samples)

    async def get_stats(self) -> ConsumerStats:
        async with self._lock:
            s = self._stats
            return ConsumerStats(
                total_messages=s.total_messages,
                success_count=s.success_count,
                failure_count=s.failure_count,
                retry_count=s.retry_count,
                avg_processing_time_ms=s.avg_processing_time_ms,
                last_processed_at=s.last_processed_at,
            )

    async def get_processing_times(self) -> List[float]:
        async with self._lock:
            return list(self._samples)

    async def get_detailed_stats(self) -> DetailedConsumerStats:
        stats = await self.get_stats()
        return DetailedConsumerStats(**vars(stats), processing_times=await self.get_processing_times())

    async def reset_stats(self) -> None:
        async with self._lock:
            self._stats = ConsumerStats()
            self._samples.clear()
        logger.info("Consumer stats reset", store="memory")


class SQLiteStatsStore:
    """
    Consumer statistics persisted in SQLite.

    Features:
    - One transaction per update (counters, timestamp, sample, trim, average)
    - Bounded latency sample table
    - Survives process restarts
    """

    def __init__(self, db_path: Path, max_samples: int = 100):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_samples = max_samples
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the database and create the schema if needed."""
        if self._db is not None:
            return
        self._db = await aiosqlite.connect(self.db_path)

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS consumer_stats (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                total_messages INTEGER NOT NULL DEFAULT 0,
                success_count INTEGER NOT NULL DEFAULT 0,
                failure_count INTEGER NOT NULL DEFAULT 0,
                retry_count INTEGER NOT NULL DEFAULT 0,
                avg_processing_time_ms REAL NOT NULL DEFAULT 0,
                last_processed_at TEXT
            )
            """
        )
        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS processing_times (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                processing_time_ms REAL NOT NULL,
                recorded_at TEXT NOT NULL
            )
            """
        )
        await self._db.execute("INSERT OR IGNORE INTO consumer_stats (id) VALUES (1)")
        await self._db.commit()
        logger.info("Stats store initialized", db_path=str(self.db_path))

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    def is_available(self) -> bool:
        return self._db is not None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Stats store is not initialized")
        return self._db

    async def update_stats(self, result: MessageProcessResult, processing_time_ms: float) -> None:
        db = self._conn()
        column = _COUNTER_COLUMNS[result]
        now = datetime.now(timezone.utc).isoformat()

        async with self._lock:
            try:
                await db.execute(
                    f"UPDATE consumer_stats SET total_messages = total_messages + 1, "
                    f"{column} = {column} + 1, last_processed_at = ? WHERE id = 1",
                    (now,),
                )
                await db.execute(
                    "INSERT INTO processing_times (processing_time_ms, recorded_at) VALUES (?, ?)",
                    (float(processing_time_ms), now),
                )
                await db.execute(
                    "DELETE FROM processing_times WHERE id NOT IN "
                    "(SELECT id FROM processing_times ORDER BY id DESC LIMIT ?)",
                    (self.max_samples,),
                )
                await db.execute(
                    "UPDATE consumer_stats SET avg_processing_time_ms = "
                    "(SELECT COALESCE(AVG(processing_time_ms), 0) FROM processing_times) WHERE id = 1"
                )
                await db.commit()
            except aiosqlite.Error:
                await db.rollback()
                raise

    async def get_stats(self) -> ConsumerStats:
        db = self._conn()
        async with db.execute(
            "SELECT total_messages, success_count, failure_count, retry_count, "
            "avg_processing_time_ms, last_processed_at FROM consumer_stats WHERE id = 1"
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return ConsumerStats()
        return ConsumerStats(
            total_messages=row[0],
            success_count=row[1],
            failure_count=row[2],
            retry_count=row[3],
            avg_processing_time_ms=row[4],
            last_processed_at=datetime.fromisoformat(row[5]) if row[5] else None,
        )

    async def get_processing_times(self) -> List[float]:
        db = self._conn()
        async with db.execute("SELECT processing_time_ms FROM processing_times ORDER BY id") as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def get_detailed_stats(self) -> DetailedConsumerStats:
        stats = await self.get_stats()
        return DetailedConsumerStats(**vars(stats), processing_times=await self.get_processing_times())

    async def reset_stats(self) -> None:
        db = self._conn()
        async with self._lock:
            await db.execute(
                "UPDATE consumer_stats SET total_messages = 0, success_count = 0, failure_count = 0, "
                "retry_count = 0, avg_processing_time_ms = 0, last_processed_at = NULL WHERE id = 1"
            )
            await db.execute("DELETE FROM processing_times")
            await db.commit()
        logger.info("Consumer stats reset", store="sqlite", db_path=str(self.db_path))
