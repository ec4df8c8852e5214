"""
Task-status queue consumer.

Each delivery goes through decode, validate, apply and exactly one settle
call: ack on success, requeue on a transient failure while retries remain,
and reject (dead-letter) otherwise. Every delivery also produces one stats
update, and stats failures never affect how the message is settled.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Optional, Set

import structlog

from crawlplane.errors import RetryableError
from crawlplane.messaging.broker import Delivery, MessageBroker
from crawlplane.messaging.messages import ConsumerSettings, TaskStatus, TaskStatusMessage, decode_status_message
from crawlplane.observability.metrics import METRICS
from crawlplane.protocols import ConsumerStats, MessageProcessResult, TaskState, TaskStore
from crawlplane.stats.hourly import HourlyStatsStore, HourlyStatsType
from crawlplane.stats.store import StatsStore

logger = structlog.get_logger(__name__)

# Wire status -> internal task state. ``completed`` deliberately keeps the
# task RUNNING: the task is recurring and is rescheduled, not finished.
STATUS_MAPPING: Dict[TaskStatus, TaskState] = {
    TaskStatus.RUNNING: TaskState.RUNNING,
    TaskStatus.COMPLETED: TaskState.RUNNING,
    TaskStatus.FAILED: TaskState.FAILED,
    TaskStatus.TIMEOUT: TaskState.TIMEOUT,
}

RETRYABLE_PATTERNS = ("connection", "timeout", "network", "econnreset", "etimedout")

DEFAULT_IDEMPOTENCY_WINDOW = 10_000


def is_retryable_error(exc: BaseException) -> bool:
    """Transient failures that are worth a requeue."""
    if isinstance(exc, (RetryableError, TimeoutError, ConnectionError)):
        return True
    message = str(exc).lower()
    return any(pattern in message for pattern in RETRYABLE_PATTERNS)


class TaskStatusConsumer:
    """
    Consumes task-status messages and applies them to the task store.

    Features:
    - Bounded in-flight processing (``prefetch_count``)
    - Requeue with a retry ceiling, then dead-letter
    - Last-write-wins by ``updated_at`` per task
    - Persistent outcome counters and hourly statistics
    """

    def __init__(
        self,
        broker: MessageBroker,
        task_store: TaskStore,
        stats_store: StatsStore,
        settings: ConsumerSettings,
        hourly_stats: Optional[HourlyStatsStore] = None,
        idempotency_window: int = DEFAULT_IDEMPOTENCY_WINDOW,
    ):
        self.broker = broker
        self.task_store = task_store
        self.stats_store = stats_store
        self.settings = settings
        self.hourly_stats = hourly_stats
        self.idempotency_window = idempotency_window

        self._last_applied: "OrderedDict[int, datetime]" = OrderedDict()
        # Per-task locks live only while a delivery for that task is in flight
        self._task_locks: Dict[int, asyncio.Lock] = {}
        self._task_lock_users: Dict[int, int] = {}
        self._in_flight: Set[asyncio.Task] = set()
        self._background: Set[asyncio.Task] = set()
        self._run_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _is_stale(self, message: TaskStatusMessage) -> bool:
        last = self._last_applied.get(message.task_id)
        return last is not None and message.updated_at < last

    def _remember(self, message: TaskStatusMessage) -> None:
        last = self._last_applied.get(message.task_id)
        self._last_applied[message.task_id] = message.updated_at if last is None else max(last, message.updated_at)
        self._last_applied.move_to_end(message.task_id)
        while len(self._last_applied) > self.idempotency_window:
            self._last_applied.popitem(last=False)

    @contextlib.asynccontextmanager
    async def _task_guard(self, task_id: int) -> AsyncIterator[None]:
        """Serialize work on one task so the staleness check and the write are atomic."""
        lock = self._task_locks.setdefault(task_id, asyncio.Lock())
        self._task_lock_users[task_id] = self._task_lock_users.get(task_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._task_lock_users[task_id] -= 1
            if not self._task_lock_users[task_id]:
                del self._task_lock_users[task_id]
                del self._task_locks[task_id]

    async def process(self, message: TaskStatusMessage) -> MessageProcessResult:
        """Apply one parsed message to the task store."""
        state = STATUS_MAPPING.get(message.status)
        if state is None:
            logger.error("Unmapped task status", task_id=message.task_id, status=message.status)
            return MessageProcessResult.FAILED

        async with self._task_guard(message.task_id):
            return await self._apply(message, state)

    async def _apply(self, message: TaskStatusMessage, state: TaskState) -> MessageProcessResult:
        if self._is_stale(message):
            logger.info(
                "Skipping stale task status",
                task_id=message.task_id,
                updated_at=message.updated_at.isoformat(),
            )
            return MessageProcessResult.SUCCESS

        try:
            await self.task_store.update_task_status(message.task_id, state, message.error_message)
        except Exception as e:
            retryable = is_retryable_error(e)
            logger.warning(
                "Task status update failed",
                task_id=message.task_id,
                error=str(e),
                retryable=retryable,
            )
            return MessageProcessResult.RETRY if retryable else MessageProcessResult.FAILED

        self._remember(message)

        if message.has_progress():
            try:
                await self.task_store.update_task_progress(message.task_id, message.task_progress())
            except Exception as e:
                logger.warning("Task progress update failed", task_id=message.task_id, error=str(e))

        logger.debug("Task status applied", task_id=message.task_id, status=message.status.value, state=state.value)
        return MessageProcessResult.SUCCESS

    async def handle_delivery(self, delivery: Delivery) -> MessageProcessResult:
        """
        Process and settle one delivery.

        Processing errors never escape. If the handler is cancelled the
        delivery is requeued and the cancellation propagates.
        """
        start = time.monotonic()
        result = MessageProcessResult.FAILED
        METRICS["consumer_in_flight"].inc()

        with structlog.contextvars.bound_contextvars(correlation_id=uuid.uuid4().hex[:12]):
            try:
                try:
                    message = decode_status_message(delivery.body)
                    if message is None:
                        logger.warning("Invalid task status message, rejecting", delivery_count=delivery.delivery_count)
                    else:
                        result = await self.process(message)
                except Exception as e:
                    logger.error("Unexpected error processing message", error=str(e), exc_info=True)
                    result = MessageProcessResult.FAILED
                except asyncio.CancelledError:
                    logger.warning("Processing cancelled, requeueing message", delivery_count=delivery.delivery_count)
                    result = MessageProcessResult.RETRY
                    await self._settle(delivery, result)
                    raise

                if result is MessageProcessResult.RETRY and delivery.delivery_count - 1 >= self.settings.max_retries:
                    logger.warning(
                        "Retries exhausted, dead-lettering message",
                        delivery_count=delivery.delivery_count,
                        max_retries=self.settings.max_retries,
                    )
                    result = MessageProcessResult.FAILED

                await self._settle(delivery, result)
            finally:
                processing_ms = (time.monotonic() - start) * 1000
                METRICS["consumer_in_flight"].dec()
                METRICS["consumer_messages_total"].labels(result=result.value).inc()
                METRICS["consumer_processing_seconds"].observe(processing_ms / 1000)
                await self._record_stats(result, processing_ms)

        return result

    async def _settle(self, delivery: Delivery, result: MessageProcessResult) -> None:
        try:
            if result is MessageProcessResult.SUCCESS:
                await delivery.ack()
            else:
                await delivery.nack(requeue=result is MessageProcessResult.RETRY)
        except Exception as e:
            logger.error("Failed to settle delivery", result=result.value, error=str(e))

    async def _record_stats(self, result: MessageProcessResult, processing_ms: float) -> None:
        try:
            await self.stats_store.update_stats(result, processing_ms)
        except Exception as e:
            logger.warning("Failed to update consumer stats", error=str(e))

        if self.hourly_stats is not None:
            task = asyncio.create_task(self._record_hourly(datetime.now(timezone.utc), processing_ms))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _record_hourly(self, timestamp: datetime, processing_ms: float) -> None:
        assert self.hourly_stats is not None
        try:
            await self.hourly_stats.record_hourly_stat(HourlyStatsType.MESSAGE_PROCESSING, timestamp, 1)
            await self.hourly_stats.record_hourly_stat(HourlyStatsType.PERFORMANCE, timestamp, processing_ms)
            await self.hourly_stats.record_hourly_stat(HourlyStatsType.TASK_EXECUTION, timestamp, 1)
        except Exception as e:
            logger.warning("Failed to record hourly stats", error=str(e))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Consume until the broker closes or the task is cancelled."""
        limit = asyncio.Semaphore(self.settings.prefetch_count)
        logger.info(
            "Task status consumer started",
            queue=self.settings.queue_name,
            consumer_tag=self.settings.consumer_tag,
            prefetch=self.settings.prefetch_count,
            max_retries=self.settings.max_retries,
        )

        async def _handle(delivery: Delivery) -> None:
            try:
                await self.handle_delivery(delivery)
            finally:
                limit.release()

        async for delivery in self.broker.consume(
            self.settings.queue_name, self.settings.consumer_tag, self.settings.prefetch_count
        ):
            await limit.acquire()
            task = asyncio.create_task(_handle(delivery))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

        await self.drain()

    async def start(self) -> None:
        if self._run_task is None or self._run_task.done():
            self._run_task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Stop consuming and wait for in-flight messages to settle."""
        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
        self._run_task = None
        await self.drain()
        logger.info("Task status consumer stopped", queue=self.settings.queue_name)

    async def drain(self) -> None:
        """Wait for in-flight deliveries and background stat writes."""
        # asyncio.wait, unlike gather, leaves the tasks running if the waiter is cancelled
        if self._in_flight:
            await asyncio.wait(list(self._in_flight))
        if self._background:
            await asyncio.wait(list(self._background))

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_stats(self) -> ConsumerStats:
        try:
            return await self.stats_store.get_stats()
        except Exception as e:
            logger.warning("Failed to read consumer stats", error=str(e))
            return ConsumerStats()

    async def reset_stats(self) -> None:
        await self.stats_store.reset_stats()
        logger.info("Consumer stats reset")
