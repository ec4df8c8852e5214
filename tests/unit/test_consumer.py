"""
Unit tests for the task-status consumer.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from crawlplane.errors import RetryableError
from crawlplane.messaging import InMemoryBroker, TaskStatusConsumer, is_retryable_error, parse_status_message
from crawlplane.protocols import MessageProcessResult, TaskState
from crawlplane.stats import HourlyStatsStore, HourlyStatsType, InMemoryStatsStore
from crawlplane.task_store import InMemoryTaskStore


def status_message(task_id=1, status="running", updated_at="2023-01-01T12:00:00Z", **extra):
    message = {"taskId": task_id, "status": status, "updatedAt": updated_at}
    message.update(extra)
    return message


def encode(message) -> bytes:
    return json.dumps(message).encode("utf-8")


class FakeDelivery:
    """Records every settle call instead of talking to a broker."""

    def __init__(self, body: bytes, delivery_count: int = 1, fail_settle: bool = False):
        self.body = body
        self.delivery_count = delivery_count
        self.fail_settle = fail_settle
        self.settles: List[str] = []

    async def ack(self) -> None:
        self.settles.append("ack")
        if self.fail_settle:
            raise ConnectionError("channel closed")

    async def nack(self, requeue: bool) -> None:
        self.settles.append("requeue" if requeue else "reject")
        if self.fail_settle:
            raise ConnectionError("channel closed")


class FailingTaskStore(InMemoryTaskStore):
    """Task store whose status or progress writes raise a given error."""

    def __init__(self, status_error: Optional[Exception] = None, progress_error: Optional[Exception] = None):
        super().__init__()
        self.status_error = status_error
        self.progress_error = progress_error
        self.status_calls = 0

    async def update_task_status(self, task_id, status, error_message=None):
        self.status_calls += 1
        if self.status_error is not None:
            raise self.status_error
        await super().update_task_status(task_id, status, error_message)

    async def update_task_progress(self, task_id, progress):
        if self.progress_error is not None:
            raise self.progress_error
        await super().update_task_progress(task_id, progress)


class SlowTaskStore(InMemoryTaskStore):
    """Task store whose status writes take a per-state amount of time."""

    def __init__(self, delays):
        super().__init__()
        self.delays = delays

    async def update_task_status(self, task_id, status, error_message=None):
        await asyncio.sleep(self.delays.get(status, 0))
        await super().update_task_status(task_id, status, error_message)


class BlockingTaskStore(InMemoryTaskStore):
    """Task store whose status writes wait until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def update_task_status(self, task_id, status, error_message=None):
        self.entered.set()
        await self.release.wait()
        await super().update_task_status(task_id, status, error_message)


class BrokenStatsStore(InMemoryStatsStore):
    async def update_stats(self, result, processing_time_ms):
        raise RuntimeError("stats backend down")

    async def get_stats(self):
        raise RuntimeError("stats backend down")


@pytest.fixture
def task_store():
    return InMemoryTaskStore()


@pytest.fixture
def stats_store():
    return InMemoryStatsStore()


@pytest.fixture
def make_consumer(consumer_settings, task_store, stats_store):
    def _make(store=None, stats=None, hourly=None, broker=None):
        return TaskStatusConsumer(
            broker or InMemoryBroker(),
            store or task_store,
            stats or stats_store,
            consumer_settings,
            hourly_stats=hourly,
        )

    return _make


@pytest.mark.unit
class TestRetryClassification:
    @pytest.mark.parametrize(
        "exc,expected",
        [
            (RetryableError("anything"), True),
            (TimeoutError(), True),
            (ConnectionResetError(), True),
            (RuntimeError("Connection refused"), True),
            (RuntimeError("read ETIMEDOUT"), True),
            (RuntimeError("network unreachable"), True),
            (ValueError("bad value"), False),
            (KeyError("task"), False),
        ],
    )
    def test_is_retryable_error(self, exc, expected):
        assert is_retryable_error(exc) is expected


@pytest.mark.unit
class TestProcess:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,state",
        [
            ("running", TaskState.RUNNING),
            ("completed", TaskState.RUNNING),
            ("failed", TaskState.FAILED),
            ("timeout", TaskState.TIMEOUT),
        ],
    )
    async def test_status_mapping(self, make_consumer, task_store, status, state):
        consumer = make_consumer()

        result = await consumer.process(parse_status_message(status_message(status=status)))

        assert result is MessageProcessResult.SUCCESS
        assert task_store.get(1).status is state

    @pytest.mark.asyncio
    async def test_completed_keeps_task_running(self, make_consumer, task_store):
        # Recurring tasks: "completed" means the run finished, the task itself is rescheduled
        consumer = make_consumer()

        await consumer.process(parse_status_message(status_message(status="completed")))

        assert task_store.get(1).status is TaskState.RUNNING
        assert task_store.get(1).status is not TaskState.FAILED

    @pytest.mark.asyncio
    async def test_error_message_passed_through(self, make_consumer, task_store):
        consumer = make_consumer()

        await consumer.process(parse_status_message(status_message(status="failed", errorMessage="boom")))

        assert task_store.get(1).error_message == "boom"

    @pytest.mark.asyncio
    async def test_progress_written_when_present(self, make_consumer, task_store):
        consumer = make_consumer()

        await consumer.process(parse_status_message(status_message(progress=40)))
        await consumer.process(parse_status_message(status_message(task_id=2)))

        assert task_store.get(1).progress.progress == 40.0
        assert task_store.get(2).progress is None

    @pytest.mark.asyncio
    async def test_progress_failure_does_not_fail_message(self, make_consumer):
        store = FailingTaskStore(progress_error=ValueError("progress column missing"))
        consumer = make_consumer(store=store)

        result = await consumer.process(parse_status_message(status_message(progress=40)))

        assert result is MessageProcessResult.SUCCESS
        assert store.get(1).status is TaskState.RUNNING

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,expected",
        [
            (RuntimeError("Connection refused"), MessageProcessResult.RETRY),
            (RetryableError("database busy"), MessageProcessResult.RETRY),
            (TimeoutError("deadline"), MessageProcessResult.RETRY),
            (ValueError("no such task"), MessageProcessResult.FAILED),
        ],
    )
    async def test_store_errors_classified(self, make_consumer, error, expected):
        consumer = make_consumer(store=FailingTaskStore(status_error=error))

        result = await consumer.process(parse_status_message(status_message()))

        assert result is expected

    @pytest.mark.asyncio
    async def test_stale_update_skipped(self, make_consumer, task_store):
        consumer = make_consumer()

        await consumer.process(parse_status_message(status_message(status="failed", updated_at="2023-01-01T12:00:00Z")))
        result = await consumer.process(
            parse_status_message(status_message(status="running", updated_at="2023-01-01T11:00:00Z"))
        )

        assert result is MessageProcessResult.SUCCESS
        assert task_store.get(1).status is TaskState.FAILED
        assert len(task_store.get(1).history) == 1

    @pytest.mark.asyncio
    async def test_equal_timestamp_reapplied(self, make_consumer, task_store):
        consumer = make_consumer()
        message = parse_status_message(status_message())

        await consumer.process(message)
        await consumer.process(message)

        assert len(task_store.get(1).history) == 2

    @pytest.mark.asyncio
    async def test_failed_write_does_not_advance_watermark(self, make_consumer):
        store = FailingTaskStore(status_error=RuntimeError("timeout"))
        consumer = make_consumer(store=store)

        await consumer.process(parse_status_message(status_message(updated_at="2023-01-01T12:00:00Z")))
        store.status_error = None
        result = await consumer.process(parse_status_message(status_message(updated_at="2023-01-01T11:00:00Z")))

        assert result is MessageProcessResult.SUCCESS
        assert store.get(1).status is TaskState.RUNNING

    @pytest.mark.asyncio
    async def test_concurrent_older_update_does_not_overwrite_newer(self, make_consumer):
        # The newer write commits quickly, the older one slowly
        store = SlowTaskStore({TaskState.FAILED: 0, TaskState.RUNNING: 0.05})
        consumer = make_consumer(store=store)
        newer = parse_status_message(status_message(status="failed", updated_at="2023-01-01T12:00:02Z"))
        older = parse_status_message(status_message(status="running", updated_at="2023-01-01T12:00:00Z"))

        results = await asyncio.gather(consumer.process(newer), consumer.process(older))

        assert results == [MessageProcessResult.SUCCESS, MessageProcessResult.SUCCESS]
        assert store.get(1).status is TaskState.FAILED
        assert [status for status, _ in store.get(1).history] == [TaskState.FAILED]
        assert consumer._last_applied[1] == newer.updated_at
        assert consumer._task_locks == {}

    @pytest.mark.asyncio
    async def test_concurrent_updates_applied_in_arrival_order(self, make_consumer):
        store = SlowTaskStore({TaskState.RUNNING: 0.05})
        consumer = make_consumer(store=store)
        older = parse_status_message(status_message(status="running", updated_at="2023-01-01T12:00:00Z"))
        newer = parse_status_message(status_message(status="failed", updated_at="2023-01-01T12:00:02Z"))

        await asyncio.gather(consumer.process(older), consumer.process(newer))

        assert [status for status, _ in store.get(1).history] == [TaskState.RUNNING, TaskState.FAILED]
        assert store.get(1).status is TaskState.FAILED
        assert consumer._last_applied[1] == newer.updated_at

    @pytest.mark.asyncio
    async def test_watermark_never_moves_backwards(self, make_consumer):
        consumer = make_consumer()
        newer = parse_status_message(status_message(updated_at="2023-01-01T12:00:02Z"))
        older = parse_status_message(status_message(updated_at="2023-01-01T12:00:00Z"))

        consumer._remember(newer)
        consumer._remember(older)

        assert consumer._last_applied[1] == newer.updated_at


@pytest.mark.unit
class TestHandleDelivery:
    @pytest.mark.asyncio
    async def test_success_acks(self, make_consumer, stats_store):
        consumer = make_consumer()
        delivery = FakeDelivery(encode(status_message()))

        result = await consumer.handle_delivery(delivery)

        assert result is MessageProcessResult.SUCCESS
        assert delivery.settles == ["ack"]
        stats = await stats_store.get_stats()
        assert stats.total_messages == 1
        assert stats.success_count == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b"{broken", encode({"taskId": 1}), encode(status_message(taskId=-5))])
    async def test_invalid_message_rejected_without_store_call(self, make_consumer, stats_store, body):
        store = FailingTaskStore()
        consumer = make_consumer(store=store)
        delivery = FakeDelivery(body)

        result = await consumer.handle_delivery(delivery)

        assert result is MessageProcessResult.FAILED
        assert delivery.settles == ["reject"]
        assert store.status_calls == 0
        assert (await stats_store.get_stats()).failure_count == 1

    @pytest.mark.asyncio
    async def test_transient_failure_requeued(self, make_consumer, stats_store):
        consumer = make_consumer(store=FailingTaskStore(status_error=TimeoutError()))
        delivery = FakeDelivery(encode(status_message()), delivery_count=1)

        result = await consumer.handle_delivery(delivery)

        assert result is MessageProcessResult.RETRY
        assert delivery.settles == ["requeue"]
        assert (await stats_store.get_stats()).retry_count == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted_dead_letters(self, make_consumer, stats_store):
        consumer = make_consumer(store=FailingTaskStore(status_error=TimeoutError()))
        delivery = FakeDelivery(encode(status_message()), delivery_count=4)

        result = await consumer.handle_delivery(delivery)

        assert result is MessageProcessResult.FAILED
        assert delivery.settles == ["reject"]
        assert (await stats_store.get_stats()).failure_count == 1

    @pytest.mark.asyncio
    async def test_stats_failure_does_not_change_settlement(self, make_consumer):
        consumer = make_consumer(stats=BrokenStatsStore())
        delivery = FakeDelivery(encode(status_message()))

        result = await consumer.handle_delivery(delivery)

        assert result is MessageProcessResult.SUCCESS
        assert delivery.settles == ["ack"]

    @pytest.mark.asyncio
    async def test_settle_error_not_retried(self, make_consumer, stats_store):
        consumer = make_consumer()
        delivery = FakeDelivery(encode(status_message()), fail_settle=True)

        result = await consumer.handle_delivery(delivery)

        assert result is MessageProcessResult.SUCCESS
        assert delivery.settles == ["ack"]
        assert (await stats_store.get_stats()).total_messages == 1

    @pytest.mark.asyncio
    async def test_hourly_stats_recorded(self, make_consumer, tmp_path):
        hourly = HourlyStatsStore(tmp_path / "hourly.db")
        await hourly.initialize()
        consumer = make_consumer(hourly=hourly)
        try:
            await consumer.handle_delivery(FakeDelivery(encode(status_message())))
            await consumer.handle_delivery(FakeDelivery(encode(status_message(task_id=2))))
            await consumer.drain()

            now = datetime.now(timezone.utc)
            for stat_type in (HourlyStatsType.MESSAGE_PROCESSING, HourlyStatsType.TASK_EXECUTION):
                response = await hourly.get_hourly_stats(stat_type, now - timedelta(hours=1), now)
                assert response.summary.total == 2
            performance = await hourly.get_hourly_stats(HourlyStatsType.PERFORMANCE, now - timedelta(hours=1), now)
            assert sum(point.samples for point in performance.data) == 2
        finally:
            await hourly.close()

    @pytest.mark.asyncio
    async def test_cancelled_delivery_requeued(self, make_consumer, stats_store):
        store = BlockingTaskStore()
        consumer = make_consumer(store=store)
        delivery = FakeDelivery(encode(status_message()))

        handler = asyncio.create_task(consumer.handle_delivery(delivery))
        await asyncio.wait_for(store.entered.wait(), timeout=5.0)
        handler.cancel()

        with pytest.raises(asyncio.CancelledError):
            await handler

        assert delivery.settles == ["requeue"]
        stats = await stats_store.get_stats()
        assert stats.total_messages == 1
        assert stats.retry_count == 1
        assert consumer._task_locks == {}


@pytest.mark.unit
class TestConsumerLifecycle:
    @pytest.mark.asyncio
    async def test_consumes_until_broker_closed(self, make_consumer, consumer_settings, task_store, stats_store):
        broker = InMemoryBroker()
        consumer = make_consumer(broker=broker)
        for task_id in range(1, 6):
            await broker.publish(consumer_settings.queue_name, status_message(task_id=task_id))
        await broker.publish(consumer_settings.queue_name, b"not json")

        await consumer.start()
        await asyncio.wait_for(broker.join(consumer_settings.queue_name), timeout=5.0)
        await broker.close()
        await consumer.stop()

        assert sorted(task_store.tasks) == [1, 2, 3, 4, 5]
        assert len(broker.dead_letters(consumer_settings.queue_name)) == 1
        stats = await stats_store.get_stats()
        assert stats.total_messages == 6
        assert stats.success_count == 5
        assert stats.failure_count == 1

    @pytest.mark.asyncio
    async def test_persistent_timeout_dead_lettered_after_max_retries(
        self, make_consumer, consumer_settings, stats_store
    ):
        broker = InMemoryBroker()
        store = FailingTaskStore(status_error=TimeoutError())
        consumer = make_consumer(store=store, broker=broker)
        await broker.publish(consumer_settings.queue_name, status_message())

        await consumer.start()
        await asyncio.wait_for(broker.join(consumer_settings.queue_name), timeout=5.0)
        await broker.close()
        await consumer.stop()

        assert store.status_calls == consumer_settings.max_retries + 1
        assert len(broker.dead_letters(consumer_settings.queue_name)) == 1
        stats = await stats_store.get_stats()
        assert stats.retry_count == 3
        assert stats.failure_count == 1
        assert stats.success_count == 0

    @pytest.mark.asyncio
    async def test_stop_without_start(self, make_consumer):
        await make_consumer().stop()

    @pytest.mark.asyncio
    async def test_get_stats_falls_back_to_zeroes(self, make_consumer):
        consumer = make_consumer(stats=BrokenStatsStore())

        stats = await consumer.get_stats()

        assert stats.total_messages == 0

    @pytest.mark.asyncio
    async def test_reset_stats(self, make_consumer, stats_store):
        consumer = make_consumer()
        await consumer.handle_delivery(FakeDelivery(encode(status_message())))

        await consumer.reset_stats()

        assert (await consumer.get_stats()).total_messages == 0
