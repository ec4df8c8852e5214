"""
Broker consumption contract and an in-process implementation.

The task-status consumer only depends on the ``MessageBroker`` and
``Delivery`` protocols. ``InMemoryBroker`` implements them over asyncio
queues for local runs and tests, with requeue and dead-letter routing.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Union

import structlog

from crawlplane.errors import DeliveryAlreadySettledError

logger = structlog.get_logger(__name__)


class Delivery(Protocol):
    """One delivery of a message. Must be settled exactly once."""

    body: bytes
    delivery_count: int

    async def ack(self) -> None:
        ...

    async def nack(self, requeue: bool) -> None:
        ...


class MessageBroker(Protocol):
    def consume(self, queue_name: str, consumer_tag: str, prefetch_count: int) -> AsyncIterator[Delivery]:
        """Yield deliveries from ``queue_name`` until the broker is closed."""
        ...


@dataclass
class _Envelope:
    body: bytes
    delivery_count: int = 1


_CLOSED = object()


class InMemoryDelivery:
    def __init__(
        self,
        broker: InMemoryBroker,
        queue_name: str,
        envelope: _Envelope,
        on_settle: Optional[asyncio.Semaphore] = None,
    ):
        self._broker = broker
        self._queue_name = queue_name
        self._envelope = envelope
        self._on_settle = on_settle
        self.settled: Optional[str] = None

    @property
    def body(self) -> bytes:
        return self._envelope.body

    @property
    def delivery_count(self) -> int:
        return self._envelope.delivery_count

    def _settle(self, outcome: str) -> None:
        if self.settled is not None:
            raise DeliveryAlreadySettledError(
                f"Delivery on {self._queue_name} already settled with {self.settled}"
            )
        self.settled = outcome
        if self._on_settle is not None:
            self._on_settle.release()

    async def ack(self) -> None:
        self._settle("ack")
        self._broker._queue(self._queue_name).task_done()

    async def nack(self, requeue: bool) -> None:
        self._settle("requeue" if requeue else "reject")
        if requeue:
            self._broker._enqueue(
                self._queue_name,
                _Envelope(body=self._envelope.body, delivery_count=self._envelope.delivery_count + 1),
            )
        else:
            self._broker._dead_letter(self._queue_name, self._envelope.body)
        # After any requeue, so join() never sees a gap
        self._broker._queue(self._queue_name).task_done()


class InMemoryBroker:
    """asyncio-queue broker with requeue and per-queue dead-letter lists."""

    def __init__(self) -> None:
        self._queues: Dict[str, asyncio.Queue] = {}
        self._dead_letters: Dict[str, List[bytes]] = {}
        self._closed = False

    def _queue(self, queue_name: str) -> asyncio.Queue:
        if queue_name not in self._queues:
            self._queues[queue_name] = asyncio.Queue()
        return self._queues[queue_name]

    def _enqueue(self, queue_name: str, envelope: _Envelope) -> None:
        self._queue(queue_name).put_nowait(envelope)

    def _dead_letter(self, queue_name: str, body: bytes) -> None:
        self._dead_letters.setdefault(queue_name, []).append(body)
        logger.warning("Message dead-lettered", queue=queue_name)

    async def publish(self, queue_name: str, payload: Union[bytes, str, Dict[str, Any]]) -> None:
        """Publish a raw body, a string or a JSON-serialisable mapping."""
        if isinstance(payload, bytes):
            body = payload
        elif isinstance(payload, str):
            body = payload.encode("utf-8")
        else:
            body = json.dumps(payload, default=str).encode("utf-8")
        self._enqueue(queue_name, _Envelope(body=body))

    def dead_letters(self, queue_name: str) -> List[bytes]:
        return list(self._dead_letters.get(queue_name, []))

    async def join(self, queue_name: str) -> None:
        """Wait until every message published to ``queue_name`` is acked or dead-lettered."""
        await self._queue(queue_name).join()

    def queue_size(self, queue_name: str) -> int:
        """Messages waiting for delivery. Meaningful only before ``close()``."""
        return self._queue(queue_name).qsize()

    async def consume(self, queue_name: str, consumer_tag: str, prefetch_count: int) -> AsyncIterator[InMemoryDelivery]:
        """Yield deliveries, never more than ``prefetch_count`` unsettled at once."""
        queue = self._queue(queue_name)
        in_flight = asyncio.Semaphore(prefetch_count)
        logger.info("Consumer attached", queue=queue_name, consumer_tag=consumer_tag, prefetch=prefetch_count)

        while not self._closed:
            await in_flight.acquire()
            item = await queue.get()
            if item is _CLOSED:
                # Leave the marker for any other consumer of this queue
                queue.put_nowait(_CLOSED)
                in_flight.release()
                break
            yield InMemoryDelivery(self, queue_name, item, on_settle=in_flight)

        logger.info("Consumer detached", queue=queue_name, consumer_tag=consumer_tag)

    async def close(self) -> None:
        self._closed = True
        for queue in self._queues.values():
            queue.put_nowait(_CLOSED)
