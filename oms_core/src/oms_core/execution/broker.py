"""Order broker (OB): durable at-least-once work queue with a dead-letter queue.

Queues:
    orders.process        main queue, one message per accepted order
    orders.process.dead   dead-letter queue (DLQ)

Wire format:
    body     JSON ``{"order_id": ..., "enqueued_at": RFC 3339}``
    headers  ``message_id``, ``redelivery_count``

Consumers pull ``Delivery`` objects and settle each exactly once with
``ack``, ``nack_requeue`` (redelivered with ``redelivery_count + 1``) or
``nack_dlq`` (moved to the DLQ with the failure reason).

Design Decisions:
- Protocol-based interface, in-memory and Redis implementations
- Publish returns only after the backend accepted the message
- Messages that cannot be decoded are dead-lettered as poison by the broker
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Final, Protocol, runtime_checkable

import structlog
from pydantic import Field, ValidationError

from oms_core.common.errors import (
    BrokerTimeoutError,
    BrokerUnavailableError,
    ErrorKind,
    PoisonMessageError,
)
from oms_core.common.types import DomainModel, to_rfc3339, utc_now

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

log = structlog.get_logger()

MAIN_QUEUE: Final[str] = "orders.process"
DEAD_LETTER_QUEUE: Final[str] = "orders.process.dead"
IN_FLIGHT_QUEUE: Final[str] = "orders.process.inflight"
DEFAULT_BROKER_TIMEOUT: Final[float] = 5.0


# ==============================================================================
# Messages
# ==============================================================================
class BrokerMessage(DomainModel):
    """Envelope for asynchronous order work."""

    order_id: str
    enqueued_at: datetime = Field(default_factory=utc_now)
    redelivery_count: int = Field(default=0, ge=0)
    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    routing_key: str = MAIN_QUEUE

    def body(self) -> dict[str, Any]:
        """JSON body as published on the wire."""
        return {"order_id": self.order_id, "enqueued_at": to_rfc3339(self.enqueued_at)}

    def headers(self) -> dict[str, Any]:
        return {"message_id": self.message_id, "redelivery_count": self.redelivery_count}

    def to_wire(self) -> str:
        """Serialize body and headers as one JSON document."""
        return json.dumps({"body": self.body(), "headers": self.headers()}, sort_keys=True)

    @classmethod
    def from_wire(cls, raw: str | bytes) -> BrokerMessage:
        """Decode a wire document.

        Raises:
            PoisonMessageError: If the payload is not a valid message.
        """
        try:
            document = json.loads(raw)
            body = document["body"]
            headers = document.get("headers") or {}
            return cls(
                order_id=body["order_id"],
                enqueued_at=body["enqueued_at"],
                redelivery_count=int(headers.get("redelivery_count", 0)),
                message_id=headers.get("message_id") or str(uuid.uuid4()),
            )
        except (ValueError, KeyError, TypeError, ValidationError) as exc:
            raise PoisonMessageError(f"Undecodable broker message: {exc}") from exc

    def redelivered(self) -> BrokerMessage:
        """Copy for requeue with the redelivery counter incremented."""
        return self.model_copy(update={"redelivery_count": self.redelivery_count + 1})


class DeadLetter(DomainModel):
    """DLQ entry: the message plus why it was dead-lettered."""

    original_message: str
    order_id: str | None = None
    processing_error: str
    failed_at: datetime = Field(default_factory=utc_now)
    redelivery_count: int = 0


class Delivery:
    """A received message awaiting settlement.

    Exactly one of ``ack``, ``nack_requeue`` or ``nack_dlq`` takes effect;
    later calls are ignored with a warning.
    """

    def __init__(self, broker: Any, message: BrokerMessage, raw: str) -> None:
        self.broker = broker
        self.message = message
        self.raw = raw
        self.settled = False
        self.outcome: str | None = None

    @property
    def order_id(self) -> str:
        return self.message.order_id

    @property
    def redelivery_count(self) -> int:
        return self.message.redelivery_count

    def _claim(self, outcome: str) -> bool:
        if self.settled:
            log.warning(
                "Delivery already settled",
                order_id=self.order_id,
                outcome=self.outcome,
                attempted=outcome,
            )
            return False
        self.settled = True
        self.outcome = outcome
        return True

    async def ack(self) -> None:
        if self._claim("ack"):
            await self.broker._ack(self)

    async def nack_requeue(self) -> None:
        if self._claim("requeue"):
            await self.broker._requeue(self)

    async def nack_dlq(self, reason: str) -> None:
        if self._claim("dead_letter"):
            await self.broker._dead_letter(self, reason)


# ==============================================================================
# Broker Protocol
# ==============================================================================
@runtime_checkable
class OrderBroker(Protocol):
    """Contract of the order work queue."""

    async def publish(self, order_id: str) -> BrokerMessage:
        """Durably enqueue work for an order.

        Raises:
            BrokerUnavailableError: If the publish is not confirmed.
        """
        ...

    async def receive(self, timeout: float = 1.0) -> Delivery | None:
        """Pull one delivery, or None when nothing arrived within ``timeout``."""
        ...

    def consume(self, poll_interval: float = 1.0) -> AsyncIterator[Delivery]:
        """Endless stream of deliveries."""
        ...

    async def dead_letters(self, limit: int = 100) -> list[DeadLetter]:
        """Most recent DLQ entries, newest first."""
        ...

    async def health_check(self) -> bool:
        """Liveness check."""
        ...

    async def close(self) -> None:
        """Release connections; unsettled deliveries return to the queue."""
        ...


class _ConsumeMixin:
    """Shared pull-loop on top of ``receive``."""

    async def consume(self, poll_interval: float = 1.0) -> AsyncIterator[Delivery]:
        while True:
            delivery = await self.receive(timeout=poll_interval)  # type: ignore[attr-defined]
            if delivery is not None:
                yield delivery


# ==============================================================================
# Memory Broker (Development/Testing)
# ==============================================================================
class MemoryBroker(_ConsumeMixin):
    """In-process broker for development and testing.

    WARNING: Messages are lost on restart.

    ``fail_publish`` makes the next publishes fail, to exercise the
    submission rollback path.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._in_flight: dict[str, Delivery] = {}
        self._dead: list[DeadLetter] = []
        self.published: list[BrokerMessage] = []
        self.acked: list[BrokerMessage] = []
        self.fail_publish = False
        self._closed = False
        log.warning("MemoryBroker initialized - MESSAGES ARE VOLATILE")

    @property
    def depth(self) -> int:
        """Messages waiting in the main queue."""
        return self._queue.qsize()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def publish(self, order_id: str) -> BrokerMessage:
        if self._closed or self.fail_publish:
            raise BrokerUnavailableError(f"Publish not confirmed for order {order_id}")
        message = BrokerMessage(order_id=order_id)
        await self._queue.put(message.to_wire())
        self.published.append(message)
        log.debug("Message published", order_id=order_id, queue=MAIN_QUEUE)
        return message

    async def receive(self, timeout: float = 1.0) -> Delivery | None:
        try:
            raw = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        try:
            message = BrokerMessage.from_wire(raw)
        except PoisonMessageError as exc:
            self._dead.append(DeadLetter(original_message=raw, processing_error=exc.message))
            log.error("Poison message dead-lettered", error=exc.message)
            return None
        delivery = Delivery(self, message, raw)
        self._in_flight[message.message_id] = delivery
        return delivery

    async def _ack(self, delivery: Delivery) -> None:
        self._in_flight.pop(delivery.message.message_id, None)
        self.acked.append(delivery.message)

    async def _requeue(self, delivery: Delivery) -> None:
        self._in_flight.pop(delivery.message.message_id, None)
        await self._queue.put(delivery.message.redelivered().to_wire())

    async def _dead_letter(self, delivery: Delivery, reason: str) -> None:
        self._in_flight.pop(delivery.message.message_id, None)
        self._dead.append(
            DeadLetter(
                original_message=delivery.raw,
                order_id=delivery.order_id,
                processing_error=reason,
                redelivery_count=delivery.redelivery_count,
            )
        )
        log.warning(
            "Message dead-lettered",
            order_id=delivery.order_id,
            reason=reason,
            redelivery_count=delivery.redelivery_count,
        )

    async def put_raw(self, raw: str) -> None:
        """Inject a raw wire payload (tests for poison handling)."""
        await self._queue.put(raw)

    async def recover(self) -> int:
        """Return unsettled deliveries to the queue as redeliveries."""
        pending = list(self._in_flight.values())
        self._in_flight.clear()
        for delivery in pending:
            delivery.settled = True
            delivery.outcome = "recovered"
            await self._queue.put(delivery.message.redelivered().to_wire())
        return len(pending)

    async def dead_letters(self, limit: int = 100) -> list[DeadLetter]:
        return list(reversed(self._dead))[:limit]

    async def health_check(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        await self.recover()
        self._closed = True


# ==============================================================================
# Redis Broker
# ==============================================================================
class RedisBroker(_ConsumeMixin):
    """Reliable queue on Redis lists.

    ``receive`` atomically moves a payload from the main list to an
    in-flight list (BLMOVE); settlement removes it from the in-flight list
    and, for requeue/DLQ, pushes the new payload in the same MULTI/EXEC.

    Attributes:
        redis_url: Redis connection URL.
        client: ``redis.asyncio`` client.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        operation_timeout: float = DEFAULT_BROKER_TIMEOUT,
        main_queue: str = MAIN_QUEUE,
        dead_letter_queue: str = DEAD_LETTER_QUEUE,
        in_flight_queue: str = IN_FLIGHT_QUEUE,
        client: Any | None = None,
    ) -> None:
        import redis.asyncio as redis_async

        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.main_queue = main_queue
        self.dead_letter_queue = dead_letter_queue
        self.in_flight_queue = in_flight_queue
        self._redis_error: type[Exception] = redis_async.RedisError
        self.client = client or redis_async.from_url(redis_url, decode_responses=True)
        log.info("Redis broker configured", url=redis_url, queue=main_queue)

    async def _run(self, operation: str, awaitable: Any, *, publish: bool = False) -> Any:
        """Await a client call under the operation deadline, translating errors."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except asyncio.TimeoutError as exc:
            if publish:
                raise BrokerUnavailableError(f"Broker {operation} not confirmed in time") from exc
            raise BrokerTimeoutError(f"Broker {operation} timed out") from exc
        except self._redis_error as exc:
            raise BrokerUnavailableError(f"Broker {operation} failed: {exc}") from exc

    async def publish(self, order_id: str) -> BrokerMessage:
        message = BrokerMessage(order_id=order_id, routing_key=self.main_queue)
        length = await self._run(
            "publish", self.client.lpush(self.main_queue, message.to_wire()), publish=True
        )
        if not length:
            raise BrokerUnavailableError(f"Publish not confirmed for order {order_id}")
        log.debug("Message published", order_id=order_id, queue=self.main_queue)
        return message

    async def receive(self, timeout: float = 1.0) -> Delivery | None:
        try:
            raw = await self.client.blmove(
                self.main_queue, self.in_flight_queue, timeout, "RIGHT", "LEFT"
            )
        except self._redis_error as exc:
            raise BrokerUnavailableError(f"Broker receive failed: {exc}") from exc
        if raw is None:
            return None
        try:
            message = BrokerMessage.from_wire(raw)
        except PoisonMessageError as exc:
            letter = DeadLetter(original_message=raw, processing_error=exc.message)
            await self._settle("dead_letter", raw, self.dead_letter_queue, letter.model_dump_json())
            log.error("Poison message dead-lettered", error=exc.message)
            return None
        return Delivery(self, message, raw)

    async def _settle(
        self,
        operation: str,
        raw: str,
        target: str | None = None,
        payload: str | None = None,
    ) -> None:
        pipe = self.client.pipeline(transaction=True)
        pipe.lrem(self.in_flight_queue, 1, raw)
        if target is not None and payload is not None:
            pipe.lpush(target, payload)
        await self._run(operation, pipe.execute())

    async def _ack(self, delivery: Delivery) -> None:
        await self._settle("ack", delivery.raw)

    async def _requeue(self, delivery: Delivery) -> None:
        await self._settle(
            "requeue", delivery.raw, self.main_queue, delivery.message.redelivered().to_wire()
        )

    async def _dead_letter(self, delivery: Delivery, reason: str) -> None:
        letter = DeadLetter(
            original_message=delivery.raw,
            order_id=delivery.order_id,
            processing_error=reason,
            redelivery_count=delivery.redelivery_count,
        )
        await self._settle("dead_letter", delivery.raw, self.dead_letter_queue, letter.model_dump_json())
        log.warning(
            "Message dead-lettered",
            order_id=delivery.order_id,
            reason=reason,
            redelivery_count=delivery.redelivery_count,
        )

    async def recover(self) -> int:
        """Move every in-flight payload back to the main queue.

        Only safe while no consumer of this queue is running (startup).
        Payloads are moved verbatim, so their redelivery_count is unchanged.
        """
        moved = 0
        while True:
            raw = await self._run(
                "recover",
                self.client.lmove(self.in_flight_queue, self.main_queue, "RIGHT", "RIGHT"),
            )
            if raw is None:
                break
            moved += 1
        if moved:
            log.warning("Recovered in-flight messages", count=moved)
        return moved

    async def dead_letters(self, limit: int = 100) -> list[DeadLetter]:
        raws = await self._run("dlq_read", self.client.lrange(self.dead_letter_queue, 0, limit - 1))
        letters: list[DeadLetter] = []
        for raw in raws:
            try:
                letters.append(DeadLetter.model_validate_json(raw))
            except ValidationError:
                letters.append(
                    DeadLetter(original_message=raw, processing_error=ErrorKind.POISON_MESSAGE.value)
                )
        return letters

    async def health_check(self) -> bool:
        try:
            return bool(await asyncio.wait_for(self.client.ping(), timeout=self.operation_timeout))
        except (asyncio.TimeoutError, self._redis_error):
            return False

    async def close(self) -> None:
        await self.client.aclose()
