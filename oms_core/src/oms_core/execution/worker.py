"""Worker pool (WP): background execution of accepted orders.

A fixed number of asyncio consumers pull deliveries from the broker and
drive each order through ``PENDING -> PROCESSING -> EXECUTED | FAILED``.

Per-message protocol:
    1. Load the order; missing -> DLQ (ORDER_NOT_FOUND)
    2. Not PENDING -> ack (already progressed, duplicate delivery)
    3. CAS PENDING -> PROCESSING; lost -> ack
    4. Run the processing service under the per-message deadline
    5. Success: cooperative cancel check, CAS PROCESSING -> EXECUTED, ack
    6. Retryable failure under budget: CAS PROCESSING -> PENDING, requeue
       Budget exhausted: CAS PROCESSING -> FAILED, DLQ
    7. Terminal failure: CAS PROCESSING -> FAILED, ack

Design Decisions:
- Compare-and-set is the only coordination with cancellation
- A lost CAS after step 3 means the order was cancelled: ack, write nothing
- Every delivery is settled exactly once, even on unexpected errors
- Store calls run via asyncio.to_thread so consumers do not serialize on store I/O
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Final

import structlog

from oms_core.common.errors import ErrorKind, OMSError
from oms_core.common.types import utc_now
from oms_core.domain.order import OrderStatus

if TYPE_CHECKING:
    from oms_core.execution.broker import Delivery, OrderBroker
    from oms_core.execution.processing import ProcessingService
    from oms_core.execution.repository import OrderRepository

log = structlog.get_logger()

DEFAULT_WORKER_COUNT: Final[int] = 8
DEFAULT_MAX_REDELIVERIES: Final[int] = 5
DEFAULT_PROCESSING_TIMEOUT: Final[float] = 30.0
DEFAULT_POLL_INTERVAL: Final[float] = 1.0
DEFAULT_SHUTDOWN_GRACE: Final[float] = 10.0
ORDER_NOT_FOUND: Final[str] = "ORDER_NOT_FOUND"

# Health thresholds
DEGRADED_ERROR_RATE: Final[float] = 0.10
MIN_SAMPLES_FOR_HEALTH: Final[int] = 10


# ==============================================================================
# Enums
# ==============================================================================
class MessageOutcome(str, Enum):
    """How a delivery was settled."""

    EXECUTED = "EXECUTED"
    FAILED = "FAILED"  # Terminal failure, acked
    REQUEUED = "REQUEUED"  # Retryable failure, nacked with requeue
    DEAD_LETTERED = "DEAD_LETTERED"  # Routed to the DLQ
    CANCELLED = "CANCELLED"  # Cancelled mid-flight, acked without writes
    SKIPPED = "SKIPPED"  # Already progressed, acked


class HealthStatus(str, Enum):
    """Worker pool health."""

    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    UNHEALTHY = "UNHEALTHY"
    STOPPED = "STOPPED"


# ==============================================================================
# Metrics
# ==============================================================================
@dataclass
class WorkerMetrics:
    """Counters for the pool (shared by all workers of one event loop)."""

    processed: int = 0
    executed: int = 0
    failed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    cancelled: int = 0
    skipped: int = 0
    total_processing_seconds: float = 0.0
    last_activity: datetime | None = field(default=None)

    def record(self, outcome: MessageOutcome, elapsed: float) -> None:
        """Account for one settled delivery."""
        self.processed += 1
        self.total_processing_seconds += elapsed
        self.last_activity = utc_now()
        if outcome == MessageOutcome.EXECUTED:
            self.executed += 1
        elif outcome == MessageOutcome.FAILED:
            self.failed += 1
        elif outcome == MessageOutcome.REQUEUED:
            self.retried += 1
        elif outcome == MessageOutcome.DEAD_LETTERED:
            self.dead_lettered += 1
        elif outcome == MessageOutcome.CANCELLED:
            self.cancelled += 1
        else:
            self.skipped += 1

    @property
    def average_processing_seconds(self) -> float:
        if self.processed == 0:
            return 0.0
        return self.total_processing_seconds / self.processed

    @property
    def error_rate(self) -> float:
        if self.processed == 0:
            return 0.0
        return (self.failed + self.dead_lettered) / self.processed

    def snapshot(self) -> dict[str, object]:
        """Plain dict for health endpoints and logs."""
        return {
            "processed": self.processed,
            "executed": self.executed,
            "failed": self.failed,
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
            "cancelled": self.cancelled,
            "skipped": self.skipped,
            "average_processing_seconds": round(self.average_processing_seconds, 6),
            "error_rate": round(self.error_rate, 4),
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
        }


# ==============================================================================
# Worker Pool
# ==============================================================================
class WorkerPool:
    """Pool of cooperating broker consumers.

    Attributes:
        repository: Order repository (sole writer of status).
        broker: Source of deliveries.
        processing: Execution service invoked per order.
        worker_count: Number of concurrent consumers (W).
        max_redeliveries: Retry budget per message (R_max).
        processing_timeout: Deadline for one processing call (T_proc).
    """

    def __init__(
        self,
        repository: OrderRepository,
        broker: OrderBroker,
        processing: ProcessingService,
        worker_count: int = DEFAULT_WORKER_COUNT,
        max_redeliveries: int = DEFAULT_MAX_REDELIVERIES,
        processing_timeout: float = DEFAULT_PROCESSING_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE,
    ) -> None:
        if worker_count < 1:
            msg = f"worker_count must be >= 1, got {worker_count}"
            raise ValueError(msg)
        if max_redeliveries < 0:
            msg = f"max_redeliveries must be >= 0, got {max_redeliveries}"
            raise ValueError(msg)

        self.repository = repository
        self.broker = broker
        self.processing = processing
        self.worker_count = worker_count
        self.max_redeliveries = max_redeliveries
        self.processing_timeout = max(0.001, processing_timeout)
        self.poll_interval = poll_interval
        self.shutdown_grace = shutdown_grace
        self.metrics = WorkerMetrics()
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()
        self._running = False

    # --------------------------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Spawn ``worker_count`` consumer tasks."""
        if self._running:
            return
        self._stopping = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._worker_loop(f"worker-{i}"), name=f"oms-worker-{i}")
            for i in range(self.worker_count)
        ]
        self._running = True
        log.info(
            "Worker pool started",
            workers=self.worker_count,
            max_redeliveries=self.max_redeliveries,
            processing_timeout=self.processing_timeout,
        )

    async def stop(self) -> None:
        """Signal workers, wait for in-flight messages, then cancel stragglers."""
        if not self._running:
            return
        self._stopping.set()
        done, pending = await asyncio.wait(self._tasks, timeout=self.shutdown_grace)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            log.warning("Workers cancelled after grace period", count=len(pending))
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                log.error("Worker exited with error", error=str(task.exception()))
        self._tasks = []
        self._running = False
        log.info("Worker pool stopped", metrics=self.metrics.snapshot())

    def health(self) -> HealthStatus:
        """Current pool health."""
        if not self._running:
            return HealthStatus.STOPPED
        alive = [t for t in self._tasks if not t.done()]
        if not alive:
            return HealthStatus.UNHEALTHY
        if (
            self.metrics.processed >= MIN_SAMPLES_FOR_HEALTH
            and self.metrics.error_rate > DEGRADED_ERROR_RATE
        ):
            return HealthStatus.DEGRADED
        if len(alive) < self.worker_count:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    async def _worker_loop(self, worker_id: str) -> None:
        structlog.contextvars.bind_contextvars(worker_id=worker_id)
        log.debug("Worker started")
        while not self._stopping.is_set():
            try:
                delivery = await self.broker.receive(timeout=self.poll_interval)
            except OMSError as exc:
                log.error("Broker receive failed", error=exc.message, kind=exc.kind.value)
                await asyncio.sleep(self.poll_interval)
                continue
            if delivery is None:
                continue
            await self.process(delivery)
        log.debug("Worker stopped")

    # --------------------------------------------------------------------------
    # Message Handling
    # --------------------------------------------------------------------------
    async def process(self, delivery: Delivery) -> MessageOutcome:
        """Handle one delivery and record metrics; never raises."""
        started = time.monotonic()
        try:
            outcome = await self.handle(delivery)
        except Exception as exc:
            log.error(
                "Unexpected error handling message",
                order_id=delivery.order_id,
                error=str(exc),
                exc_info=True,
            )
            try:
                outcome = await self._settle_after_crash(delivery, exc)
            except OMSError as settle_exc:
                log.error(
                    "Failed to settle delivery",
                    order_id=delivery.order_id,
                    error=settle_exc.message,
                )
                outcome = MessageOutcome.SKIPPED
        self.metrics.record(outcome, time.monotonic() - started)
        return outcome

    async def handle(self, delivery: Delivery) -> MessageOutcome:
        """Run the per-message protocol for one delivery.

        Raises:
            OMSError: Store or broker failures outside the processing call.
        """
        order_id = delivery.order_id
        bound = log.bind(order_id=order_id, redelivery_count=delivery.redelivery_count)

        order = await asyncio.to_thread(self.repository.find_by_id, order_id)
        if order is None:
            bound.warning("Order not found for message")
            await delivery.nack_dlq(ORDER_NOT_FOUND)
            return MessageOutcome.DEAD_LETTERED

        if order.status != OrderStatus.PENDING:
            bound.info("Order already progressed, acking", status=order.status.value)
            await delivery.ack()
            return MessageOutcome.SKIPPED

        claimed = await asyncio.to_thread(
            self.repository.update_status,
            order_id,
            OrderStatus.PENDING,
            OrderStatus.PROCESSING,
        )
        if claimed is None:
            bound.info("Lost claim on order, acking")
            await delivery.ack()
            return MessageOutcome.SKIPPED

        retryable = False
        try:
            report = await asyncio.wait_for(
                self.processing.execute(claimed), timeout=self.processing_timeout
            )
        except asyncio.TimeoutError:
            retryable = True
            reason = f"PROCESSING_TIMEOUT: exceeded {self.processing_timeout}s"
        except OMSError as exc:
            retryable = exc.retryable
            reason = f"{exc.kind.value}: {exc.message}"
        except Exception as exc:
            bound.error("Processing service crashed", error=str(exc), exc_info=True)
            reason = f"{ErrorKind.PROCESSING_FAILED.value}: {exc}"
        else:
            return await self._complete(delivery, report.execution_price, report.executed_at)

        if retryable:
            return await self._retry_or_dead_letter(delivery, reason)

        failed = await asyncio.to_thread(
            self.repository.update_status,
            order_id,
            OrderStatus.PROCESSING,
            OrderStatus.FAILED,
            failure_reason=reason,
        )
        await delivery.ack()
        if failed is None:
            bound.info("Order cancelled during failed processing")
            return MessageOutcome.CANCELLED
        bound.warning("Order failed", reason=reason)
        return MessageOutcome.FAILED

    async def _complete(
        self,
        delivery: Delivery,
        execution_price: Decimal,
        executed_at: datetime,
    ) -> MessageOutcome:
        order_id = delivery.order_id

        # Cooperative cancellation: discard the result if cancelled meanwhile
        current = await asyncio.to_thread(self.repository.find_by_id, order_id)
        if current is not None and current.status == OrderStatus.CANCELLED:
            log.info("Order cancelled during processing, discarding execution", order_id=order_id)
            await delivery.ack()
            return MessageOutcome.CANCELLED

        executed = await asyncio.to_thread(
            self.repository.update_execution, order_id, execution_price, executed_at
        )
        await delivery.ack()
        if executed is None:
            log.info("Execution lost to cancellation", order_id=order_id)
            return MessageOutcome.CANCELLED

        log.info(
            "Order executed",
            order_id=order_id,
            execution_price=str(executed.execution_price),
        )
        return MessageOutcome.EXECUTED

    async def _retry_or_dead_letter(self, delivery: Delivery, reason: str) -> MessageOutcome:
        order_id = delivery.order_id
        if delivery.redelivery_count < self.max_redeliveries:
            reverted = await asyncio.to_thread(
                self.repository.update_status,
                order_id,
                OrderStatus.PROCESSING,
                OrderStatus.PENDING,
            )
            if reverted is None:
                await delivery.ack()
                return MessageOutcome.CANCELLED
            await delivery.nack_requeue()
            log.warning(
                "Retryable failure, message requeued",
                order_id=order_id,
                reason=reason,
                redelivery_count=delivery.redelivery_count,
            )
            return MessageOutcome.REQUEUED

        failed = await asyncio.to_thread(
            self.repository.update_status,
            order_id,
            OrderStatus.PROCESSING,
            OrderStatus.FAILED,
            failure_reason=f"Retries exhausted after {delivery.redelivery_count} redeliveries: {reason}",
        )
        if failed is None:
            await delivery.ack()
            return MessageOutcome.CANCELLED
        await delivery.nack_dlq(reason)
        return MessageOutcome.DEAD_LETTERED

    async def _settle_after_crash(self, delivery: Delivery, exc: Exception) -> MessageOutcome:
        """Settle a delivery whose handling raised outside the processing call."""
        if delivery.settled:
            return MessageOutcome.SKIPPED

        reason = exc.message if isinstance(exc, OMSError) else str(exc)
        requeue = (
            isinstance(exc, OMSError)
            and exc.retryable
            and delivery.redelivery_count < self.max_redeliveries
        )
        # A claimed order goes back to PENDING for a redelivery, else to FAILED
        target = OrderStatus.PENDING if requeue else OrderStatus.FAILED
        try:
            await asyncio.to_thread(
                self.repository.update_status,
                delivery.order_id,
                OrderStatus.PROCESSING,
                target,
                failure_reason=None if requeue else reason,
            )
        except OMSError as revert_exc:
            log.error(
                "Order may be stranded in PROCESSING",
                order_id=delivery.order_id,
                error=revert_exc.message,
            )

        if requeue:
            await delivery.nack_requeue()
            return MessageOutcome.REQUEUED
        await delivery.nack_dlq(reason)
        return MessageOutcome.DEAD_LETTERED
