"""Application container.

One object built at startup that holds every collaborator of the
pipeline behind its protocol type. Edge handlers and the entrypoint only
ever talk to this container.

Usage:
    app = Application(
        config=PipelineConfig(),
        store=MemoryStore(),
        broker=MemoryBroker(),
        market_data=StaticMarketDataClient({"AAPL": 150}),
        processing=SimulatedProcessingService(),
    )
    result = await app.submission.submit(command)
"""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
from hydra.utils import instantiate

from oms_core.config import PipelineConfig
from oms_core.execution.idempotency import IdempotencyStore
from oms_core.execution.repository import OrderRepository
from oms_core.execution.worker import HealthStatus, WorkerPool
from oms_core.services.cancellation import CancellationService
from oms_core.services.query import QueryService
from oms_core.services.submission import (
    SubmissionService,
    order_limits_rule,
    rule_executable,
    rule_invariants,
)

if TYPE_CHECKING:
    from omegaconf import DictConfig

    from oms_core.execution.broker import OrderBroker
    from oms_core.execution.market_data import MarketDataClient
    from oms_core.execution.processing import ProcessingService
    from oms_core.execution.store import StateStore

log = structlog.get_logger()


@dataclass
class Application:
    """Wires the pipeline services on top of the injected backends."""

    config: PipelineConfig
    store: StateStore
    broker: OrderBroker
    market_data: MarketDataClient
    processing: ProcessingService
    repository: OrderRepository = field(init=False)
    idempotency: IdempotencyStore = field(init=False)
    submission: SubmissionService = field(init=False)
    cancellation: CancellationService = field(init=False)
    query: QueryService = field(init=False)
    workers: WorkerPool = field(init=False)

    def __post_init__(self) -> None:
        cfg = self.config
        self.repository = OrderRepository(self.store)
        self.idempotency = IdempotencyStore(self.store, ttl=cfg.idempotency.ttl)
        self.submission = SubmissionService(
            self.repository,
            self.idempotency,
            self.market_data,
            self.broker,
            market_data_timeout=cfg.submission.market_data_timeout,
            price_tolerance=cfg.submission.price_tolerance,
            limit_band=cfg.submission.limit_band,
            business_rules=(
                rule_invariants,
                rule_executable,
                order_limits_rule(
                    max_order_value=cfg.submission.max_order_value,
                    min_order_value=cfg.submission.min_order_value,
                    max_quantity=cfg.submission.max_quantity_per_order,
                ),
            ),
        )
        self.cancellation = CancellationService(self.repository)
        self.query = QueryService(
            self.repository,
            self.market_data,
            default_limit=cfg.api.history_default_limit,
            max_limit=cfg.api.history_max_limit,
        )
        self.workers = WorkerPool(
            self.repository,
            self.broker,
            self.processing,
            worker_count=cfg.worker.count,
            max_redeliveries=cfg.worker.max_redeliveries,
            processing_timeout=cfg.worker.processing_timeout,
            poll_interval=cfg.worker.poll_interval,
            shutdown_grace=cfg.worker.shutdown_grace,
        )

    async def start(self) -> None:
        """Return stranded in-flight messages to the queue, then start workers."""
        if not self.config.worker.enabled:
            log.info("Worker pool disabled by configuration")
            return
        recover = getattr(self.broker, "recover", None)
        if self.config.worker.recover_on_start and recover is not None:
            await recover()
        await self.workers.start()

    async def close(self) -> None:
        """Stop workers and release upstream connections."""
        await self.workers.stop()
        await self.broker.close()
        await self.market_data.close()
        log.info("Application closed")

    async def health(self) -> dict[str, Any]:
        """Liveness of the store, the broker and the worker pool."""
        store_ok = self.store.health_check()
        broker_ok = await self.broker.health_check()
        workers = self.workers.health()
        workers_ok = workers in (HealthStatus.HEALTHY, HealthStatus.STOPPED)
        return {
            "status": "healthy" if store_ok and broker_ok and workers_ok else "degraded",
            "store": store_ok,
            "broker": broker_ok,
            "workers": workers.value,
            "metrics": self.workers.metrics.snapshot(),
        }


def build_application(cfg: DictConfig) -> Application:
    """Build the container from a Hydra config.

    ``store``, ``broker``, ``market_data`` and ``processing`` are
    ``_target_`` nodes. A processing node declared ``_partial_`` receives
    the market-data client.
    """
    config = PipelineConfig.from_cfg(cfg)
    store: StateStore = instantiate(cfg.store)
    broker: OrderBroker = instantiate(cfg.broker)
    market_data: MarketDataClient = instantiate(cfg.market_data)

    processing = instantiate(cfg.processing)
    if isinstance(processing, functools.partial):
        processing = processing(market_data=market_data)

    log.info(
        "Application built",
        env=config.env,
        store=type(store).__name__,
        broker=type(broker).__name__,
        market_data=type(market_data).__name__,
        processing=type(processing).__name__,
    )
    return Application(
        config=config,
        store=store,
        broker=broker,
        market_data=market_data,
        processing=processing,
    )
