"""Execution layer of the order pipeline.

This package provides the infrastructure behind the services:
- State Store: key/value persistence with TTL and compare-and-set
- Order Repository: durable orders with atomic status transitions
- Idempotency Store: submission guard records
- Order Broker: at-least-once work queue with a dead-letter queue
- Worker Pool: background execution with retries
- Market Data: provider clients used for acceptance and execution

Architecture:
    SubmissionService -> OrderRepository.save -> OrderBroker.publish
    OrderBroker -> WorkerPool -> ProcessingService -> OrderRepository CAS

Example:
    ```python
    from oms_core.execution import (
        MemoryBroker,
        MemoryStore,
        OrderRepository,
        SimulatedProcessingService,
        WorkerPool,
    )

    repository = OrderRepository(MemoryStore())
    broker = MemoryBroker()
    pool = WorkerPool(repository, broker, SimulatedProcessingService(), worker_count=2)

    await pool.start()
    ...
    await pool.stop()
    ```
"""

from oms_core.execution.broker import (
    DEAD_LETTER_QUEUE,
    MAIN_QUEUE,
    BrokerMessage,
    DeadLetter,
    Delivery,
    MemoryBroker,
    OrderBroker,
    RedisBroker,
)
from oms_core.execution.circuit import CircuitBreaker, CircuitOpenError, CircuitState
from oms_core.execution.idempotency import (
    IdempotencyRecord,
    IdempotencyStatus,
    IdempotencyStore,
    compute_fingerprint,
    idempotency_key,
)
from oms_core.execution.market_data import (
    AssetCategory,
    AssetDetails,
    HttpMarketDataClient,
    MarketDataClient,
    StaticMarketDataClient,
    TradingHours,
)
from oms_core.execution.processing import (
    ExecutionReport,
    MarketProcessingService,
    ProcessingService,
    SimulatedProcessingService,
)
from oms_core.execution.repository import (
    HistoryFilter,
    OrderRepository,
    SortField,
    SortOrder,
)
from oms_core.execution.store import (
    MemoryStore,
    RedisStore,
    StateStore,
    StoreConnectionError,
    TransactionError,
    create_store,
)
from oms_core.execution.worker import (
    HealthStatus,
    MessageOutcome,
    WorkerMetrics,
    WorkerPool,
)

__all__ = [
    # Store
    "StateStore",
    "RedisStore",
    "MemoryStore",
    "create_store",
    "StoreConnectionError",
    "TransactionError",
    # Repository
    "OrderRepository",
    "HistoryFilter",
    "SortField",
    "SortOrder",
    # Idempotency
    "IdempotencyStore",
    "IdempotencyRecord",
    "IdempotencyStatus",
    "compute_fingerprint",
    "idempotency_key",
    # Broker
    "MAIN_QUEUE",
    "DEAD_LETTER_QUEUE",
    "BrokerMessage",
    "DeadLetter",
    "Delivery",
    "OrderBroker",
    "MemoryBroker",
    "RedisBroker",
    # Market Data
    "MarketDataClient",
    "StaticMarketDataClient",
    "HttpMarketDataClient",
    "AssetCategory",
    "AssetDetails",
    "TradingHours",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    # Processing
    "ProcessingService",
    "SimulatedProcessingService",
    "MarketProcessingService",
    "ExecutionReport",
    # Workers
    "WorkerPool",
    "WorkerMetrics",
    "MessageOutcome",
    "HealthStatus",
]
