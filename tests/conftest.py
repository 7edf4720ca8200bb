"""Shared fixtures: in-memory backends wired the way the service wires them."""

from __future__ import annotations

from collections.abc import Callable
from decimal import Decimal
from typing import Any

import pytest

from oms_core.app import Application
from oms_core.config import PipelineConfig, WorkerConfig
from oms_core.domain.order import Order, OrderSide, OrderType
from oms_core.execution import (
    MemoryBroker,
    MemoryStore,
    OrderRepository,
    SimulatedProcessingService,
    StaticMarketDataClient,
)

QUOTES: dict[str, str] = {
    "AAPL": "150.00",
    "MSFT": "410.00",
    "BTC-USD": "65000.00",
}


@pytest.fixture
def store() -> MemoryStore:
    """Fresh in-memory store."""
    return MemoryStore()


@pytest.fixture
def repository(store: MemoryStore) -> OrderRepository:
    """Order repository on the in-memory store."""
    return OrderRepository(store)


@pytest.fixture
def broker() -> MemoryBroker:
    """Fresh in-memory broker."""
    return MemoryBroker()


@pytest.fixture
def market_data() -> StaticMarketDataClient:
    """Static quotes with an open market."""
    return StaticMarketDataClient(quotes=QUOTES, categories={"BTC-USD": "CRYPTO"})


@pytest.fixture
def application(
    store: MemoryStore,
    broker: MemoryBroker,
    market_data: StaticMarketDataClient,
) -> Application:
    """Container with fast worker settings."""
    config = PipelineConfig(
        worker=WorkerConfig(count=2, poll_interval=0.01, processing_timeout=1.0, shutdown_grace=1.0)
    )
    return Application(
        config=config,
        store=store,
        broker=broker,
        market_data=market_data,
        processing=SimulatedProcessingService(),
    )


@pytest.fixture
def make_order() -> Callable[..., Order]:
    """Factory for valid orders (LIMIT BUY 10 AAPL @ 150.50 by default)."""

    def _make(**overrides: Any) -> Order:
        fields: dict[str, Any] = {
            "user_id": "u1",
            "symbol": "AAPL",
            "side": OrderSide.BUY,
            "order_type": OrderType.LIMIT,
            "quantity": Decimal("10"),
            "price": Decimal("150.50"),
            "market_price_at_submission": Decimal("150.00"),
        }
        fields.update(overrides)
        return Order(**fields)

    return _make
