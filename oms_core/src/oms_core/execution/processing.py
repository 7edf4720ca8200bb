"""Processing service (PS): turns a PROCESSING order into an execution.

The service is pure with respect to the order repository: it returns an
``ExecutionReport`` or raises a typed ``OMSError``; the worker owns every
status transition.

Implementations:
- ``SimulatedProcessingService``: executes at the limit price or at the
  market price observed during acceptance
- ``MarketProcessingService``: re-reads market data and applies trigger
  rules and a final price-movement risk check
"""

from __future__ import annotations

import asyncio
import random
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Final, Protocol, runtime_checkable

import structlog
from pydantic import Field

from oms_core.common.errors import (
    MarketDataTimeoutError,
    MarketDataUnavailableError,
    ProcessingFailedError,
)
from oms_core.common.types import DomainModel, utc_now
from oms_core.domain.order import Order, OrderSide, OrderType

if TYPE_CHECKING:
    from oms_core.execution.market_data import MarketDataClient

log = structlog.get_logger()

DEFAULT_MAX_PRICE_MOVE: Final[Decimal] = Decimal("0.05")


class ExecutionReport(DomainModel):
    """Immutable result of a successful execution."""

    order_id: str
    execution_price: Decimal = Field(gt=0)
    executed_at: datetime = Field(default_factory=utc_now)
    venue_order_id: str | None = None


# ==============================================================================
# Processing Service Protocol
# ==============================================================================
@runtime_checkable
class ProcessingService(Protocol):
    """Executes orders; never writes to the repository."""

    async def execute(self, order: Order) -> ExecutionReport:
        """Execute a PROCESSING order.

        Raises:
            OMSError: Retryable or terminal failure.
        """
        ...


# ==============================================================================
# Simulated Executor
# ==============================================================================
class SimulatedProcessingService:
    """Executor that fills immediately at a deterministic price.

    MARKET orders fill at ``market_price_at_submission``; priced orders
    fill at their own price.
    """

    def __init__(self, latency_ms: float = 0.0, failure_rate: float = 0.0) -> None:
        """Initialize simulated executor.

        Args:
            latency_ms: Simulated venue latency.
            failure_rate: Probability of a terminal failure (0.0-1.0).
        """
        self.latency_ms = latency_ms
        self.failure_rate = failure_rate
        self._executions = 0

    async def execute(self, order: Order) -> ExecutionReport:
        if self.latency_ms:
            await asyncio.sleep(self.latency_ms / 1000.0)

        if self.failure_rate and random.random() < self.failure_rate:
            log.warning("Simulated execution failed", order_id=order.order_id)
            raise ProcessingFailedError("Simulated venue rejection")

        price = order.price if order.price is not None else order.market_price_at_submission
        if price is None:
            raise ProcessingFailedError("No reference price available for execution")

        self._executions += 1
        log.info(
            "Simulated execution",
            order_id=order.order_id,
            price=str(price),
            quantity=str(order.quantity),
        )
        return ExecutionReport(
            order_id=order.order_id,
            execution_price=price,
            venue_order_id=f"sim-{self._executions}",
        )


# ==============================================================================
# Market-aware Executor
# ==============================================================================
class MarketProcessingService:
    """Executor that prices against live market data.

    Rules:
    - market closed or asset not tradeable -> terminal failure
    - quantity outside the asset's order-size bounds -> terminal failure
    - MARKET fills at the current quote
    - LIMIT / STOP_LIMIT fill at the current quote when it is at or
      better than the limit, else terminal failure
    - STOP_LOSS triggers when the quote crosses the stop price
    - a fill more than ``max_price_move`` away from the submission quote
      is refused
    - provider timeouts and outages are retryable
    """

    def __init__(
        self,
        market_data: MarketDataClient,
        max_price_move: Decimal | float = DEFAULT_MAX_PRICE_MOVE,
    ) -> None:
        self.market_data = market_data
        self.max_price_move = Decimal(str(max_price_move))

    async def execute(self, order: Order) -> ExecutionReport:
        try:
            details = await self.market_data.get_asset_details(order.symbol)
            hours = await self.market_data.get_trading_hours(order.symbol)
        except MarketDataTimeoutError:
            raise
        except MarketDataUnavailableError as exc:
            # Outages are worth another delivery
            raise MarketDataTimeoutError(exc.message) from exc

        if details is None:
            raise ProcessingFailedError(f"Symbol {order.symbol} no longer has market data")
        if not hours.is_open:
            raise ProcessingFailedError(f"Market is closed for symbol {order.symbol}")
        if not details.is_tradeable:
            raise ProcessingFailedError(f"Asset {order.symbol} is not tradeable")
        if order.quantity < details.min_order_size:
            raise ProcessingFailedError(
                f"Order quantity {order.quantity} is below minimum {details.min_order_size}"
            )
        if order.quantity > details.max_order_size:
            raise ProcessingFailedError(
                f"Order quantity {order.quantity} exceeds maximum {details.max_order_size}"
            )

        execution_price = self.execution_price(order, details.last_quote)
        self._check_price_movement(order, execution_price)

        return ExecutionReport(order_id=order.order_id, execution_price=execution_price)

    @staticmethod
    def execution_price(order: Order, current: Decimal) -> Decimal:
        """Price at which ``order`` executes against ``current``.

        Raises:
            ProcessingFailedError: If the order is not marketable.
        """
        if order.order_type == OrderType.MARKET:
            return current

        reference = order.price
        if reference is None:
            raise ProcessingFailedError(f"{order.order_type.value} order has no price")
        buy = order.side == OrderSide.BUY

        if order.order_type == OrderType.STOP_LOSS:
            triggered = current >= reference if buy else current <= reference
            if not triggered:
                raise ProcessingFailedError(
                    f"{order.side.value.lower()} stop order not triggered: "
                    f"current price {current} vs stop price {reference}"
                )
            return current

        # LIMIT and STOP_LIMIT
        marketable = current <= reference if buy else current >= reference
        if not marketable:
            raise ProcessingFailedError(
                f"{order.side.value.lower()} limit order cannot be executed: "
                f"current price {current} vs limit price {reference}"
            )
        return current

    def _check_price_movement(self, order: Order, execution_price: Decimal) -> None:
        submitted = order.market_price_at_submission
        if submitted is None or submitted <= 0:
            return
        change = abs(execution_price - submitted) / submitted
        if change > self.max_price_move:
            raise ProcessingFailedError(
                f"Significant price movement detected: {change * 100:.2f}% change from submission price"
            )
