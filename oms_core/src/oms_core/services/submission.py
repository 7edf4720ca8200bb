"""Submission service (SS): accepts orders and hands them to the broker.

Acceptance pipeline, in order:
    1. Shape validation of the command
    2. Idempotency guard (replay, in-progress, prior failure, claim)
    3. Market-data acceptance (symbol, current price, trading hours)
    4. Price sanity for limit-priced orders
    5. Business rules
    6. Persist the order as PENDING
    7. Publish the processing message
    8. Mark the idempotency record COMPLETED

Failure semantics:
- Steps 3-6 failing mark the idempotency record FAILED and persist nothing
- Step 7 failing deletes the order again (rollback) and marks the record
  FAILED, so no PENDING order exists without a message driving it
- Step 8 failing is logged only: the order is durable and queued
- A cancelled submission (client gone, shutdown) rolls back a saved order
  and releases the claim, so an identical retry is accepted afresh
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Final, TypeVar

import structlog
from pydantic import ValidationError

from oms_core.common.errors import (
    BrokerUnavailableError,
    IdempotencyWriteError,
    InProgressError,
    InvalidSymbolError,
    MarketClosedError,
    MarketDataTimeoutError,
    MarketDataUnavailableError,
    OMSError,
    OrderValidationError,
    PriceOutOfRangeError,
    PriorFailureError,
    StoreUnavailableError,
    TransientStoreError,
)
from oms_core.common.types import DomainModel, utc_now
from oms_core.domain.order import (
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    SubmitOrderCommand,
    describe_order,
)
from oms_core.execution.idempotency import (
    IdempotencyRecord,
    IdempotencyStatus,
    compute_fingerprint,
)

if TYPE_CHECKING:
    from oms_core.execution.broker import OrderBroker
    from oms_core.execution.idempotency import IdempotencyStore
    from oms_core.execution.market_data import MarketDataClient
    from oms_core.execution.repository import OrderRepository

log = structlog.get_logger()

T = TypeVar("T")

DEFAULT_MARKET_DATA_TIMEOUT: Final[float] = 5.0
DEFAULT_PRICE_TOLERANCE: Final[Decimal] = Decimal("0.10")
DEFAULT_LIMIT_BAND: Final[Decimal] = Decimal("0.05")
DEFAULT_MAX_ORDER_VALUE: Final[Decimal] = Decimal("1000000")
DEFAULT_MIN_ORDER_VALUE: Final[Decimal] = Decimal("1")
DEFAULT_MAX_QUANTITY_PER_ORDER: Final[Decimal] = Decimal("10000")
REPLAY_NOTE: Final[str] = "idempotent replay"

# Order types whose price is a limit the market price is checked against
PRICE_CHECKED_TYPES: Final[frozenset[OrderType]] = frozenset(
    {OrderType.LIMIT, OrderType.STOP_LIMIT}
)

BusinessRule = Callable[[Order], None]


class SubmitOrderResult(DomainModel):
    """Outcome of an accepted (or replayed) submission."""

    order_id: str
    status: OrderStatus = OrderStatus.PENDING
    message: str
    estimated_price: Decimal | None = None
    market_price: Decimal | None = None
    submitted_at: datetime
    note: str | None = None

    @property
    def replayed(self) -> bool:
        return self.note == REPLAY_NOTE


# ==============================================================================
# Business Rules
# ==============================================================================
def rule_invariants(order: Order) -> None:
    """Re-run the aggregate invariants on a fully built order."""
    try:
        Order.model_validate(order.model_dump())
    except ValidationError as exc:
        raise OrderValidationError(f"Order validation failed: {exc}") from exc


def rule_executable(order: Order) -> None:
    """The order must be executable from its initial status."""
    if not order.can_execute:
        raise OrderValidationError(
            f"Order cannot be executed in current status: {order.status.value}"
        )


def order_limits_rule(
    max_order_value: Decimal | float = DEFAULT_MAX_ORDER_VALUE,
    min_order_value: Decimal | float = DEFAULT_MIN_ORDER_VALUE,
    max_quantity: Decimal | float = DEFAULT_MAX_QUANTITY_PER_ORDER,
) -> BusinessRule:
    """Build a rule bounding the notional and quantity of a single order.

    The notional is taken at the limit price, or at the market price
    observed on acceptance for market orders.
    """
    max_value = Decimal(str(max_order_value))
    min_value = Decimal(str(min_order_value))
    max_qty = Decimal(str(max_quantity))

    def rule_order_limits(order: Order) -> None:
        value = order.order_value()
        if value is not None:
            if value > max_value:
                raise OrderValidationError(
                    f"Order value {value:.2f} exceeds maximum allowed {max_value:.2f}"
                )
            if 0 < value < min_value:
                raise OrderValidationError(
                    f"Order value {value:.2f} is below minimum required {min_value:.2f}"
                )
        if order.quantity > max_qty:
            raise OrderValidationError(
                f"Order quantity {order.quantity:.2f} exceeds maximum allowed {max_qty:.2f}"
            )

    return rule_order_limits


DEFAULT_BUSINESS_RULES: Final[tuple[BusinessRule, ...]] = (
    rule_invariants,
    rule_executable,
    order_limits_rule(),
)


def check_price_sanity(
    side: OrderSide,
    price: Decimal,
    current_price: Decimal,
    tolerance: Decimal = DEFAULT_PRICE_TOLERANCE,
    limit_band: Decimal = DEFAULT_LIMIT_BAND,
) -> None:
    """Reject limit prices far from the market.

    Raises:
        PriceOutOfRangeError: If the price is outside ``current * (1 ± tolerance)``,
            a buy is above ``current * (1 + limit_band)`` or a sell is below
            ``current * (1 - limit_band)``.
    """
    min_price = current_price * (1 - tolerance)
    max_price = current_price * (1 + tolerance)
    if price < min_price or price > max_price:
        raise PriceOutOfRangeError(
            f"Order price ${price:.2f} is outside acceptable range "
            f"(${min_price:.2f} - ${max_price:.2f}) based on current market price "
            f"${current_price:.2f}"
        )
    if side == OrderSide.BUY and price > current_price * (1 + limit_band):
        raise PriceOutOfRangeError(
            f"Buy limit price ${price:.2f} is significantly above market price ${current_price:.2f}"
        )
    if side == OrderSide.SELL and price < current_price * (1 - limit_band):
        raise PriceOutOfRangeError(
            f"Sell limit price ${price:.2f} is significantly below market price ${current_price:.2f}"
        )


# ==============================================================================
# Submission Service
# ==============================================================================
class SubmissionService:
    """Accepts ``SubmitOrderCommand``s with exactly-once perceived semantics.

    Attributes:
        repository: Order repository.
        idempotency: Guard-record store.
        market_data: Market-data client used for acceptance.
        broker: Work queue the processing message goes to.
        market_data_timeout: Deadline for each market-data call (T_md).
        price_tolerance: Max relative distance of a limit price from market.
        limit_band: Max adverse distance of a limit price from market.
        business_rules: Extra checks run on the built order.
    """

    def __init__(
        self,
        repository: OrderRepository,
        idempotency: IdempotencyStore,
        market_data: MarketDataClient,
        broker: OrderBroker,
        market_data_timeout: float = DEFAULT_MARKET_DATA_TIMEOUT,
        price_tolerance: Decimal | float = DEFAULT_PRICE_TOLERANCE,
        limit_band: Decimal | float = DEFAULT_LIMIT_BAND,
        business_rules: Sequence[BusinessRule] | None = None,
    ) -> None:
        self.repository = repository
        self.idempotency = idempotency
        self.market_data = market_data
        self.broker = broker
        self.market_data_timeout = market_data_timeout
        self.price_tolerance = Decimal(str(price_tolerance))
        self.limit_band = Decimal(str(limit_band))
        self.business_rules: list[BusinessRule] = list(
            DEFAULT_BUSINESS_RULES if business_rules is None else business_rules
        )

    def add_rule(self, rule: BusinessRule) -> None:
        """Register an additional business rule (risk limits, positions, ...)."""
        self.business_rules.append(rule)

    async def submit(self, command: SubmitOrderCommand) -> SubmitOrderResult:
        """Accept an order.

        Returns:
            The accepted order's id and pricing context, or the original
            order id when the submission is an idempotent replay.

        Raises:
            OMSError: Any acceptance failure, synchronously.
        """
        cmd = command.normalized()
        side = OrderSide.parse(cmd.side)
        order_type = OrderType.parse(cmd.order_type)
        quantity = Decimal(cmd.quantity)
        price = Decimal(cmd.price) if cmd.price is not None else None

        fingerprint = compute_fingerprint(
            cmd.user_id, cmd.symbol, order_type, side, quantity, price
        )
        bound = log.bind(user_id=cmd.user_id, symbol=cmd.symbol, fingerprint=fingerprint)

        replay = self._check_idempotency(cmd.user_id, fingerprint)
        if replay is not None:
            bound.info("Idempotent replay", order_id=replay.order_id)
            return replay

        record = self.idempotency.claim(cmd.user_id, fingerprint)
        if record is None:
            raise InProgressError("Order submission is already in progress")

        try:
            current_price, observed_at = await self._fetch_market_context(cmd.symbol)
            if order_type in PRICE_CHECKED_TYPES and price is not None:
                check_price_sanity(
                    side, price, current_price, self.price_tolerance, self.limit_band
                )
            order = self._build_order(
                cmd.user_id, cmd.symbol, side, order_type, quantity, price,
                current_price, observed_at,
            )
            for rule in self.business_rules:
                rule(order)
            self._persist(order)
        except asyncio.CancelledError:
            bound.warning("Order submission cancelled before acceptance")
            self._release_record(record)
            raise
        except Exception as exc:
            reason = exc.message if isinstance(exc, OMSError) else str(exc)
            bound.warning("Order submission rejected", error=reason)
            self._fail_record(record, reason)
            raise

        try:
            await self.broker.publish(order.order_id)
        except asyncio.CancelledError:
            # Publish outcome unknown; a delivered message for a deleted order dead-letters
            bound.warning("Order submission cancelled during publish", order_id=order.order_id)
            self._rollback(order)
            self._release_record(record)
            raise
        except OMSError as exc:
            bound.error(
                "Publish failed, rolling back order", order_id=order.order_id, error=exc.message
            )
            self._rollback(order)
            self._fail_record(record, exc.message)
            raise BrokerUnavailableError(
                f"Failed to enqueue order {order.order_id}: {exc.message}"
            ) from exc

        try:
            self.idempotency.mark_completed(record, order.order_id)
        except IdempotencyWriteError as exc:
            bound.error(
                "Failed to complete idempotency record",
                order_id=order.order_id,
                error=exc.message,
            )

        bound.info("Order submitted", order_id=order.order_id, order_type=order_type.value)
        description = describe_order(order_type, side, quantity, cmd.symbol, price)
        return SubmitOrderResult(
            order_id=order.order_id,
            status=order.status,
            message=f"Order submitted successfully. {description}",
            estimated_price=current_price if order_type == OrderType.MARKET else price,
            market_price=current_price,
            submitted_at=order.created_at,
        )

    # --------------------------------------------------------------------------
    # Idempotency
    # --------------------------------------------------------------------------
    def _check_idempotency(self, user_id: str, fingerprint: str) -> SubmitOrderResult | None:
        try:
            existing = self.idempotency.get(user_id, fingerprint)
        except TransientStoreError as exc:
            raise StoreUnavailableError(f"Idempotency store unavailable: {exc.message}") from exc
        if existing is None:
            return None

        if existing.status == IdempotencyStatus.COMPLETED and existing.order_id:
            return SubmitOrderResult(
                order_id=existing.order_id,
                status=OrderStatus.PENDING,
                message="Order already submitted (idempotent request)",
                submitted_at=existing.created_at,
                note=REPLAY_NOTE,
            )
        if existing.status == IdempotencyStatus.FAILED:
            raise PriorFailureError(existing.error)
        raise InProgressError("Order submission is already in progress")

    def _fail_record(self, record: IdempotencyRecord, error: str) -> None:
        try:
            self.idempotency.mark_failed(record, error)
        except IdempotencyWriteError as exc:
            log.error("Failed to mark idempotency record failed", key=record.key, error=exc.message)

    def _release_record(self, record: IdempotencyRecord) -> None:
        try:
            self.idempotency.release(record)
        except IdempotencyWriteError as exc:
            log.error("Failed to release idempotency record", key=record.key, error=exc.message)

    # --------------------------------------------------------------------------
    # Market Data
    # --------------------------------------------------------------------------
    async def _call_market_data(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.market_data_timeout)
        except asyncio.TimeoutError as exc:
            raise MarketDataUnavailableError(
                f"Market data {operation} timed out after {self.market_data_timeout}s"
            ) from exc
        except (MarketDataTimeoutError, MarketDataUnavailableError) as exc:
            raise MarketDataUnavailableError(
                f"Market data {operation} failed: {exc.message}"
            ) from exc

    async def _fetch_market_context(self, symbol: str) -> tuple[Decimal, datetime]:
        """Validate the symbol and market session; return the quote and when it was seen.

        Raises:
            InvalidSymbolError: Unknown or non-tradeable symbol.
            MarketClosedError: Session closed.
            MarketDataUnavailableError: Any provider failure.
        """
        tradeable = await self._call_market_data(
            "symbol validation", self.market_data.validate_symbol(symbol)
        )
        if not tradeable:
            raise InvalidSymbolError(symbol)
        current_price = await self._call_market_data(
            "price lookup", self.market_data.get_current_price(symbol)
        )
        observed_at = utc_now()
        hours = await self._call_market_data(
            "trading hours lookup", self.market_data.get_trading_hours(symbol)
        )
        if not hours.is_open:
            raise MarketClosedError(symbol)
        return current_price, observed_at

    # --------------------------------------------------------------------------
    # Persistence
    # --------------------------------------------------------------------------
    @staticmethod
    def _build_order(
        user_id: str,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: Decimal,
        price: Decimal | None,
        current_price: Decimal,
        observed_at: datetime,
    ) -> Order:
        try:
            return Order(
                user_id=user_id,
                symbol=symbol,
                side=side,
                order_type=order_type,
                quantity=quantity,
                price=price,
                market_price_at_submission=current_price,
                market_data_timestamp=observed_at,
            )
        except ValidationError as exc:
            raise OrderValidationError(f"Failed to create order: {exc}") from exc

    def _persist(self, order: Order) -> None:
        try:
            self.repository.save(order)
        except TransientStoreError as exc:
            raise StoreUnavailableError(f"Failed to save order: {exc.message}") from exc

    def _rollback(self, order: Order) -> None:
        try:
            self.repository.delete(order.order_id)
        except OMSError as exc:
            # Leaves a PENDING order without a message; reconciliation must pick it up
            log.critical("Order rollback failed", order_id=order.order_id, error=exc.message)
