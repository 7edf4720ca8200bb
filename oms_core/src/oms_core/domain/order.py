"""Order aggregate and lifecycle state machine.

The ``Order`` is the central aggregate of the pipeline. It is created
``PENDING`` by the submission service and afterwards only changes status
through the transition table below. Every status change produces a new
``Order`` value; persistence applies it with compare-and-set.

State Transitions:
    PENDING    -> PROCESSING | CANCELLED | REJECTED
    PROCESSING -> EXECUTED | FAILED | PENDING (requeue) | CANCELLED
    EXECUTED, CANCELLED, FAILED, REJECTED are terminal.

Design Decisions:
- Immutable model (frozen): transitions return a re-validated copy
- Invariants enforced by validators at every construction
- Enums are closed sets with explicit ``parse``; raw strings never leak
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Final

from pydantic import BaseModel, Field, field_validator, model_validator

from oms_core.common.errors import IllegalTransitionError, OrderValidationError
from oms_core.common.types import to_decimal, truncate_to_millis, utc_now

MAX_SYMBOL_LENGTH: Final[int] = 20
# Upper bound on quantities and prices; keeps 8dp/4dp rounding inside decimal precision
MAX_NUMERIC_INPUT: Final[Decimal] = Decimal("1e12")
MAX_CANCEL_REASON_LENGTH: Final[int] = 256


# ==============================================================================
# Enums
# ==============================================================================
class ParsableEnum(str, Enum):
    """String enum with strict, case-insensitive parsing."""

    @classmethod
    def parse(cls, value: Any) -> Any:
        """Parse raw input into a member.

        Raises:
            OrderValidationError: If the value is not a member.
        """
        if isinstance(value, cls):
            return value
        candidate = str(value).strip().upper() if value is not None else ""
        try:
            return cls(candidate)
        except ValueError:
            allowed = ", ".join(member.value for member in cls)
            raise OrderValidationError(
                f"Invalid {cls.__name__} '{value}'. Allowed: {allowed}"
            ) from None


class OrderSide(ParsableEnum):
    """Order direction."""

    BUY = "BUY"
    SELL = "SELL"


class OrderType(ParsableEnum):
    """Order execution type."""

    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP_LOSS = "STOP_LOSS"
    STOP_LIMIT = "STOP_LIMIT"


class OrderStatus(ParsableEnum):
    """Order lifecycle state."""

    PENDING = "PENDING"  # Accepted, waiting for a worker
    PROCESSING = "PROCESSING"  # Owned by a worker
    EXECUTED = "EXECUTED"  # Filled
    CANCELLED = "CANCELLED"  # Cancelled by user or system
    FAILED = "FAILED"  # Execution failed or retries exhausted
    REJECTED = "REJECTED"  # Administrative rejection after acceptance


class CancelReason(ParsableEnum):
    """Why an order was cancelled."""

    USER_REQUESTED = "USER_REQUESTED"
    MARKET_CLOSED = "MARKET_CLOSED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    RISK_MANAGEMENT = "RISK_MANAGEMENT"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    EXPIRED = "EXPIRED"
    ADMIN_ACTION = "ADMIN_ACTION"

    @classmethod
    def coerce(cls, value: Any) -> CancelReason | str:
        """Known reasons become members; any other text is kept as given (trimmed).

        Empty input means ``USER_REQUESTED``.

        Raises:
            OrderValidationError: If free text exceeds ``MAX_CANCEL_REASON_LENGTH``.
        """
        if isinstance(value, cls):
            return value
        text = str(value).strip() if value is not None else ""
        if not text:
            return cls.USER_REQUESTED
        try:
            return cls(text.upper())
        except ValueError:
            pass
        if len(text) > MAX_CANCEL_REASON_LENGTH:
            raise OrderValidationError(
                f"Cancel reason must be at most {MAX_CANCEL_REASON_LENGTH} characters"
            )
        return text


TERMINAL_STATUSES: Final[frozenset[OrderStatus]] = frozenset(
    {
        OrderStatus.EXECUTED,
        OrderStatus.CANCELLED,
        OrderStatus.FAILED,
        OrderStatus.REJECTED,
    }
)

CANCELLABLE_STATUSES: Final[frozenset[OrderStatus]] = frozenset(
    {OrderStatus.PENDING, OrderStatus.PROCESSING}
)

VALID_TRANSITIONS: Final[dict[OrderStatus, frozenset[OrderStatus]]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.REJECTED}
    ),
    OrderStatus.PROCESSING: frozenset(
        {
            OrderStatus.EXECUTED,
            OrderStatus.FAILED,
            OrderStatus.PENDING,
            # Cooperative cancellation signal read by the worker
            OrderStatus.CANCELLED,
        }
    ),
    # Terminal states
    OrderStatus.EXECUTED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.REJECTED: frozenset(),
}


def is_valid_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """Check a transition against the lifecycle table."""
    return new in VALID_TRANSITIONS.get(current, frozenset())


# ==============================================================================
# Domain Models
# ==============================================================================
class Order(BaseModel):
    """Internal representation of an order.

    Core fields (user, symbol, side, type, quantity, price) never change
    after creation. Status and execution metadata change only through
    ``transition``.

    Attributes:
        order_id: Unique order identifier (UUID).
        user_id: Owner of the order.
        symbol: Uppercase ticker.
        side: Buy or sell.
        order_type: Execution type (MARKET, LIMIT, ...).
        quantity: Order quantity, strictly positive.
        price: Limit/stop price; absent for MARKET orders.
        status: Current lifecycle state.
        created_at: Acceptance timestamp.
        updated_at: Last mutation timestamp.
        executed_at: Execution timestamp (EXECUTED only).
        execution_price: Execution price (EXECUTED only).
        market_price_at_submission: Quote observed during acceptance.
        market_data_timestamp: When that quote was observed.
        failure_reason: Why the order failed, was rejected or cancelled.
    """

    model_config = {"frozen": True}

    order_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str = Field(min_length=1)
    symbol: str = Field(min_length=1, max_length=MAX_SYMBOL_LENGTH)
    side: OrderSide
    order_type: OrderType
    quantity: Decimal = Field(gt=0)
    price: Decimal | None = None
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    executed_at: datetime | None = None
    execution_price: Decimal | None = Field(default=None, gt=0)
    market_price_at_submission: Decimal | None = Field(default=None, gt=0)
    market_data_timestamp: datetime | None = None
    failure_reason: str | None = None

    @field_validator("symbol", mode="before")
    @classmethod
    def normalize_symbol(cls, v: Any) -> Any:
        """Normalize tickers to uppercase."""
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator(
        "created_at", "updated_at", "executed_at", "market_data_timestamp"
    )
    @classmethod
    def normalize_timestamp(cls, v: datetime | None) -> datetime | None:
        """Keep instants in UTC with millisecond precision."""
        if v is None:
            return None
        return truncate_to_millis(v)

    @model_validator(mode="after")
    def validate_invariants(self) -> Order:
        """Enforce the aggregate invariants."""
        if self.order_type == OrderType.MARKET:
            if self.price is not None:
                msg = "MARKET orders must not carry a price"
                raise ValueError(msg)
        elif self.price is None or self.price <= 0:
            msg = f"Price required and must be positive for {self.order_type.value} orders"
            raise ValueError(msg)

        executed = self.status == OrderStatus.EXECUTED
        has_execution = self.executed_at is not None and self.execution_price is not None
        if executed != has_execution:
            msg = "executed_at and execution_price are set iff status is EXECUTED"
            raise ValueError(msg)
        if not executed and (self.executed_at is not None or self.execution_price is not None):
            msg = "Execution fields present on a non-executed order"
            raise ValueError(msg)

        if self.updated_at < self.created_at:
            msg = "updated_at must not precede created_at"
            raise ValueError(msg)
        return self

    @property
    def is_terminal(self) -> bool:
        """Whether order is in a final state."""
        return self.status in TERMINAL_STATUSES

    @property
    def can_cancel(self) -> bool:
        """Whether a cancel request may still succeed."""
        return self.status in CANCELLABLE_STATUSES

    @property
    def can_execute(self) -> bool:
        """Whether a worker may pick the order up."""
        return self.status == OrderStatus.PENDING

    def can_transition_to(self, new_status: OrderStatus) -> bool:
        """Check if state transition is valid."""
        return is_valid_transition(self.status, new_status)

    def transition(
        self,
        new_status: OrderStatus,
        *,
        at: datetime | None = None,
        **changes: Any,
    ) -> Order:
        """Return a copy of the order in ``new_status``.

        Args:
            new_status: Target status.
            at: Mutation timestamp (defaults to now, never before updated_at).
            **changes: Extra field updates (execution fields, failure_reason).

        Raises:
            IllegalTransitionError: If the transition is not allowed.
        """
        if not self.can_transition_to(new_status):
            raise IllegalTransitionError(self.order_id, self.status.value, new_status.value)

        stamp = truncate_to_millis(at) if at else utc_now()
        # updated_at is monotone across transitions
        stamp = max(stamp, self.updated_at)
        data = self.model_dump()
        data.update(changes)
        data["status"] = new_status
        data["updated_at"] = stamp
        return Order.model_validate(data)

    def order_value(self) -> Decimal | None:
        """Notional at the order price (None for MARKET without context)."""
        reference = self.price or self.market_price_at_submission
        if reference is None:
            return None
        return self.quantity * reference

    def execution_value(self) -> Decimal | None:
        """Notional at the execution price."""
        if self.execution_price is None:
            return None
        return self.quantity * self.execution_price

    def description(self) -> str:
        """Human readable one-line summary."""
        return describe_order(self.order_type, self.side, self.quantity, self.symbol, self.price)


def describe_order(
    order_type: OrderType,
    side: OrderSide,
    quantity: Decimal,
    symbol: str,
    price: Decimal | None,
) -> str:
    """Format ``"LIMIT BUY order for 10.00 shares of AAPL at 150.5000"``."""
    at = f"{price:.4f}" if price is not None else "market price"
    return f"{order_type.value} {side.value} order for {quantity:.2f} shares of {symbol} at {at}"


# ==============================================================================
# Commands
# ==============================================================================
@dataclass(frozen=True)
class SubmitOrderCommand:
    """Raw submission request as received from an edge handler.

    Values are kept loosely typed until ``normalized()`` runs the shape
    checks, so the submission service owns every validation error.
    """

    user_id: str
    symbol: str
    side: OrderSide | str
    order_type: OrderType | str
    quantity: Decimal | float | int | str
    price: Decimal | float | int | str | None = None

    def normalized(self) -> SubmitOrderCommand:
        """Return a fully typed copy or raise ``OrderValidationError``."""
        errors: list[str] = []

        user_id = str(self.user_id or "").strip()
        if not user_id:
            errors.append("user_id is required")

        symbol = str(self.symbol or "").strip().upper()
        if not symbol:
            errors.append("symbol is required")
        elif len(symbol) > MAX_SYMBOL_LENGTH:
            errors.append(f"symbol must be at most {MAX_SYMBOL_LENGTH} characters")

        side: OrderSide | None = None
        order_type: OrderType | None = None
        try:
            side = OrderSide.parse(self.side)
        except OrderValidationError as exc:
            errors.append(exc.message)
        try:
            order_type = OrderType.parse(self.order_type)
        except OrderValidationError as exc:
            errors.append(exc.message)

        quantity = _parse_decimal(self.quantity, "quantity", errors)
        if quantity is not None and quantity <= 0:
            errors.append("quantity must be greater than 0")
        elif quantity is not None and quantity >= MAX_NUMERIC_INPUT:
            errors.append(f"quantity must be less than {MAX_NUMERIC_INPUT:,.0f}")

        price = None
        if self.price is not None:
            price = _parse_decimal(self.price, "price", errors)
        if order_type == OrderType.MARKET and price is not None:
            errors.append("price must not be provided for MARKET orders")
        elif order_type is not None and order_type != OrderType.MARKET:
            if price is None:
                errors.append(f"price is required for {order_type.value} orders")
            elif price <= 0:
                errors.append("price must be greater than 0")
            elif price >= MAX_NUMERIC_INPUT:
                errors.append(f"price must be less than {MAX_NUMERIC_INPUT:,.0f}")

        if errors:
            raise OrderValidationError("; ".join(errors))

        return SubmitOrderCommand(
            user_id=user_id,
            symbol=symbol,
            side=side,  # type: ignore[arg-type]
            order_type=order_type,  # type: ignore[arg-type]
            quantity=quantity,  # type: ignore[arg-type]
            price=price,
        )


def _parse_decimal(value: Any, name: str, errors: list[str]) -> Decimal | None:
    if isinstance(value, bool):
        errors.append(f"{name} must be numeric")
        return None
    try:
        parsed = to_decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        errors.append(f"{name} must be numeric")
        return None
    if not parsed.is_finite():
        errors.append(f"{name} must be finite")
        return None
    return parsed
