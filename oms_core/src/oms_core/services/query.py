"""Query service (QS): user-scoped read side of the order pipeline.

Reads go straight to the repository; nothing here is cached. Details can
be enriched with the current quote when a market-data client is
configured. Enrichment is best effort and never fails a read.
"""

from __future__ import annotations

import asyncio
import math
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Final

import structlog
from pydantic import BaseModel, Field

from oms_core.common.errors import OMSError, OrderNotFoundError
from oms_core.common.types import DomainModel
from oms_core.domain.order import Order, OrderSide, OrderStatus, OrderType
from oms_core.execution.repository import HistoryFilter, SortField, SortOrder

if TYPE_CHECKING:
    from oms_core.execution.market_data import MarketDataClient
    from oms_core.execution.repository import OrderRepository

log = structlog.get_logger()

DEFAULT_HISTORY_LIMIT: Final[int] = 20
MAX_HISTORY_LIMIT: Final[int] = 100
DEFAULT_ENRICHMENT_TIMEOUT: Final[float] = 2.0

STATUS_DESCRIPTIONS: Final[dict[OrderStatus, str]] = {
    OrderStatus.PENDING: "Order is pending and waiting to be processed",
    OrderStatus.PROCESSING: "Order is currently being processed",
    OrderStatus.EXECUTED: "Order has been executed successfully",
    OrderStatus.FAILED: "Order execution failed",
    OrderStatus.CANCELLED: "Order has been cancelled",
    OrderStatus.REJECTED: "Order was rejected",
}


def describe_status(order: Order) -> str:
    """Human readable status line."""
    if order.status == OrderStatus.EXECUTED and order.executed_at is not None:
        return f"Order was executed on {order.executed_at:%Y-%m-%d %H:%M:%S}"
    if order.status == OrderStatus.FAILED and order.failure_reason:
        return f"{STATUS_DESCRIPTIONS[OrderStatus.FAILED]}: {order.failure_reason}"
    return STATUS_DESCRIPTIONS[order.status]


# ==============================================================================
# Read Models
# ==============================================================================
class OrderStatusView(DomainModel):
    """Compact status answer."""

    order_id: str
    status: OrderStatus
    message: str
    updated_at: datetime
    can_cancel: bool


class OrderView(DomainModel):
    """Full order details, optionally enriched with the current quote."""

    order_id: str
    user_id: str
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    price: Decimal | None = None
    status: OrderStatus
    status_description: str
    can_cancel: bool
    created_at: datetime
    updated_at: datetime
    executed_at: datetime | None = None
    execution_price: Decimal | None = None
    market_price_at_submission: Decimal | None = None
    market_data_timestamp: datetime | None = None
    failure_reason: str | None = None
    current_market_price: Decimal | None = None
    price_change: Decimal | None = None
    price_change_percent: Decimal | None = None
    estimated_value: Decimal | None = None

    @classmethod
    def from_order(cls, order: Order, current_price: Decimal | None = None) -> OrderView:
        data: dict[str, Any] = order.model_dump()
        data["status_description"] = describe_status(order)
        data["can_cancel"] = order.can_cancel

        reference = order.execution_price or order.price or current_price
        if reference is not None:
            data["estimated_value"] = order.quantity * reference

        if current_price is not None:
            data["current_market_price"] = current_price
            submitted = order.market_price_at_submission
            if submitted:
                change = current_price - submitted
                data["price_change"] = change
                data["price_change_percent"] = (change / submitted * 100).quantize(Decimal("0.01"))
        return cls.model_validate(data)


class Pagination(BaseModel):
    """Page arithmetic for history responses."""

    current_page: int
    total_pages: int
    page_size: int
    total_items: int


class OrderHistory(BaseModel):
    """One page of a user's order history."""

    orders: list[OrderView] = Field(default_factory=list)
    total_count: int
    has_more: bool
    pagination: Pagination


# ==============================================================================
# Query Service
# ==============================================================================
class QueryService:
    """User-scoped order reads.

    Attributes:
        repository: Order repository.
        market_data: Optional client used to enrich details.
        default_limit: History page size when none (or a non-positive one) is given.
        max_limit: Hard cap on the history page size.
    """

    def __init__(
        self,
        repository: OrderRepository,
        market_data: MarketDataClient | None = None,
        default_limit: int = DEFAULT_HISTORY_LIMIT,
        max_limit: int = MAX_HISTORY_LIMIT,
        enrichment_timeout: float = DEFAULT_ENRICHMENT_TIMEOUT,
    ) -> None:
        self.repository = repository
        self.market_data = market_data
        self.default_limit = default_limit
        self.max_limit = max_limit
        self.enrichment_timeout = enrichment_timeout

    def _load_owned(self, order_id: str, user_id: str) -> Order:
        order = self.repository.find_by_id(order_id)
        if order is None or order.user_id != user_id:
            raise OrderNotFoundError(order_id)
        return order

    def get_status(self, order_id: str, user_id: str) -> OrderStatusView:
        """Current status of an order owned by ``user_id``.

        Raises:
            OrderNotFoundError: Unknown order or owned by another user.
        """
        order = self._load_owned(order_id, user_id)
        return OrderStatusView(
            order_id=order.order_id,
            status=order.status,
            message=describe_status(order),
            updated_at=order.updated_at,
            can_cancel=order.can_cancel,
        )

    async def get_details(
        self,
        order_id: str,
        user_id: str,
        enrich: bool = True,
    ) -> OrderView:
        """Full details of an order owned by ``user_id``.

        Raises:
            OrderNotFoundError: Unknown order or owned by another user.
        """
        order = self._load_owned(order_id, user_id)
        current_price = await self._current_price(order.symbol) if enrich else None
        return OrderView.from_order(order, current_price)

    async def _current_price(self, symbol: str) -> Decimal | None:
        if self.market_data is None:
            return None
        try:
            return await asyncio.wait_for(
                self.market_data.get_current_price(symbol), timeout=self.enrichment_timeout
            )
        except (OMSError, asyncio.TimeoutError) as exc:
            log.warning("Skipping market data enrichment", symbol=symbol, error=str(exc))
            return None

    def clamp_limit(self, limit: int | None) -> int:
        """Apply the default and the hard cap to a requested page size."""
        if limit is None or limit <= 0:
            return self.default_limit
        return min(limit, self.max_limit)

    def get_history(
        self,
        user_id: str,
        limit: int | None = None,
        offset: int | None = None,
        sort_by: SortField | str | None = None,
        sort_order: SortOrder | str | None = None,
        filters: HistoryFilter | None = None,
        page: int | None = None,
    ) -> OrderHistory:
        """Paginated order history, newest first by default.

        ``page`` (1-based) takes precedence over ``offset`` when given.
        Non-positive limits and negative offsets fall back to defaults.
        """
        limit = self.clamp_limit(limit)
        if page is not None:
            offset = (max(page, 1) - 1) * limit
        offset = max(offset or 0, 0)

        field = _parse_choice(SortField, sort_by, SortField.CREATED_AT)
        direction = _parse_choice(SortOrder, sort_order, SortOrder.DESC)

        total = self.repository.count_by_user(user_id, filters)
        orders = self.repository.find_history(
            user_id, limit, offset, sort_by=field, sort_order=direction, filters=filters
        )
        return OrderHistory(
            orders=[OrderView.from_order(o) for o in orders],
            total_count=total,
            has_more=offset + len(orders) < total,
            pagination=Pagination(
                current_page=offset // limit + 1,
                total_pages=math.ceil(total / limit),
                page_size=limit,
                total_items=total,
            ),
        )


def _parse_choice(enum_cls: Any, value: Any, default: Any) -> Any:
    """Enum member for ``value``; unknown or empty values give ``default``."""
    if isinstance(value, enum_cls):
        return value
    if value is None or value == "":
        return default
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return default
