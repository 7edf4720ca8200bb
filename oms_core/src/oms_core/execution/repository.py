"""Order repository: durable storage of orders with atomic status transitions.

Orders are stored as JSON under ``oms:order:{order_id}`` with a per-user
index set ``oms:user_orders:{user_id}``. Status writes are
compare-and-set on the serialized record: the repository re-reads,
checks the expected status, and swaps only if nobody wrote in between.

Design Decisions:
- The repository is the only writer of order records
- A lost CAS is a normal outcome (returns None), not an exception
- Store failures surface as ``TransientStoreError`` (retryable in workers)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Final

import structlog
from pydantic import ValidationError

from oms_core.common.errors import (
    IllegalTransitionError,
    OrderNotFoundError,
    OrderValidationError,
    TransientStoreError,
)
from oms_core.domain.order import (
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    is_valid_transition,
)
from oms_core.execution.store import StoreConnectionError

if TYPE_CHECKING:
    from oms_core.execution.store import StateStore

log = structlog.get_logger()

# Optimistic CAS retries when the record changed without a status change
MAX_CAS_ATTEMPTS: Final[int] = 5


# ==============================================================================
# Query Objects
# ==============================================================================
class SortField(str, Enum):
    """Sortable history columns."""

    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    SYMBOL = "symbol"


class SortOrder(str, Enum):
    """Sort direction."""

    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class HistoryFilter:
    """Optional filters applied to a user's order history."""

    status: OrderStatus | None = None
    symbol: str | None = None
    side: OrderSide | None = None
    order_type: OrderType | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None

    def matches(self, order: Order) -> bool:
        """Whether an order passes every set filter."""
        if self.status is not None and order.status != self.status:
            return False
        if self.symbol and order.symbol != self.symbol.strip().upper():
            return False
        if self.side is not None and order.side != self.side:
            return False
        if self.order_type is not None and order.order_type != self.order_type:
            return False
        if self.start_date is not None and order.created_at < self.start_date:
            return False
        if self.end_date is not None and order.created_at > self.end_date:
            return False
        return True


# ==============================================================================
# Repository
# ==============================================================================
class OrderRepository:
    """Store-backed order repository.

    Attributes:
        store: Persistence backend.
    """

    ORDERS_KEY_PREFIX: Final[str] = "oms:order:"
    USER_INDEX_PREFIX: Final[str] = "oms:user_orders:"

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def _order_key(self, order_id: str) -> str:
        """Generate store key for order."""
        return f"{self.ORDERS_KEY_PREFIX}{order_id}"

    def _user_index(self, user_id: str) -> str:
        return f"{self.USER_INDEX_PREFIX}{user_id}"

    def _decode(self, raw: str) -> Order:
        try:
            return Order.model_validate_json(raw)
        except ValidationError as exc:
            # A corrupt record is a data problem, not a transient one
            raise OrderValidationError(f"Stored order is invalid: {exc}") from exc

    # --------------------------------------------------------------------------
    # Writes
    # --------------------------------------------------------------------------
    def save(self, order: Order) -> None:
        """Persist a new order.

        Raises:
            OrderValidationError: If an order with the same id exists.
            TransientStoreError: On store failure.
        """
        try:
            created = self.store.set_if_absent(
                self._order_key(order.order_id), order.model_dump_json()
            )
            if not created:
                raise OrderValidationError(f"Order already exists: {order.order_id}")
            self.store.index_add(self._user_index(order.user_id), order.order_id)
        except StoreConnectionError as exc:
            raise TransientStoreError(str(exc)) from exc

        log.debug("Order saved", order_id=order.order_id, user_id=order.user_id)

    def update_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        *,
        failure_reason: str | None = None,
        execution_price: Decimal | None = None,
        executed_at: datetime | None = None,
    ) -> Order | None:
        """Compare-and-set the status of an order.

        Args:
            order_id: Target order.
            expected: Status the caller believes the order is in.
            new: Target status.
            failure_reason: Recorded for FAILED/REJECTED/CANCELLED.
            execution_price: Required with ``executed_at`` for EXECUTED.
            executed_at: Execution instant.

        Returns:
            The updated order, or None if the current status is not ``expected``.

        Raises:
            IllegalTransitionError: If ``expected -> new`` is not in the table.
            OrderNotFoundError: If the order does not exist.
            TransientStoreError: On store failure or persistent contention.
        """
        if not is_valid_transition(expected, new):
            raise IllegalTransitionError(order_id, expected.value, new.value)

        changes: dict[str, object] = {}
        if failure_reason is not None:
            changes["failure_reason"] = failure_reason
        if execution_price is not None:
            changes["execution_price"] = execution_price
        if executed_at is not None:
            changes["executed_at"] = executed_at

        key = self._order_key(order_id)
        try:
            for _ in range(MAX_CAS_ATTEMPTS):
                raw = self.store.get(key)
                if raw is None:
                    raise OrderNotFoundError(order_id)
                current = self._decode(raw)
                if current.status != expected:
                    log.debug(
                        "Status CAS rejected",
                        order_id=order_id,
                        expected=expected.value,
                        actual=current.status.value,
                    )
                    return None

                updated = current.transition(new, **changes)
                if self.store.compare_and_set(key, raw, updated.model_dump_json()):
                    log.info(
                        "Order status changed",
                        order_id=order_id,
                        from_status=expected.value,
                        to_status=new.value,
                    )
                    return updated
        except StoreConnectionError as exc:
            raise TransientStoreError(str(exc)) from exc
        except ValidationError as exc:
            raise OrderValidationError(str(exc)) from exc

        raise TransientStoreError(f"Order {order_id} under persistent contention")

    def update_execution(
        self,
        order_id: str,
        execution_price: Decimal,
        executed_at: datetime,
    ) -> Order | None:
        """Record execution: CAS ``PROCESSING -> EXECUTED`` with execution fields.

        Returns:
            The executed order, or None if it is no longer PROCESSING.
        """
        return self.update_status(
            order_id,
            OrderStatus.PROCESSING,
            OrderStatus.EXECUTED,
            execution_price=execution_price,
            executed_at=executed_at,
        )

    def delete(self, order_id: str) -> bool:
        """Remove an order (administrative cleanup and submit rollback).

        Returns:
            True if an order was removed.
        """
        key = self._order_key(order_id)
        try:
            raw = self.store.get(key)
            if raw is None:
                return False
            order = self._decode(raw)
            self.store.delete(key)
            self.store.index_remove(self._user_index(order.user_id), order_id)
        except StoreConnectionError as exc:
            raise TransientStoreError(str(exc)) from exc

        log.warning("Order deleted", order_id=order_id, user_id=order.user_id)
        return True

    # --------------------------------------------------------------------------
    # Reads
    # --------------------------------------------------------------------------
    def find_by_id(self, order_id: str) -> Order | None:
        """Retrieve order by ID."""
        try:
            raw = self.store.get(self._order_key(order_id))
        except StoreConnectionError as exc:
            raise TransientStoreError(str(exc)) from exc
        return self._decode(raw) if raw is not None else None

    def find_by_user_id(self, user_id: str) -> list[Order]:
        """All orders of a user, newest first."""
        orders = self._load_user_orders(user_id)
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders

    def find_history(
        self,
        user_id: str,
        limit: int,
        offset: int,
        sort_by: SortField = SortField.CREATED_AT,
        sort_order: SortOrder = SortOrder.DESC,
        filters: HistoryFilter | None = None,
    ) -> list[Order]:
        """One page of a user's orders."""
        orders = self._filtered(user_id, filters)
        orders.sort(
            key=lambda o: (getattr(o, sort_by.value), o.order_id),
            reverse=sort_order == SortOrder.DESC,
        )
        return orders[offset : offset + limit]

    def count_by_user(self, user_id: str, filters: HistoryFilter | None = None) -> int:
        """Number of a user's orders matching ``filters``."""
        return len(self._filtered(user_id, filters))

    def find_by_status(self, status: OrderStatus, user_id: str | None = None) -> list[Order]:
        """Orders in a status; scans every order when no user is given."""
        orders = self._load_user_orders(user_id) if user_id else self._load_all()
        return [o for o in orders if o.status == status]

    def find_by_symbol(self, symbol: str, user_id: str | None = None) -> list[Order]:
        """Orders for a symbol; scans every order when no user is given."""
        wanted = symbol.strip().upper()
        orders = self._load_user_orders(user_id) if user_id else self._load_all()
        return [o for o in orders if o.symbol == wanted]

    def _filtered(self, user_id: str, filters: HistoryFilter | None) -> list[Order]:
        orders = self._load_user_orders(user_id)
        if filters is None:
            return orders
        return [o for o in orders if filters.matches(o)]

    def _load_user_orders(self, user_id: str) -> list[Order]:
        try:
            ids = sorted(self.store.index_members(self._user_index(user_id)))
            raws = self.store.get_many([self._order_key(i) for i in ids])
        except StoreConnectionError as exc:
            raise TransientStoreError(str(exc)) from exc
        return [self._decode(raw) for raw in raws if raw is not None]

    def _load_all(self) -> list[Order]:
        """Full scan across users (admin/reconciliation only)."""
        try:
            keys = self.store.scan(self.ORDERS_KEY_PREFIX)
            raws = self.store.get_many(keys)
        except StoreConnectionError as exc:
            raise TransientStoreError(str(exc)) from exc
        return [self._decode(raw) for raw in raws if raw is not None]
