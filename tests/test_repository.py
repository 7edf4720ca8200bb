"""Tests for the order repository.

Tests cover:
- Save / find / delete with the per-user index
- Compare-and-set status transitions
- History pagination, sorting and filters
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from oms_core.common.errors import (
    IllegalTransitionError,
    OrderNotFoundError,
    OrderValidationError,
    TransientStoreError,
)
from oms_core.domain.order import OrderSide, OrderStatus, OrderType
from oms_core.execution import HistoryFilter, OrderRepository, SortField, SortOrder
from oms_core.execution.store import MemoryStore, StoreConnectionError

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class _BrokenStore(MemoryStore):
    """Store whose reads fail like an unreachable Redis."""

    def get(self, key: str) -> str | None:
        raise StoreConnectionError("connection refused")


class TestOrderRepositoryWrites:
    """Tests for repository writes."""

    def test_save_and_find(self, repository: OrderRepository, make_order) -> None:
        """Test a saved order can be read back."""
        order = make_order()
        repository.save(order)
        assert repository.find_by_id(order.order_id) == order
        assert repository.find_by_id("missing") is None

    def test_save_duplicate(self, repository: OrderRepository, make_order) -> None:
        """Test saving the same id twice is rejected."""
        order = make_order()
        repository.save(order)
        with pytest.raises(OrderValidationError, match="already exists"):
            repository.save(order)

    def test_update_status_cas(self, repository: OrderRepository, make_order) -> None:
        """Test CAS succeeds on the expected status and persists."""
        order = make_order()
        repository.save(order)
        updated = repository.update_status(order.order_id, OrderStatus.PENDING, OrderStatus.PROCESSING)
        assert updated is not None
        assert updated.status == OrderStatus.PROCESSING
        assert repository.find_by_id(order.order_id).status == OrderStatus.PROCESSING

    def test_update_status_lost_race(self, repository: OrderRepository, make_order) -> None:
        """Test CAS returns None when the status already moved."""
        order = make_order()
        repository.save(order)
        repository.update_status(order.order_id, OrderStatus.PENDING, OrderStatus.CANCELLED)
        assert (
            repository.update_status(order.order_id, OrderStatus.PENDING, OrderStatus.PROCESSING)
            is None
        )
        assert repository.find_by_id(order.order_id).status == OrderStatus.CANCELLED

    def test_update_status_illegal(self, repository: OrderRepository, make_order) -> None:
        """Test illegal edges are refused before touching the store."""
        order = make_order()
        repository.save(order)
        with pytest.raises(IllegalTransitionError):
            repository.update_status(order.order_id, OrderStatus.PENDING, OrderStatus.FAILED)

    def test_update_status_missing(self, repository: OrderRepository) -> None:
        """Test CAS on an unknown order."""
        with pytest.raises(OrderNotFoundError):
            repository.update_status("missing", OrderStatus.PENDING, OrderStatus.PROCESSING)

    def test_failure_reason_recorded(self, repository: OrderRepository, make_order) -> None:
        """Test FAILED carries its reason."""
        order = make_order()
        repository.save(order)
        repository.update_status(order.order_id, OrderStatus.PENDING, OrderStatus.PROCESSING)
        failed = repository.update_status(
            order.order_id,
            OrderStatus.PROCESSING,
            OrderStatus.FAILED,
            failure_reason="venue rejected",
        )
        assert failed is not None
        assert failed.failure_reason == "venue rejected"

    def test_update_execution(self, repository: OrderRepository, make_order) -> None:
        """Test execution writes price, time and EXECUTED together."""
        order = make_order()
        repository.save(order)
        repository.update_status(order.order_id, OrderStatus.PENDING, OrderStatus.PROCESSING)
        executed_at = datetime.now(timezone.utc)
        executed = repository.update_execution(order.order_id, Decimal("150.50"), executed_at)
        assert executed is not None
        assert executed.status == OrderStatus.EXECUTED
        assert executed.execution_price == Decimal("150.50")
        assert executed.executed_at is not None

    def test_update_execution_requires_processing(
        self, repository: OrderRepository, make_order
    ) -> None:
        """Test a cancelled order is never executed."""
        order = make_order()
        repository.save(order)
        repository.update_status(order.order_id, OrderStatus.PENDING, OrderStatus.CANCELLED)
        assert (
            repository.update_execution(order.order_id, Decimal("1"), datetime.now(timezone.utc))
            is None
        )

    def test_delete(self, repository: OrderRepository, make_order) -> None:
        """Test delete removes the order and its index entry."""
        order = make_order()
        repository.save(order)
        assert repository.delete(order.order_id) is True
        assert repository.find_by_id(order.order_id) is None
        assert repository.find_by_user_id("u1") == []
        assert repository.delete(order.order_id) is False

    def test_store_failure_is_transient(self, make_order) -> None:
        """Test backend failures surface as TRANSIENT_STORE."""
        repository = OrderRepository(_BrokenStore())
        with pytest.raises(TransientStoreError):
            repository.find_by_id("any")


class TestOrderRepositoryReads:
    """Tests for history and scans."""

    @pytest.fixture
    def populated(self, repository: OrderRepository, make_order) -> OrderRepository:
        """Five orders for u1 one minute apart, one for u2."""
        symbols = ["AAPL", "MSFT", "AAPL", "TSLA", "AAPL"]
        for i, symbol in enumerate(symbols):
            at = BASE_TIME + timedelta(minutes=i)
            repository.save(
                make_order(
                    order_id=f"o{i}",
                    symbol=symbol,
                    side=OrderSide.BUY if i % 2 == 0 else OrderSide.SELL,
                    created_at=at,
                    updated_at=at,
                )
            )
        repository.save(make_order(order_id="other", user_id="u2"))
        return repository

    def test_find_by_user_newest_first(self, populated: OrderRepository) -> None:
        """Test per-user listing is newest first and user-scoped."""
        ids = [o.order_id for o in populated.find_by_user_id("u1")]
        assert ids == ["o4", "o3", "o2", "o1", "o0"]

    def test_history_default_sort(self, populated: OrderRepository) -> None:
        """Test default history is created_at descending with paging."""
        page = populated.find_history("u1", limit=2, offset=1)
        assert [o.order_id for o in page] == ["o3", "o2"]

    def test_history_ascending(self, populated: OrderRepository) -> None:
        """Test ascending order."""
        page = populated.find_history("u1", limit=10, offset=0, sort_order=SortOrder.ASC)
        assert [o.order_id for o in page] == ["o0", "o1", "o2", "o3", "o4"]

    def test_history_sort_by_symbol(self, populated: OrderRepository) -> None:
        """Test symbol sort with id as tie-breaker."""
        page = populated.find_history(
            "u1", limit=10, offset=0, sort_by=SortField.SYMBOL, sort_order=SortOrder.ASC
        )
        assert [o.symbol for o in page] == ["AAPL", "AAPL", "AAPL", "MSFT", "TSLA"]

    def test_history_offset_past_end(self, populated: OrderRepository) -> None:
        """Test an offset past the end is an empty page."""
        assert populated.find_history("u1", limit=10, offset=50) == []

    def test_history_filters(self, populated: OrderRepository) -> None:
        """Test filters narrow both the page and the count."""
        filters = HistoryFilter(symbol="aapl", side=OrderSide.BUY)
        page = populated.find_history("u1", limit=10, offset=0, filters=filters)
        assert {o.order_id for o in page} == {"o0", "o2", "o4"}
        assert populated.count_by_user("u1", filters) == 3
        assert populated.count_by_user("u1") == 5

    def test_history_date_filter(self, populated: OrderRepository) -> None:
        """Test start and end dates are inclusive bounds on created_at."""
        filters = HistoryFilter(
            start_date=BASE_TIME + timedelta(minutes=1),
            end_date=BASE_TIME + timedelta(minutes=3),
        )
        assert populated.count_by_user("u1", filters) == 3

    def test_history_type_filter(self, populated: OrderRepository) -> None:
        """Test order type filter."""
        assert populated.count_by_user("u1", HistoryFilter(order_type=OrderType.MARKET)) == 0

    def test_find_by_status(self, populated: OrderRepository) -> None:
        """Test status lookups per user and across users."""
        populated.update_status("o1", OrderStatus.PENDING, OrderStatus.CANCELLED)
        assert [o.order_id for o in populated.find_by_status(OrderStatus.CANCELLED, "u1")] == ["o1"]
        assert len(populated.find_by_status(OrderStatus.PENDING)) == 5

    def test_find_by_symbol(self, populated: OrderRepository) -> None:
        """Test symbol lookups across users."""
        assert len(populated.find_by_symbol("aapl")) == 4
        assert len(populated.find_by_symbol("AAPL", user_id="u1")) == 3
