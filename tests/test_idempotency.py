"""Tests for submission fingerprints and guard records."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from oms_core.common.errors import IdempotencyWriteError, TransientStoreError
from oms_core.domain.order import OrderSide, OrderType
from oms_core.execution import (
    IdempotencyStatus,
    IdempotencyStore,
    MemoryStore,
    compute_fingerprint,
    idempotency_key,
)
from oms_core.execution.store import StoreConnectionError


class _Clock:
    """Manually advanced wall clock."""

    def __init__(self) -> None:
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class _UnreachableStore(MemoryStore):
    """Store whose every read and write fails."""

    def get(self, key: str) -> str | None:
        raise StoreConnectionError("connection refused")

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        raise StoreConnectionError("connection refused")

    def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        raise StoreConnectionError("connection refused")


def _fingerprint(**overrides: object) -> str:
    fields: dict[str, object] = {
        "user_id": "u1",
        "symbol": "AAPL",
        "order_type": OrderType.LIMIT,
        "side": OrderSide.BUY,
        "quantity": Decimal("10"),
        "price": Decimal("150.50"),
    }
    fields.update(overrides)
    return compute_fingerprint(**fields)  # type: ignore[arg-type]


class TestFingerprint:
    """Tests for compute_fingerprint."""

    def test_deterministic(self) -> None:
        """Test equal inputs give equal fingerprints."""
        assert _fingerprint() == _fingerprint()
        assert _fingerprint().startswith("order_")
        assert len(_fingerprint()) == len("order_") + 64

    def test_symbol_case_ignored(self) -> None:
        """Test symbol casing does not change the fingerprint."""
        assert _fingerprint(symbol="aapl") == _fingerprint()

    def test_rounding_precision(self) -> None:
        """Test differences below 8dp quantity / 4dp price collapse."""
        assert _fingerprint(quantity=Decimal("10.000000001")) == _fingerprint()
        assert _fingerprint(price=Decimal("150.50001")) == _fingerprint()
        assert _fingerprint(quantity=Decimal("10.00000001")) != _fingerprint()
        assert _fingerprint(price=Decimal("150.5001")) != _fingerprint()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"user_id": "u2"},
            {"symbol": "MSFT"},
            {"side": OrderSide.SELL},
            {"order_type": OrderType.STOP_LIMIT},
        ],
    )
    def test_each_field_counts(self, overrides: dict[str, object]) -> None:
        """Test every input participates."""
        assert _fingerprint(**overrides) != _fingerprint()

    def test_market_orders(self) -> None:
        """Test a missing price is its own bucket."""
        market = _fingerprint(order_type=OrderType.MARKET, price=None)
        assert market == _fingerprint(order_type=OrderType.MARKET, price=None)
        assert market != _fingerprint()

    def test_key_layout(self) -> None:
        """Test the store key is scoped per user."""
        assert idempotency_key("u1", "order_abc") == "idempotency:u1:order_abc"


class TestIdempotencyStore:
    """Tests for guard-record persistence."""

    def test_claim_then_get(self) -> None:
        """Test a claimed record reads back PENDING with a 24h expiry."""
        clock = _Clock()
        idem = IdempotencyStore(MemoryStore(), clock=clock)
        record = idem.claim("u1", "order_abc")
        assert record is not None
        assert record.status == IdempotencyStatus.PENDING
        assert record.expires_at == clock.now + timedelta(hours=24)
        assert idem.get("u1", "order_abc") == record

    def test_claim_is_exclusive(self) -> None:
        """Test only the first claim wins."""
        idem = IdempotencyStore(MemoryStore())
        assert idem.claim("u1", "order_abc") is not None
        assert idem.claim("u1", "order_abc") is None

    def test_claims_are_per_user(self) -> None:
        """Test two users may hold the same fingerprint."""
        idem = IdempotencyStore(MemoryStore())
        assert idem.claim("u1", "order_abc") is not None
        assert idem.claim("u2", "order_abc") is not None

    def test_mark_completed(self) -> None:
        """Test completion stores the order id."""
        idem = IdempotencyStore(MemoryStore())
        record = idem.claim("u1", "order_abc")
        idem.mark_completed(record, "o-1")
        stored = idem.get("u1", "order_abc")
        assert stored.status == IdempotencyStatus.COMPLETED
        assert stored.order_id == "o-1"
        assert stored.created_at == record.created_at

    def test_mark_failed(self) -> None:
        """Test failure stores the error."""
        idem = IdempotencyStore(MemoryStore())
        record = idem.claim("u1", "order_abc")
        idem.mark_failed(record, "Market is closed for symbol AAPL")
        stored = idem.get("u1", "order_abc")
        assert stored.status == IdempotencyStatus.FAILED
        assert stored.error == "Market is closed for symbol AAPL"

    def test_expired_record_reads_absent(self) -> None:
        """Test records past expires_at are ignored."""
        clock = _Clock()
        idem = IdempotencyStore(MemoryStore(), clock=clock)
        idem.claim("u1", "order_abc")
        clock.now += timedelta(hours=24)
        assert idem.get("u1", "order_abc") is None

    def test_store_ttl_set(self) -> None:
        """Test the backing key carries the record TTL."""
        store = MemoryStore()
        idem = IdempotencyStore(store, ttl=timedelta(minutes=5))
        idem.claim("u1", "order_abc")
        assert store.ttl(idempotency_key("u1", "order_abc")) == 300

    def test_corrupt_record_reads_absent(self) -> None:
        """Test an undecodable record is treated as absent."""
        store = MemoryStore()
        store.set(idempotency_key("u1", "order_abc"), "{broken")
        assert IdempotencyStore(store).get("u1", "order_abc") is None

    def test_read_failure(self) -> None:
        """Test read failures are transient."""
        idem = IdempotencyStore(_UnreachableStore())
        with pytest.raises(TransientStoreError):
            idem.get("u1", "order_abc")

    def test_write_failure(self) -> None:
        """Test write failures raise IDEMPOTENCY_WRITE."""
        idem = IdempotencyStore(_UnreachableStore())
        with pytest.raises(IdempotencyWriteError):
            idem.claim("u1", "order_abc")
