"""Idempotency layer for order submission.

A submission is identified by a deterministic fingerprint of its inputs.
The guard record lives in the state store under
``idempotency:{user_id}:{fingerprint}`` with a 24h TTL.

Record lifecycle:
    absent -> PENDING (claimed by a submission in flight)
    PENDING -> COMPLETED (order_id known) | FAILED (error stored)
    any -> evicted by TTL
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Callable, Final

import structlog
from pydantic import Field, ValidationError

from oms_core.common.errors import IdempotencyWriteError, TransientStoreError
from oms_core.common.types import DomainModel, round_price, round_quantity, utc_now
from oms_core.execution.store import StoreConnectionError

if TYPE_CHECKING:
    from oms_core.domain.order import OrderSide, OrderType
    from oms_core.execution.store import StateStore

log = structlog.get_logger()

DEFAULT_IDEMPOTENCY_TTL: Final[timedelta] = timedelta(hours=24)
KEY_PREFIX: Final[str] = "idempotency"


class IdempotencyStatus(str, Enum):
    """State of a submission guard record."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class IdempotencyRecord(DomainModel):
    """Guard record for one fingerprint of one user."""

    key: str
    user_id: str
    status: IdempotencyStatus
    order_id: str | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime


def compute_fingerprint(
    user_id: str,
    symbol: str,
    order_type: OrderType,
    side: OrderSide,
    quantity: Decimal,
    price: Decimal | None,
) -> str:
    """Deterministic submission fingerprint.

    Quantity is rounded to 8 decimal places and price to 4, so requests
    differing only below that precision are the same submission.
    """
    price_part = f"{round_price(price)}" if price is not None else "MARKET"
    payload = ":".join(
        [
            user_id,
            symbol.strip().upper(),
            order_type.value,
            side.value,
            f"{round_quantity(quantity)}",
            price_part,
        ]
    )
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"order_{digest}"


def idempotency_key(user_id: str, fingerprint: str) -> str:
    """Store key for a user's fingerprint."""
    return f"{KEY_PREFIX}:{user_id}:{fingerprint}"


class IdempotencyStore:
    """Guard-record persistence on top of a ``StateStore``.

    Attributes:
        store: Persistence backend.
        ttl: Lifetime of a record from creation.
    """

    def __init__(
        self,
        store: StateStore,
        ttl: timedelta = DEFAULT_IDEMPOTENCY_TTL,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return int(self.ttl.total_seconds())

    def get(self, user_id: str, fingerprint: str) -> IdempotencyRecord | None:
        """Live record for a fingerprint (expired records read as absent).

        Raises:
            TransientStoreError: On store failure.
        """
        key = idempotency_key(user_id, fingerprint)
        try:
            raw = self.store.get(key)
        except StoreConnectionError as exc:
            raise TransientStoreError(str(exc)) from exc
        if raw is None:
            return None
        try:
            record = IdempotencyRecord.model_validate_json(raw)
        except ValidationError:
            log.error("Discarding corrupt idempotency record", key=key)
            return None
        if record.expires_at <= self._clock():
            return None
        return record

    def claim(self, user_id: str, fingerprint: str) -> IdempotencyRecord | None:
        """Atomically create a PENDING record.

        Returns:
            The new record, or None if another submission holds the key.

        Raises:
            IdempotencyWriteError: If the record cannot be written.
        """
        now = self._clock()
        key = idempotency_key(user_id, fingerprint)
        record = IdempotencyRecord(
            key=key,
            user_id=user_id,
            status=IdempotencyStatus.PENDING,
            created_at=now,
            expires_at=now + self.ttl,
        )
        try:
            created = self.store.set_if_absent(key, record.model_dump_json(), self.ttl_seconds)
        except StoreConnectionError as exc:
            raise IdempotencyWriteError(f"Failed to write idempotency record: {exc}") from exc
        return record if created else None

    def mark_completed(self, record: IdempotencyRecord, order_id: str) -> IdempotencyRecord:
        """Move a claimed record to COMPLETED with its order id."""
        return self._finish(record, IdempotencyStatus.COMPLETED, order_id=order_id)

    def mark_failed(self, record: IdempotencyRecord, error: str) -> IdempotencyRecord:
        """Move a claimed record to FAILED with the acceptance error."""
        return self._finish(record, IdempotencyStatus.FAILED, error=error)

    def release(self, record: IdempotencyRecord) -> None:
        """Drop a claim whose submission was abandoned, so a retry starts afresh.

        Raises:
            IdempotencyWriteError: If the record cannot be deleted.
        """
        try:
            self.store.delete(record.key)
        except StoreConnectionError as exc:
            raise IdempotencyWriteError(f"Failed to release idempotency record: {exc}") from exc

    def _finish(
        self,
        record: IdempotencyRecord,
        status: IdempotencyStatus,
        *,
        order_id: str | None = None,
        error: str | None = None,
    ) -> IdempotencyRecord:
        """Overwrite the record, keeping its original expiry.

        Raises:
            IdempotencyWriteError: If the record cannot be written.
        """
        updated = record.model_copy(update={"status": status, "order_id": order_id, "error": error})
        remaining = int((record.expires_at - self._clock()).total_seconds())
        try:
            self.store.set(record.key, updated.model_dump_json(), max(1, remaining))
        except StoreConnectionError as exc:
            raise IdempotencyWriteError(f"Failed to update idempotency record: {exc}") from exc
        return updated
