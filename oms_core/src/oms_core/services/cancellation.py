"""Cancellation service (CS).

Cancellation races with the worker pool: both sides only ever change an
order with compare-and-set, so exactly one of CANCELLED or EXECUTED wins.

    PENDING    -> CANCELLED  (worker has not claimed the order yet)
    PROCESSING -> CANCELLED  (cooperative signal, the worker discards its result)
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Final

import structlog

from oms_core.common.errors import CannotCancelError, OrderNotFoundError
from oms_core.common.types import DomainModel
from oms_core.domain.order import CancelReason, OrderStatus

if TYPE_CHECKING:
    from oms_core.domain.order import Order
    from oms_core.execution.repository import OrderRepository

log = structlog.get_logger()

# Read-then-CAS rounds: PENDING, PENDING again after a lost race, PROCESSING
MAX_CANCEL_ATTEMPTS: Final[int] = 3


def _reason_text(reason: CancelReason | str) -> str:
    return reason.value if isinstance(reason, CancelReason) else reason


class CancelOrderResult(DomainModel):
    """Outcome of a successful cancellation."""

    order_id: str
    status: OrderStatus = OrderStatus.CANCELLED
    reason: CancelReason | str
    message: str
    cancelled_at: datetime


class CancellationService:
    """Moves eligible orders to CANCELLED on behalf of their owner."""

    def __init__(self, repository: OrderRepository) -> None:
        self.repository = repository

    def _load_owned(self, order_id: str, user_id: str) -> Order:
        order = self.repository.find_by_id(order_id)
        # Someone else's order reads as missing
        if order is None or order.user_id != user_id:
            raise OrderNotFoundError(order_id)
        return order

    def cancel(
        self,
        order_id: str,
        user_id: str,
        reason: CancelReason | str = CancelReason.USER_REQUESTED,
    ) -> CancelOrderResult:
        """Cancel an order owned by ``user_id``.

        Raises:
            OrderNotFoundError: Unknown order or owned by another user.
            CannotCancelError: Order is terminal or was executed meanwhile.
            OrderValidationError: Free-form cancel reason is too long.
        """
        cancel_reason = CancelReason.coerce(reason)
        reason_text = _reason_text(cancel_reason)
        order = self._load_owned(order_id, user_id)

        for _ in range(MAX_CANCEL_ATTEMPTS):
            if order.is_terminal:
                break
            cancelled = self.repository.update_status(
                order_id,
                order.status,
                OrderStatus.CANCELLED,
                failure_reason=reason_text,
            )
            if cancelled is not None:
                log.info(
                    "Order cancelled",
                    order_id=order_id,
                    user_id=user_id,
                    reason=reason_text,
                    from_status=order.status.value,
                )
                return CancelOrderResult(
                    order_id=order_id,
                    reason=cancel_reason,
                    message=f"Order {order_id} has been cancelled successfully",
                    cancelled_at=cancelled.updated_at,
                )
            log.debug("Cancel lost race, re-reading", order_id=order_id, seen=order.status.value)
            order = self._load_owned(order_id, user_id)

        raise CannotCancelError(order_id, order.status.value)

    def cancel_all_for_user(
        self,
        user_id: str,
        reason: CancelReason | str = CancelReason.USER_REQUESTED,
    ) -> list[CancelOrderResult]:
        """Cancel every non-terminal order of a user.

        Orders that reach a terminal status before their CAS are skipped.
        """
        cancel_reason = CancelReason.coerce(reason)
        candidates = self.repository.find_by_status(
            OrderStatus.PENDING, user_id
        ) + self.repository.find_by_status(OrderStatus.PROCESSING, user_id)

        results: list[CancelOrderResult] = []
        for order in candidates:
            try:
                results.append(self.cancel(order.order_id, user_id, cancel_reason))
            except (CannotCancelError, OrderNotFoundError) as exc:
                log.info("Skipping order in batch cancel", order_id=order.order_id, error=exc.message)

        log.info(
            "Batch cancel finished",
            user_id=user_id,
            cancelled=len(results),
            candidates=len(candidates),
        )
        return results
