"""Order aggregate, lifecycle enums and commands."""

from oms_core.domain.order import (
    CANCELLABLE_STATUSES,
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    CancelReason,
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    SubmitOrderCommand,
    is_valid_transition,
)

__all__ = [
    # Enums
    "OrderSide",
    "OrderType",
    "OrderStatus",
    "CancelReason",
    # State machine
    "VALID_TRANSITIONS",
    "TERMINAL_STATUSES",
    "CANCELLABLE_STATUSES",
    "is_valid_transition",
    # Models
    "Order",
    "SubmitOrderCommand",
]
