"""Error taxonomy for the order pipeline.

Every failure that crosses a component boundary is an ``OMSError``
subclass tagged with a closed ``ErrorKind``. The kind is what callers
branch on (HTTP status mapping, worker retry policy); the message is for
humans and logs.

Design Decisions:
- One exception class per taxonomy entry, typed attributes where useful
- ``retryable`` lives on the class so the worker never string-matches
- Library exceptions are translated where they occur, never leaked
"""

from __future__ import annotations

from enum import Enum
from typing import ClassVar


class ErrorKind(str, Enum):
    """Closed set of error kinds surfaced by the pipeline."""

    # Input
    VALIDATION = "VALIDATION"
    INVALID_SYMBOL = "INVALID_SYMBOL"
    PRICE_OUT_OF_RANGE = "PRICE_OUT_OF_RANGE"
    # Auth
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"
    # Concurrency / state
    IN_PROGRESS = "IN_PROGRESS"
    PRIOR_FAILURE = "PRIOR_FAILURE"
    CANNOT_CANCEL = "CANNOT_CANCEL"
    ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"
    NOT_FOUND = "NOT_FOUND"
    # Upstream
    MARKET_DATA_UNAVAILABLE = "MARKET_DATA_UNAVAILABLE"
    MARKET_CLOSED = "MARKET_CLOSED"
    BROKER_UNAVAILABLE = "BROKER_UNAVAILABLE"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    IDEMPOTENCY_WRITE = "IDEMPOTENCY_WRITE"
    # Retryable in worker
    MARKET_DATA_TIMEOUT = "MARKET_DATA_TIMEOUT"
    TRANSIENT_STORE = "TRANSIENT_STORE"
    BROKER_TIMEOUT = "BROKER_TIMEOUT"
    # Terminal processing
    PROCESSING_FAILED = "PROCESSING_FAILED"
    POISON_MESSAGE = "POISON_MESSAGE"


RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.MARKET_DATA_TIMEOUT,
        ErrorKind.TRANSIENT_STORE,
        ErrorKind.BROKER_TIMEOUT,
    }
)


# ==============================================================================
# Base
# ==============================================================================
class OMSError(Exception):
    """Base exception for order pipeline errors."""

    kind: ClassVar[ErrorKind] = ErrorKind.PROCESSING_FAILED

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.kind.value
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        """Whether the worker may requeue after this error."""
        return self.kind in RETRYABLE_KINDS


# ==============================================================================
# Input
# ==============================================================================
class OrderValidationError(OMSError):
    """Raised when a command or order violates shape rules or invariants."""

    kind = ErrorKind.VALIDATION


class InvalidSymbolError(OMSError):
    """Raised when the market-data provider does not know the symbol."""

    kind = ErrorKind.INVALID_SYMBOL

    def __init__(self, symbol: str) -> None:
        self.symbol = symbol
        super().__init__(f"Invalid or non-tradeable symbol: {symbol}")


class PriceOutOfRangeError(OMSError):
    """Raised when a priced order is too far from the market."""

    kind = ErrorKind.PRICE_OUT_OF_RANGE


# ==============================================================================
# Auth
# ==============================================================================
class UnauthenticatedError(OMSError):
    """Raised when a request carries no valid credentials."""

    kind = ErrorKind.UNAUTHENTICATED


class ForbiddenError(OMSError):
    """Raised when credentials are valid but not sufficient."""

    kind = ErrorKind.FORBIDDEN


# ==============================================================================
# Concurrency / State
# ==============================================================================
class InProgressError(OMSError):
    """Raised when an identical submission is still being accepted."""

    kind = ErrorKind.IN_PROGRESS


class PriorFailureError(OMSError):
    """Raised when an identical submission failed within the idempotency window."""

    kind = ErrorKind.PRIOR_FAILURE

    def __init__(self, stored_error: str | None) -> None:
        self.stored_error = stored_error
        super().__init__(f"Previous identical submission failed: {stored_error or 'unknown error'}")


class CannotCancelError(OMSError):
    """Raised when an order is not in a cancellable status."""

    kind = ErrorKind.CANNOT_CANCEL

    def __init__(self, order_id: str, status: str) -> None:
        self.order_id = order_id
        self.status = status
        super().__init__(f"Order {order_id} cannot be cancelled in status {status}")


class IllegalTransitionError(OMSError):
    """Raised when an order state transition is not in the transition table."""

    kind = ErrorKind.ILLEGAL_TRANSITION

    def __init__(self, order_id: str, current: str, attempted: str) -> None:
        self.order_id = order_id
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Invalid state transition for order {order_id}: {current} -> {attempted}"
        )


class OrderNotFoundError(OMSError):
    """Raised when an order does not exist or is not visible to the caller."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


# ==============================================================================
# Upstream
# ==============================================================================
class MarketDataUnavailableError(OMSError):
    """Raised when the market-data provider fails."""

    kind = ErrorKind.MARKET_DATA_UNAVAILABLE


class MarketClosedError(OMSError):
    """Raised when the market for a symbol is closed."""

    kind = ErrorKind.MARKET_CLOSED

    def __init__(self, symbol: str) -> None:
        self.symbol = symbol
        super().__init__(f"Market is closed for symbol {symbol}")


class BrokerUnavailableError(OMSError):
    """Raised when the broker does not confirm a publish or is unreachable."""

    kind = ErrorKind.BROKER_UNAVAILABLE


class StoreUnavailableError(OMSError):
    """Raised on the submission path when the order store is unreachable."""

    kind = ErrorKind.STORE_UNAVAILABLE


class IdempotencyWriteError(OMSError):
    """Raised when the idempotency guard record cannot be written."""

    kind = ErrorKind.IDEMPOTENCY_WRITE


# ==============================================================================
# Retryable
# ==============================================================================
class MarketDataTimeoutError(OMSError):
    """Raised when a market-data call exceeds its deadline."""

    kind = ErrorKind.MARKET_DATA_TIMEOUT


class TransientStoreError(OMSError):
    """Raised when a store operation fails in a way worth retrying."""

    kind = ErrorKind.TRANSIENT_STORE


class BrokerTimeoutError(OMSError):
    """Raised when a broker operation exceeds its deadline."""

    kind = ErrorKind.BROKER_TIMEOUT


# ==============================================================================
# Terminal Processing
# ==============================================================================
class ProcessingFailedError(OMSError):
    """Raised when execution fails for a non-retryable reason."""

    kind = ErrorKind.PROCESSING_FAILED

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class PoisonMessageError(OMSError):
    """Raised when a broker message cannot be decoded."""

    kind = ErrorKind.POISON_MESSAGE
