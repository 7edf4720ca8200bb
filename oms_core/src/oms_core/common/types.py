"""Domain primitives and value objects for the order pipeline.

This module defines the small shared vocabulary used by every layer:
identifiers, clock helpers and decimal rounding.

Architectural Decision:
    Instants are kept as timezone-aware UTC datetimes truncated to
    millisecond precision. They only become strings (RFC 3339) at the
    HTTP and broker boundaries.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Final, NewType

from pydantic import BaseModel, ConfigDict

# ==============================================================================
# Domain Primitives (NewTypes for type safety without runtime overhead)
# ==============================================================================
OrderId = NewType("OrderId", str)
"""Opaque globally unique order identifier (UUID4 string)."""

UserId = NewType("UserId", str)
"""Identifier of the authenticated user that owns an order."""

QUANTITY_PLACES: Final[Decimal] = Decimal("0.00000001")  # 8 dp
PRICE_PLACES: Final[Decimal] = Decimal("0.0001")  # 4 dp


# ==============================================================================
# Clock Helpers
# ==============================================================================
def truncate_to_millis(value: datetime) -> datetime:
    """Normalize a datetime to UTC with millisecond precision.

    Raises:
        ValueError: If the datetime is naive.
    """
    if value.tzinfo is None:
        msg = "Timestamp must be timezone-aware. Received naive datetime."
        raise ValueError(msg)
    value = value.astimezone(timezone.utc)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def utc_now() -> datetime:
    """Current UTC instant with millisecond precision."""
    return truncate_to_millis(datetime.now(timezone.utc))


def to_rfc3339(value: datetime | None) -> str | None:
    """Format an instant as an RFC 3339 string (``Z`` suffix, milliseconds)."""
    if value is None:
        return None
    value = truncate_to_millis(value)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ==============================================================================
# Decimal Helpers
# ==============================================================================
def round_quantity(value: Decimal) -> Decimal:
    """Round a quantity to 8 decimal places."""
    return value.quantize(QUANTITY_PLACES, rounding=ROUND_HALF_UP)


def round_price(value: Decimal) -> Decimal:
    """Round a price to 4 decimal places."""
    return value.quantize(PRICE_PLACES, rounding=ROUND_HALF_UP)


def to_decimal(value: Decimal | float | int | str) -> Decimal:
    """Convert numeric input to Decimal without binary float artefacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


# ==============================================================================
# Base Domain Model
# ==============================================================================
class DomainModel(BaseModel):
    """Base model for immutable value objects.

    Design Decisions:
    - frozen=True: Immutability prevents accidental state mutation
    - extra="forbid": Catch typos and schema drift early
    - Lax mode: records round-trip through JSON stores, so string
      decimals and enum values must be accepted on load
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        validate_assignment=True,
    )
