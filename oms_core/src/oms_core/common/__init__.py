"""Shared primitives and the error taxonomy."""

from oms_core.common.errors import ErrorKind, OMSError
from oms_core.common.types import (
    DomainModel,
    OrderId,
    UserId,
    to_rfc3339,
    truncate_to_millis,
    utc_now,
)

__all__ = [
    "DomainModel",
    "ErrorKind",
    "OMSError",
    "OrderId",
    "UserId",
    "to_rfc3339",
    "truncate_to_millis",
    "utc_now",
]
