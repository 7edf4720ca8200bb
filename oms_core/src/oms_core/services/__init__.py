"""Synchronous services called by edge handlers."""

from oms_core.services.cancellation import CancellationService, CancelOrderResult
from oms_core.services.query import OrderHistory, OrderStatusView, OrderView, QueryService
from oms_core.services.submission import SubmissionService, SubmitOrderResult

__all__ = [
    "SubmissionService",
    "SubmitOrderResult",
    "CancellationService",
    "CancelOrderResult",
    "QueryService",
    "OrderStatusView",
    "OrderView",
    "OrderHistory",
]
