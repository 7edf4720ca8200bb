"""HTTP edge (FastAPI).

Routes:
    POST /orders                  submit, 202 Accepted
    GET  /orders/history          paginated history
    GET  /orders/{order_id}        full details
    GET  /orders/{order_id}/status status summary
    PUT  /orders/{order_id}/cancel cancel
    GET  /health                  store, broker and worker pool liveness

Every ``OMSError`` is rendered as ``{"error": kind, "message": ...}`` with
the status code from ``HTTP_STATUS``. Instants are RFC 3339 strings and
decimals are strings.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Final

import structlog
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field

from oms_core.api.auth import TokenVerifier, current_user
from oms_core.common.errors import ErrorKind, OMSError
from oms_core.common.types import to_rfc3339
from oms_core.domain.order import (
    CancelReason,
    OrderSide,
    OrderStatus,
    OrderType,
    SubmitOrderCommand,
)
from oms_core.execution.repository import HistoryFilter

if TYPE_CHECKING:
    from oms_core.app import Application

log = structlog.get_logger()

HTTP_STATUS: Final[dict[ErrorKind, int]] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.INVALID_SYMBOL: 400,
    ErrorKind.PRICE_OUT_OF_RANGE: 400,
    ErrorKind.MARKET_CLOSED: 400,
    ErrorKind.CANNOT_CANCEL: 400,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.IN_PROGRESS: 409,
    ErrorKind.PRIOR_FAILURE: 409,
    ErrorKind.ILLEGAL_TRANSITION: 409,
}


def status_for(kind: ErrorKind) -> int:
    """HTTP status of an error kind (upstream and internal kinds are 500)."""
    return HTTP_STATUS.get(kind, 500)


def to_json(value: Any) -> Any:
    """Render models, instants and decimals for the wire."""
    if isinstance(value, BaseModel):
        return to_json(value.model_dump())
    if isinstance(value, dict):
        return {k: to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json(v) for v in value]
    if isinstance(value, datetime):
        return to_rfc3339(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


# ==============================================================================
# Request Bodies
# ==============================================================================
class SubmitOrderRequest(BaseModel):
    """Body of ``POST /orders``; the user comes from the token."""

    symbol: str
    side: str
    order_type: str = Field(validation_alias=AliasChoices("type", "order_type"))
    quantity: Decimal | str
    price: Decimal | str | None = None


class CancelOrderRequest(BaseModel):
    reason: str = CancelReason.USER_REQUESTED.value


# ==============================================================================
# Application Factory
# ==============================================================================
def create_app(
    application: Application,
    verifier: TokenVerifier | None = None,
    manage_lifecycle: bool = False,
) -> FastAPI:
    """Build the FastAPI app around a pipeline container.

    Args:
        application: Wired pipeline services.
        verifier: Token verifier (defaults to one built from the API config).
        manage_lifecycle: Start workers on startup and close the container
            on shutdown (entrypoint use; tests drive workers themselves).
    """

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if manage_lifecycle:
            await application.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await application.close()

    api_cfg = application.config.api
    app = FastAPI(title="Order Management Service", version="0.1.0", lifespan=lifespan)
    app.state.application = application
    app.state.verifier = verifier or TokenVerifier(
        api_cfg.jwt_secret, api_cfg.jwt_algorithm, api_cfg.jwt_leeway_seconds
    )

    @app.exception_handler(OMSError)
    async def oms_error_handler(request: Request, exc: OMSError) -> JSONResponse:
        status_code = status_for(exc.kind)
        if status_code >= 500:
            log.error("Request failed", path=request.url.path, kind=exc.kind.value, error=exc.message)
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.kind.value, "message": exc.message},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content={"error": ErrorKind.VALIDATION.value, "message": problems},
        )

    @app.get("/health")
    async def health() -> JSONResponse:
        report = await application.health()
        status_code = 200 if report["status"] == "healthy" else 503
        return JSONResponse(status_code=status_code, content=to_json(report))

    @app.post("/orders", status_code=202)
    async def submit_order(
        body: SubmitOrderRequest,
        user_id: str = Depends(current_user),
    ) -> JSONResponse:
        command = SubmitOrderCommand(
            user_id=user_id,
            symbol=body.symbol,
            side=body.side,
            order_type=body.order_type,
            quantity=body.quantity,
            price=body.price,
        )
        result = await application.submission.submit(command)
        payload = to_json(result)
        if payload.get("note") is None:
            payload.pop("note", None)
        return JSONResponse(status_code=202, content=payload)

    # Routes backed only by blocking store calls are sync so they run in the threadpool
    @app.get("/orders/history")
    def order_history(
        user_id: str = Depends(current_user),
        page: int | None = Query(default=None),
        limit: int | None = Query(default=None),
        offset: int | None = Query(default=None),
        sort_by: str | None = Query(default=None),
        sort_order: str | None = Query(default=None),
        status: str | None = Query(default=None),
        symbol: str | None = Query(default=None),
        side: str | None = Query(default=None),
        order_type: str | None = Query(default=None, alias="type"),
        start_date: datetime | None = Query(default=None),
        end_date: datetime | None = Query(default=None),
    ) -> JSONResponse:
        filters = HistoryFilter(
            status=OrderStatus.parse(status) if status else None,
            symbol=symbol or None,
            side=OrderSide.parse(side) if side else None,
            order_type=OrderType.parse(order_type) if order_type else None,
            start_date=start_date,
            end_date=end_date,
        )
        if page is None and offset is None:
            page = 1
        history = application.query.get_history(
            user_id,
            limit=limit,
            offset=offset,
            sort_by=sort_by,
            sort_order=sort_order,
            filters=filters,
            page=page,
        )
        return JSONResponse(content=to_json(history))

    @app.get("/orders/{order_id}")
    async def order_details(order_id: str, user_id: str = Depends(current_user)) -> JSONResponse:
        details = await application.query.get_details(order_id, user_id)
        return JSONResponse(content=to_json(details))

    @app.get("/orders/{order_id}/status")
    def order_status(order_id: str, user_id: str = Depends(current_user)) -> JSONResponse:
        return JSONResponse(content=to_json(application.query.get_status(order_id, user_id)))

    @app.put("/orders/{order_id}/cancel")
    def cancel_order(
        order_id: str,
        body: CancelOrderRequest | None = None,
        user_id: str = Depends(current_user),
    ) -> JSONResponse:
        reason = body.reason if body is not None else CancelReason.USER_REQUESTED
        result = application.cancellation.cancel(order_id, user_id, reason)
        return JSONResponse(content=to_json(result))

    return app
