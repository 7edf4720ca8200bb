"""Market-data client (MDC) used during acceptance and execution.

The provider itself is an external service. This module defines the
contract the pipeline depends on plus two implementations:

- ``StaticMarketDataClient``: configurable in-process quotes (dev, tests)
- ``HttpMarketDataClient``: REST client with retries, timeouts and a
  circuit breaker

Design Decisions:
- Async-first: every call is awaited by the submission path with a deadline
- Prices are ``Decimal`` end to end
- Timeouts become ``MarketDataTimeoutError``; every other provider
  failure becomes ``MarketDataUnavailableError``
"""

from __future__ import annotations

import asyncio
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Final, Protocol, runtime_checkable

import httpx
import structlog
from pydantic import Field
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from oms_core.common.errors import (
    MarketDataTimeoutError,
    MarketDataUnavailableError,
)
from oms_core.common.types import DomainModel, to_decimal, utc_now
from oms_core.execution.circuit import CircuitBreaker, CircuitOpenError

log = structlog.get_logger()

DEFAULT_MARKET_DATA_TIMEOUT: Final[float] = 5.0
DEFAULT_MAX_RETRIES: Final[int] = 3
DEFAULT_MAX_ORDER_SIZE: Final[Decimal] = Decimal("1000000")
DEFAULT_MIN_ORDER_SIZE: Final[Decimal] = Decimal("0.00000001")

# Regular session in UTC for non-crypto assets
STOCK_SESSION_OPEN: Final[time] = time(13, 30)
STOCK_SESSION_CLOSE: Final[time] = time(20, 0)


# ==============================================================================
# Domain Models
# ==============================================================================
class AssetCategory(str, Enum):
    """Asset classification reported by the provider."""

    STOCK = "STOCK"
    BOND = "BOND"
    CRYPTO = "CRYPTO"
    FUND = "FUND"
    ETF = "ETF"


class AssetDetails(DomainModel):
    """Tradability information about a symbol."""

    symbol: str
    name: str = ""
    category: AssetCategory = AssetCategory.STOCK
    last_quote: Decimal = Field(gt=0)
    is_active: bool = True
    is_tradeable: bool = True
    min_order_size: Decimal = DEFAULT_MIN_ORDER_SIZE
    max_order_size: Decimal = DEFAULT_MAX_ORDER_SIZE
    price_step: Decimal = Decimal("0.01")
    last_updated: datetime = Field(default_factory=utc_now)


class TradingHours(DomainModel):
    """Session information for a symbol."""

    symbol: str
    is_open: bool
    market_open: datetime | None = None
    market_close: datetime | None = None
    next_open: datetime | None = None
    next_close: datetime | None = None
    timezone: str = "UTC"
    extended_hours: bool = False


def trading_hours_for(
    symbol: str,
    category: AssetCategory,
    now: datetime | None = None,
) -> TradingHours:
    """Derive the session for a category (crypto trades around the clock)."""
    now = now or utc_now()
    if category == AssetCategory.CRYPTO:
        return TradingHours(symbol=symbol, is_open=True, extended_hours=True)

    today = now.date()
    market_open = datetime.combine(today, STOCK_SESSION_OPEN, tzinfo=timezone.utc)
    market_close = datetime.combine(today, STOCK_SESSION_CLOSE, tzinfo=timezone.utc)
    is_weekday = now.weekday() < 5
    is_open = is_weekday and market_open <= now < market_close

    if is_open:
        next_open = market_open + timedelta(days=1)
        next_close = market_close
    elif now < market_open and is_weekday:
        next_open = market_open
        next_close = market_close
    else:
        days = 1
        while (today + timedelta(days=days)).weekday() >= 5:
            days += 1
        next_open = market_open + timedelta(days=days)
        next_close = market_close + timedelta(days=days)

    return TradingHours(
        symbol=symbol,
        is_open=is_open,
        market_open=market_open,
        market_close=market_close,
        next_open=next_open,
        next_close=next_close,
    )


# ==============================================================================
# Market Data Client Protocol
# ==============================================================================
@runtime_checkable
class MarketDataClient(Protocol):
    """Contract the pipeline needs from a market-data provider."""

    async def get_asset_details(self, symbol: str) -> AssetDetails | None:
        """Asset details, or None for an unknown symbol."""
        ...

    async def validate_symbol(self, symbol: str) -> bool:
        """Whether the symbol exists and is tradeable."""
        ...

    async def get_current_price(self, symbol: str) -> Decimal:
        """Latest quote for a symbol."""
        ...

    async def get_trading_hours(self, symbol: str) -> TradingHours:
        """Session information for a symbol."""
        ...

    async def is_market_open(self, symbol: str) -> bool:
        """Whether the symbol can trade right now."""
        ...

    async def get_batch_quotes(self, symbols: list[str]) -> dict[str, Decimal]:
        """Latest quotes for several symbols (unknown symbols omitted)."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...


# ==============================================================================
# Static Client (Development/Testing)
# ==============================================================================
class StaticMarketDataClient:
    """In-process market data with configurable quotes and failures.

    Quotes can be changed at runtime (``set_price``) to simulate moves
    between acceptance and execution.
    """

    def __init__(
        self,
        quotes: dict[str, Any] | None = None,
        market_open: bool = True,
        latency_ms: float = 0.0,
        categories: dict[str, str] | None = None,
        non_tradeable: list[str] | None = None,
    ) -> None:
        """Initialize static client.

        Args:
            quotes: Symbol -> price.
            market_open: Whether every non-crypto market is open.
            latency_ms: Simulated provider latency per call.
            categories: Symbol -> AssetCategory value (default STOCK).
            non_tradeable: Symbols that exist but cannot trade.
        """
        self.quotes: dict[str, Decimal] = {
            s.upper(): to_decimal(p) for s, p in (quotes or {}).items()
        }
        self.market_open = market_open
        self.latency_ms = latency_ms
        self.categories = {s.upper(): AssetCategory(c) for s, c in (categories or {}).items()}
        self.non_tradeable = {s.upper() for s in (non_tradeable or [])}
        self.failure: Exception | None = None
        self.calls: int = 0

    def set_price(self, symbol: str, price: Any) -> None:
        """Change the quote for a symbol."""
        self.quotes[symbol.upper()] = to_decimal(price)

    def fail_with(self, error: Exception | None) -> None:
        """Make every subsequent call raise ``error`` (None to recover)."""
        self.failure = error

    async def _tick(self) -> None:
        self.calls += 1
        if self.latency_ms:
            await asyncio.sleep(self.latency_ms / 1000.0)
        if self.failure is not None:
            raise self.failure

    async def get_asset_details(self, symbol: str) -> AssetDetails | None:
        await self._tick()
        symbol = symbol.upper()
        price = self.quotes.get(symbol)
        if price is None:
            return None
        return AssetDetails(
            symbol=symbol,
            name=symbol,
            category=self.categories.get(symbol, AssetCategory.STOCK),
            last_quote=price,
            is_tradeable=symbol not in self.non_tradeable,
        )

    async def validate_symbol(self, symbol: str) -> bool:
        details = await self.get_asset_details(symbol)
        return details is not None and details.is_tradeable

    async def get_current_price(self, symbol: str) -> Decimal:
        details = await self.get_asset_details(symbol)
        if details is None:
            raise MarketDataUnavailableError(f"No market data for symbol {symbol}")
        return details.last_quote

    async def get_trading_hours(self, symbol: str) -> TradingHours:
        details = await self.get_asset_details(symbol)
        if details is None:
            raise MarketDataUnavailableError(f"No market data for symbol {symbol}")
        if details.category == AssetCategory.CRYPTO:
            return trading_hours_for(details.symbol, details.category)
        return TradingHours(symbol=details.symbol, is_open=self.market_open)

    async def is_market_open(self, symbol: str) -> bool:
        return (await self.get_trading_hours(symbol)).is_open

    async def get_batch_quotes(self, symbols: list[str]) -> dict[str, Decimal]:
        await self._tick()
        wanted = {s.upper() for s in symbols}
        return {s: p for s, p in self.quotes.items() if s in wanted}

    async def close(self) -> None:
        return None


# ==============================================================================
# HTTP Client
# ==============================================================================
class HttpMarketDataClient:
    """REST client for the market-data service.

    Expects ``GET {base_url}/api/v1/market-data/{symbol}`` returning
    ``{"symbol", "company_name", "current_price", "category", ...}`` and
    ``GET {base_url}/api/v1/market-data?symbols=A,B`` returning a list.

    Features:
    - Exponential-backoff retries on connection errors (tenacity)
    - Per-request timeout mapped to ``MarketDataTimeoutError``
    - Circuit breaker to shed load while the provider is down
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8002",
        timeout: float = DEFAULT_MARKET_DATA_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        circuit_breaker_threshold: int = 5,
        circuit_breaker_timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self.circuit_breaker = CircuitBreaker(
            name="market_data",
            failure_threshold=circuit_breaker_threshold,
            reset_timeout=circuit_breaker_timeout,
        )

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()

    async def _send(self, path: str, params: dict[str, str] | None) -> httpx.Response:
        """GET with retries on connection errors; transport errors are translated."""

        @retry(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=0.2, min=0.2, max=2.0),
            retry=retry_if_exception_type((httpx.ConnectError, httpx.RemoteProtocolError)),
            before_sleep=lambda rs: log.warning(
                "Retrying market data request",
                attempt=rs.attempt_number,
                path=path,
            ),
        )
        async def _request() -> httpx.Response:
            return await self.client.get(path, params=params)

        try:
            return await _request()
        except httpx.TimeoutException as exc:
            raise MarketDataTimeoutError(f"Market data request timed out: {path}") from exc
        except (RetryError, httpx.HTTPError) as exc:
            raise MarketDataUnavailableError(f"Market data request failed: {exc}") from exc

    @staticmethod
    def _decode(response: httpx.Response, path: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise MarketDataUnavailableError(
                f"Market data response for {path} is not JSON"
            ) from exc

    async def _get_json(self, path: str, params: dict[str, str] | None = None) -> Any | None:
        """GET a JSON document; None on 404.

        The breaker sees 5xx, transport errors, undecodable bodies and
        cancellation as failures. Other 4xx answers are the caller's fault
        and do not count against the provider.
        """
        try:
            with self.circuit_breaker.guard():
                response = await self._send(path, params)
                if response.status_code >= 500:
                    raise MarketDataUnavailableError(
                        f"Market data service error {response.status_code} for {path}"
                    )
                payload = self._decode(response, path) if response.is_success else None
        except CircuitOpenError as exc:
            raise MarketDataUnavailableError(f"Market data unavailable: {exc}") from exc

        if response.status_code == httpx.codes.NOT_FOUND:
            return None
        if response.status_code >= 400:
            raise MarketDataUnavailableError(
                f"Market data request rejected {response.status_code} for {path}"
            )
        return payload

    @staticmethod
    def _parse_details(payload: Any) -> AssetDetails:
        if not isinstance(payload, dict):
            raise MarketDataUnavailableError(
                f"Malformed market data payload: expected an object, got {type(payload).__name__}"
            )
        try:
            price = to_decimal(payload["current_price"])
            category = AssetCategory(str(payload.get("category", "STOCK")).upper())
            return AssetDetails(
                symbol=str(payload["symbol"]).upper(),
                name=str(payload.get("company_name", "")),
                category=category,
                last_quote=price,
                is_tradeable=bool(payload.get("is_tradeable", price > 0)),
            )
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            raise MarketDataUnavailableError(f"Malformed market data payload: {exc}") from exc

    async def get_asset_details(self, symbol: str) -> AssetDetails | None:
        payload = await self._get_json(f"/api/v1/market-data/{symbol.upper()}")
        if payload is None:
            return None
        return self._parse_details(payload)

    async def validate_symbol(self, symbol: str) -> bool:
        details = await self.get_asset_details(symbol)
        return details is not None and details.is_tradeable

    async def get_current_price(self, symbol: str) -> Decimal:
        details = await self.get_asset_details(symbol)
        if details is None:
            raise MarketDataUnavailableError(f"No market data for symbol {symbol}")
        return details.last_quote

    async def get_trading_hours(self, symbol: str) -> TradingHours:
        details = await self.get_asset_details(symbol)
        if details is None:
            raise MarketDataUnavailableError(f"No market data for symbol {symbol}")
        return trading_hours_for(details.symbol, details.category)

    async def is_market_open(self, symbol: str) -> bool:
        return (await self.get_trading_hours(symbol)).is_open

    async def get_batch_quotes(self, symbols: list[str]) -> dict[str, Decimal]:
        if not symbols:
            return {}
        payload = await self._get_json(
            "/api/v1/market-data",
            params={"symbols": ",".join(s.upper() for s in symbols)},
        )
        if payload is None:
            return {}
        if not isinstance(payload, list):
            raise MarketDataUnavailableError("Malformed market data payload: expected a list")
        quotes: dict[str, Decimal] = {}
        for item in payload:
            details = self._parse_details(item)
            quotes[details.symbol] = details.last_quote
        return quotes
