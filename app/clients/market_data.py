"""Client for the Financial Modeling Prep quote endpoint (market cap + traded value)."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any

import httpx

from app.config import settings
from app.observability.metrics import MetricsReporter, metrics

logger = logging.getLogger("app.clients.market_data")


class MarketDataError(RuntimeError):
    """Base error for market-data client failures."""

    def __init__(self, message: str, code: str = "MARKET_DATA_ERROR") -> None:
        super().__init__(message)
        self.code = code


class MarketDataTimeoutError(MarketDataError):
    """Raised when the quote request times out."""

    def __init__(self, message: str = "Market data request timed out") -> None:
        super().__init__(message, code="MARKET_DATA_TIMEOUT")


class MarketDataSchemaError(MarketDataError):
    """Raised when the quote payload is not shaped as expected."""

    def __init__(self, message: str = "Unexpected market data response schema") -> None:
        super().__init__(message, code="MARKET_DATA_SCHEMA_ERR")


@dataclass(frozen=True)
class MarketQuote:
    """Volatile market fields for one symbol."""

    market_cap_usd: float | None
    adv_usd: float | None


def _number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def _product(left: float | None, right: float | None) -> float | None:
    if left is None or right is None:
        return None
    return left * right


def parse_quote(record: dict[str, Any]) -> MarketQuote:
    """Derive market cap (or price × shares) and daily traded value from a quote row."""
    price = _number(record.get("price"))
    market_cap = _number(record.get("marketCap"))
    if market_cap is None:
        market_cap = _product(price, _number(record.get("sharesOutstanding")))
    volume = _number(record.get("avgVolume"))
    if volume is None:
        volume = _number(record.get("volume"))
    return MarketQuote(market_cap_usd=market_cap, adv_usd=_product(price, volume))


class MarketDataClient:
    """Minimal quote lookup. Without an API key it is inert and returns ``None``."""

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = "https://financialmodelingprep.com/stable",
        timeout: float = 20.0,
        max_concurrency: int = 4,
        http_client: httpx.AsyncClient | None = None,
        metrics_reporter: MetricsReporter | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._api_key = api_key or None
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._metrics = metrics_reporter or metrics
        if self._api_key is None:
            logger.info("market_data.disabled", extra={"reason": "MARKET_DATA_API_KEY not set"})

    @classmethod
    def from_settings(cls) -> "MarketDataClient":
        return cls(
            settings.market_data_api_key,
            base_url=settings.market_data_base_url,
            timeout=settings.http_timeout_seconds,
            max_concurrency=settings.market_data_max_concurrency,
        )

    @property
    def enabled(self) -> bool:
        return self._api_key is not None

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    async def fetch_quote(self, ticker: str) -> MarketQuote | None:
        """Return the latest quote-derived fields for ``ticker`` or ``None`` when unavailable."""
        if not self.enabled or not ticker:
            return None
        try:
            record = await self._request_quote(ticker)
        except MarketDataError as exc:
            logger.warning(
                "market_data.request_failed",
                extra={"ticker": ticker, "code": exc.code, "error": str(exc)},
            )
            self._metrics.increment("market_data.request_failed", tags={"code": exc.code})
            return None
        if record is None:
            return None
        return parse_quote(record)

    async def _request_quote(self, ticker: str) -> dict[str, Any] | None:
        params = {"symbol": ticker, "apikey": self._api_key}
        async with self._semaphore:
            try:
                response = await self._http.get("/quote", params=params)
            except httpx.TimeoutException as exc:
                raise MarketDataTimeoutError() from exc
            except httpx.HTTPError as exc:
                raise MarketDataError(f"HTTP error calling market data: {exc}") from exc

        if response.status_code in (408, 504):
            raise MarketDataTimeoutError()
        if response.status_code >= 400:
            raise MarketDataError(
                f"Market data request failed: {response.status_code}",
                code=f"MARKET_DATA_HTTP_{response.status_code}",
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise MarketDataSchemaError("Failed to decode market data JSON.") from exc

        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            raise MarketDataSchemaError()
        if not data:
            return None
        first = data[0]
        if not isinstance(first, dict):
            raise MarketDataSchemaError("Quote entries must be JSON objects.")
        return first
