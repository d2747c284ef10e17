"""Async client for the SEC EDGAR JSON endpoints used by the snapshot refresh."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from app.config import settings
from app.observability.metrics import MetricsReporter, metrics

logger = logging.getLogger("app.clients.edgar")

COMPANY_TICKERS_URL = "https://www.sec.gov/files/company_tickers.json"
COMPANY_FACTS_URL_TEMPLATE = "https://data.sec.gov/api/xbrl/companyfacts/CIK{cik}.json"
SUBMISSIONS_URL_TEMPLATE = "https://data.sec.gov/submissions/CIK{cik}.json"


class EdgarError(RuntimeError):
    """Base error for EDGAR client failures."""

    def __init__(self, message: str, code: str = "EDGAR_ERROR") -> None:
        super().__init__(message)
        self.code = code


class EdgarRateLimitError(EdgarError):
    """Raised when EDGAR throttles us (429, or 403 for missing/blocked User-Agent)."""

    def __init__(self, message: str = "Rate limited by EDGAR") -> None:
        super().__init__(message, code="EDGAR_429")


class EdgarNotFoundError(EdgarError):
    """Raised when EDGAR has no document for the requested registrant."""

    def __init__(self, message: str = "EDGAR document not found") -> None:
        super().__init__(message, code="EDGAR_404")


class EdgarTimeoutError(EdgarError):
    """Raised when an EDGAR request times out."""

    def __init__(self, message: str = "EDGAR request timed out") -> None:
        super().__init__(message, code="EDGAR_TIMEOUT")


class EdgarSchemaError(EdgarError):
    """Raised when EDGAR returns something other than a JSON object."""

    def __init__(self, message: str = "Unexpected EDGAR response schema") -> None:
        super().__init__(message, code="EDGAR_SCHEMA_ERR")


def pad_cik(raw: str | int) -> str:
    """Return the 10-digit zero-padded CIK used in EDGAR URLs."""
    return str(raw).strip().zfill(10)


class EdgarClient:
    """Polite EDGAR reader.

    Every request carries the configured contact User-Agent and holds a client-wide
    semaphore. Request starts are spaced at least ``1 / max_requests_per_second``
    apart across all callers, so the aggregate rate stays under SEC fair-access
    limits no matter how many refresh workers share the client. Public ``fetch_*``
    methods never raise for upstream problems; they return ``None`` instead.
    """

    def __init__(
        self,
        *,
        user_agent: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 20.0,
        max_requests_per_second: float = 8.0,
        max_concurrency: int = 4,
        metrics_reporter: MetricsReporter | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not user_agent:
            raise ValueError("SEC_USER_AGENT is required to create an EdgarClient.")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if max_requests_per_second <= 0:
            raise ValueError("max_requests_per_second must be > 0")
        self._headers = {"User-Agent": user_agent, "Accept": "application/json"}
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._min_interval = 1.0 / max_requests_per_second
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._rate_lock = asyncio.Lock()
        self._last_start = float("-inf")
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics_reporter or metrics

    @classmethod
    def from_settings(cls) -> "EdgarClient":
        return cls(
            user_agent=settings.sec_user_agent,
            timeout=settings.http_timeout_seconds,
            max_requests_per_second=settings.edgar_max_requests_per_second,
            max_concurrency=settings.edgar_max_concurrency,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._owns_http_client:
            await self._http.aclose()

    async def __aenter__(self) -> "EdgarClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def fetch_ticker_map(self) -> dict[str, Any] | None:
        """Return SEC's ticker → CIK mapping file, keyed ``"0"``, ``"1"``, ..."""
        return await self._fetch(COMPANY_TICKERS_URL, kind="tickers")

    async def fetch_company_facts(self, cik: str) -> dict[str, Any] | None:
        """Return the XBRL companyfacts document for a registrant."""
        return await self._fetch(COMPANY_FACTS_URL_TEMPLATE.format(cik=pad_cik(cik)), kind="facts")

    async def fetch_submissions(self, cik: str) -> dict[str, Any] | None:
        """Return the submissions (recent filings + addresses) document for a registrant."""
        return await self._fetch(SUBMISSIONS_URL_TEMPLATE.format(cik=pad_cik(cik)), kind="submissions")

    async def _fetch(self, url: str, *, kind: str) -> dict[str, Any] | None:
        try:
            return await self._request_json(url)
        except EdgarError as exc:
            logger.warning(
                "edgar.request_failed",
                extra={"url": url, "kind": kind, "code": exc.code, "error": str(exc)},
            )
            self._metrics.increment("edgar.request_failed", tags={"kind": kind, "code": exc.code})
            return None

    async def _wait_for_slot(self) -> None:
        # Starts are at least _min_interval apart across every caller.
        async with self._rate_lock:
            now = self._clock()
            wait = self._last_start + self._min_interval - now
            if wait > 0:
                await self._sleep(wait)
            self._last_start = max(now, self._last_start + self._min_interval)

    async def _request_json(self, url: str) -> dict[str, Any]:
        async with self._semaphore:
            await self._wait_for_slot()
            try:
                response = await self._http.get(url, headers=self._headers)
            except httpx.TimeoutException as exc:
                raise EdgarTimeoutError() from exc
            except httpx.HTTPError as exc:
                raise EdgarError(f"HTTP error calling EDGAR: {exc}") from exc

        status = response.status_code
        if status in (403, 429):
            raise EdgarRateLimitError(f"EDGAR refused request with status {status}")
        if status == 404:
            raise EdgarNotFoundError()
        if status in (408, 504):
            raise EdgarTimeoutError()
        if status >= 400:
            raise EdgarError(f"EDGAR request failed: {status}", code=f"EDGAR_HTTP_{status}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise EdgarSchemaError("Failed to decode EDGAR response JSON.") from exc
        if not isinstance(payload, dict):
            raise EdgarSchemaError("EDGAR response must be a JSON object.")
        return payload
