"""Build the bounded candidate universe refreshed each cycle."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol

from app.clients.edgar import pad_cik
from app.core.backoff import exponential_backoff
from app.models.company import Exchange, UniverseEntry
from app.observability.metrics import MetricsReporter, metrics

logger = logging.getLogger("app.services.screener.universe")

NON_OPERATING_PATTERN = re.compile(r"\b(ETFS?|FUNDS?|TRUSTS?|ETNS?|ETPS?|INCOME|DIVIDENDS?)\b", re.IGNORECASE)

FALLBACK_UNIVERSE: tuple[UniverseEntry, ...] = (
    UniverseEntry(ticker="VCTR", exchange=Exchange.NASDAQ),
    UniverseEntry(ticker="HBRF", exchange=Exchange.NYSE),
    UniverseEntry(ticker="EDEN", exchange=Exchange.OTC),
    UniverseEntry(ticker="QMIN", exchange=Exchange.OTC),
)


class TickerMapSource(Protocol):
    """Subset of EdgarClient behavior used by the universe builder."""

    async def fetch_ticker_map(self) -> dict[str, Any] | None:
        ...


def classify_exchange(ticker: str) -> Exchange:
    """Guess the venue tier from ticker shape; SEC's mapping carries no exchange."""
    symbol = ticker.strip().upper()
    if len(symbol) == 5 or "." in symbol:
        return Exchange.OTC
    if len(symbol) >= 4 and symbol.endswith("F"):
        return Exchange.OTC
    return Exchange.NASDAQ


def is_non_operating(name: str | None) -> bool:
    return bool(name) and NON_OPERATING_PATTERN.search(name) is not None


def entries_from_ticker_map(payload: Mapping[str, Any], *, limit: int) -> list[UniverseEntry]:
    """Filter, dedupe and cap SEC's ``company_tickers.json`` rows in source order."""
    entries: list[UniverseEntry] = []
    seen_tickers: set[str] = set()
    seen_ciks: set[str] = set()
    for row in payload.values():
        if len(entries) >= limit:
            break
        if not isinstance(row, Mapping):
            continue
        ticker = str(row.get("ticker") or "").strip().upper()
        raw_cik = row.get("cik_str", row.get("cik"))
        if not ticker or raw_cik in (None, ""):
            continue
        name = row.get("title")
        name = str(name).strip() if name else None
        if is_non_operating(name):
            continue
        cik = pad_cik(raw_cik)
        if ticker in seen_tickers or cik in seen_ciks:
            continue
        seen_tickers.add(ticker)
        seen_ciks.add(cik)
        entries.append(
            UniverseEntry(ticker=ticker, cik=cik, exchange=classify_exchange(ticker), name=name)
        )
    return entries


class UniverseBuilder:
    """Produces the universe, caching a successful build for the process lifetime.

    The fallback seed set is never cached so the next cycle retries SEC's mapping.
    """

    def __init__(
        self,
        source: TickerMapSource,
        *,
        limit: int,
        cache_enabled: bool = True,
        fetch_attempts: int = 3,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        metrics_reporter: MetricsReporter | None = None,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self._source = source
        self._limit = limit
        self._cache_enabled = cache_enabled
        self._fetch_attempts = max(1, fetch_attempts)
        self._sleep = sleep
        self._metrics = metrics_reporter or metrics
        self._cached: tuple[UniverseEntry, ...] | None = None

    @property
    def cached(self) -> bool:
        return self._cached is not None

    def invalidate(self) -> None:
        self._cached = None

    async def get(self) -> list[UniverseEntry]:
        if self._cached is not None:
            return list(self._cached)

        payload = await self._fetch_with_retries()
        entries = entries_from_ticker_map(payload, limit=self._limit) if payload else []
        if not entries:
            logger.warning(
                "universe.fallback",
                extra={"attempts": self._fetch_attempts, "fallback_size": len(FALLBACK_UNIVERSE)},
            )
            self._metrics.increment("universe.fallback")
            return list(FALLBACK_UNIVERSE)

        logger.info("universe.loaded", extra={"count": len(entries), "limit": self._limit})
        if self._cache_enabled:
            self._cached = tuple(entries)
        return entries

    async def _fetch_with_retries(self) -> Mapping[str, Any] | None:
        for attempt, delay in exponential_backoff(max_attempts=self._fetch_attempts):
            payload = await self._source.fetch_ticker_map()
            if payload:
                return payload
            if attempt < self._fetch_attempts:
                logger.info("universe.fetch_retry", extra={"attempt": attempt, "delay": round(delay, 2)})
                await self._sleep(delay)
        return None
