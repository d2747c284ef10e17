"""Snapshot refresh orchestration: bounded fan-out, atomic publish, single flight."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any, Protocol
from zoneinfo import ZoneInfo

from app.clients.edgar import EdgarClient
from app.clients.market_data import MarketDataClient, MarketQuote
from app.config import settings
from app.models.company import Company, Snapshot, UniverseEntry
from app.observability.metrics import MetricsReporter, metrics
from app.services.screener.errors import SnapshotRefreshError
from app.services.screener.extractor import (
    estimate_last_fundraising_date,
    estimate_location,
    extract_financials,
)
from app.services.screener.universe import UniverseBuilder

logger = logging.getLogger("app.services.screener.snapshot")


class FactSource(Protocol):
    """Subset of EdgarClient behavior used per entity."""

    async def fetch_company_facts(self, cik: str) -> dict[str, Any] | None:
        ...

    async def fetch_submissions(self, cik: str) -> dict[str, Any] | None:
        ...


class QuoteSource(Protocol):
    """Subset of MarketDataClient behavior used per entity."""

    async def fetch_quote(self, ticker: str) -> MarketQuote | None:
        ...


class UniverseSource(Protocol):
    async def get(self) -> list[UniverseEntry]:
        ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


def business_today(timezone: str, now: datetime | None = None) -> str:
    """ISO date of ``now`` in the business timezone, independent of the host's TZ."""
    current = now or _utcnow()
    return current.astimezone(ZoneInfo(timezone)).date().isoformat()


class SnapshotStore:
    """Holds the single process-wide snapshot reference.

    Snapshots are frozen; ``publish`` swaps the reference in one assignment so
    readers always see either the old or the new snapshot in full.
    """

    def __init__(self, initial: Snapshot | None = None) -> None:
        self._current = initial or Snapshot()

    @property
    def current(self) -> Snapshot:
        return self._current

    def publish(self, snapshot: Snapshot) -> None:
        self._current = snapshot


class SnapshotService:
    """Coordinates refresh cycles and exposes the current snapshot to readers."""

    def __init__(
        self,
        *,
        edgar: FactSource,
        market_data: QuoteSource,
        universe: UniverseSource,
        concurrency: int,
        timezone: str,
        store: SnapshotStore | None = None,
        freshness_enabled: bool = True,
        clock: Callable[[], datetime] = _utcnow,
        metrics_reporter: MetricsReporter | None = None,
        closeables: Sequence[Any] = (),
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        ZoneInfo(timezone)  # fail fast on a bad timezone name
        self._edgar = edgar
        self._market_data = market_data
        self._universe = universe
        self._concurrency = concurrency
        self._timezone = timezone
        self._store = store or SnapshotStore()
        self._freshness_enabled = freshness_enabled
        self._clock = clock
        self._metrics = metrics_reporter or metrics
        self._closeables = tuple(closeables)
        self._inflight: asyncio.Task[Snapshot] | None = None

    @classmethod
    def from_settings(cls) -> "SnapshotService":
        edgar = EdgarClient.from_settings()
        market_data = MarketDataClient.from_settings()
        universe = UniverseBuilder(
            edgar,
            limit=settings.universe_limit,
            cache_enabled=settings.universe_cache_enabled,
            fetch_attempts=settings.universe_fetch_attempts,
        )
        return cls(
            edgar=edgar,
            market_data=market_data,
            universe=universe,
            concurrency=settings.refresh_concurrency,
            timezone=settings.business_timezone,
            freshness_enabled=settings.freshness_refresh_enabled,
            closeables=(edgar, market_data),
        )

    @property
    def snapshot(self) -> Snapshot:
        return self._store.current

    @property
    def timezone(self) -> str:
        return self._timezone

    @property
    def refresh_in_flight(self) -> bool:
        return self._inflight is not None

    def today(self) -> str:
        return business_today(self._timezone, self._clock())

    def is_stale(self) -> bool:
        return self.snapshot.date != self.today()

    async def wait_idle(self) -> None:
        """Wait for the in-flight refresh, if any. Its failure is reported by its own caller."""
        task = self._inflight
        if task is None:
            return
        with contextlib.suppress(SnapshotRefreshError):
            await asyncio.shield(task)

    async def aclose(self) -> None:
        """Let a running refresh finish, then close the upstream clients."""
        await self.wait_idle()
        for resource in self._closeables:
            await resource.aclose()

    async def refresh(self) -> Snapshot:
        """Run a refresh, or join the one already in flight."""
        return await asyncio.shield(self._ensure_task())

    def trigger_background_refresh(self, *, reason: str) -> bool:
        """Start a refresh without waiting for it. Returns False if one was already running."""
        if self._inflight is not None:
            return False
        task = self._ensure_task()
        task.add_done_callback(self._log_background_outcome)
        logger.info("snapshot.refresh_triggered", extra={"reason": reason})
        return True

    def ensure_fresh(self) -> bool:
        """Serve-stale policy: kick off a background refresh when the snapshot is not today's."""
        if not self._freshness_enabled or not self.is_stale():
            return False
        return self.trigger_background_refresh(reason="stale_snapshot")

    def _ensure_task(self) -> asyncio.Task[Snapshot]:
        # Check-and-set with no await in between keeps refreshes single-flight.
        if self._inflight is None:
            self._inflight = asyncio.create_task(self._run_refresh())
        return self._inflight

    async def _run_refresh(self) -> Snapshot:
        try:
            return await self._refresh_once()
        finally:
            self._inflight = None

    def _log_background_outcome(self, task: asyncio.Task[Snapshot]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "snapshot.background_refresh_failed",
                extra={"error": str(exc), "code": getattr(exc, "code", None)},
                exc_info=exc,
            )

    async def _refresh_once(self) -> Snapshot:
        start = time.perf_counter()
        as_of = self.today()
        logger.info("snapshot.refresh_start", extra={"as_of": as_of})
        try:
            universe = await self._universe.get()
            companies, failures = await self._collect(universe, as_of)
        except Exception as exc:
            self._metrics.increment("snapshot.refresh_failed")
            raise SnapshotRefreshError(f"Snapshot refresh failed: {exc}") from exc

        snapshot = Snapshot(date=as_of, items=tuple(companies))
        self._store.publish(snapshot)

        duration_ms = (time.perf_counter() - start) * 1000
        self._metrics.timing("snapshot.refresh.duration_ms", duration_ms)
        self._metrics.gauge("snapshot.companies", snapshot.count)
        if failures:
            self._metrics.increment("snapshot.entity_failures", failures)
        logger.info(
            "snapshot.refresh_complete",
            extra={
                "as_of": as_of,
                "companies": snapshot.count,
                "entity_failures": failures,
                "duration_ms": f"{duration_ms:.2f}",
            },
        )
        return snapshot

    async def _collect(
        self, universe: Sequence[UniverseEntry], as_of: str
    ) -> tuple[list[Company], int]:
        semaphore = asyncio.Semaphore(self._concurrency)
        coroutines = [self._with_semaphore(semaphore, entry, as_of) for entry in universe]
        outcomes = await asyncio.gather(*coroutines, return_exceptions=True)

        companies: list[Company] = []
        failures = 0
        for entry, outcome in zip(universe, outcomes, strict=True):
            if isinstance(outcome, Company):
                companies.append(outcome)
                continue
            if not isinstance(outcome, Exception):
                raise outcome
            failures += 1
            logger.warning(
                "snapshot.entity_failed",
                extra={"ticker": entry.ticker, "cik": entry.cik, "error": repr(outcome)},
            )
            companies.append(bare_company(entry, as_of))
        return companies, failures

    async def _with_semaphore(
        self, semaphore: asyncio.Semaphore, entry: UniverseEntry, as_of: str
    ) -> Company:
        async with semaphore:
            return await self._build_company(entry, as_of)

    async def _build_company(self, entry: UniverseEntry, as_of: str) -> Company:
        company_facts = submissions = None
        if entry.cik:
            company_facts = await self._edgar.fetch_company_facts(entry.cik)
            submissions = await self._edgar.fetch_submissions(entry.cik)
        quote = await self._market_data.fetch_quote(entry.ticker)
        financials = extract_financials(company_facts)
        return Company(
            ticker=entry.ticker,
            cik=entry.cik,
            name=entry.name or entry.ticker,
            exchange=entry.exchange,
            location=estimate_location(submissions),
            revenue_ltm_usd=financials.revenue,
            cfo_ltm_usd=financials.cfo,
            total_debt_usd=financials.total_debt,
            accounts_payable_usd=financials.accounts_payable,
            accounts_receivable_usd=financials.accounts_receivable,
            inventory_usd=financials.inventory,
            ppe_usd=financials.ppe,
            market_cap_usd=quote.market_cap_usd if quote else None,
            adv_usd=quote.adv_usd if quote else None,
            last_fundraising_date=estimate_last_fundraising_date(submissions),
            borrowing_base_usd=financials.borrowing_base,
            as_of_date=as_of,
        )


def bare_company(entry: UniverseEntry, as_of: str) -> Company:
    """Identity-only record used when an entity's lookups blew up unexpectedly."""
    return Company(
        ticker=entry.ticker,
        cik=entry.cik,
        name=entry.name or entry.ticker,
        exchange=entry.exchange,
        as_of_date=as_of,
    )


_SERVICE_INSTANCE: SnapshotService | None = None


def get_snapshot_service() -> SnapshotService:
    """Singleton accessor used by API routes and the app lifespan."""
    global _SERVICE_INSTANCE  # noqa: PLW0603
    if _SERVICE_INSTANCE is None:
        _SERVICE_INSTANCE = SnapshotService.from_settings()
    return _SERVICE_INSTANCE
