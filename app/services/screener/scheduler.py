"""Daily wall-clock refresh loop in the business timezone."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from zoneinfo import ZoneInfo

logger = logging.getLogger("app.services.screener.scheduler")


class Refreshable(Protocol):
    async def refresh(self) -> Any:
        ...


def next_run_after(now: datetime, *, timezone: str, hour: int, minute: int) -> datetime:
    """Next ``hour:minute`` local wall-clock time strictly after ``now`` (tz-aware)."""
    tzinfo = ZoneInfo(timezone)
    local_now = now.astimezone(tzinfo)
    candidate = datetime(local_now.year, local_now.month, local_now.day, hour, minute, tzinfo=tzinfo)
    if candidate <= local_now:
        next_day = local_now.date() + timedelta(days=1)
        candidate = datetime(next_day.year, next_day.month, next_day.day, hour, minute, tzinfo=tzinfo)
    return candidate


def seconds_until(target: datetime, now: datetime) -> float:
    # Compare in UTC; same-tzinfo subtraction ignores DST offset changes.
    return max((target.astimezone(UTC) - now.astimezone(UTC)).total_seconds(), 0.0)


class DailyRefreshScheduler:
    """Runs ``service.refresh()`` once a day; a failed cycle never stops the loop."""

    def __init__(
        self,
        service: Refreshable,
        *,
        timezone: str,
        hour: int,
        minute: int,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        ZoneInfo(timezone)
        self._service = service
        self._timezone = timezone
        self._hour = hour
        self._minute = minute
        self._clock = clock
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self._last_target: datetime | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_run(self) -> datetime:
        return next_run_after(self._clock(), timezone=self._timezone, hour=self._hour, minute=self._minute)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="daily-snapshot-refresh")
        logger.info(
            "scheduler.started",
            extra={"timezone": self._timezone, "at": f"{self._hour:02d}:{self._minute:02d}"},
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("scheduler.stopped")

    async def run_once(self) -> None:
        """Wait for the next scheduled slot and run one refresh."""
        now = self._clock()
        target = next_run_after(now, timezone=self._timezone, hour=self._hour, minute=self._minute)
        if self._last_target is not None and target <= self._last_target:
            # Timer woke a hair early; never run the same slot twice.
            target = next_run_after(
                self._last_target, timezone=self._timezone, hour=self._hour, minute=self._minute
            )
        self._last_target = target
        delay = seconds_until(target, now)
        logger.info("scheduler.sleeping", extra={"next_run": target.isoformat(), "seconds": round(delay)})
        await self._sleep(delay)
        try:
            await self._service.refresh()
        except Exception:
            logger.exception("scheduler.refresh_failed", extra={"scheduled_for": target.isoformat()})

    async def _loop(self) -> None:
        while True:
            await self.run_once()
