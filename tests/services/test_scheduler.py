from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from zoneinfo import ZoneInfoNotFoundError

import pytest

from app.services.screener.scheduler import DailyRefreshScheduler, next_run_after, seconds_until

NEW_YORK = "America/New_York"


class CountingService:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls = 0
        self.error = error

    async def refresh(self):
        self.calls += 1
        if self.error is not None:
            raise self.error


def test_next_run_same_day_when_before_slot():
    now = datetime(2025, 3, 3, 10, 0, tzinfo=UTC)  # 05:00 EST

    target = next_run_after(now, timezone=NEW_YORK, hour=6, minute=30)

    assert target.isoformat() == "2025-03-03T06:30:00-05:00"
    assert seconds_until(target, now) == 90 * 60


def test_next_run_rolls_to_tomorrow_once_slot_passed():
    now = datetime(2025, 3, 3, 11, 30, tzinfo=UTC)  # 06:30 EST exactly

    target = next_run_after(now, timezone=NEW_YORK, hour=6, minute=30)

    assert target.isoformat() == "2025-03-04T06:30:00-05:00"


def test_next_run_across_spring_forward_keeps_wall_clock():
    now = datetime(2025, 3, 8, 12, 0, tzinfo=UTC)  # 07:00 EST, the day before DST starts

    target = next_run_after(now, timezone=NEW_YORK, hour=6, minute=30)

    assert target.isoformat() == "2025-03-09T06:30:00-04:00"
    assert seconds_until(target, now) == 22.5 * 3600


@pytest.mark.asyncio
async def test_run_once_sleeps_until_slot_then_refreshes():
    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    service = CountingService()
    scheduler = DailyRefreshScheduler(
        service,
        timezone=NEW_YORK,
        hour=6,
        minute=30,
        clock=lambda: datetime(2025, 3, 3, 11, 0, tzinfo=UTC),
        sleep=_sleep,
    )

    await scheduler.run_once()

    assert delays == [1800]
    assert service.calls == 1


@pytest.mark.asyncio
async def test_run_once_never_repeats_a_slot():
    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    scheduler = DailyRefreshScheduler(
        CountingService(),
        timezone=NEW_YORK,
        hour=6,
        minute=30,
        clock=lambda: datetime(2025, 3, 3, 11, 0, tzinfo=UTC),
        sleep=_sleep,
    )

    await scheduler.run_once()
    await scheduler.run_once()

    assert delays == [1800, 1800 + 24 * 3600]


@pytest.mark.asyncio
async def test_failed_refresh_is_logged_not_raised(caplog: pytest.LogCaptureFixture):
    async def _sleep(delay: float) -> None:
        return None

    service = CountingService(error=RuntimeError("sec down"))
    scheduler = DailyRefreshScheduler(
        service, timezone=NEW_YORK, hour=6, minute=30, clock=lambda: datetime.now(UTC), sleep=_sleep
    )
    caplog.set_level(logging.ERROR, logger="app.services.screener.scheduler")

    await scheduler.run_once()

    assert service.calls == 1
    assert any(record.message == "scheduler.refresh_failed" for record in caplog.records)


@pytest.mark.asyncio
async def test_start_and_stop_manage_background_task():
    scheduler = DailyRefreshScheduler(CountingService(), timezone=NEW_YORK, hour=6, minute=30)

    scheduler.start()
    await asyncio.sleep(0)
    assert scheduler.running

    await scheduler.stop()
    assert not scheduler.running


def test_unknown_timezone_is_rejected():
    with pytest.raises(ZoneInfoNotFoundError):
        DailyRefreshScheduler(CountingService(), timezone="Mars/Olympus", hour=6, minute=30)
