from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

import pytest

from app.clients.market_data import MarketQuote
from app.models.company import Exchange, Snapshot
from app.services.screener.errors import SnapshotRefreshError
from app.services.screener.snapshot import SnapshotService, SnapshotStore, business_today
from tests.helpers.fakes import (
    FIXED_DAY,
    FIXED_NOW,
    FakeEdgar,
    FakeMarketData,
    StaticUniverse,
    build_service,
    company,
    company_facts,
    entry,
)
from tests.helpers.metrics_stub import StubMetrics

FACTS = {
    "0000000001": company_facts(
        Revenues=[("2023-12-31", 10_000_000), ("2024-12-31", 12_000_000)],
        NetCashProvidedByUsedInOperatingActivities=[("2024-12-31", 1_500_000)],
        AccountsReceivableNetCurrent=[("2024-12-31", 1_000_000)],
        InventoryNet=[("2024-12-31", 500_000)],
        LongTermDebt=[("2024-12-31", 2_000_000)],
    ),
    "0000000002": company_facts(Revenues=[("2024-09-30", 3_000_000)]),
}
SUBMISSIONS = {
    "0000000001": {
        "stateOfIncorporation": "DE",
        "filings": {"recent": {"form": ["8-K", "10-K"], "filingDate": ["2024-11-05", "2025-02-20"]}},
    }
}


def _universe() -> StaticUniverse:
    return StaticUniverse(
        [
            entry("ALPH", "0000000001"),
            entry("BETA", "0000000002", Exchange.NYSE),
            entry("SEED", None, Exchange.OTC),
        ]
    )


def test_business_today_uses_business_timezone_not_utc():
    late_evening_new_york = datetime(2025, 3, 4, 2, 30, tzinfo=UTC)

    assert business_today("America/New_York", late_evening_new_york) == "2025-03-03"
    assert business_today("UTC", late_evening_new_york) == "2025-03-04"


def test_store_publish_replaces_whole_snapshot():
    store = SnapshotStore()
    first = Snapshot(date="2025-03-02", items=(company("OLD", as_of="2025-03-02"),))
    second = Snapshot(date=FIXED_DAY, items=(company("NEW"),))

    store.publish(first)
    store.publish(second)

    assert store.current is second
    assert first.items[0].ticker == "OLD"


@pytest.mark.asyncio
async def test_refresh_assembles_companies_in_universe_order():
    quotes = {"ALPH": MarketQuote(market_cap_usd=50_000_000, adv_usd=120_000)}
    service = build_service(
        edgar=FakeEdgar(facts=FACTS, submissions=SUBMISSIONS),
        market_data=FakeMarketData(quotes),
        universe=_universe(),
    )

    snapshot = await service.refresh()

    assert snapshot.date == FIXED_DAY
    assert [item.ticker for item in snapshot.items] == ["ALPH", "BETA", "SEED"]
    assert all(item.as_of_date == snapshot.date for item in snapshot.items)
    alpha = snapshot.items[0]
    assert alpha.revenue_ltm_usd == 12_000_000
    assert alpha.cfo_ltm_usd == 1_500_000
    assert alpha.total_debt_usd == 2_000_000
    assert alpha.borrowing_base_usd == 1_050_000
    assert alpha.location == "DE"
    assert alpha.last_fundraising_date == "2024-11-05"
    assert alpha.market_cap_usd == 50_000_000
    assert alpha.adv_usd == 120_000
    seed = snapshot.items[2]
    assert seed.revenue_ltm_usd is None
    assert seed.total_debt_usd is None
    assert seed.name == "SEED Holdings"
    assert service.snapshot is snapshot


@pytest.mark.asyncio
async def test_entity_without_cik_skips_edgar_lookups():
    edgar = FakeEdgar(facts=FACTS)
    market_data = FakeMarketData()
    service = build_service(edgar=edgar, market_data=market_data, universe=_universe())

    await service.refresh()

    assert sorted(edgar.facts_calls) == ["0000000001", "0000000002"]
    assert sorted(edgar.submission_calls) == ["0000000001", "0000000002"]
    assert sorted(market_data.calls) == ["ALPH", "BETA", "SEED"]


@pytest.mark.asyncio
async def test_entity_failure_degrades_to_bare_record(caplog: pytest.LogCaptureFixture):
    stub = StubMetrics()
    service = build_service(
        edgar=FakeEdgar(facts=FACTS, exploding_ciks={"0000000002"}),
        universe=_universe(),
        metrics_reporter=stub,
    )
    caplog.set_level(logging.WARNING, logger="app.services.screener.snapshot")

    snapshot = await service.refresh()

    beta = snapshot.items[1]
    assert beta.ticker == "BETA"
    assert beta.exchange is Exchange.NYSE
    assert beta.revenue_ltm_usd is None
    assert beta.borrowing_base_usd == 0
    assert beta.as_of_date == FIXED_DAY
    assert snapshot.items[0].revenue_ltm_usd == 12_000_000
    assert stub.counted("snapshot.entity_failures") == 1
    assert any(record.message == "snapshot.entity_failed" for record in caplog.records)


@pytest.mark.asyncio
async def test_failed_refresh_keeps_previous_snapshot():
    previous = Snapshot(date="2025-03-02", items=(company("OLD", as_of="2025-03-02"),))
    service = build_service(
        universe=StaticUniverse([], error=KeyError("boom")),
        snapshot=previous,
    )

    with pytest.raises(SnapshotRefreshError) as excinfo:
        await service.refresh()

    assert excinfo.value.code == "503_REFRESH_FAILED"
    assert service.snapshot is previous
    assert not service.refresh_in_flight


@pytest.mark.asyncio
async def test_concurrent_refresh_requests_share_one_run():
    gate = asyncio.Event()
    edgar = FakeEdgar(facts=FACTS, gate=gate)
    service = build_service(edgar=edgar, universe=_universe())

    first = asyncio.create_task(service.refresh())
    await asyncio.sleep(0)
    assert service.refresh_in_flight
    second = asyncio.create_task(service.refresh())
    await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(first, second)

    assert results[0] is results[1]
    assert len(edgar.facts_calls) == 2
    assert not service.refresh_in_flight


@pytest.mark.asyncio
async def test_back_to_back_refreshes_yield_identical_entity_sets():
    edgar = FakeEdgar(facts=FACTS, submissions=SUBMISSIONS)
    service = build_service(edgar=edgar, universe=_universe())

    first = await service.refresh()
    second = await service.refresh()

    assert first is not second
    assert [item.model_dump() for item in first.items] == [item.model_dump() for item in second.items]
    assert len(edgar.facts_calls) == 4


@pytest.mark.asyncio
async def test_fan_out_respects_concurrency_cap():
    gate = asyncio.Event()
    edgar = FakeEdgar(gate=gate)
    universe = StaticUniverse([entry(f"T{index:03d}", f"{index:010d}") for index in range(1, 9)])
    service = build_service(edgar=edgar, universe=universe, concurrency=3)

    task = asyncio.create_task(service.refresh())
    for _ in range(5):
        await asyncio.sleep(0)
    gate.set()
    snapshot = await task

    assert edgar.peak_active == 3
    assert snapshot.count == 8


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_refresh():
    gate = asyncio.Event()
    service = build_service(edgar=FakeEdgar(facts=FACTS, gate=gate), universe=_universe())

    waiter = asyncio.create_task(service.refresh())
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    assert service.refresh_in_flight
    gate.set()
    snapshot = await service.refresh()
    assert snapshot.count == 3


@pytest.mark.asyncio
async def test_ensure_fresh_serves_stale_and_refreshes_in_background():
    stale = Snapshot(date="2025-03-02", items=(company("OLD", as_of="2025-03-02"),))
    gate = asyncio.Event()
    service = build_service(
        edgar=FakeEdgar(facts=FACTS, gate=gate),
        universe=_universe(),
        snapshot=stale,
        freshness_enabled=True,
    )

    assert service.is_stale()
    assert service.ensure_fresh() is True
    assert service.snapshot is stale
    assert service.ensure_fresh() is False

    gate.set()
    refreshed = await service.refresh()

    assert refreshed.date == FIXED_DAY
    assert service.snapshot is refreshed
    assert not service.is_stale()
    assert service.ensure_fresh() is False


@pytest.mark.asyncio
async def test_ensure_fresh_is_inert_when_policy_disabled():
    stale = Snapshot(date="2025-03-02")
    service = build_service(snapshot=stale, freshness_enabled=False)

    assert service.ensure_fresh() is False
    assert not service.refresh_in_flight


@pytest.mark.asyncio
async def test_background_refresh_failure_is_logged(caplog: pytest.LogCaptureFixture):
    service = build_service(universe=StaticUniverse([], error=RuntimeError("sec down")))
    caplog.set_level(logging.ERROR)

    assert service.trigger_background_refresh(reason="test") is True
    for _ in range(5):
        await asyncio.sleep(0)

    assert not service.refresh_in_flight
    errors = [record for record in caplog.records if record.levelno >= logging.ERROR]
    assert [record.message for record in errors] == ["snapshot.background_refresh_failed"]
    assert errors[0].exc_info is not None


@pytest.mark.asyncio
async def test_refresh_emits_timing_and_gauge():
    stub = StubMetrics()
    service = build_service(edgar=FakeEdgar(facts=FACTS), universe=_universe(), metrics_reporter=stub)

    await service.refresh()

    assert stub.timing_calls[0]["metric"] == "snapshot.refresh.duration_ms"
    assert stub.gauge_calls[0] == {"metric": "snapshot.companies", "value": 3, "tags": {}}


class RecordingClient:
    def __init__(self) -> None:
        self.closed_while_refreshing: list[bool] = []
        self.service: SnapshotService | None = None

    async def aclose(self) -> None:
        self.closed_while_refreshing.append(self.service.refresh_in_flight)


def _closing_service(universe: StaticUniverse, edgar: FakeEdgar | None = None):
    client = RecordingClient()
    service = SnapshotService(
        edgar=edgar or FakeEdgar(),
        market_data=FakeMarketData(),
        universe=universe,
        concurrency=2,
        timezone="America/New_York",
        clock=lambda: FIXED_NOW,
        metrics_reporter=StubMetrics(),
        closeables=(client,),
    )
    client.service = service
    return service, client


@pytest.mark.asyncio
async def test_aclose_lets_running_refresh_finish_before_closing_clients():
    gate = asyncio.Event()
    service, client = _closing_service(_universe(), FakeEdgar(facts=FACTS, gate=gate))

    service.trigger_background_refresh(reason="startup")
    closing = asyncio.create_task(service.aclose())
    for _ in range(5):
        await asyncio.sleep(0)
    assert not closing.done()

    gate.set()
    await closing

    assert client.closed_while_refreshing == [False]
    assert service.snapshot.count == 3
    assert service.snapshot.items[0].revenue_ltm_usd == 12_000_000


@pytest.mark.asyncio
async def test_aclose_after_failed_refresh_still_closes_clients():
    service, client = _closing_service(StaticUniverse([], error=RuntimeError("sec down")))

    service.trigger_background_refresh(reason="startup")
    await service.aclose()

    assert client.closed_while_refreshing == [False]
    assert service.snapshot.date == ""
