"""Cron-friendly entrypoint that runs one snapshot refresh and writes it to JSON."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from app.clients.edgar import EdgarClient
from app.clients.market_data import MarketDataClient
from app.config import settings
from app.models.company import Snapshot
from app.services.screener.errors import ScreenerError
from app.services.screener.snapshot import SnapshotService
from app.services.screener.universe import UniverseBuilder

logger = logging.getLogger("pipelines.snapshot_refresh")

DEFAULT_OUTPUT = Path("output/snapshot.json")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Refresh the EDGAR screening snapshot once.")
    parser.add_argument(
        "--output",
        type=Path,
        default=DEFAULT_OUTPUT,
        help="Where to write the snapshot JSON (default: output/snapshot.json).",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.universe_limit,
        help="Maximum number of universe entries to refresh.",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=settings.refresh_concurrency,
        help="Number of entities fetched concurrently.",
    )
    return parser.parse_args(argv)


def build_service(*, limit: int, concurrency: int) -> SnapshotService:
    edgar = EdgarClient.from_settings()
    market_data = MarketDataClient.from_settings()
    return SnapshotService(
        edgar=edgar,
        market_data=market_data,
        universe=UniverseBuilder(
            edgar,
            limit=limit,
            cache_enabled=False,
            fetch_attempts=settings.universe_fetch_attempts,
        ),
        concurrency=concurrency,
        timezone=settings.business_timezone,
        freshness_enabled=False,
        closeables=(edgar, market_data),
    )


async def _refresh(service: SnapshotService) -> Snapshot:
    try:
        return await service.refresh()
    finally:
        await service.aclose()


def write_snapshot(snapshot: Snapshot, output: Path) -> Path:
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
    return output


def run(argv: list[str] | None = None) -> Path:
    args = parse_args(argv)
    if args.limit < 1 or args.concurrency < 1:
        raise ScreenerError("--limit and --concurrency must be >= 1", code="E_INVALID_ARGS")
    logger.info(
        "snapshot.pipeline.start",
        extra={"limit": args.limit, "concurrency": args.concurrency, "output": str(args.output)},
    )
    service = build_service(limit=args.limit, concurrency=args.concurrency)
    snapshot = asyncio.run(_refresh(service))
    result = write_snapshot(snapshot, args.output)
    logger.info(
        "snapshot.pipeline.success",
        extra={"date": snapshot.date, "companies": snapshot.count, "output": str(result)},
    )
    return result


def main() -> None:
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    try:
        run()
    except ScreenerError as exc:
        logger.error("snapshot.pipeline.failed", extra={"code": exc.code, "error": str(exc)})
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
