from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.config import settings
from app.services.screener.snapshot import SnapshotService, get_snapshot_service

logger = logging.getLogger(__name__)
router = APIRouter()


class HealthResponse(BaseModel):
    ok: bool
    date: str
    count: int
    refresh_in_flight: bool
    stale: bool
    version: str


@router.get("/health", response_model=HealthResponse)
async def health_check(service: SnapshotService = Depends(get_snapshot_service)) -> HealthResponse:
    """Liveness plus snapshot age, so staleness and running refreshes are observable."""
    snapshot = service.snapshot
    return HealthResponse(
        ok=True,
        date=snapshot.date,
        count=snapshot.count,
        refresh_in_flight=service.refresh_in_flight,
        stale=service.is_stale(),
        version=settings.app_version,
    )
