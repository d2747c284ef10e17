"""Search and refresh endpoints over the published snapshot."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ValidationError

from app.models.company import Company
from app.models.search import SearchParams, flatten_validation_errors
from app.services.screener import query
from app.services.screener.errors import ScreenerError
from app.services.screener.snapshot import SnapshotService, get_snapshot_service

router = APIRouter()
logger = logging.getLogger(__name__)


class SearchResponse(BaseModel):
    date: str
    count: int
    items: list[Company]


class RefreshResponse(BaseModel):
    ok: bool
    date: str
    count: int


@router.get("/search", response_model=SearchResponse)
async def search_companies(
    request: Request,
    service: SnapshotService = Depends(get_snapshot_service),
) -> SearchResponse:
    """Filter and rank the current snapshot. A stale snapshot is served while it refreshes."""
    try:
        params = SearchParams.model_validate(dict(request.query_params))
    except ValidationError as exc:
        details = flatten_validation_errors(exc)
        logger.info("search.bad_query", extra={"fields": sorted(details["field_errors"])})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "bad query", "details": details},
        ) from exc

    service.ensure_fresh()
    snapshot = service.snapshot
    items = query.search(snapshot, params)
    return SearchResponse(date=snapshot.date, count=len(items), items=items)


@router.post("/refresh", response_model=RefreshResponse)
async def refresh_snapshot(service: SnapshotService = Depends(get_snapshot_service)) -> RefreshResponse:
    """Run a refresh now, or wait on the one already in flight."""
    try:
        snapshot = await service.refresh()
    except ScreenerError as exc:
        logger.error("snapshot.api_error", extra={"code": exc.code, "error": str(exc)}, exc_info=exc)
        raise HTTPException(
            status_code=_map_error_code(exc.code),
            detail={"code": exc.code, "message": str(exc)},
        ) from exc
    return RefreshResponse(ok=True, date=snapshot.date, count=snapshot.count)


def _map_error_code(code: str) -> int:
    if code == "503_REFRESH_FAILED":
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR
