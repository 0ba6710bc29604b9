"""
Cache administration endpoints
"""

import logging
from datetime import timedelta
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status

from gamecache.api.deps import get_game_cache
from gamecache.schemas.common import DataResponse, ErrorResponse
from gamecache.schemas.metadata import ForceRefreshRequest
from gamecache.services.game_cache_service import GameCacheService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cache", tags=["cache"])


@router.get("/stats", response_model=DataResponse)
async def get_cache_stats(game_cache: GameCacheService = Depends(get_game_cache)):
    """Which tiers hold data, plus in-process counters"""
    stats = await game_cache.get_cache_stats()
    return DataResponse(data=stats)


@router.delete(
    "",
    response_model=DataResponse,
    responses={500: {"description": "Cache could not be cleared", "model": ErrorResponse}}
)
async def clear_cache(game_cache: GameCacheService = Depends(get_game_cache)):
    """Delete every cached game"""
    if not await game_cache.clear_cache():
        raise HTTPException(
            status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to clear game cache"
        )
    return DataResponse(data={"cleared": True}, message="Game cache cleared")


@router.post("/refresh-stale", response_model=DataResponse)
async def refresh_stale(
    batch_size: Optional[int] = Query(None, ge=1, le=500),
    game_cache: GameCacheService = Depends(get_game_cache)
):
    """Refresh one batch of stale or flagged games now"""
    summary = await game_cache.refresh_stale_batch(batch_size)
    return DataResponse(data=summary)


@router.post(
    "/force-refresh",
    response_model=DataResponse,
    responses={500: {"description": "Games could not be flagged", "model": ErrorResponse}}
)
async def force_refresh(
    request: ForceRefreshRequest,
    game_cache: GameCacheService = Depends(get_game_cache)
):
    """Flag games so the next stale sweep re-fetches them"""
    if not await game_cache.mark_force_refresh(request.ids):
        raise HTTPException(
            status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to flag games for refresh"
        )
    return DataResponse(data={"flagged": len(request.ids)})


@router.post("/purge", response_model=DataResponse)
async def purge_cache(
    retention_days: Optional[int] = Query(None, ge=0, description="Override the configured retention window"),
    game_cache: GameCacheService = Depends(get_game_cache)
):
    """Delete games not refreshed within the retention window"""
    retention = timedelta(days=retention_days) if retention_days is not None else None
    deleted = await game_cache.purge(retention)
    return DataResponse(data={"deleted": deleted})


@router.post("/warm-up", response_model=DataResponse)
async def warm_up(game_cache: GameCacheService = Depends(get_game_cache)):
    """Pre-populate the popular and recent tiers, waiting for a warm-up already running"""
    warmed_up = await game_cache.ensure_warmed_up()
    return DataResponse(data={"warmed_up": warmed_up})
