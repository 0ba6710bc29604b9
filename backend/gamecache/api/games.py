"""
Game metadata endpoints backed by the read-through cache
"""

import logging
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status

from gamecache.api.deps import get_game_cache
from gamecache.core.exceptions import UpstreamAuthError
from gamecache.schemas.common import DataResponse, ErrorResponse, ListResponse
from gamecache.services.game_cache_service import GameCacheService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/games", tags=["games"])

UPSTREAM_UNAVAILABLE = "Game metadata provider is unavailable"


def _upstream_unavailable(e: UpstreamAuthError) -> HTTPException:
    logger.error(f"IGDB credentials unusable and nothing cached: {e}")
    return HTTPException(
        status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=UPSTREAM_UNAVAILABLE
    )


@router.get(
    "/search",
    response_model=ListResponse,
    responses={503: {"description": "Provider unavailable", "model": ErrorResponse}}
)
async def search_games(
    q: str = Query(..., min_length=1, description="Title search text"),
    limit: int = Query(20, ge=1, le=100),
    game_cache: GameCacheService = Depends(get_game_cache)
):
    """Search games by title, cache first"""
    try:
        games = await game_cache.search(q, limit)
    except UpstreamAuthError as e:
        raise _upstream_unavailable(e)

    return ListResponse(
        data=games,
        count=len(games),
        limit=limit,
        filters_applied={"q": q}
    )


@router.get(
    "/popular",
    response_model=ListResponse,
    responses={503: {"description": "Provider unavailable", "model": ErrorResponse}}
)
async def list_popular_games(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    game_cache: GameCacheService = Depends(get_game_cache)
):
    """Popular games"""
    try:
        games = await game_cache.list_popular(limit, offset)
    except UpstreamAuthError as e:
        raise _upstream_unavailable(e)

    return ListResponse(data=games, count=len(games), limit=limit, offset=offset)


@router.get(
    "/recent",
    response_model=ListResponse,
    responses={503: {"description": "Provider unavailable", "model": ErrorResponse}}
)
async def list_recent_games(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    game_cache: GameCacheService = Depends(get_game_cache)
):
    """Recently released games"""
    try:
        games = await game_cache.list_recent(limit, offset)
    except UpstreamAuthError as e:
        raise _upstream_unavailable(e)

    return ListResponse(data=games, count=len(games), limit=limit, offset=offset)


@router.get(
    "/{external_id}",
    response_model=DataResponse,
    responses={
        404: {"description": "Game not found", "model": ErrorResponse},
        503: {"description": "Provider unavailable", "model": ErrorResponse}
    }
)
async def get_game(
    external_id: str,
    refresh: bool = Query(False, description="Bypass the cache freshness check"),
    game_cache: GameCacheService = Depends(get_game_cache)
):
    """Get a single game by IGDB id"""
    try:
        game = await game_cache.get_by_id(external_id, force_refresh=refresh)
    except UpstreamAuthError as e:
        raise _upstream_unavailable(e)

    if game is None:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail=f"Game {external_id} not found"
        )
    return DataResponse(data=game)
