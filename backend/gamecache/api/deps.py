"""
Shared API dependencies
"""

from fastapi import HTTPException, Request
from fastapi import status as http_status

from gamecache.core.scheduler import BackgroundScheduler
from gamecache.services.game_cache_service import GameCacheService


def get_game_cache(request: Request) -> GameCacheService:
    """Dependency to get the process-wide game cache service"""
    game_cache = getattr(request.app.state, "game_cache", None)
    if game_cache is None:
        raise HTTPException(
            status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Game cache is not initialized"
        )
    return game_cache


def get_scheduler(request: Request) -> BackgroundScheduler:
    """Dependency to get the background scheduler"""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduler is not enabled"
        )
    return scheduler
