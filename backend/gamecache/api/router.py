"""
Main API router that includes all endpoint routers
"""

from fastapi import APIRouter

from gamecache.api import cache, games, scheduler_status

# Create main API router
api_router = APIRouter(prefix="/api/v1")

# Include all route modules
api_router.include_router(games.router)
api_router.include_router(cache.router)
api_router.include_router(scheduler_status.router)

# Add a simple health check for the API
@api_router.get("/health")
async def api_health():
    """API health check endpoint"""
    return {
        "status": "healthy",
        "message": "Game metadata cache is running",
        "endpoints": {
            "games": "/api/v1/games",
            "cache": "/api/v1/cache",
            "scheduler": "/api/v1/scheduler"
        }
    }
