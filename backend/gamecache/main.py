"""
Game Metadata Cache - Main FastAPI Application

Serves IGDB game metadata through a durable read-through cache.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from gamecache.api.router import api_router
from gamecache.core.config import settings
from gamecache.core.database import AsyncSessionLocal, create_tables, engine, get_db
from gamecache.core.scheduler import BackgroundScheduler
from gamecache.schemas.common import HealthResponse
from gamecache.services.cache_maintenance_service import CacheMaintenanceService
from gamecache.services.game_cache_service import GameCacheService
from gamecache.services.igdb_service import IGDBService
from gamecache.services.metadata_store import MetadataStore

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build the cache components, kick off warm-up and start maintenance jobs.

    Warm-up runs detached so startup is never blocked on IGDB.
    """
    if settings.AUTO_CREATE_TABLES:
        try:
            await create_tables()
        except Exception as e:
            logger.warning(f"Could not create tables: {e}. Tables should already exist.")

    store = MetadataStore(AsyncSessionLocal)
    upstream = IGDBService.from_settings(settings)
    maintenance = CacheMaintenanceService(store, settings.purge_retention)
    game_cache = GameCacheService(store, upstream, maintenance, settings)

    app.state.store = store
    app.state.upstream = upstream
    app.state.game_cache = game_cache
    app.state.scheduler = None

    game_cache.start_warm_up()

    if settings.ENABLE_SCHEDULER:
        scheduler = BackgroundScheduler(game_cache, settings)
        try:
            await scheduler.start()
            app.state.scheduler = scheduler
        except Exception as e:
            logger.error(f"Continuing without cache maintenance jobs: {e}")

    logger.info(f"{settings.APP_NAME} {settings.VERSION} started ({settings.ENVIRONMENT})")

    yield

    if app.state.scheduler is not None:
        await app.state.scheduler.stop()
    try:
        await asyncio.wait_for(game_cache.wait_for_background_tasks(), timeout=30)
    except asyncio.TimeoutError:
        logger.warning("Shutting down with background cache writes still pending")
    await upstream.aclose()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_HOSTS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """Liveness plus a database round-trip"""
    database_ok = True
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        database_ok = False

    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        timestamp=time.time(),
        version=settings.VERSION,
        database=database_ok,
    )


if __name__ == "__main__":
    uvicorn.run("gamecache.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
