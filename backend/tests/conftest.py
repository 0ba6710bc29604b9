"""
Pytest configuration and fixtures for the game metadata cache tests

This file provides a throwaway SQLite-backed store, a controllable clock,
and sample IGDB payloads shared by all test suites.
"""

import pytest
import inspect
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock
import sys

# Add the backend directory to the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from gamecache.core.config import Settings
from gamecache.core.database import create_tables
from gamecache.schemas.metadata import MetadataRecord
from gamecache.services.cache_maintenance_service import CacheMaintenanceService
from gamecache.services.game_cache_service import GameCacheService
from gamecache.services.igdb_service import IGDBService
from gamecache.services.metadata_store import MetadataStore


START_TIME = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock"""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Provide a clock frozen at START_TIME"""
    return FakeClock()


@pytest.fixture
def test_settings():
    """Settings with dummy credentials, no scheduler and no .env influence"""
    return Settings(
        _env_file=None,
        IGDB_CLIENT_ID="test-client",
        IGDB_CLIENT_SECRET="test-secret",
        ENABLE_SCHEDULER=False,
        AUTO_CREATE_TABLES=False,
    )


@pytest.fixture
async def db_engine(tmp_path):
    """SQLite database file with the cache table created"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'games_cache.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_factory, clock):
    """MetadataStore writing through the fake clock"""
    return MetadataStore(session_factory, clock=clock)


@pytest.fixture
def upstream():
    """IGDBService double; every fetch returns nothing unless a test says otherwise"""
    mock = AsyncMock(spec=IGDBService)
    mock.fetch_by_id.return_value = None
    mock.search_by_title.return_value = []
    mock.fetch_popular.return_value = []
    mock.fetch_recent.return_value = []
    return mock


@pytest.fixture
async def game_cache(store, upstream, test_settings, clock):
    """GameCacheService over the real store and a mocked upstream"""
    maintenance = CacheMaintenanceService(store, test_settings.purge_retention)
    service = GameCacheService(store, upstream, maintenance, test_settings, clock=clock)
    yield service
    # Let fire-and-forget writes finish before the database goes away
    await service.wait_for_background_tasks()


@pytest.fixture
def sample_igdb_game():
    """Provide a full IGDB game row as returned by the games endpoint"""
    return {
        "id": 1942,
        "name": "The Witcher 3: Wild Hunt",
        "slug": "the-witcher-3-wild-hunt",
        "summary": "RPG and sequel to The Witcher 2.",
        "first_release_date": 1431993600,
        "rating": 93.4,
        "total_rating_count": 3120,
        "cover": {"id": 89386, "url": "//images.igdb.com/igdb/image/upload/t_thumb/co1wyy.jpg"},
        "platforms": [{"id": 6, "name": "PC (Microsoft Windows)"}, {"id": 48, "name": "PlayStation 4"}],
        "genres": [{"id": 12, "name": "Role-playing (RPG)"}, {"id": 31, "name": "Adventure"}],
        "screenshots": [{"id": 1, "url": "//images.igdb.com/igdb/image/upload/t_thumb/sc1.jpg"}],
        "videos": [{"id": 7, "video_id": "c0i88t0Kacs"}],
        "involved_companies": [
            {"id": 1, "company": {"id": 908, "name": "CD Projekt RED"}},
            {"id": 2, "company": {"id": 1, "name": "Bandai Namco"}},
        ],
        "game_modes": [{"id": 1, "name": "Single player"}],
    }


def make_record(external_id: str, title: str = None, **fields) -> MetadataRecord:
    """Helper function to build a MetadataRecord"""
    return MetadataRecord(
        external_id=str(external_id),
        title=title or f"Game {external_id}",
        **fields
    )


def make_igdb_row(game_id: int, name: str = None, **fields) -> dict:
    """Helper function to build a minimal IGDB game row"""
    row = {
        "id": game_id,
        "name": name or f"Game {game_id}",
        "cover": {"url": f"//images.igdb.com/igdb/image/upload/t_thumb/co{game_id}.jpg"},
    }
    row.update(fields)
    return row


# Pytest configuration
def pytest_configure(config):
    """Configure pytest settings"""
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers automatically"""
    for item in items:
        # Mark async tests
        if inspect.iscoroutinefunction(getattr(item, "function", None)):
            item.add_marker(pytest.mark.asyncio)

        # Mark integration tests
        if 'integration' in item.nodeid.lower() or 'api' in item.nodeid.lower():
            item.add_marker(pytest.mark.integration)

        # Mark slow tests
        if any(keyword in item.nodeid.lower() for keyword in ['concurrent', 'batch']):
            item.add_marker(pytest.mark.slow)
