"""
Durable game metadata store

Thin accessor over the games_cache table: point lookup, idempotent upsert,
ordered listings, staleness queries and purge. Database failures are
translated to StoreError at the session boundary, logged, and reported to
callers as None / [] / False / 0, never raised.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, List, Optional, Sequence

from sqlalchemy import case, delete, desc, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gamecache.core.exceptions import StoreError
from gamecache.models.game_metadata import GameMetadataCache
from gamecache.schemas.metadata import MetadataRecord

logger = logging.getLogger(__name__)

# Runs inside the clear_all transaction, before cache rows are deleted
DependentReferenceHook = Callable[[AsyncSession], Awaitable[None]]

LIST_COLUMNS = (
    "screenshot_refs", "video_refs", "platforms", "genres", "publisher_refs", "mode_tags",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _decode_list(value: Any) -> List[str]:
    """Decode a list column that may arrive JSON-encoded"""
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return [value] if value else []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None]
    return []


def row_to_record(row: GameMetadataCache) -> MetadataRecord:
    """Normalize a table row into a MetadataRecord"""
    return MetadataRecord(
        external_id=row.external_id,
        title=row.title,
        slug=row.slug,
        summary=row.summary,
        cover_image_ref=row.cover_image_ref,
        rating=row.rating,
        release_timestamp=_as_utc(row.release_timestamp),
        popularity_score=row.popularity_score or 0,
        last_refreshed_at=_as_utc(row.last_refreshed_at),
        force_refresh=bool(row.force_refresh),
        **{column: _decode_list(getattr(row, column)) for column in LIST_COLUMNS},
    )


class MetadataStore:
    """Persistent keyed store for cached game metadata"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        clock: Callable[[], datetime] = utc_now,
        dependent_reference_hooks: Optional[Sequence[DependentReferenceHook]] = None,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._dependent_reference_hooks = list(dependent_reference_hooks or [])

    def add_dependent_reference_hook(self, hook: DependentReferenceHook) -> None:
        self._dependent_reference_hooks.append(hook)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(str(e)) from e

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(str(e)) from e

    async def _select_records(self, stmt) -> List[MetadataRecord]:
        async with self._session() as db:
            result = await db.execute(stmt)
            return [row_to_record(row) for row in result.scalars().all()]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, external_id: str) -> Optional[MetadataRecord]:
        """Point lookup by external id"""
        try:
            async with self._session() as db:
                row = await db.get(GameMetadataCache, external_id)
                return row_to_record(row) if row is not None else None
        except StoreError as e:
            logger.error(f"Failed to get cached game {external_id}: {e}")
            return None

    async def list_by_popularity(self, limit: int = 20) -> List[MetadataRecord]:
        stmt = (
            select(GameMetadataCache)
            .order_by(desc(GameMetadataCache.popularity_score), desc(GameMetadataCache.last_refreshed_at))
            .limit(limit)
        )
        try:
            return await self._select_records(stmt)
        except StoreError as e:
            logger.error(f"Failed to get popular cached games: {e}")
            return []

    async def list_by_recency(self, limit: int = 20) -> List[MetadataRecord]:
        stmt = (
            select(GameMetadataCache)
            .where(GameMetadataCache.release_timestamp.is_not(None))
            .order_by(desc(GameMetadataCache.release_timestamp), desc(GameMetadataCache.last_refreshed_at))
            .limit(limit)
        )
        try:
            return await self._select_records(stmt)
        except StoreError as e:
            logger.error(f"Failed to get recent cached games: {e}")
            return []

    async def search_text(self, query: str, limit: int = 20) -> List[MetadataRecord]:
        """Case-insensitive substring match on title or summary"""
        stmt = (
            select(GameMetadataCache)
            .where(or_(
                GameMetadataCache.title.icontains(query, autoescape=True),
                GameMetadataCache.summary.icontains(query, autoescape=True),
            ))
            .order_by(desc(GameMetadataCache.popularity_score))
            .limit(limit)
        )
        try:
            return await self._select_records(stmt)
        except StoreError as e:
            logger.error(f"Failed to search cached games for {query!r}: {e}")
            return []

    async def list_stale(self, older_than: timedelta, limit: int = 50) -> List[MetadataRecord]:
        """Rows flagged for refresh or not refreshed within older_than"""
        cutoff = self._clock() - older_than
        stmt = (
            select(GameMetadataCache)
            .where(or_(
                GameMetadataCache.force_refresh.is_(True),
                GameMetadataCache.last_refreshed_at < cutoff,
            ))
            .order_by(GameMetadataCache.last_refreshed_at)
            .limit(limit)
        )
        try:
            return await self._select_records(stmt)
        except StoreError as e:
            logger.error(f"Failed to get games needing refresh: {e}")
            return []

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _upsert_statement(self, db: AsyncSession, records: Iterable[MetadataRecord]):
        refreshed_at = self._clock()
        values = []
        for record in records:
            record = record.with_slug()
            values.append({
                "external_id": record.external_id,
                "title": record.title,
                "slug": record.slug,
                "summary": record.summary or "",
                "cover_image_ref": record.cover_image_ref,
                "rating": record.rating,
                "release_timestamp": record.release_timestamp,
                "popularity_score": record.popularity_score or 0,
                "last_refreshed_at": refreshed_at,
                "force_refresh": False,
                **{column: list(getattr(record, column) or []) for column in LIST_COLUMNS},
            })

        dialect = db.get_bind().dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert(GameMetadataCache).values(values)
        table = GameMetadataCache.__table__

        updates = {
            column: stmt.excluded[column]
            for column in values[0]
            if column not in ("external_id", "last_refreshed_at")
        }
        # last_refreshed_at never moves backwards
        updates["last_refreshed_at"] = case(
            (table.c.last_refreshed_at > stmt.excluded.last_refreshed_at, table.c.last_refreshed_at),
            else_=stmt.excluded.last_refreshed_at,
        )
        return stmt.on_conflict_do_update(index_elements=[table.c.external_id], set_=updates)

    async def upsert(self, record: MetadataRecord) -> bool:
        """Insert or replace a record keyed by external id; clears force_refresh"""
        return await self.upsert_many([record])

    async def upsert_many(self, records: Sequence[MetadataRecord]) -> bool:
        # One row per key, last occurrence wins
        unique = list({record.external_id: record for record in records}.values())
        if not unique:
            return True
        try:
            async with self._transaction() as db:
                await db.execute(self._upsert_statement(db, unique))
            return True
        except StoreError as e:
            logger.error(f"Failed to upsert {len(unique)} cached game(s): {e}")
            return False

    async def mark_force_refresh(self, external_ids: Sequence[str]) -> bool:
        if not external_ids:
            return True
        try:
            async with self._transaction() as db:
                await db.execute(
                    update(GameMetadataCache)
                    .where(GameMetadataCache.external_id.in_(list(external_ids)))
                    .values(force_refresh=True)
                )
            return True
        except StoreError as e:
            logger.error(f"Failed to mark games for refresh: {e}")
            return False

    async def purge_older_than(self, max_age: timedelta) -> int:
        """Delete rows not refreshed within max_age; returns rows deleted"""
        cutoff = self._clock() - max_age
        try:
            async with self._transaction() as db:
                result = await db.execute(
                    delete(GameMetadataCache).where(GameMetadataCache.last_refreshed_at < cutoff)
                )
                return result.rowcount or 0
        except StoreError as e:
            logger.error(f"Failed to cleanup stale cache: {e}")
            return 0

    async def clear_all(self) -> bool:
        """Delete every cached row after severing dependent references"""
        try:
            async with self._transaction() as db:
                for hook in self._dependent_reference_hooks:
                    await hook(db)
                await db.execute(delete(GameMetadataCache))
            return True
        except StoreError as e:
            logger.error(f"Failed to clear cache: {e}")
            return False
