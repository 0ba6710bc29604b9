"""
Game Metadata Cache Service

Cache-first read-through layer in front of IGDB. Fresh store hits are served
directly; misses and stale entries go upstream, are persisted, and are
returned. Concurrent fetches of the same key collapse onto one upstream call,
and any upstream failure degrades to whatever the store already holds.
"""

import asyncio
import functools
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, NamedTuple, Optional, Set, Tuple

from gamecache.core.config import Settings, settings as default_settings
from gamecache.core.exceptions import UpstreamAuthError
from gamecache.schemas.metadata import CacheStats, ClientGame, MetadataRecord, StalenessClass
from gamecache.services.cache_maintenance_service import CacheMaintenanceService
from gamecache.services.game_formatter import to_client_shape
from gamecache.services.igdb_service import IGDBService
from gamecache.services.metadata_store import MetadataStore, utc_now

logger = logging.getLogger(__name__)

InFlightKey = Tuple[str, bool]


class _LoadResult(NamedTuple):
    game: Optional[ClientGame]
    refreshed: bool


class GameCacheService:
    """Read-through cache orchestrator for game metadata"""

    def __init__(
        self,
        store: MetadataStore,
        upstream: IGDBService,
        maintenance: Optional[CacheMaintenanceService] = None,
        settings: Settings = default_settings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.upstream = upstream
        self.settings = settings
        self.maintenance = maintenance or CacheMaintenanceService(store, settings.purge_retention)
        self._clock = clock

        self._in_flight: Dict[InFlightKey, asyncio.Task] = {}
        self._background_tasks: Set[asyncio.Task] = set()
        self._warm_up_task: Optional[asyncio.Task] = None
        self._warmed_up = False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _format(self, record: MetadataRecord) -> ClientGame:
        return to_client_shape(
            record,
            proxy_path=self.settings.IMAGE_PROXY_PATH,
            asset_host=self.settings.UPSTREAM_ASSET_HOST,
        )

    def _format_all(self, records: List[MetadataRecord]) -> List[ClientGame]:
        return [self._format(record) for record in records]

    def _is_fresh(self, record: MetadataRecord, staleness_class: StalenessClass) -> bool:
        if record.force_refresh or record.last_refreshed_at is None:
            return False
        return self._clock() - record.last_refreshed_at < self.settings.ttl_for(staleness_class)

    def _spawn_background(self, coro: Coroutine[Any, Any, Any], label: str) -> asyncio.Task:
        """Start work the caller does not wait for; failures are logged here"""
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(functools.partial(self._background_done, label))
        return task

    def _background_done(self, label: str, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Background task cancelled: {label}")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task failed: {label}: {error}", exc_info=error)
        elif task.result() is False:
            logger.warning(f"Background task did not complete: {label}")

    async def wait_for_background_tasks(self) -> None:
        """Wait until all detached work (including work it spawns) has settled"""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Single record read-through
    # ------------------------------------------------------------------

    def _deduplicated(self, external_id: str, force_refresh: bool) -> asyncio.Task:
        # No await between lookup and insert, so registration is atomic on the loop
        key = (external_id, force_refresh)
        task = self._in_flight.get(key)
        if task is not None:
            logger.debug(f"Reusing pending request for game {external_id}")
            return task

        task = asyncio.create_task(self._load(external_id, force_refresh))
        self._in_flight[key] = task
        task.add_done_callback(functools.partial(self._release, key))
        return task

    def _release(self, key: InFlightKey, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _stale_fallback(self, external_id: str, reason: str) -> Optional[MetadataRecord]:
        cached = await self.store.get(external_id)
        if cached is not None:
            logger.warning(f"Serving cached game {external_id} without refresh: {reason}")
        return cached

    async def _load(self, external_id: str, force_refresh: bool) -> _LoadResult:
        if not force_refresh:
            cached = await self.store.get(external_id)
            if cached is not None and self._is_fresh(cached, StalenessClass.DETAIL):
                return _LoadResult(self._format(cached), False)

        try:
            fetched = await self.upstream.fetch_by_id(external_id)
        except UpstreamAuthError as e:
            fallback = await self._stale_fallback(external_id, str(e))
            if fallback is None:
                raise
            return _LoadResult(self._format(fallback), False)
        except Exception as e:
            logger.error(f"Error getting game {external_id} from IGDB: {e}", exc_info=True)
            fetched = None

        if fetched is not None:
            if not await self.store.upsert(fetched):
                logger.warning(f"Fetched game {external_id} but could not cache it")
            record = fetched.model_copy(update={
                "last_refreshed_at": self._clock(),
                "force_refresh": False,
            })
            return _LoadResult(self._format(record), True)

        fallback = await self._stale_fallback(external_id, "no data from IGDB")
        return _LoadResult(self._format(fallback) if fallback else None, False)

    async def get_by_id(self, external_id: str, force_refresh: bool = False) -> Optional[ClientGame]:
        """
        Get a game by IGDB id, cache first

        Args:
            external_id: IGDB game id
            force_refresh: skip the freshness check and go straight to IGDB

        Returns:
            The formatted game, stale if IGDB is unavailable, or None when
            nothing is known about the id

        Raises:
            UpstreamAuthError: IGDB credentials are unusable and nothing is cached
        """
        external_id = str(external_id).strip()
        if not external_id:
            return None

        task = self._deduplicated(external_id, force_refresh)
        # Shielded so one caller cancelling does not cancel the shared fetch
        result = await asyncio.shield(task)
        return result.game

    # ------------------------------------------------------------------
    # Search and listings
    # ------------------------------------------------------------------

    async def search(self, text: str, limit: int = 20) -> List[ClientGame]:
        """Search cached games, going to IGDB when the cache has too few hits"""
        text = (text or "").strip()
        if not text or limit <= 0:
            return []

        cached = await self.store.search_text(text, limit)
        # Partial matches count as hits whatever their age
        if len(cached) >= min(limit, self.settings.SEARCH_MIN_CACHED_HITS):
            return self._format_all(cached)

        try:
            results = await self.upstream.search_by_title(text, limit)
        except UpstreamAuthError:
            if not cached:
                raise
            logger.warning(f"IGDB unavailable, serving {len(cached)} cached search hit(s) for {text!r}")
            return self._format_all(cached)

        if results:
            self._spawn_background(
                self.store.upsert_many(results),
                f"caching {len(results)} search result(s) for {text!r}",
            )
            return self._format_all(results)

        return self._format_all(cached)

    async def _list_tier(
        self,
        staleness_class: StalenessClass,
        limit: int,
        offset: int,
        read_store: Callable[[int], Awaitable[List[MetadataRecord]]],
        fetch_upstream: Callable[[int, int], Awaitable[List[MetadataRecord]]],
        assign_rank_scores: bool = False,
    ) -> List[ClientGame]:
        if limit <= 0:
            return []
        offset = max(offset, 0)
        window = limit + offset

        cached = await read_store(window)
        fresh = [r for r in cached if self._is_fresh(r, staleness_class)]
        if cached and len(fresh) >= min(window, self.settings.LISTING_FRESH_THRESHOLD):
            return self._format_all(fresh[offset:offset + limit])

        try:
            results = await fetch_upstream(limit, offset)
        except UpstreamAuthError:
            if not cached:
                raise
            logger.warning(f"IGDB unavailable, serving cached {staleness_class.value} listing")
            return self._format_all(cached[offset:offset + limit])

        if results:
            if assign_rank_scores:
                # Rank scores keep the cached tier in upstream order
                results = [
                    r.model_copy(update={"popularity_score": max(100 - (offset + rank) * 2, 1)})
                    for rank, r in enumerate(results)
                ]
            self._spawn_background(
                self.store.upsert_many(results),
                f"caching {len(results)} {staleness_class.value} game(s)",
            )
            return self._format_all(results)

        return self._format_all(cached[offset:offset + limit])

    async def list_popular(self, limit: int = 20, offset: int = 0) -> List[ClientGame]:
        """Popular games, served from cache while enough of it is fresh"""
        return await self._list_tier(
            StalenessClass.POPULAR, limit, offset,
            self.store.list_by_popularity, self.upstream.fetch_popular,
            assign_rank_scores=True,
        )

    async def list_recent(self, limit: int = 20, offset: int = 0) -> List[ClientGame]:
        """Recently released games, served from cache while enough of it is fresh"""
        return await self._list_tier(
            StalenessClass.RECENT, limit, offset,
            self.store.list_by_recency, self.upstream.fetch_recent,
        )

    # ------------------------------------------------------------------
    # Background refresh and lifecycle
    # ------------------------------------------------------------------

    async def refresh_stale_batch(self, batch_size: Optional[int] = None) -> Dict[str, int]:
        """
        Re-fetch stale or force-flagged games concurrently

        Each id settles independently; failures are logged and counted,
        never raised.
        """
        if batch_size is None:
            batch_size = self.settings.STALE_REFRESH_BATCH_SIZE
        if batch_size <= 0:
            return {"attempted": 0, "refreshed": 0, "failed": 0}
        stale = await self.store.list_stale(self.settings.ttl_for(StalenessClass.DETAIL), batch_size)
        summary = {"attempted": len(stale), "refreshed": 0, "failed": 0}
        if not stale:
            return summary

        outcomes = await asyncio.gather(
            *(asyncio.shield(self._deduplicated(record.external_id, True)) for record in stale),
            return_exceptions=True,
        )

        for record, outcome in zip(stale, outcomes):
            if isinstance(outcome, BaseException):
                summary["failed"] += 1
                logger.error(f"Failed to refresh game {record.external_id}: {outcome}")
            elif outcome.refreshed:
                summary["refreshed"] += 1
            else:
                summary["failed"] += 1
                logger.warning(f"No IGDB data while refreshing game {record.external_id}")

        logger.info(
            f"Stale refresh: {summary['refreshed']}/{summary['attempted']} refreshed, "
            f"{summary['failed']} failed"
        )
        return summary

    async def _run_warm_up(self) -> None:
        try:
            if self._warmed_up:
                return
            await self.maintenance.purge()
            await self.list_popular(self.settings.WARM_UP_POPULAR_LIMIT, 0)
            await self.list_recent(self.settings.WARM_UP_RECENT_LIMIT, 0)
            self._warmed_up = True
            logger.info("Game cache warm-up complete")
        except UpstreamAuthError as e:
            logger.error(f"Game cache warm-up skipped, IGDB credentials unusable: {e}")
        except Exception as e:
            logger.error(f"Error warming up cache: {e}", exc_info=True)
        finally:
            self._warm_up_task = None

    def start_warm_up(self) -> asyncio.Task:
        """Start warm-up detached from the caller, or return the one already running"""
        if self._warm_up_task is None:
            self._warm_up_task = self._spawn_background(self._run_warm_up(), "cache warm-up")
        return self._warm_up_task

    async def warm_up(self) -> None:
        """
        Purge old rows and pre-populate the popular and recent tiers, once per process

        A call made while another warm-up is running returns at once.
        """
        if self._warmed_up or self._warm_up_task is not None:
            return
        await asyncio.shield(self.start_warm_up())

    async def ensure_warmed_up(self) -> bool:
        """Start or join a warm-up, wait for it, and report whether the cache is warm"""
        if not self._warmed_up:
            await asyncio.shield(self.start_warm_up())
        return self._warmed_up

    @property
    def is_warmed_up(self) -> bool:
        return self._warmed_up

    async def purge(self, retention: Optional[timedelta] = None) -> int:
        return await self.maintenance.purge(retention)

    async def mark_force_refresh(self, external_ids: List[str]) -> bool:
        return await self.maintenance.mark_force_refresh(external_ids)

    async def clear_cache(self) -> bool:
        cleared = await self.store.clear_all()
        if cleared:
            logger.info("Game metadata cache cleared")
        return cleared

    async def get_cache_stats(self) -> CacheStats:
        popular, recent, stale = await asyncio.gather(
            self.store.list_by_popularity(1),
            self.store.list_by_recency(1),
            self.store.list_stale(self.settings.ttl_for(StalenessClass.DETAIL), 1),
        )
        return CacheStats(
            has_popular=bool(popular),
            has_recent=bool(recent),
            has_stale=bool(stale),
            in_flight_requests=len(self._in_flight),
            background_tasks=len(self._background_tasks),
        )
