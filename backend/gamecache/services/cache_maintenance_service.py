"""
Cache maintenance sweep: age-based purge and forced-refresh flagging.
Touches only the durable store.
"""

import logging
from datetime import timedelta
from typing import Iterable, Optional

from gamecache.services.metadata_store import MetadataStore

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(days=7)


class CacheMaintenanceService:
    """Purge and refresh-flagging for the games cache"""

    def __init__(self, store: MetadataStore, retention: timedelta = DEFAULT_RETENTION):
        self.store = store
        self.retention = retention

    async def purge(self, retention: Optional[timedelta] = None) -> int:
        """
        Delete cache rows not refreshed within the retention window

        Returns:
            Number of rows deleted
        """
        retention = retention if retention is not None else self.retention
        deleted = await self.store.purge_older_than(retention)
        if deleted:
            logger.info(f"Purged {deleted} cached game(s) older than {retention}")
        return deleted

    async def mark_force_refresh(self, external_ids: Iterable[str]) -> bool:
        """Flag records so the next read bypasses the freshness check"""
        ids = list(dict.fromkeys(i.strip() for i in external_ids if i and i.strip()))
        if not ids:
            return True
        marked = await self.store.mark_force_refresh(ids)
        if marked:
            logger.info(f"Marked {len(ids)} cached game(s) for forced refresh")
        return marked
