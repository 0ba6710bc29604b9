"""
Game metadata cache error taxonomy
"""

from typing import Optional


class GameCacheError(Exception):
    """Base class for cache subsystem errors"""


class UpstreamAuthError(GameCacheError):
    """IGDB credentials missing or rejected by the token endpoint"""


class UpstreamRequestError(GameCacheError):
    """Non-2xx response or transport failure on an upstream call"""

    def __init__(self, status: Optional[int], body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"Upstream request failed (status={status}): {body[:200]}")


class StoreError(GameCacheError):
    """Failure reading or writing the durable metadata table"""


class MappingError(GameCacheError):
    """Upstream payload did not have the expected shape"""
