"""
Game metadata schemas

Canonical cached record shape, the client-facing shape, and cache stats.
"""

import re
from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator


_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def generate_slug(title: str) -> str:
    """Lowercase URL slug for a title"""
    return _SLUG_STRIP.sub("-", (title or "").lower()).strip("-")


class StalenessClass(str, Enum):
    """Usage context a record is read under; each maps to a TTL"""
    DETAIL = "detail"
    POPULAR = "popular"
    RECENT = "recent"
    SEARCH = "search"


class MetadataRecord(BaseModel):
    """Canonical cached game metadata record"""
    external_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    slug: Optional[str] = Field(default=None)
    summary: Optional[str] = Field(default=None)
    cover_image_ref: Optional[str] = Field(default=None)
    screenshot_refs: List[str] = Field(default_factory=list)
    video_refs: List[str] = Field(default_factory=list)

    # Set semantics, kept as ordered sequences
    platforms: List[str] = Field(default_factory=list)
    genres: List[str] = Field(default_factory=list)
    publisher_refs: List[str] = Field(default_factory=list)
    mode_tags: List[str] = Field(default_factory=list)

    rating: Optional[float] = Field(default=None)
    release_timestamp: Optional[datetime] = Field(default=None)
    popularity_score: float = Field(default=0.0)

    last_refreshed_at: Optional[datetime] = Field(default=None)
    force_refresh: bool = Field(default=False)

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title must not be blank")
        return v

    @field_validator(
        "screenshot_refs", "video_refs", "platforms", "genres",
        "publisher_refs", "mode_tags",
        mode="before",
    )
    @classmethod
    def none_as_empty(cls, v):
        return [] if v is None else v

    @field_validator("platforms", "genres", "publisher_refs", "mode_tags")
    @classmethod
    def drop_duplicates(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(v))

    @field_validator("popularity_score", mode="before")
    @classmethod
    def default_popularity(cls, v):
        return 0.0 if v is None else v

    def with_slug(self) -> "MetadataRecord":
        if self.slug:
            return self
        return self.model_copy(update={"slug": generate_slug(self.title)})


class ClientGame(BaseModel):
    """Game metadata as returned to callers"""
    id: str
    external_id: str
    title: str
    slug: Optional[str] = None
    summary: Optional[str] = None
    cover_url: Optional[str] = None
    screenshots: List[str] = Field(default_factory=list)
    videos: List[str] = Field(default_factory=list)
    platforms: List[str] = Field(default_factory=list)
    genres: List[str] = Field(default_factory=list)
    companies: List[str] = Field(default_factory=list)
    game_modes: List[str] = Field(default_factory=list)
    rating: Optional[float] = None
    release_date: Optional[int] = Field(default=None, description="Epoch milliseconds")
    popularity_score: float = 0.0
    last_refreshed_at: Optional[str] = None


class CacheStats(BaseModel):
    """Aggregate cache health"""
    has_popular: bool = False
    has_recent: bool = False
    has_stale: bool = False
    in_flight_requests: int = 0
    background_tasks: int = 0


class ForceRefreshRequest(BaseModel):
    """Ids to flag for forced refresh"""
    ids: List[str] = Field(default_factory=list)
