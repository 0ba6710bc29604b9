"""
Game metadata cache model for the read-through IGDB cache
"""

from sqlalchemy import Column, String, Text, DateTime, Numeric, Boolean, JSON, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from gamecache.core.database import Base

# JSONB on Postgres, plain JSON elsewhere
JSONList = JSON().with_variant(JSONB(), "postgresql")


class GameMetadataCache(Base):
    """Cached IGDB game metadata, one row per external id"""
    __tablename__ = "games_cache"

    external_id = Column(String, primary_key=True, index=True)
    title = Column(Text, nullable=False)
    slug = Column(String, nullable=True)
    summary = Column(Text, nullable=True)
    cover_image_ref = Column(Text, nullable=True)

    screenshot_refs = Column(JSONList, nullable=False, default=list)
    video_refs = Column(JSONList, nullable=False, default=list)
    platforms = Column(JSONList, nullable=False, default=list)
    genres = Column(JSONList, nullable=False, default=list)
    publisher_refs = Column(JSONList, nullable=False, default=list)
    mode_tags = Column(JSONList, nullable=False, default=list)

    rating = Column(Numeric(6, 2, asdecimal=False), nullable=True)
    release_timestamp = Column(DateTime(timezone=True), nullable=True)
    popularity_score = Column(Numeric(12, 2, asdecimal=False), nullable=False, default=0)

    # Freshness tracking
    last_refreshed_at = Column(DateTime(timezone=True), nullable=False)
    force_refresh = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('idx_games_cache_popularity', 'popularity_score', 'last_refreshed_at'),
        Index('idx_games_cache_release', 'release_timestamp'),
        Index('idx_games_cache_refreshed', 'last_refreshed_at'),
        Index('idx_games_cache_force_refresh', 'force_refresh'),
    )

    def __repr__(self):
        return f"<GameMetadataCache(external_id={self.external_id}, title={self.title!r})>"
