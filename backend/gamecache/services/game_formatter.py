"""
Client-facing formatting for cached game metadata.

Pure transformations only: no I/O, no clock reads.
"""

from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote, urlparse

from gamecache.schemas.metadata import ClientGame, MetadataRecord

DEFAULT_PROXY_PATH = "/api/images/proxy"
DEFAULT_ASSET_HOST = "igdb.com"


def to_proxy_url(
    url: Optional[str],
    proxy_path: str = DEFAULT_PROXY_PATH,
    asset_host: str = DEFAULT_ASSET_HOST,
) -> Optional[str]:
    """Rewrite an upstream asset URL to a local proxy-relative URL.

    URLs on other hosts, and URLs already pointing at the proxy, are
    returned unchanged.
    """
    if not url or url.startswith(proxy_path):
        return url

    absolute = f"https:{url}" if url.startswith("//") else url
    host = urlparse(absolute).hostname or ""
    if host != asset_host and not host.endswith(f".{asset_host}"):
        return url

    return f"{proxy_path}?url={quote(absolute, safe='')}"


def to_epoch_millis(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def to_client_shape(
    record: MetadataRecord,
    proxy_path: str = DEFAULT_PROXY_PATH,
    asset_host: str = DEFAULT_ASSET_HOST,
) -> ClientGame:
    """Convert a canonical record into the shape returned to callers"""
    def proxied(url):
        return to_proxy_url(url, proxy_path, asset_host)

    return ClientGame(
        id=record.external_id,
        external_id=record.external_id,
        title=record.title,
        slug=record.slug,
        summary=record.summary,
        cover_url=proxied(record.cover_image_ref),
        screenshots=[proxied(url) for url in record.screenshot_refs or [] if url],
        videos=list(record.video_refs or []),
        platforms=list(record.platforms or []),
        genres=list(record.genres or []),
        companies=list(record.publisher_refs or []),
        game_modes=list(record.mode_tags or []),
        rating=record.rating,
        release_date=to_epoch_millis(record.release_timestamp),
        popularity_score=record.popularity_score or 0.0,
        last_refreshed_at=record.last_refreshed_at.isoformat() if record.last_refreshed_at else None,
    )
