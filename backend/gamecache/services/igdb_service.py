"""
IGDB API integration service

Client-credentials authentication through Twitch, a global minimum-interval
throttle, and typed fetch operations that normalize IGDB rows into
MetadataRecord. This service never touches the durable store.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import httpx

from gamecache.core.config import Settings
from gamecache.core.exceptions import MappingError, UpstreamAuthError, UpstreamRequestError
from gamecache.schemas.metadata import MetadataRecord

logger = logging.getLogger(__name__)

LISTING_FIELDS = (
    "id,name,slug,summary,first_release_date,rating,cover.url,"
    "platforms.name,genres.name,total_rating_count"
)
DETAIL_FIELDS = (
    LISTING_FIELDS
    + ",screenshots.url,videos.video_id,involved_companies.company.name,game_modes.name"
)

HIGH_RATING_THRESHOLD = 80
ONE_YEAR_SECONDS = 365 * 24 * 60 * 60
MAX_PAGE_SIZE = 500


def normalize_image_url(url: Optional[str], size: str = "t_cover_big") -> Optional[str]:
    """Absolute IGDB image URL at the requested size"""
    if not url:
        return None
    processed = url.replace("t_thumb", size).replace(",f_webp", "")
    if processed.startswith("//"):
        processed = f"https:{processed}"
    return processed


def _names(items: Any, key: str = "name") -> List[str]:
    if not items:
        return []
    if not isinstance(items, list):
        raise MappingError(f"Expected a list, got {type(items).__name__}")
    return [item[key] for item in items if isinstance(item, dict) and item.get(key)]


def format_game_data(game: Dict[str, Any]) -> MetadataRecord:
    """
    Map a raw IGDB game row into a MetadataRecord

    Raises:
        MappingError: if the row lacks an id or name, or a field has the wrong shape
    """
    if not isinstance(game, dict):
        raise MappingError(f"Expected a game object, got {type(game).__name__}")
    if game.get("id") is None or not game.get("name"):
        raise MappingError(f"Game row missing id or name: {game!r:.200}")

    try:
        release = game.get("first_release_date")
        release_timestamp = (
            datetime.fromtimestamp(int(release), tz=timezone.utc) if release is not None else None
        )

        cover = game.get("cover") or {}
        companies = [
            ic["company"]["name"]
            for ic in game.get("involved_companies") or []
            if isinstance(ic, dict) and isinstance(ic.get("company"), dict) and ic["company"].get("name")
        ]

        return MetadataRecord(
            external_id=str(game["id"]),
            title=game["name"],
            slug=game.get("slug"),
            summary=game.get("summary") or "",
            cover_image_ref=normalize_image_url(cover.get("url") if isinstance(cover, dict) else None),
            screenshot_refs=[
                normalize_image_url(url, "t_screenshot_med")
                for url in _names(game.get("screenshots"), "url")
            ],
            video_refs=_names(game.get("videos"), "video_id"),
            platforms=_names(game.get("platforms")),
            genres=_names(game.get("genres")),
            publisher_refs=companies,
            mode_tags=_names(game.get("game_modes")),
            rating=game.get("rating"),
            release_timestamp=release_timestamp,
            popularity_score=game.get("total_rating_count") or 0,
        ).with_slug()
    except MappingError:
        raise
    except (TypeError, ValueError, KeyError, OverflowError) as e:
        raise MappingError(f"Malformed game row {game.get('id')}: {e}") from e


def _map_rows(rows: Iterable[Any]) -> List[MetadataRecord]:
    """Map rows, skipping any that fail to normalize"""
    records = []
    for row in rows:
        try:
            records.append(format_game_data(row))
        except MappingError as e:
            logger.warning(f"Skipping malformed IGDB row: {e}")
    return records


class IGDBService:
    """Async IGDB API client with token caching and request throttling"""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        base_url: str = "https://api.igdb.com/v4",
        token_url: str = "https://id.twitch.tv/oauth2/token",
        min_interval_ms: int = 100,
        timeout_ms: int = 10000,
        token_margin_seconds: int = 300,
        http_client: Optional[httpx.AsyncClient] = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self.token_url = token_url
        self.min_interval = min_interval_ms / 1000
        self.timeout = timeout_ms / 1000
        self.token_margin = token_margin_seconds

        self._http_client = http_client
        self._owns_client = http_client is None
        self._monotonic = monotonic
        self._sleep = sleep

        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

        self._last_request_at: Optional[float] = None
        self._rate_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> "IGDBService":
        return cls(
            client_id=settings.IGDB_CLIENT_ID,
            client_secret=settings.IGDB_CLIENT_SECRET,
            base_url=settings.IGDB_BASE_URL,
            token_url=settings.IGDB_TOKEN_URL,
            min_interval_ms=settings.MIN_UPSTREAM_INTERVAL_MS,
            timeout_ms=settings.UPSTREAM_TIMEOUT_MS,
            token_margin_seconds=settings.TOKEN_EXPIRY_MARGIN_SECONDS,
            http_client=http_client,
        )

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        return self._http_client

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _token_valid(self) -> bool:
        return self._access_token is not None and self._monotonic() < self._token_expires_at

    async def authenticate(self) -> str:
        """
        Exchange client credentials for a bearer token and cache it

        Returns:
            The access token

        Raises:
            UpstreamAuthError: credentials missing or rejected
            UpstreamRequestError: the token endpoint could not be reached
        """
        if not self.client_id or not self.client_secret:
            raise UpstreamAuthError(
                "IGDB API credentials not found. Set IGDB_CLIENT_ID and IGDB_CLIENT_SECRET."
            )

        try:
            response = await self._client().post(
                self.token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "grant_type": "client_credentials",
                },
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise UpstreamRequestError(None, f"Token endpoint unreachable: {e}") from e

        if not response.is_success:
            logger.error(f"IGDB token exchange rejected: {response.status_code} {response.text[:200]}")
            raise UpstreamAuthError(
                f"Failed to get IGDB access token: {response.status_code} {response.reason_phrase}"
            )

        try:
            data = response.json()
            token = data["access_token"]
            expires_in = int(data.get("expires_in", 0))
        except (ValueError, KeyError, TypeError) as e:
            raise UpstreamAuthError(f"Token endpoint returned an unusable response: {e}") from e

        self._access_token = token
        self._token_expires_at = self._monotonic() + expires_in - self.token_margin
        logger.info(f"Obtained IGDB access token (expires in {expires_in}s)")
        return token

    async def _get_access_token(self) -> str:
        if self._token_valid():
            return self._access_token
        async with self._token_lock:
            # Another caller may have refreshed while we waited
            if self._token_valid():
                return self._access_token
            return await self.authenticate()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _throttle(self) -> None:
        async with self._rate_lock:
            if self._last_request_at is not None:
                elapsed = self._monotonic() - self._last_request_at
                if elapsed < self.min_interval:
                    await self._sleep(self.min_interval - elapsed)
            self._last_request_at = self._monotonic()

    async def rate_limited_call(self, endpoint: str, query: str) -> List[Dict[str, Any]]:
        """
        POST an apicalypse query to an IGDB endpoint

        Raises:
            UpstreamAuthError: no usable token
            UpstreamRequestError: non-2xx response, timeout or transport failure
            MappingError: response body is not a JSON list
        """
        await self._throttle()
        token = await self._get_access_token()

        try:
            response = await self._client().post(
                f"{self.base_url}/{endpoint}",
                content=query.strip(),
                headers={
                    "Client-ID": self.client_id,
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "text/plain",
                },
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise UpstreamRequestError(None, str(e) or e.__class__.__name__) from e

        if response.status_code == 401:
            # Token revoked early; next call re-authenticates
            self._access_token = None
        if not response.is_success:
            raise UpstreamRequestError(response.status_code, response.text)

        try:
            data = response.json()
        except ValueError as e:
            raise MappingError(f"IGDB {endpoint} returned invalid JSON") from e
        if not isinstance(data, list):
            raise MappingError(f"IGDB {endpoint} returned {type(data).__name__}, expected list")
        return data

    # ------------------------------------------------------------------
    # Fetch operations
    # ------------------------------------------------------------------

    async def fetch_by_id(self, external_id: str) -> Optional[MetadataRecord]:
        """Get game details by IGDB id, or None"""
        try:
            igdb_id = str(external_id).strip()
            if not igdb_id.isdigit():
                raise MappingError(f"Not an IGDB id: {external_id!r}")

            query = f"fields {DETAIL_FIELDS};\nwhere id = {igdb_id};"
            games = await self.rate_limited_call("games", query)
            records = _map_rows(games)
            return records[0] if records else None
        except (UpstreamRequestError, MappingError) as e:
            logger.error(f"IGDB get game error for {external_id}: {e}")
            return None

    async def search_by_title(self, text: str, limit: int = 10) -> List[MetadataRecord]:
        """Search games by title"""
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        query = f'fields {LISTING_FIELDS};\nsearch "{escaped}";\nlimit {limit};'
        try:
            return _map_rows(await self.rate_limited_call("games", query))
        except (UpstreamRequestError, MappingError) as e:
            logger.error(f"IGDB search error for {text!r}: {e}")
            return []

    async def fetch_popular(self, limit: int = 20, offset: int = 0) -> List[MetadataRecord]:
        """
        Popular games ranked by IGDB popularity primitives

        Falls back to recent high-rated games when the popularity data is
        empty or unavailable, and tops up a short page the same way.
        """
        multiplier = 3 if offset > 100 else 2
        fetch_limit = min(limit * multiplier, MAX_PAGE_SIZE)

        try:
            popularity = await self.rate_limited_call(
                "popularity_primitives",
                f"fields game_id,value,popularity_type;\nsort value desc;\n"
                f"offset {offset};\nlimit {fetch_limit};\nwhere popularity_type = 1;",
            )
            game_ids = list(dict.fromkeys(
                int(row["game_id"]) for row in popularity
                if isinstance(row, dict) and row.get("game_id") is not None
            ))
        except (UpstreamRequestError, MappingError, ValueError, TypeError) as e:
            logger.warning(f"IGDB popularity lookup failed, falling back to high rated games: {e}")
            return await self._fetch_high_rated(limit, offset)

        if not game_ids:
            logger.info("No popularity data found, falling back to high rated games")
            return await self._fetch_high_rated(limit, offset)

        if offset >= len(popularity):
            logger.info(
                f"Offset {offset} beyond popularity data ({len(popularity)}), using high rated games"
            )
            return await self._fetch_high_rated(limit, offset - len(popularity))

        ids = ",".join(str(i) for i in game_ids)
        try:
            games = await self.rate_limited_call(
                "games",
                f"fields {LISTING_FIELDS};\nwhere id = ({ids}) & cover != null;\nlimit {fetch_limit};",
            )
        except (UpstreamRequestError, MappingError) as e:
            logger.warning(f"IGDB popular game details failed, falling back to high rated games: {e}")
            return await self._fetch_high_rated(limit, offset)

        by_id = {record.external_id: record for record in _map_rows(games)}
        ordered = [by_id[str(i)] for i in game_ids if str(i) in by_id][:limit]

        if len(ordered) < limit:
            logger.info(f"Only {len(ordered)} popular games, supplementing with high rated games")
            seen = {record.external_id for record in ordered}
            extra = await self._fetch_high_rated(limit - len(ordered), max(0, offset - 50))
            ordered.extend(record for record in extra if record.external_id not in seen)

        return ordered[:limit]

    async def _fetch_high_rated(self, limit: int, offset: int) -> List[MetadataRecord]:
        one_year_ago = int(time.time()) - ONE_YEAR_SECONDS
        query = (
            f"fields {LISTING_FIELDS};\n"
            f"where rating >= {HIGH_RATING_THRESHOLD} & first_release_date > {one_year_ago} & cover != null;\n"
            f"sort rating desc;\noffset {offset};\nlimit {limit};"
        )
        try:
            return _map_rows(await self.rate_limited_call("games", query))
        except (UpstreamRequestError, MappingError) as e:
            logger.error(f"IGDB high rated games error: {e}")
            return []

    async def fetch_recent(self, limit: int = 20, offset: int = 0) -> List[MetadataRecord]:
        """Recently released games, newest first (no unreleased titles)"""
        now = int(time.time())
        query = (
            f"fields {LISTING_FIELDS};\n"
            f"where first_release_date != null & first_release_date < {now} "
            f"& version_parent = null & cover != null;\n"
            f"sort first_release_date desc;\noffset {offset};\nlimit {limit};"
        )
        try:
            return _map_rows(await self.rate_limited_call("games", query))
        except (UpstreamRequestError, MappingError) as e:
            logger.error(f"IGDB recent games error: {e}")
            return []
