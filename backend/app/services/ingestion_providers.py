"""
Ingestion providers used by the background job.

YouTubeProvider is the primary, quota-metered source. ScraperProvider is the
quota-free fallback and is only ever constructed by the ingestion job, never
by the user-facing search path.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol
from urllib.parse import urlencode

import requests

from .classifier import classify_outlier, tier_names
from .outlier import (
    composite_outlier_score,
    like_ratio,
    parse_iso8601_datetime,
    views_per_day,
    virality_multiplier,
)

logger = logging.getLogger(__name__)

YOUTUBE_SEARCH_LIST = "https://www.googleapis.com/youtube/v3/search"
YOUTUBE_VIDEOS_LIST = "https://www.googleapis.com/youtube/v3/videos"
YOUTUBE_CHANNELS_LIST = "https://www.googleapis.com/youtube/v3/channels"

QUOTA_SEARCH = 100
QUOTA_VIDEOS = 1
QUOTA_CHANNELS = 1
YOUTUBE_QUOTA_PER_SEARCH = QUOTA_SEARCH + QUOTA_VIDEOS + QUOTA_CHANNELS

YOUTUBE_TIMEOUT_SECONDS = 15
SCRAPER_TIMEOUT_SECONDS = 20
DEFAULT_MAX_RESULTS = 15
# videos.list / channels.list accept at most 50 ids per call
MAX_IDS_PER_CALL = 50
ERROR_BODY_CHARS = 200

QUOTA_ERROR_RE = re.compile(r"quota|403|429|exceeded", re.IGNORECASE)


class ProviderError(Exception):
    """
    `str(e)` is safe to hand back to callers. The upstream response body, when
    there is one, stays on `body` for job metadata and logs.
    """

    def __init__(self, message: str, body: str | None = None):
        super().__init__(message)
        self.body = body or None

    def detail(self) -> str:
        return f"{self} {self.body}" if self.body else str(self)


class ProviderQuotaError(ProviderError):
    pass


def is_quota_error(exc: BaseException) -> bool:
    if isinstance(exc, ProviderQuotaError):
        return True
    text = exc.detail() if isinstance(exc, ProviderError) else str(exc)
    return bool(QUOTA_ERROR_RE.search(text))


@dataclass
class EnrichedVideo:
    youtube_video_id: str
    youtube_channel_id: str
    channel_title: str | None
    title: str | None
    thumbnail_url: str | None
    views: int
    subscribers: int
    published_at: datetime | None
    multiplier: float
    views_per_day: float | None
    like_ratio: float | None
    outlier_score: float | None = None
    outlier_tier: list[str] = field(default_factory=list)


@dataclass
class SearchResult:
    videos: list[EnrichedVideo]
    quota_units_used: int


class IngestionProvider(Protocol):
    name: str

    def search_and_enrich(self, query: str) -> SearchResult: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_int(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return 0
    return max(0, number)


def _to_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def enrich_video(
    youtube_video_id: str,
    youtube_channel_id: str,
    channel_title: str | None,
    title: str | None,
    thumbnail_url: str | None,
    views: int,
    subscribers: int,
    likes: int,
    published_at: Any,
    now: datetime,
) -> EnrichedVideo:
    published = parse_iso8601_datetime(published_at)
    per_day = views_per_day(views, published, now)
    ratio = like_ratio(views, likes)
    # Tiers that need niche aggregates are decided at query time
    tiers = classify_outlier(views, subscribers, per_day, ratio)
    return EnrichedVideo(
        youtube_video_id=youtube_video_id,
        youtube_channel_id=youtube_channel_id,
        channel_title=channel_title,
        title=title,
        thumbnail_url=thumbnail_url,
        views=views,
        subscribers=subscribers,
        published_at=published,
        multiplier=virality_multiplier(views, subscribers),
        views_per_day=per_day,
        like_ratio=ratio,
        outlier_score=composite_outlier_score(views, subscribers, published, now),
        outlier_tier=tier_names(tiers),
    )


def youtube_api_get(url: str, params: dict[str, Any], label: str, timeout: int = YOUTUBE_TIMEOUT_SECONDS) -> dict[str, Any]:
    try:
        response = requests.get(url, params=params, timeout=timeout)
    except requests.RequestException as e:
        logger.warning(f"YouTube {label} request failed: {type(e).__name__}")
        raise ProviderError(f"YouTube {label} failed: {type(e).__name__}") from e

    if response.status_code == 200:
        return response.json()

    body = response.text or ""
    message = f"YouTube {label} failed: {response.status_code}"
    snippet = body[:ERROR_BODY_CHARS]
    logger.warning(f"YouTube {label} returned {response.status_code}")
    lowered = body.lower()
    if response.status_code in {403, 429} and "quota" in lowered:
        raise ProviderQuotaError(message, snippet)
    raise ProviderError(message, snippet)


class YouTubeProvider:
    name = "youtube"

    def __init__(
        self,
        api_key: str,
        max_results: int = DEFAULT_MAX_RESULTS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.api_key = api_key
        self.max_results = max(1, min(int(max_results), MAX_IDS_PER_CALL))
        self.clock = clock

    def search(self, query: str) -> tuple[list[str], list[str]]:
        data = youtube_api_get(
            YOUTUBE_SEARCH_LIST,
            {
                "part": "snippet",
                "type": "video",
                "maxResults": self.max_results,
                "safeSearch": "none",
                "q": query,
                "key": self.api_key,
            },
            "search",
        )
        video_ids: list[str] = []
        channel_ids: list[str] = []
        for item in data.get("items") or []:
            video_id = (item.get("id") or {}).get("videoId")
            if isinstance(video_id, str) and video_id and video_id not in video_ids:
                video_ids.append(video_id)
            channel_id = (item.get("snippet") or {}).get("channelId")
            if isinstance(channel_id, str) and channel_id and channel_id not in channel_ids:
                channel_ids.append(channel_id)
        return video_ids, channel_ids

    def fetch_video_details(self, video_ids: list[str]) -> list[dict[str, Any]]:
        if not video_ids:
            return []
        data = youtube_api_get(
            YOUTUBE_VIDEOS_LIST,
            {"part": "statistics,snippet", "id": ",".join(video_ids), "key": self.api_key},
            "videos",
        )
        return data.get("items") or []

    def fetch_channel_subscribers(self, channel_ids: list[str]) -> dict[str, int]:
        if not channel_ids:
            return {}
        data = youtube_api_get(
            YOUTUBE_CHANNELS_LIST,
            {"part": "statistics", "id": ",".join(channel_ids), "key": self.api_key},
            "channels",
        )
        subscribers: dict[str, int] = {}
        for item in data.get("items") or []:
            stats = item.get("statistics") or {}
            # Hidden subscriber counts are omitted, the multiplier floor covers them
            if item.get("id") and "subscriberCount" in stats:
                subscribers[item["id"]] = _to_int(stats.get("subscriberCount"))
        return subscribers

    def search_and_enrich(self, query: str) -> SearchResult:
        video_ids, channel_ids = self.search(query)
        if not video_ids:
            return SearchResult(videos=[], quota_units_used=YOUTUBE_QUOTA_PER_SEARCH)

        items = self.fetch_video_details(video_ids)
        subscribers = self.fetch_channel_subscribers(channel_ids)
        now = self.clock()

        videos = []
        for item in items:
            snippet = item.get("snippet") or {}
            stats = item.get("statistics") or {}
            video_id = _to_str(item.get("id"))
            channel_id = _to_str(snippet.get("channelId"))
            if not video_id or not channel_id:
                continue
            videos.append(
                enrich_video(
                    youtube_video_id=video_id,
                    youtube_channel_id=channel_id,
                    channel_title=_to_str(snippet.get("channelTitle")),
                    title=_to_str(snippet.get("title")),
                    thumbnail_url=((snippet.get("thumbnails") or {}).get("medium") or {}).get("url"),
                    views=_to_int(stats.get("viewCount")),
                    subscribers=subscribers.get(channel_id, 0),
                    likes=_to_int(stats.get("likeCount")),
                    published_at=snippet.get("publishedAt"),
                    now=now,
                )
            )
        return SearchResult(videos=videos, quota_units_used=YOUTUBE_QUOTA_PER_SEARCH)


def _first(item: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value is not None:
            return value
    return None


class ScraperProvider:
    """Quota-free fallback. Field names vary between scraper backends, so every field has alternates."""

    name = "scraper"

    def __init__(self, api_key: str, base_url: str, clock: Callable[[], datetime] = _utcnow):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.clock = clock

    def parse_item(self, item: Any, now: datetime) -> EnrichedVideo | None:
        if not isinstance(item, dict):
            return None
        video_id = _to_str(_first(item, "videoId", "id"))
        if not video_id:
            return None
        return enrich_video(
            youtube_video_id=video_id,
            youtube_channel_id=_to_str(_first(item, "channelId", "channel_id")) or "",
            channel_title=_to_str(_first(item, "channelTitle", "channel_title")),
            title=_to_str(item.get("title")),
            thumbnail_url=_to_str(_first(item, "thumbnailUrl", "thumbnail_url")),
            views=_to_int(_first(item, "viewCount", "views")),
            subscribers=_to_int(_first(item, "subscriberCount", "subscribers")),
            likes=_to_int(_first(item, "likeCount", "likes")),
            published_at=_first(item, "publishedAt", "published_at"),
            now=now,
        )

    def search_and_enrich(self, query: str) -> SearchResult:
        separator = "&" if "?" in self.base_url else "?"
        url = f"{self.base_url}{separator}" + urlencode({"query": query, "api_key": self.api_key})
        try:
            response = requests.get(url, headers={"Accept": "application/json"}, timeout=SCRAPER_TIMEOUT_SECONDS)
        except requests.RequestException as e:
            logger.warning(f"Scraper request failed: {type(e).__name__}")
            raise ProviderError(f"Scraper API failed: {type(e).__name__}") from e

        if not response.ok:
            logger.warning(f"Scraper returned {response.status_code}")
            raise ProviderError(
                f"Scraper API failed: {response.status_code}",
                (response.text or "")[:ERROR_BODY_CHARS],
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError("Scraper API failed: invalid JSON") from e

        raw_items: Any = []
        if isinstance(data, dict):
            raw_items = data.get("items") if isinstance(data.get("items"), list) else data.get("results") or []
        if not isinstance(raw_items, list):
            raw_items = []

        now = self.clock()
        videos = [video for video in (self.parse_item(item, now) for item in raw_items) if video is not None]
        return SearchResult(videos=videos, quota_units_used=0)
