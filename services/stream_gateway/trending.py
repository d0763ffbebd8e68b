"""
Trending music feed.

Piped's music trending list comes first. Invidious trending tops it up when
Piped returns too little, and weighted Invidious searches for evergreen
"hit songs" queries fill whatever is still missing. Every upstream listing
is filtered through a keyword/duration heuristic since trending pages mix
music with news, gaming and vlogs.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

from services.common.logging_utils import module_logger
from services.stream_gateway.instances import InstanceRegistry, ProviderError

log = module_logger("stream-gateway", "trending")

FEED_SIZE = 40
INVIDIOUS_TOP_UP_BELOW = 20
MIN_TRACK_SECONDS = 45
MAX_TRACK_SECONDS = 600

TRENDING_QUERIES: tuple[tuple[str, float], ...] = (
    ("trending songs 2025", 1.0),
    ("viral songs", 0.96),
    ("new hindi songs 2025", 0.92),
    ("punjabi hits 2025", 0.9),
    ("english hit songs 2025", 0.88),
    ("bollywood trending songs", 0.86),
)

NON_MUSIC_KEYWORDS = (
    # news
    "news", "breaking", "update", "report", "headline", "politics", "election",
    # gaming
    "gaming", "gameplay", "playthrough", "walkthrough", "let's play", "lets play", "game review",
    "speedrun", "gamer", "twitch", "streamer", "esports", "tournament", "competitive",
    # vlogs
    "vlog", "lifestyle", "daily vlog", "day in my life", "morning routine", "night routine",
    "fashion", "outfit", "haul", "shopping", "makeup", "beauty", "skincare", "routine",
    # food
    "recipe", "cooking", "baking", "food", "restaurant", "review", "taste test", "mukbang",
    "chef", "kitchen", "meal prep", "foodie",
    # tech
    "unboxing", "tech review", "product review", "comparison", "vs", "versus",
    "tutorial", "how to", "guide", "tips", "tricks", "explained",
    # shows
    "podcast", "interview", "talk show", "documentary", "trailer", "teaser",
    "movie", "film", "episode", "series", "tv show", "comedy", "skit", "standup",
    "netflix", "disney", "marvel", "dc",
    # live
    "livestream", "live stream", "live chat", "streaming", "live", "premiere",
    # education
    "lecture", "course", "class", "lesson", "education", "learning", "study",
    # sports
    "sports", "football", "soccer", "basketball", "highlights", "match", "game",
    "asmr", "relaxing", "meditation", "yoga", "workout", "fitness", "motivation",
    "inspirational", "story", "storytime", "prank", "challenge", "experiment",
)

MUSIC_INDICATORS = (
    "song", "music", "track", "album", "single", "ep", "mixtape",
    "feat", "ft.", "ft", "featuring", "remix", "cover", "original",
    "mv", "music video", "official audio", "official video", "lyrics",
    "artist", "singer", "rapper", "producer", "dj", "beat", "instrumental",
)


def _keyword_pattern(keywords: tuple[str, ...]) -> re.Pattern:
    alternatives = "|".join(re.escape(k) for k in sorted(set(keywords), key=len, reverse=True))
    return re.compile(rf"(?<!\w)(?:{alternatives})(?!\w)")


_NON_MUSIC_RE = _keyword_pattern(NON_MUSIC_KEYWORDS)
_MUSIC_RE = _keyword_pattern(MUSIC_INDICATORS)
_NON_MUSIC_TITLE_PATTERNS = (
    re.compile(r"^\d+\s*(hours?|minutes?|days?)\s*(ago|old)", re.IGNORECASE),
    re.compile(r"live\s+(now|stream|chat)", re.IGNORECASE),
    re.compile(r"episode\s+\d+", re.IGNORECASE),
    re.compile(r"part\s+\d+", re.IGNORECASE),
    re.compile(r"season\s+\d+", re.IGNORECASE),
)
_YOUTUBE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")


def parse_youtube_id(value: Any) -> Optional[str]:
    """Accept a bare id, ``/watch?v=``, ``/shorts/``, ``/embed/`` or full URLs."""
    if not isinstance(value, str) or not value.strip():
        return None
    value = value.strip()
    if _YOUTUBE_ID_RE.match(value):
        return value
    if value.startswith("/"):
        value = f"https://www.youtube.com{value}"
    elif "://" not in value:
        return None

    parsed = urlparse(value)
    for candidate in parse_qs(parsed.query).get("v", []):
        if _YOUTUBE_ID_RE.match(candidate):
            return candidate
    segments = [s for s in parsed.path.split("/") if s]
    if len(segments) >= 2 and segments[0] in ("shorts", "embed", "v") and _YOUTUBE_ID_RE.match(segments[1]):
        return segments[1]
    if len(segments) == 1 and _YOUTUBE_ID_RE.match(segments[0]):
        return segments[0]
    return None


def _duration(item: dict) -> int:
    for key in ("duration", "lengthSeconds", "durationSeconds", "seconds"):
        value = item.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)) and value > 0:
            return int(value)
        if isinstance(value, str) and value.strip().isdigit() and int(value) > 0:
            return int(value)
    return 0


def _thumbnail(item: dict) -> Optional[str]:
    for key in ("thumbnail", "thumbnailUrl"):
        if isinstance(item.get(key), str):
            return item[key]
    for key in ("thumbnails", "videoThumbnails"):
        thumbs = [t for t in item.get(key) or [] if isinstance(t, dict)]
        best = next((t for t in thumbs if t.get("quality") == "maxres"), thumbs[0] if thumbs else None)
        if best and best.get("url"):
            return best["url"]
    return None


def trending_item(item: Any, source: str, instance: Optional[str]) -> Optional[dict]:
    """Map a Piped or Invidious listing entry onto the search result shape."""
    if not isinstance(item, dict) or item.get("isShort"):
        return None
    video_id = next(
        filter(None, (parse_youtube_id(item.get(k)) for k in ("id", "videoId", "url"))),
        None,
    )
    if not video_id:
        return None
    title = item.get("title") or item.get("name")
    artist = next(
        (
            item[k] for k in ("uploaderName", "author", "channelName", "uploader")
            if isinstance(item.get(k), str) and item[k]
        ),
        "Unknown Artist",
    )
    return {
        "id": video_id,
        "title": title if isinstance(title, str) else "Unknown Title",
        "artist": artist,
        "thumbnailUrl": _thumbnail(item),
        "duration": _duration(item),
        "isVideo": True,
        "streamSource": source,
        "streamInstance": instance,
    }


def looks_like_music(track: dict, item: dict) -> bool:
    title = _str_lower(item.get("title")) or track["title"].lower()
    description = _str_lower(item.get("description"))
    author = (
        _str_lower(item.get("author") or item.get("uploaderName") or item.get("channelName"))
        or track["artist"].lower()
    )

    full_text = f"{title} {description} {author}"
    if _NON_MUSIC_RE.search(full_text):
        return False
    has_indicator = _MUSIC_RE.search(full_text) is not None

    if not has_indicator and (len(author.split()) > 5 or len(title) > 60):
        return False

    duration = track["duration"]
    if duration > 0:
        if duration < MIN_TRACK_SECONDS or duration > MAX_TRACK_SECONDS:
            return False
    elif not has_indicator:
        return False

    if len(title) > 80 or len(description) > 500:
        return False
    return not any(p.search(title) for p in _NON_MUSIC_TITLE_PATTERNS)


def _str_lower(value: Any) -> str:
    return value.lower() if isinstance(value, str) else ""


class TrendingService:
    def __init__(
        self,
        registry: InstanceRegistry,
        *,
        cache_ttl: float,
        search_cache_ttl: float,
        queries: tuple[tuple[str, float], ...] = TRENDING_QUERIES,
    ):
        self._registry = registry
        self._cache_ttl = cache_ttl
        self._search_cache_ttl = search_cache_ttl
        self._queries = queries

    async def _piped_trending(self, region: str) -> list[dict]:
        data, instance = await self._registry.fetch_json(
            "piped",
            lambda base: f"{base}/trending",
            params={"region": region, "type": "music"},
            cache_key=f"trending:{region}",
            ttl=self._cache_ttl,
        )
        items = data if isinstance(data, list) else data.get("items") if isinstance(data, dict) else None
        log.info("Piped trending from %s: %d items", instance, len(items or []))
        return self._music_tracks(items, "piped", instance)

    async def _invidious_trending(self, region: str) -> list[dict]:
        data, instance = await self._registry.fetch_json(
            "invidious",
            lambda base: f"{base}/api/v1/trending",
            params={"type": "music", "region": region},
            cache_key=f"trending:{region}",
            ttl=self._cache_ttl,
        )
        items = data if isinstance(data, list) else None
        log.info("Invidious trending from %s: %d items", instance, len(items or []))
        return self._music_tracks(items, "invidious", instance)

    async def _search_fallback(self, region: str) -> list[dict]:
        async def one(query: str) -> tuple[Any, str]:
            return await self._registry.fetch_json(
                "invidious",
                lambda base: f"{base}/api/v1/search",
                params={"q": query, "type": "video", "region": region},
                cache_key=f"trending-search:{region}:{query.lower()}",
                ttl=self._search_cache_ttl,
            )

        results = await asyncio.gather(*(one(q) for q, _ in self._queries), return_exceptions=True)

        scored: dict[str, tuple[float, dict]] = {}
        for (query, weight), result in zip(self._queries, results):
            if isinstance(result, BaseException):
                if not isinstance(result, (ProviderError, ValueError)):
                    raise result
                log.warning("Trending search %r failed: %s", query, result)
                continue
            data, instance = result
            items = data if isinstance(data, list) else []
            for index, track in enumerate(self._music_tracks(items, "invidious", instance, keep_gaps=True)):
                if track is None:
                    continue
                score = weight - index * 0.01
                existing = scored.get(track["id"])
                if existing and existing[0] >= score:
                    continue
                scored[track["id"]] = (score, track)

        ranked = sorted(scored.values(), key=lambda entry: entry[0], reverse=True)
        return [track for _, track in ranked]

    @staticmethod
    def _music_tracks(items: Any, source: str, instance: Optional[str], *, keep_gaps: bool = False) -> list:
        """Mapped music entries; with ``keep_gaps`` rejected entries stay as None to keep positions."""
        tracks = []
        for item in items or []:
            track = trending_item(item, source, instance)
            if track is None or not looks_like_music(track, item):
                track = None
            if track is not None or keep_gaps:
                tracks.append(track)
        return tracks

    async def trending(self, region: str) -> list[dict]:
        """At most ``FEED_SIZE`` music tracks, unique by id, best sources first."""
        feed: list[dict] = []
        seen: set[str] = set()

        def extend(tracks: list[dict]) -> None:
            for track in tracks:
                if track["id"] in seen:
                    continue
                seen.add(track["id"])
                feed.append(track)

        try:
            extend(await self._piped_trending(region))
        except (ProviderError, ValueError) as e:
            log.warning("Piped trending failed for region %s: %s", region, e)

        if len(feed) < INVIDIOUS_TOP_UP_BELOW:
            try:
                extend(await self._invidious_trending(region))
            except (ProviderError, ValueError) as e:
                log.warning("Invidious trending failed for region %s: %s", region, e)

        if len(feed) < FEED_SIZE:
            extend(await self._search_fallback(region))

        return feed[:FEED_SIZE]
