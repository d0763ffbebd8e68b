"""Track search merged from Piped and Invidious."""

from __future__ import annotations

import asyncio
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

from services.common.logging_utils import module_logger
from services.stream_gateway.instances import InstanceRegistry, ProviderError

log = module_logger("stream-gateway", "search")

MIN_INVIDIOUS_LENGTH = 60


class SearchUnavailable(Exception):
    """Both search backends failed."""


def video_id_from_piped_url(url: Any) -> Optional[str]:
    """``/watch?v=abc`` -> ``abc``; anything else is returned as-is."""
    if not isinstance(url, str) or not url:
        return None
    video_ids = parse_qs(urlparse(url).query).get("v")
    return video_ids[0] if video_ids else url


def _piped_item(item: dict, instance: str) -> Optional[dict]:
    if item.get("isShort"):
        return None
    video_id = video_id_from_piped_url(item.get("url"))
    if not video_id:
        return None
    duration = item.get("duration")
    return {
        "id": video_id,
        "title": item.get("title") or "Unknown Title",
        "artist": item.get("uploaderName") or "Unknown Artist",
        "thumbnailUrl": item.get("thumbnail"),
        "duration": duration if isinstance(duration, (int, float)) and duration > 0 else 0,
        "isVideo": True,
        "streamSource": "piped",
        "streamInstance": instance,
    }


def _invidious_item(item: dict, instance: str) -> Optional[dict]:
    length = item.get("lengthSeconds") or 0
    if not isinstance(length, (int, float)) or length < MIN_INVIDIOUS_LENGTH:
        return None
    if not item.get("videoId"):
        return None
    thumbnails = [t for t in item.get("videoThumbnails") or [] if isinstance(t, dict)]
    thumbnail = next((t.get("url") for t in thumbnails if t.get("quality") == "maxres"), None)
    if not thumbnail and thumbnails:
        thumbnail = thumbnails[0].get("url")
    return {
        "id": item["videoId"],
        "title": item.get("title") or "Unknown Title",
        "artist": item.get("author") or "Unknown Artist",
        "thumbnailUrl": thumbnail,
        "duration": length,
        "isVideo": True,
        "streamSource": "invidious",
        "streamInstance": instance,
    }


class SearchService:
    def __init__(self, registry: InstanceRegistry, *, cache_ttl: float):
        self._registry = registry
        self._cache_ttl = cache_ttl

    async def _search_piped(self, query: str, region: str) -> list[dict]:
        data, instance = await self._registry.fetch_json(
            "piped",
            lambda base: f"{base}/search",
            params={"q": query, "region": region, "filter": "music_songs"},
            cache_key=f"search:{region}:{query.lower()}",
            ttl=self._cache_ttl,
        )
        items = data.get("items") if isinstance(data, dict) else None
        return [
            track
            for track in (_piped_item(i, instance) for i in items or [] if isinstance(i, dict))
            if track
        ]

    async def _search_invidious(self, query: str, region: str) -> list[dict]:
        data, instance = await self._registry.fetch_json(
            "invidious",
            lambda base: f"{base}/api/v1/search",
            params={"q": query, "type": "video", "region": region},
            cache_key=f"invidious-search:{region}:{query.lower()}",
            ttl=self._cache_ttl * 1.5,
        )
        return [
            track
            for track in (_invidious_item(i, instance) for i in data or [] if isinstance(i, dict))
            if track
        ]

    async def search(self, query: str, region: str) -> list[dict]:
        """Piped results first, Invidious results appended, unique by id."""
        piped, invidious = await asyncio.gather(
            self._search_piped(query, region),
            self._search_invidious(query, region),
            return_exceptions=True,
        )
        for name, result in (("Piped", piped), ("Invidious", invidious)):
            if isinstance(result, BaseException):
                if not isinstance(result, (ProviderError, ValueError)):
                    raise result
                log.warning("%s search failed for %r: %s", name, query, result)
        if isinstance(piped, BaseException) and isinstance(invidious, BaseException):
            raise SearchUnavailable(f"both searches failed for {query!r}")

        combined: list[dict] = []
        seen: set[str] = set()
        for result in (piped, invidious):
            if isinstance(result, BaseException):
                continue
            for track in result:
                if track["id"] in seen:
                    continue
                seen.add(track["id"])
                combined.append(track)
        return combined
