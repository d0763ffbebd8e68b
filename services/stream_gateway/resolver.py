"""
Best-stream resolution across the provider fallback chain.

Order of attempts for one request:

  1. the preferred source (default: piped), preferred instance first
  2. the other primary source, ranked instances only
  3. the JioSaavn catalog, only when a text query is supplied

Audio renditions are ranked opus > aac > anything else, then by bitrate.
"""

from __future__ import annotations

import time
from typing import Callable, Optional
from urllib.parse import quote, urlencode

from services.common.logging_utils import log_timing, module_logger
from services.stream_gateway.instances import ProviderError
from services.stream_gateway.models import (
    AudioStream,
    ProviderStreams,
    ResolvedUpstream,
    StreamOrigin,
    StreamSource,
)
from services.stream_gateway.providers import (
    InvidiousProvider,
    JioSaavnProvider,
    PipedProvider,
)

log = module_logger("stream-gateway", "resolver")

DEFAULT_SOURCE: StreamSource = "piped"
DEFAULT_DENIED_MESSAGE = "Access denied by video provider"


class ProviderAccessDenied(Exception):
    """Every primary source refused the track (region or ownership block)."""


def codec_rank(codec: str) -> int:
    codec = (codec or "").lower()
    if "opus" in codec:
        return 2
    if "aac" in codec or "mp4a" in codec:
        return 1
    return 0


def rank_audio(streams: list[AudioStream]) -> list[AudioStream]:
    return sorted(streams, key=lambda s: (codec_rank(s.codec), s.bitrate), reverse=True)


def denial_message(errors: list[ProviderError]) -> str:
    """Most specific upstream reason, skipping bare status lines."""
    for error in errors:
        if error.detail and not error.detail.startswith("HTTP "):
            return error.detail
    return DEFAULT_DENIED_MESSAGE


def normalize_source(value: Optional[str]) -> Optional[StreamSource]:
    if not value:
        return None
    lowered = value.strip().lower()
    if lowered in ("piped", "invidious"):
        return lowered  # type: ignore[return-value]
    return None


def build_proxy_path(
    video_id: str,
    src: str,
    source: Optional[StreamOrigin] = None,
    instance: Optional[str] = None,
) -> str:
    """Same-origin proxy path for an upstream media URL."""
    params = {"src": src}
    if source:
        params["source"] = source
    if instance:
        params["instance"] = instance
    return f"/api/streams/{quote(video_id, safe='')}/proxy?{urlencode(params)}"


class StreamResolutionService:
    def __init__(
        self,
        piped: PipedProvider,
        invidious: InvidiousProvider,
        catalog: Optional[JioSaavnProvider] = None,
        *,
        cache_ttl: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        self._providers = {"piped": piped, "invidious": invidious}
        self._catalog = catalog
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._resolved: dict[str, tuple[float, ResolvedUpstream]] = {}

    def clear(self, video_id: str) -> None:
        """Forget every cached result for *video_id* (expired upstream URLs)."""
        for key in [k for k in self._resolved if k.split("|", 1)[0] == video_id]:
            del self._resolved[key]
        for provider in self._providers.values():
            provider.forget(video_id)

    def _cache_get(self, key: str) -> Optional[ResolvedUpstream]:
        entry = self._resolved.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at < self._clock():
            del self._resolved[key]
            return None
        return value

    async def _try_primary(
        self, video_id: str, order: list[StreamSource], preferred_instance: Optional[str]
    ) -> tuple[Optional[ProviderStreams], list[ProviderError]]:
        errors: list[ProviderError] = []
        for index, source in enumerate(order):
            instance = preferred_instance if index == 0 else None
            try:
                streams = await self._providers[source].fetch(video_id, instance)
            except ProviderError as e:
                log.warning("%s failed for %s: %s", source, video_id, e)
                errors.append(e)
                continue
            if streams.audio_streams:
                return streams, errors
            errors.append(ProviderError(f"{source} returned no audio streams"))
        return None, errors

    @log_timing(log, "resolve best stream")
    async def resolve_best(
        self,
        video_id: str,
        preferred_source: Optional[str] = None,
        preferred_instance: Optional[str] = None,
        query: Optional[str] = None,
    ) -> Optional[ResolvedUpstream]:
        """
        Resolve the best playable stream, or None when nothing is playable.

        Raises ProviderAccessDenied when every primary source refused the
        track and the catalog fallback did not produce a stream.
        """
        preferred = normalize_source(preferred_source)
        instance = preferred_instance.rstrip("/") if preferred_instance else None
        cache_key = f"{video_id}|{preferred or ''}|{instance or ''}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            return cached

        first = preferred or DEFAULT_SOURCE
        order: list[StreamSource] = [first, "invidious" if first == "piped" else "piped"]

        streams, errors = await self._try_primary(video_id, order, instance)

        if streams is None and query and self._catalog is not None:
            try:
                streams = await self._catalog.search_best(query)
                log.info("Resolved %s via JioSaavn catalog fallback", video_id)
            except ProviderError as e:
                log.warning("JioSaavn fallback failed for %s: %s", video_id, e)

        if streams is None:
            if errors and all(e.access_denied for e in errors):
                raise ProviderAccessDenied(denial_message(errors))
            return None

        ranked = rank_audio(streams.audio_streams)
        best = ranked[0]
        resolved = ResolvedUpstream(
            url=best.url,
            source=streams.source,
            instance=streams.instance,
            mime_type=best.mime_type or None,
            manifest_url=streams.manifest_url,
            audio_streams=ranked,
            video_streams=streams.video_streams,
        )
        self._resolved[cache_key] = (self._clock() + self._cache_ttl, resolved)
        return resolved
