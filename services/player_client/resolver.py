"""
Client side of stream resolution.

One ``resolve`` call is exactly one request to the gateway's
``/api/streams/{id}/best`` endpoint. Source/instance hints come from the
caller first, then from the PreferenceStore; without either the gateway
picks its default. Switching to another source or instance after a miss
is the caller's decision (pass a StreamHint).

Outcomes:

  * ResolvedStream: every URL rewritten through the gateway proxy
  * None: not found, upstream error, network failure
  * AccessDeniedError raised: HTTP 403 (region/ownership restriction)
"""

from __future__ import annotations

from typing import Any, Optional
from urllib.parse import quote, urlencode

import httpx

from services.common.logging_utils import module_logger
from services.player_client.errors import DEFAULT_ACCESS_DENIED_MESSAGE, AccessDeniedError
from services.player_client.models import (
    STREAM_SOURCES,
    ResolvedStream,
    StreamHint,
    StreamVariant,
)
from services.player_client.preferences import PreferenceStore

log = module_logger("player-client", "resolver")

# Source the gateway uses when none is requested.
BACKEND_DEFAULT_SOURCE = "piped"


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value))
        except ValueError:
            return None
    return None


def _as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


class StreamResolver:
    def __init__(self, client: httpx.AsyncClient, preferences: PreferenceStore, *, api_url: str):
        self._client = client
        self._preferences = preferences
        self.api_url = api_url.rstrip("/")

    # ── URL helpers ────────────────────────────────────────────────

    def absolute(self, path_or_url: str) -> str:
        """Prefix gateway-relative paths with the API origin."""
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        return f"{self.api_url}/{path_or_url.lstrip('/')}"

    def proxy_url(
        self,
        track_id: str,
        upstream_url: str,
        source: Optional[str] = None,
        instance: Optional[str] = None,
    ) -> str:
        """Same-origin proxy URL for an upstream media URL."""
        params = {"src": upstream_url}
        if source:
            params["source"] = source
        if instance:
            params["instance"] = instance
        return f"{self.api_url}/api/streams/{quote(track_id, safe='')}/proxy?{urlencode(params)}"

    def _proxied(self, track_id: str, raw: str, explicit: Any, source: Optional[str], instance: Optional[str]) -> str:
        explicit_url = _as_str(explicit)
        if explicit_url:
            return self.absolute(explicit_url)
        if "/api/streams/" in raw and "/proxy" in raw:
            return self.absolute(raw)
        return self.proxy_url(track_id, raw, source, instance)

    def _variants(
        self, track_id: str, items: Any, source: Optional[str], instance: Optional[str]
    ) -> list[StreamVariant]:
        variants = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            raw = _as_str(item.get("url"))
            if not raw:
                continue
            variants.append(StreamVariant(
                url=raw,
                proxied_url=self._proxied(track_id, raw, item.get("proxiedUrl"), source, instance),
                bitrate=_as_int(item.get("bitrate")) or 0,
                codec=_as_str(item.get("codec")) or "",
                mime_type=_as_str(item.get("mimeType")) or "",
                quality=_as_str(item.get("quality")) or "",
                width=_as_int(item.get("width")),
                height=_as_int(item.get("height")),
                fps=_as_int(item.get("fps")),
            ))
        return variants

    def normalize(
        self,
        track_id: str,
        body: dict,
        source: Optional[str] = None,
        instance: Optional[str] = None,
    ) -> Optional[ResolvedStream]:
        """Turn a ``/best`` body into a ResolvedStream, or None without a URL."""
        raw_url = _as_str(body.get("url"))
        if not raw_url:
            return None

        origin = body.get("origin") if body.get("origin") in (*STREAM_SOURCES, "jiosaavn") else None
        used_source = origin or source
        used_instance = _as_str(body.get("instance")) or instance

        proxied = _as_str(body.get("proxiedUrl"))
        proxied_url = self.absolute(proxied) if proxied else None
        manifest = _as_str(body.get("manifestUrl"))

        return ResolvedStream(
            url=proxied_url or raw_url,
            raw_url=raw_url,
            proxied_url=proxied_url,
            manifest_url=(
                self._proxied(track_id, manifest, None, used_source, used_instance) if manifest else None
            ),
            mime_type=_as_str(body.get("mimeType")),
            origin=origin,
            instance=used_instance,
            video_streams=self._variants(track_id, body.get("videoStreams"), used_source, used_instance),
            audio_streams=self._variants(track_id, body.get("audioStreams"), used_source, used_instance),
        )

    # ── Resolution ─────────────────────────────────────────────────

    async def resolve(
        self,
        track_id: str,
        hint: Optional[StreamHint] = None,
        *,
        query: Optional[str] = None,
    ) -> Optional[ResolvedStream]:
        """
        Resolve a playable stream for *track_id*.

        *query* (title and artist) lets the gateway fall back to its
        audio-only catalog search when both video providers miss.
        """
        preference = self._preferences.lookup(track_id)
        source = (hint.source if hint else None) or (preference.source if preference else None)
        instance = (hint.instance if hint else None) or (preference.instance if preference else None)

        params: dict[str, str] = {}
        if source:
            params["source"] = source
        if instance:
            params["instance"] = instance
        if query:
            params["q"] = query

        endpoint = f"{self.api_url}/api/streams/{quote(track_id, safe='')}/best"
        try:
            response = await self._client.get(endpoint, params=params)
        except httpx.HTTPError as e:
            log.info("Stream lookup for %s failed: %s", track_id, e)
            return None

        if response.status_code == 403:
            message = DEFAULT_ACCESS_DENIED_MESSAGE
            try:
                body = response.json()
                if isinstance(body, dict) and _as_str(body.get("error")):
                    message = body["error"]
            except ValueError:
                pass
            raise AccessDeniedError(message)

        if not response.is_success:
            log.debug("No stream for %s (HTTP %s)", track_id, response.status_code)
            return None

        try:
            body = response.json()
        except ValueError:
            log.info("Undecodable stream response for %s", track_id)
            return None
        if not isinstance(body, dict):
            return None

        resolved = self.normalize(track_id, body, source, instance)
        if resolved is None:
            return None

        used_source = resolved.origin or source
        hinted = hint is not None and bool(hint.source or hint.instance)
        if used_source in STREAM_SOURCES and (used_source != BACKEND_DEFAULT_SOURCE or hinted):
            self._preferences.remember(track_id, used_source, resolved.instance)
        return resolved
