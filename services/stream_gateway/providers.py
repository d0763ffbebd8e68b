"""
Upstream stream providers.

Each provider talks to one service family and converts its response shape
into ProviderStreams:

  * PipedProvider: ``{base}/streams/{id}`` (JSON, or HTML embedding it)
  * InvidiousProvider: ``{base}/api/v1/videos/{id}`` adaptiveFormats
  * JioSaavnProvider: text search, audio-only catalog last resort

Malformed fields default instead of raising; a response missing the fields
a provider cannot work without raises ProviderError.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional
from urllib.parse import parse_qs, quote, urlencode

import httpx

from services.common.logging_utils import module_logger
from services.stream_gateway.instances import InstanceRegistry, ProviderError, normalize_base
from services.stream_gateway.models import AudioStream, ProviderStreams, VideoStream

log = module_logger("stream-gateway", "providers")

_NEXT_DATA_RE = re.compile(r'<script id="__NEXT_DATA__"[^>]*>([^<]+)</script>')
_KBPS_RE = re.compile(r"(\d+)\s*kbps", re.IGNORECASE)
_DENIED_MARKERS = (
    "not available in your country",
    "blocked in your",
    "region",
    "copyright",
    "forbidden",
)

_ITAG_QUALITY = {
    160: "144p", 133: "240p", 134: "360p", 135: "480p", 136: "720p", 137: "1080p",
    264: "1440p", 266: "2160p", 272: "4320p", 298: "720p60", 299: "1080p60",
    303: "1080p60", 308: "1440p60", 313: "2160p60", 315: "2160p60", 330: "144p60",
    331: "240p60", 332: "360p60", 333: "480p60", 334: "720p60", 335: "1080p60",
    336: "1440p60", 337: "2160p60", 338: "4320p60",
}
_HEIGHT_QUALITY = (
    (4320, "4320p (8K)"),
    (2160, "2160p (4K)"),
    (1440, "1440p (2K)"),
    (1080, "1080p"),
    (720, "720p"),
    (480, "480p"),
    (360, "360p"),
    (240, "240p"),
    (144, "144p"),
)


# ════════════════════════════════════════════════════════════════════
# Field coercion
# ════════════════════════════════════════════════════════════════════

def parse_int(value: Any) -> Optional[int]:
    """Lenient int parse: numbers, numeric strings, else None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    match = re.match(r"\s*(-?\d+)", str(value))
    return int(match.group(1)) if match else None


def normalize_bitrate(value: Any) -> int:
    return parse_int(value) or 0


def _str(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) else default


def quality_label(itag: Optional[int], height: Optional[int]) -> str:
    """Human label for a video rendition, from height first then itag."""
    if height:
        for floor, label in _HEIGHT_QUALITY:
            if height >= floor:
                return label
    if itag in _ITAG_QUALITY:
        return _ITAG_QUALITY[itag]
    return f"{height or 'Unknown'}p"


def _is_denial_message(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _DENIED_MARKERS)


def _audio_from_piped(item: dict) -> Optional[AudioStream]:
    url = _str(item.get("url"))
    if not url:
        return None
    return AudioStream(
        url=url,
        bitrate=normalize_bitrate(item.get("bitrate")),
        codec=_str(item.get("codec")),
        mime_type=_str(item.get("mimeType")),
        quality=_str(item.get("quality")),
        content_length=parse_int(item.get("contentLength")),
        itag=parse_int(item.get("itag")),
    )


def _video_from_piped(item: dict) -> Optional[VideoStream]:
    audio = _audio_from_piped(item)
    if audio is None:
        return None
    return VideoStream(
        **audio.model_dump(),
        width=parse_int(item.get("width")),
        height=parse_int(item.get("height")),
        fps=parse_int(item.get("fps")),
    )


def parse_piped_payload(data: Any, instance: Optional[str] = None) -> ProviderStreams:
    """Convert a Piped ``/streams`` payload; requires hls or audioStreams."""
    if not isinstance(data, dict) or (
        not data.get("hls") and not isinstance(data.get("audioStreams"), list)
    ):
        raise ProviderError("Invalid Piped response", instance=instance)

    audio = [
        stream
        for stream in (_audio_from_piped(i) for i in data.get("audioStreams") or [] if isinstance(i, dict))
        if stream is not None
    ]
    video = [
        stream
        for stream in (_video_from_piped(i) for i in data.get("videoStreams") or [] if isinstance(i, dict))
        if stream is not None
    ]
    hls = data.get("hls")
    return ProviderStreams(
        source="piped",
        instance=instance,
        audio_streams=audio,
        video_streams=video,
        manifest_url=hls if isinstance(hls, str) and hls else None,
    )


def _invidious_stream_url(fmt: dict, video_id: str, base: str) -> Optional[str]:
    url = fmt.get("url")
    if isinstance(url, str) and url.strip():
        return url

    cipher = fmt.get("signatureCipher")
    if isinstance(cipher, str) and cipher:
        params = parse_qs(cipher)
        cipher_url = (params.get("url") or [None])[0]
        if cipher_url:
            sig = next(
                (params[k][0] for k in ("sig", "lsig", "s") if params.get(k)),
                None,
            )
            if sig:
                separator = "&" if "?" in cipher_url else "?"
                return f"{cipher_url}{separator}sig={sig}"
            return cipher_url

    itag = parse_int(fmt.get("itag"))
    if not itag:
        return None
    query = urlencode({"id": video_id, "itag": itag, "download_widget": "false", "local": "true"})
    return f"{base.rstrip('/')}/latest_version?{query}"


def parse_invidious_payload(data: Any, video_id: str, instance: str) -> ProviderStreams:
    """Convert an Invidious ``/api/v1/videos`` payload."""
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        message = data["error"]
        raise ProviderError(message, instance=instance, access_denied=_is_denial_message(message))
    if not isinstance(data, dict) or not isinstance(data.get("adaptiveFormats"), list):
        raise ProviderError("Invalid Invidious response", instance=instance)

    audio: list[AudioStream] = []
    video: list[VideoStream] = []
    for fmt in data["adaptiveFormats"]:
        if not isinstance(fmt, dict):
            continue
        mime = _str(fmt.get("type"))
        url = _invidious_stream_url(fmt, video_id, instance)
        if not url:
            continue
        bitrate = normalize_bitrate(fmt.get("bitrate"))
        itag = parse_int(fmt.get("itag"))
        if mime.startswith("audio"):
            audio.append(AudioStream(
                url=url,
                bitrate=bitrate,
                codec=_str(fmt.get("encoding")) or ("opus" if "webm" in mime else "aac"),
                mime_type=mime,
                quality=f"{max(64, bitrate // 1024)} kbps",
                content_length=parse_int(fmt.get("clen")),
                itag=itag,
            ))
        elif mime.startswith("video"):
            height = parse_int(fmt.get("height"))
            video.append(VideoStream(
                url=url,
                bitrate=bitrate,
                codec=_str(fmt.get("encoding")) or ("vp9" if "webm" in mime else "avc1"),
                mime_type=mime,
                quality=quality_label(itag, height),
                content_length=parse_int(fmt.get("clen")),
                itag=itag,
                width=parse_int(fmt.get("width")),
                height=height,
                fps=parse_int(fmt.get("fps")),
            ))

    video.sort(key=lambda s: s.height or 0, reverse=True)
    hls = data.get("hlsUrl")
    return ProviderStreams(
        source="invidious",
        instance=instance,
        audio_streams=audio,
        video_streams=video,
        manifest_url=hls if isinstance(hls, str) and hls else None,
    )


# ════════════════════════════════════════════════════════════════════
# Providers
# ════════════════════════════════════════════════════════════════════

def _cache_matches(cached: Optional[ProviderStreams], instance: Optional[str]) -> bool:
    """A cached payload serves unhinted lookups and hints naming the instance it came from."""
    return cached is not None and (not instance or cached.instance == normalize_base(instance))


class PipedProvider:
    source = "piped"

    def __init__(self, registry: InstanceRegistry, *, cache_ttl: float):
        self._registry = registry
        self._cache_ttl = cache_ttl

    def forget(self, video_id: str) -> None:
        self._registry.drop_cached("piped", f"streams:{video_id}")

    async def _fetch_payload(self, base: str, video_id: str) -> Any:
        response = await self._registry.client.get(
            f"{base}/streams/{quote(video_id, safe='')}",
            headers={"Accept": "application/json,text/plain"},
        )
        if response.status_code >= 400:
            raise ProviderError(f"HTTP {response.status_code}", status=response.status_code, instance=base)

        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            return response.json()

        # Some instances answer with an HTML page that embeds the JSON.
        match = _NEXT_DATA_RE.search(response.text)
        if match:
            try:
                player_data = json.loads(match.group(1))["props"]["pageProps"]["playerData"]
            except (ValueError, KeyError, TypeError) as e:
                log.warning("Failed to parse embedded JSON from Piped HTML at %s: %s", base, e)
            else:
                if player_data:
                    return player_data
        raise ProviderError(f'Unexpected content-type "{content_type}"', instance=base)

    async def fetch(self, video_id: str, instance: Optional[str] = None) -> ProviderStreams:
        cache_key = f"streams:{video_id}"
        cached = self._registry.get_cached("piped", cache_key)
        if _cache_matches(cached, instance):
            return cached

        async def attempt(base: str) -> ProviderStreams:
            return parse_piped_payload(await self._fetch_payload(base, video_id), base)

        streams, used = await self._registry.run("piped", attempt, preferred=instance)
        log.info(
            "Resolved via Piped: %s id=%s audio=%d video=%d",
            used, video_id, len(streams.audio_streams), len(streams.video_streams),
        )
        self._registry.set_cached("piped", cache_key, self._cache_ttl, streams)
        return streams


class InvidiousProvider:
    source = "invidious"

    def __init__(self, registry: InstanceRegistry, *, cache_ttl: float):
        self._registry = registry
        self._cache_ttl = cache_ttl

    def forget(self, video_id: str) -> None:
        self._registry.drop_cached("invidious", f"videos:{video_id}")

    async def fetch(self, video_id: str, instance: Optional[str] = None) -> ProviderStreams:
        cache_key = f"videos:{video_id}"
        cached = self._registry.get_cached("invidious", cache_key)
        if _cache_matches(cached, instance):
            return cached

        async def attempt(base: str) -> ProviderStreams:
            response = await self._registry.client.get(
                f"{base}/api/v1/videos/{quote(video_id, safe='')}",
                headers={"Accept": "application/json"},
            )
            if response.status_code >= 400:
                message = f"HTTP {response.status_code}"
                try:
                    body = response.json()
                    if isinstance(body, dict) and isinstance(body.get("error"), str):
                        message = body["error"]
                except ValueError:
                    pass
                raise ProviderError(
                    message,
                    status=response.status_code,
                    instance=base,
                    access_denied=response.status_code == 403 or _is_denial_message(message),
                )
            return parse_invidious_payload(response.json(), video_id, base)

        streams, used = await self._registry.run("invidious", attempt, preferred=instance)
        log.info(
            "Resolved via Invidious: %s id=%s audio=%d video=%d",
            used, video_id, len(streams.audio_streams), len(streams.video_streams),
        )
        self._registry.set_cached("invidious", cache_key, self._cache_ttl, streams)
        return streams


def pick_catalog_download(downloads: list[dict]) -> Optional[dict]:
    """Prefer the 320kbps tier, else the highest-bitrate tier offered."""
    usable = [d for d in downloads if isinstance(d, dict) and isinstance(d.get("url"), str) and d["url"]]
    if not usable:
        return None
    for entry in usable:
        if entry.get("quality") == "320kbps":
            return entry

    def kbps(entry: dict) -> int:
        match = _KBPS_RE.search(_str(entry.get("quality")))
        return int(match.group(1)) if match else 0

    best = max(usable, key=kbps)
    # unlabelled tiers are listed lowest-to-highest
    return best if kbps(best) > 0 else usable[-1]


class JioSaavnProvider:
    """Audio-only catalog lookup by free text (title and artist)."""

    source = "jiosaavn"

    def __init__(self, client: httpx.AsyncClient, base_url: str):
        self._client = client
        self._base_url = base_url.rstrip("/")

    async def search_best(self, query: str) -> ProviderStreams:
        try:
            response = await self._client.get(
                f"{self._base_url}/api/search/songs",
                params={"query": query},
                headers={"Cache-Control": "no-store"},
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"JioSaavn search failed: {e}", instance=self._base_url) from e
        if response.status_code >= 400:
            raise ProviderError("JioSaavn search failed", status=response.status_code, instance=self._base_url)

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError("JioSaavn returned invalid JSON", instance=self._base_url) from e

        results: Any = payload
        for key in ("data", "songs", "results"):
            results = results.get(key) if isinstance(results, dict) else None
        song = results[0] if isinstance(results, list) and results and isinstance(results[0], dict) else None
        if not song or not isinstance(song.get("downloadUrl"), list):
            raise ProviderError("No JioSaavn result", instance=self._base_url)

        best = pick_catalog_download(song["downloadUrl"])
        if best is None:
            raise ProviderError("No downloadable audio", instance=self._base_url)

        quality = _str(best.get("quality"))
        match = _KBPS_RE.search(quality)
        return ProviderStreams(
            source="jiosaavn",
            instance=self._base_url,
            audio_streams=[
                AudioStream(
                    url=best["url"],
                    bitrate=int(match.group(1)) * 1000 if match else 320000,
                    codec="mp3",
                    mime_type="audio/mpeg",
                    quality=quality,
                )
            ],
        )
