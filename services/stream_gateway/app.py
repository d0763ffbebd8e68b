"""
Stream Gateway: FastAPI backend for the aerogroove player.

Resolves playable audio/video streams for a YouTube track id by querying
community-run Piped and Invidious instances (JioSaavn catalog search as an
audio-only last resort), and proxies the chosen media same-origin so the
browser never talks to upstream CDNs directly (CORS, mixed content and
anti-hotlinking all break direct playback).

Endpoints consumed by the player client:

  GET  /api/streams/{id}/best?source=&instance=&q=
  GET  /api/streams/{id}/proxy?src=&source=&instance=
  GET  /api/search?q=&region=
  GET  /api/trending?region=
  POST /api/history, GET /api/history
"""

import sys
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qs, urlparse

import httpx
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from services.common.logging_utils import (
    configure_service_logger,
    log_exceptions,
    with_log_context,
)
from services.common.sidecar_runtime_utils import (
    BROWSER_USER_AGENT,
    build_api_client,
    build_stream_proxy_client,
)
from services.stream_gateway import config
from services.stream_gateway.instances import InstanceRegistry
from services.stream_gateway.models import HistoryEntry, HistoryEntryIn
from services.stream_gateway.providers import (
    InvidiousProvider,
    JioSaavnProvider,
    PipedProvider,
)
from services.stream_gateway.resolver import (
    DEFAULT_DENIED_MESSAGE,
    ProviderAccessDenied,
    StreamResolutionService,
    build_proxy_path,
    normalize_source,
)
from services.stream_gateway.search import SearchService, SearchUnavailable
from services.stream_gateway.trending import TrendingService

# ── Logging ─────────────────────────────────────────────────────────
log = configure_service_logger("stream-gateway")

# ── FastAPI app ─────────────────────────────────────────────────────
app = FastAPI(title="aerogroove Stream Gateway", version="1.0.0")

_VPN_HINT = "Please try again later or try switching location using VPN."

# Copied from the upstream media response. Never Content-Length: an upstream
# drop mid-stream must end a chunked response, not violate a declared length.
_FORWARDED_HEADERS = ("accept-ranges", "content-range", "etag", "last-modified", "cache-control")

_AUDIO_ITAG_MIME = {
    140: "audio/mp4", 141: "audio/mp4", 256: "audio/mp4",
    258: "audio/mp4", 325: "audio/mp4", 328: "audio/mp4",
    249: "audio/webm", 250: "audio/webm", 251: "audio/webm",
    171: "audio/webm", 172: "audio/webm",
}


# ════════════════════════════════════════════════════════════════════
# Wiring
# ════════════════════════════════════════════════════════════════════

@dataclass
class Gateway:
    """Everything one gateway process owns."""
    registry: InstanceRegistry
    resolver: StreamResolutionService
    search: SearchService
    trending: TrendingService
    transport: Optional[httpx.AsyncBaseTransport] = None
    history: deque = field(default_factory=lambda: deque(maxlen=config.HISTORY_LIMIT))

    def proxy_client(self) -> httpx.AsyncClient:
        return build_stream_proxy_client(transport=self.transport)

    async def aclose(self) -> None:
        await self.registry.client.aclose()


def build_gateway(
    instances: Optional[config.InstanceConfig] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Gateway:
    instances = instances or config.InstanceConfig.from_env()
    client = build_api_client(config.UPSTREAM_TIMEOUT, transport=transport)
    registry = InstanceRegistry(instances, client)
    resolver = StreamResolutionService(
        PipedProvider(registry, cache_ttl=config.STREAM_CACHE_TTL),
        InvidiousProvider(registry, cache_ttl=config.STREAM_CACHE_TTL),
        JioSaavnProvider(client, instances.jiosaavn),
        cache_ttl=config.RESOLVED_CACHE_TTL,
    )
    return Gateway(
        registry=registry,
        resolver=resolver,
        search=SearchService(registry, cache_ttl=config.SEARCH_CACHE_TTL),
        trending=TrendingService(
            registry,
            cache_ttl=config.TRENDING_CACHE_TTL,
            search_cache_ttl=config.TRENDING_SEARCH_CACHE_TTL,
        ),
        transport=transport,
    )


_gateway: Optional[Gateway] = None


def get_gateway() -> Gateway:
    global _gateway
    if _gateway is None:
        _gateway = build_gateway()
    return _gateway


def mime_type_for_itag(url: str) -> str:
    """Audio mime type implied by a googlevideo URL's ``itag`` parameter."""
    itags = parse_qs(urlparse(url).query).get("itag")
    try:
        itag = int(itags[0]) if itags else None
    except ValueError:
        itag = None
    return _AUDIO_ITAG_MIME.get(itag, "audio/webm")


# ════════════════════════════════════════════════════════════════════
# Endpoints
# ════════════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}


# ── Streams ─────────────────────────────────────────────────────────

@app.get("/api/streams/{video_id}/best")
async def best_stream(
    video_id: str,
    source: Optional[str] = None,
    instance: Optional[str] = None,
    q: Optional[str] = None,
    gw: Gateway = Depends(get_gateway),
):
    """Resolve the best stream for a track and describe every variant."""
    try:
        resolved = await gw.resolver.resolve_best(video_id, source, instance, q)
    except ProviderAccessDenied as e:
        log.warning("Access denied resolving %s: %s", video_id, e)
        return JSONResponse(
            status_code=403,
            content={"message": DEFAULT_DENIED_MESSAGE, "error": str(e) or DEFAULT_DENIED_MESSAGE},
        )
    except Exception as e:
        log.error(f"Resolve stream failed for {video_id}: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"message": "Failed to resolve stream", "error": f"Unable to load stream. {_VPN_HINT}"},
        )

    if resolved is None:
        log.warning(
            "No stream available for id=%s (last piped: %s, last invidious: %s)",
            video_id,
            gw.registry.last_successful("piped") or "unknown",
            gw.registry.last_successful("invidious") or "unknown",
        )
        return JSONResponse(
            status_code=404,
            content={"message": "No stream available", "error": f"All streaming sources failed. {_VPN_HINT}"},
        )

    return {
        "url": resolved.url,
        "proxiedUrl": build_proxy_path(video_id, resolved.url, resolved.source, resolved.instance),
        "manifestUrl": resolved.manifest_url,
        "mimeType": resolved.mime_type,
        "origin": resolved.source,
        "instance": resolved.instance,
        "audioStreams": [s.to_payload() for s in resolved.audio_streams],
        "videoStreams": [s.to_payload() for s in resolved.video_streams],
    }


async def _open_upstream(
    client: httpx.AsyncClient, url: str, headers: dict
) -> tuple[Optional[httpx.Response], Optional[int]]:
    """Open *url* for streaming; returns (response, None) or (None, status)."""
    try:
        upstream = await client.send(client.build_request("GET", url, headers=headers), stream=True)
    except httpx.HTTPError as e:
        log.warning(f"Upstream connect failed for {urlparse(url).netloc}: {e}")
        return None, None
    if upstream.status_code >= 400:
        await upstream.aclose()
        return None, upstream.status_code
    return upstream, None


@app.get("/api/streams/{video_id}/proxy")
async def proxy_stream(
    video_id: str,
    request: Request,
    src: Optional[str] = Query(None),
    source: Optional[str] = None,
    instance: Optional[str] = None,
    gw: Gateway = Depends(get_gateway),
):
    """
    Stream an upstream media URL back same-origin.

    Upstream URLs expire and instances flap, so a failed open is retried
    once with a freshly resolved URL from the same source, then once with
    the alternate source.
    """
    if not src:
        return JSONResponse(status_code=400, content={"message": "Missing src"})

    preferred = normalize_source(source)
    plog = with_log_context(log, track=video_id, source=preferred)

    headers = {
        "User-Agent": BROWSER_USER_AGENT,
        "Accept": "audio/webm,audio/ogg,audio/*;q=0.9,application/ogg;q=0.7,video/*;q=0.6,*/*;q=0.5",
        "Accept-Language": "en-US,en;q=0.9",
        "Accept-Encoding": "identity",
        "Referer": "https://www.youtube.com/",
        "Origin": "https://www.youtube.com",
        "Cache-Control": "no-cache",
    }
    if "range" in request.headers:
        headers["Range"] = request.headers["range"]

    client = gw.proxy_client()
    upstream, failed_status = await _open_upstream(client, src, headers)

    retries = []
    if preferred:
        retries = [(preferred, instance), ("invidious" if preferred == "piped" else "piped", None)]
    for retry_source, retry_instance in retries:
        if upstream is not None:
            break
        plog.info(f"Proxy attempt failed (status={failed_status}), re-resolving via {retry_source}")
        gw.resolver.clear(video_id)
        try:
            resolved = await gw.resolver.resolve_best(video_id, retry_source, retry_instance)
        except ProviderAccessDenied as e:
            plog.warning(f"Re-resolve via {retry_source} denied: {e}")
            continue
        if resolved is None or resolved.url == src:
            continue
        upstream, failed_status = await _open_upstream(client, resolved.url, headers)
        if upstream is not None:
            src = resolved.url

    if upstream is None:
        await client.aclose()
        plog.error(f"All proxy attempts failed (last status={failed_status})")
        if failed_status == 403:
            return JSONResponse(
                status_code=403,
                content={"message": DEFAULT_DENIED_MESSAGE, "error": f"Unable to access stream. {_VPN_HINT}"},
            )
        return JSONResponse(
            status_code=500,
            content={"message": "Proxy error", "error": "Unable to proxy stream. Please try again later."},
        )

    content_type = upstream.headers.get("content-type", "")
    if upstream.status_code == 200 and "text/plain" in content_type.lower() and "googlevideo.com" in src:
        content_type = mime_type_for_itag(src)
        plog.warning(f"googlevideo.com returned text/plain, overriding to {content_type}")

    response_headers = {
        name: upstream.headers[name] for name in _FORWARDED_HEADERS if name in upstream.headers
    }
    response_headers.update({
        "Content-Type": content_type or "application/octet-stream",
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Headers": "Range",
        "Access-Control-Expose-Headers": "Content-Range, Accept-Ranges, Content-Length",
    })

    async def relay():
        try:
            async for chunk in upstream.aiter_bytes(chunk_size=65536):
                yield chunk
        except httpx.HTTPError as e:
            # End the stream; the media element retries with a new Range request.
            plog.warning(f"Upstream read error during stream: {e}")
        finally:
            await upstream.aclose()
            await client.aclose()

    return StreamingResponse(relay(), status_code=upstream.status_code, headers=response_headers)


# ── Search ──────────────────────────────────────────────────────────

@app.get("/api/search")
async def search(
    q: str = "",
    region: str = config.DEFAULT_REGION,
    gw: Gateway = Depends(get_gateway),
):
    query = q.strip()
    if not query:
        return JSONResponse(status_code=400, content=[])
    try:
        return await gw.search.search(query, region)
    except SearchUnavailable as e:
        log.error(f"Search failed: {e}")
        return JSONResponse(status_code=500, content=[])


# ── Trending ────────────────────────────────────────────────────────

@app.get("/api/trending")
async def trending(region: str = config.DEFAULT_REGION, gw: Gateway = Depends(get_gateway)):
    return await gw.trending.trending(region)


# ── History ─────────────────────────────────────────────────────────

@app.post("/api/history")
@log_exceptions(log, "Error adding to history")
async def add_history(entry: HistoryEntryIn, gw: Gateway = Depends(get_gateway)):
    stored = HistoryEntry(
        **entry.model_dump(),
        played_at=datetime.now(timezone.utc).isoformat(),
    )
    gw.history.append(stored)
    return stored.to_payload()


@app.get("/api/history")
async def list_history(limit: int = Query(50, ge=1, le=500), gw: Gateway = Depends(get_gateway)):
    return [entry.to_payload() for entry in list(reversed(gw.history))[:limit]]


# ── Lifecycle ───────────────────────────────────────────────────────

@app.on_event("startup")
async def startup():
    gw = get_gateway()
    log.info("Stream Gateway starting up")
    log.info(
        f"Upstreams: piped={len(gw.registry.states('piped'))} "
        f"invidious={len(gw.registry.states('invidious'))} "
        f"jiosaavn={gw.registry.config.jiosaavn}; "
        f"timeout={config.UPSTREAM_TIMEOUT}s, stream_cache_ttl={config.STREAM_CACHE_TTL}s, "
        f"resolved_cache_ttl={config.RESOLVED_CACHE_TTL}s, region={config.DEFAULT_REGION}"
    )


@app.on_event("shutdown")
async def shutdown():
    global _gateway
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None
    log.info("Stream Gateway shutting down")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.GATEWAY_PORT)
