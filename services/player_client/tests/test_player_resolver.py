import json
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from services.player_client.errors import DEFAULT_ACCESS_DENIED_MESSAGE, AccessDeniedError
from services.player_client.models import StreamHint
from services.player_client.preferences import STORAGE_KEY, PreferenceStore
from services.player_client.resolver import StreamResolver
from services.player_client.storage import LocalStorage

API = "http://api.test"


class Backend:
    """Records requests and answers with a canned response."""

    def __init__(self, status: int = 200, body=None, raw: bytes | None = None) -> None:
        self.status = status
        self.body = body if body is not None else {}
        self.raw = raw
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raw is not None:
            return httpx.Response(self.status, content=self.raw)
        return httpx.Response(self.status, json=self.body)

    @property
    def last_params(self) -> dict[str, list[str]]:
        return parse_qs(urlsplit(str(self.requests[-1].url)).query)


def make_resolver(tmp_path: Path, handler) -> tuple[StreamResolver, PreferenceStore, LocalStorage]:
    storage = LocalStorage(tmp_path / "local_storage.json")
    preferences = PreferenceStore(storage)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return StreamResolver(client, preferences, api_url=API), preferences, storage


@pytest.mark.asyncio
async def test_no_preference_omits_source_and_instance(tmp_path: Path) -> None:
    backend = Backend(body={"url": "https://up.example/raw"})
    resolver, _, _ = make_resolver(tmp_path, backend)

    await resolver.resolve("abc123")

    request = backend.requests[0]
    assert request.url.path == "/api/streams/abc123/best"
    assert "source" not in backend.last_params
    assert "instance" not in backend.last_params


@pytest.mark.asyncio
async def test_stored_preference_is_sent_without_hint(tmp_path: Path) -> None:
    backend = Backend(body={"url": "https://up.example/raw"})
    resolver, preferences, _ = make_resolver(tmp_path, backend)
    preferences.remember("abc123", "invidious", "https://inv.example")

    await resolver.resolve("abc123")

    assert backend.last_params["source"] == ["invidious"]
    assert backend.last_params["instance"] == ["https://inv.example"]


@pytest.mark.asyncio
async def test_hint_overrides_stored_preference_per_field(tmp_path: Path) -> None:
    backend = Backend(body={"url": "https://up.example/raw"})
    resolver, preferences, _ = make_resolver(tmp_path, backend)
    preferences.remember("abc123", "invidious", "https://inv.example")

    await resolver.resolve("abc123", StreamHint(source="piped"))

    assert backend.last_params["source"] == ["piped"]
    assert backend.last_params["instance"] == ["https://inv.example"]


@pytest.mark.asyncio
async def test_query_is_forwarded_for_catalog_fallback(tmp_path: Path) -> None:
    backend = Backend(body={"url": "https://up.example/raw"})
    resolver, _, _ = make_resolver(tmp_path, backend)

    await resolver.resolve("abc123", query="Song Artist")

    assert backend.last_params["q"] == ["Song Artist"]


@pytest.mark.asyncio
async def test_proxied_url_is_prefixed_with_api_origin(tmp_path: Path) -> None:
    proxied = "/api/streams/abc123/proxy?src=https%3A%2F%2Fup.example%2Fraw"
    backend = Backend(body={"url": "https://up.example/raw", "proxiedUrl": proxied})
    resolver, _, storage = make_resolver(tmp_path, backend)

    stream = await resolver.resolve("abc123")

    assert stream is not None
    assert stream.url == API + proxied
    assert stream.raw_url == "https://up.example/raw"
    assert storage.get_item(STORAGE_KEY) is None


@pytest.mark.asyncio
async def test_raw_url_used_when_backend_sends_no_proxied_url(tmp_path: Path) -> None:
    backend = Backend(body={"url": "https://up.example/raw"})
    resolver, _, _ = make_resolver(tmp_path, backend)

    stream = await resolver.resolve("abc123")

    assert stream.url == "https://up.example/raw"
    assert stream.proxied_url is None


@pytest.mark.asyncio
async def test_variants_and_manifest_are_rewritten_through_proxy(tmp_path: Path) -> None:
    backend = Backend(body={
        "url": "https://up.example/raw",
        "origin": "invidious",
        "instance": "https://inv.example",
        "manifestUrl": "https://inv.example/api/manifest/hls/abc123.m3u8",
        "audioStreams": [
            {"url": "https://up.example/a1", "bitrate": "160000", "codec": "opus", "mimeType": "audio/webm"},
            {"codec": "aac"},
        ],
        "videoStreams": [
            {"url": "https://up.example/v1", "height": 720, "width": 1280, "fps": 30, "quality": "720p"},
        ],
    })
    resolver, _, _ = make_resolver(tmp_path, backend)

    stream = await resolver.resolve("abc123")

    assert len(stream.audio_streams) == 1
    audio = stream.audio_streams[0]
    assert audio.bitrate == 160000
    assert audio.proxied_url.startswith(f"{API}/api/streams/abc123/proxy?")
    params = parse_qs(urlsplit(audio.proxied_url).query)
    assert params == {
        "src": ["https://up.example/a1"],
        "source": ["invidious"],
        "instance": ["https://inv.example"],
    }
    assert stream.video_streams[0].height == 720
    assert stream.manifest_url.startswith(f"{API}/api/streams/abc123/proxy?src=")


@pytest.mark.asyncio
async def test_access_denied_carries_backend_message(tmp_path: Path) -> None:
    backend = Backend(status=403, body={"error": "blocked in your region"})
    resolver, _, _ = make_resolver(tmp_path, backend)

    with pytest.raises(AccessDeniedError) as excinfo:
        await resolver.resolve("abc123")

    assert excinfo.value.message == "blocked in your region"
    assert str(excinfo.value) == "blocked in your region"
    assert excinfo.value.status == 403


@pytest.mark.asyncio
async def test_access_denied_without_body_uses_default_message(tmp_path: Path) -> None:
    backend = Backend(status=403, raw=b"Forbidden")
    resolver, _, _ = make_resolver(tmp_path, backend)

    with pytest.raises(AccessDeniedError) as excinfo:
        await resolver.resolve("abc123")

    assert excinfo.value.message == DEFAULT_ACCESS_DENIED_MESSAGE


@pytest.mark.asyncio
async def test_success_without_url_is_none_and_writes_nothing(tmp_path: Path) -> None:
    backend = Backend(body={"origin": "invidious", "instance": "https://inv.example"})
    resolver, preferences, storage = make_resolver(tmp_path, backend)

    assert await resolver.resolve("abc123", StreamHint(source="invidious")) is None
    assert preferences.lookup("abc123") is None
    assert storage.get_item(STORAGE_KEY) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [404, 500, 502])
async def test_other_failures_are_none(tmp_path: Path, status: int) -> None:
    backend = Backend(status=status, body={"message": "No stream available"})
    resolver, _, _ = make_resolver(tmp_path, backend)

    assert await resolver.resolve("abc123") is None


@pytest.mark.asyncio
async def test_network_failure_is_none(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    resolver, _, _ = make_resolver(tmp_path, handler)

    assert await resolver.resolve("abc123") is None


@pytest.mark.asyncio
async def test_undecodable_body_is_none(tmp_path: Path) -> None:
    resolver, _, _ = make_resolver(tmp_path, Backend(raw=b"<html>oops</html>"))

    assert await resolver.resolve("abc123") is None


@pytest.mark.asyncio
async def test_non_default_origin_is_remembered(tmp_path: Path) -> None:
    backend = Backend(body={"url": "https://up.example/raw", "origin": "invidious", "instance": "https://inv.example"})
    resolver, preferences, storage = make_resolver(tmp_path, backend)

    await resolver.resolve("abc123")

    pref = preferences.lookup("abc123")
    assert (pref.source, pref.instance) == ("invidious", "https://inv.example")
    assert "abc123" in json.loads(storage.get_item(STORAGE_KEY))


@pytest.mark.asyncio
async def test_default_origin_is_remembered_only_with_hint(tmp_path: Path) -> None:
    backend = Backend(body={"url": "https://up.example/raw", "origin": "piped", "instance": "https://p.example"})
    resolver, preferences, _ = make_resolver(tmp_path, backend)

    await resolver.resolve("abc123")
    assert preferences.lookup("abc123") is None

    await resolver.resolve("abc123", StreamHint(instance="https://p.example"))
    assert preferences.lookup("abc123").source == "piped"


@pytest.mark.asyncio
async def test_catalog_origin_is_never_remembered(tmp_path: Path) -> None:
    backend = Backend(body={"url": "https://cdn.saavn.example/a.mp4", "origin": "jiosaavn"})
    resolver, preferences, _ = make_resolver(tmp_path, backend)

    stream = await resolver.resolve("abc123", StreamHint(source="invidious"), query="Song")

    assert stream.origin == "jiosaavn"
    assert preferences.lookup("abc123") is None


@pytest.mark.asyncio
async def test_track_id_is_escaped_in_path(tmp_path: Path) -> None:
    backend = Backend(body={"url": "https://up.example/raw"})
    resolver, _, _ = make_resolver(tmp_path, backend)

    await resolver.resolve("a/b c")

    assert backend.requests[0].url.raw_path.startswith(b"/api/streams/a%2Fb%20c/best")
