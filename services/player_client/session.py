"""
PlayerSession: one owner for the client-side components.

The application root builds a session with ``build_session()`` and passes
it (or the pieces it needs) down; nothing in the client keeps module-level
state. The session shares a single httpx.AsyncClient between the resolver,
history reporting and search, so ``aclose()`` must be awaited on shutdown.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
from pydantic import ValidationError

from services.common.logging_utils import configure_service_logger, module_logger
from services.common.sidecar_runtime_utils import build_api_client
from services.player_client.config import ClientConfig
from services.player_client.errors import AccessDeniedError
from services.player_client.history import HistoryReporter
from services.player_client.models import ResolvedStream, StreamHint, Track
from services.player_client.playback import PlaybackCoordinator
from services.player_client.preferences import PreferenceStore
from services.player_client.resolver import StreamResolver
from services.player_client.settings import PlayerSettingsStore, RecentSearchStore
from services.player_client.storage import LocalStorage

log = module_logger("player-client", "session")


def _track_from_search(item: Any) -> Optional[Track]:
    if not isinstance(item, dict) or not item.get("id"):
        return None
    try:
        return Track(
            id=item["id"],
            title=item.get("title") or "Unknown Title",
            artist=item.get("artist") or "Unknown Artist",
            youtube_id=item["id"] if item.get("streamSource") in ("piped", "invidious") else None,
            thumbnail=item.get("thumbnailUrl"),
            duration=int(item.get("duration") or 0),
            stream_source=item.get("streamSource"),
            stream_instance=item.get("streamInstance"),
        )
    except (ValidationError, TypeError, ValueError):
        return None


class PlayerSession:
    def __init__(
        self,
        config: ClientConfig,
        client: httpx.AsyncClient,
        storage: Optional[LocalStorage],
    ):
        self.config = config
        self._client = client
        self.storage = storage
        self.preferences = PreferenceStore(storage)
        self.settings = PlayerSettingsStore(storage)
        self.recent_searches = RecentSearchStore(storage)
        self.resolver = StreamResolver(client, self.preferences, api_url=config.api_url)
        self.playback = PlaybackCoordinator(settings=self.settings)
        self.history = HistoryReporter(client, api_url=config.api_url)
        self.current_stream: Optional[ResolvedStream] = None
        self._requested_id: Optional[str] = None

    # ── Queue handling ─────────────────────────────────────────────

    def play(self, track: Track, queue: Optional[list[Track]] = None, replace_queue: bool = True) -> None:
        """
        Make *track* current and fold it into the queue.

        With *queue*, the queue is replaced (or, with ``replace_queue=False``,
        merged: given tracks first, then remaining existing ones). Without
        one, *track* is moved to the front of the existing queue.
        """
        self.playback.set_current_track(track)

        if queue is not None:
            if replace_queue:
                self.playback.set_queue(queue)
            else:
                given = {t.id for t in queue}
                existing = [t for t in self.playback.state.queue if t.id not in given]
                self.playback.set_queue([*queue, *existing])
            return

        current_queue = self.playback.state.queue
        if current_queue and current_queue[0].id == track.id:
            return
        self.playback.set_queue([track, *(t for t in current_queue if t.id != track.id)])

    # ── Resolution ─────────────────────────────────────────────────

    async def resolve_and_play(
        self,
        track: Track,
        hint: Optional[StreamHint] = None,
        *,
        queue: Optional[list[Track]] = None,
        replace_queue: bool = True,
    ) -> Optional[ResolvedStream]:
        """
        Start *track* and resolve its stream.

        Returns None when no stream is available or when another track was
        requested while this one was resolving; AccessDeniedError propagates
        for the active track only.
        """
        self._requested_id = track.id
        self.current_stream = None
        self.play(track, queue, replace_queue)

        if hint is None and track.stream_source:
            hint = StreamHint(source=track.stream_source, instance=track.stream_instance)

        try:
            stream = await self.resolver.resolve(track.stream_id, hint, query=track.search_text)
        except AccessDeniedError:
            if not self._is_active(track):
                return None
            self.playback.set_is_playing(False)
            raise

        if not self._is_active(track):
            log.debug("Discarding stale stream for %s", track.id)
            return None

        if stream is None:
            log.info("No playable stream for %s", track.id)
            self.playback.set_is_playing(False)
            return None

        self.current_stream = stream
        self.playback.set_is_playing(True)
        self.history.report(track, stream.origin)
        return stream

    def _is_active(self, track: Track) -> bool:
        current = self.playback.state.current_track
        return self._requested_id == track.id and current is not None and current.id == track.id

    # ── Search ─────────────────────────────────────────────────────

    async def search(self, query: str) -> list[Track]:
        cleaned = query.strip()
        if not cleaned:
            return []
        self.recent_searches.add(cleaned)
        cached = self.recent_searches.cached_results(cleaned)
        if cached is not None:
            return cached

        try:
            response = await self._client.get(f"{self.config.api_url}/api/search", params={"q": cleaned})
            response.raise_for_status()
            items = response.json()
        except (httpx.HTTPError, ValueError) as e:
            log.info("Search for %r failed: %s", cleaned, e)
            return []

        tracks = [t for t in map(_track_from_search, items if isinstance(items, list) else []) if t]
        self.recent_searches.save_results(cleaned, tracks)
        return tracks

    async def aclose(self) -> None:
        await self.history.drain()
        await self._client.aclose()


def build_session(
    config: Optional[ClientConfig] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    persist: bool = True,
) -> PlayerSession:
    """Wire a PlayerSession from *config* (default: the environment)."""
    configure_service_logger("player-client")
    config = config or ClientConfig.from_env()
    client = build_api_client(config.request_timeout, user_agent=None, transport=transport)
    storage = LocalStorage(config.storage_file) if persist else None
    return PlayerSession(config, client, storage)
