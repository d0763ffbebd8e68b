"""Fire-and-forget play history reporting."""

from __future__ import annotations

import asyncio
from typing import Optional

import httpx

from services.common.logging_utils import module_logger
from services.player_client.models import StreamOrigin, Track

log = module_logger("player-client", "history")


class HistoryReporter:
    def __init__(self, client: httpx.AsyncClient, *, api_url: str):
        self._client = client
        self._endpoint = f"{api_url.rstrip('/')}/api/history"
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def report(self, track: Track, source: Optional[StreamOrigin] = None) -> asyncio.Task:
        """Schedule a POST for *track* and return without waiting for it."""
        payload = {
            "trackId": track.stream_id,
            "title": track.title,
            "artist": track.artist,
            "duration": track.duration,
            "thumbnail": track.thumbnail,
            "source": source or track.stream_source,
        }
        task = asyncio.get_running_loop().create_task(self._send(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _send(self, payload: dict) -> None:
        try:
            response = await self._client.post(
                self._endpoint, json={k: v for k, v in payload.items() if v is not None}
            )
        except httpx.HTTPError as e:
            log.warning("Failed to record history for %s: %s", payload["trackId"], e)
            return
        if not response.is_success:
            log.warning(
                "History endpoint answered HTTP %s for %s", response.status_code, payload["trackId"]
            )

    async def drain(self) -> None:
        """Wait for every outstanding report to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
