"""
Per-track memory of which stream source/instance last worked.

The table is persisted under ``stream_preferences_v1`` as a JSON object
mapping track id -> {"source", "instance", "updatedAt"} and capped at
MAX_ENTRIES, dropping the least recently updated entries first.

Nothing here raises to callers: unreadable or unwritable storage degrades
to "no preference known" with a warning.
"""

from __future__ import annotations

import json
import time
from typing import Callable, Optional

from pydantic import ValidationError

from services.common.logging_utils import module_logger
from services.player_client.errors import StorageError
from services.player_client.models import STREAM_SOURCES, StreamPreference
from services.player_client.storage import LocalStorage

log = module_logger("player-client", "preferences")

STORAGE_KEY = "stream_preferences_v1"
MAX_ENTRIES = 200


def _now_ms() -> int:
    return int(time.time() * 1000)


class PreferenceStore:
    def __init__(
        self,
        storage: Optional[LocalStorage],
        *,
        max_entries: int = MAX_ENTRIES,
        clock: Callable[[], int] = _now_ms,
    ):
        self._storage = storage
        self._max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, StreamPreference] = {}
        self._loaded = False
        self._last_stamp = 0

    def __len__(self) -> int:
        self._ensure_loaded()
        return len(self._entries)

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if self._storage is None:
            return
        try:
            raw = self._storage.get_item(STORAGE_KEY)
        except StorageError as e:
            log.warning("Failed to load stream preferences: %s", e)
            return
        if not raw:
            return
        try:
            parsed = json.loads(raw)
        except ValueError as e:
            log.warning("Ignoring corrupt stream preferences: %s", e)
            return
        if not isinstance(parsed, dict):
            log.warning("Ignoring stream preferences of type %s", type(parsed).__name__)
            return

        for track_id, pref in parsed.items():
            try:
                self._entries[track_id] = StreamPreference.model_validate(pref)
            except ValidationError:
                continue
        if self._entries:
            self._last_stamp = max(p.updated_at for p in self._entries.values())
        self._evict()

    def _next_stamp(self) -> int:
        # strictly increasing so eviction order is total
        self._last_stamp = max(self._clock(), self._last_stamp + 1)
        return self._last_stamp

    def _evict(self) -> None:
        overflow = len(self._entries) - self._max_entries
        if overflow <= 0:
            return
        oldest = sorted(self._entries.items(), key=lambda item: item[1].updated_at)[:overflow]
        for track_id, _ in oldest:
            del self._entries[track_id]

    def _save(self) -> None:
        if self._storage is None:
            return
        payload = {
            track_id: pref.model_dump(by_alias=True)
            for track_id, pref in sorted(
                self._entries.items(), key=lambda item: item[1].updated_at, reverse=True
            )
        }
        try:
            self._storage.set_item(STORAGE_KEY, json.dumps(payload))
        except StorageError as e:
            log.warning("Failed to persist stream preferences: %s", e)

    def remember(self, track_id: str, source: Optional[str], instance: Optional[str] = None) -> None:
        """Record that *source*/*instance* worked for *track_id*."""
        if not track_id or source not in STREAM_SOURCES:
            return
        self._ensure_loaded()
        self._entries[track_id] = StreamPreference(
            source=source,
            instance=instance or None,
            updated_at=self._next_stamp(),
        )
        self._evict()
        self._save()

    def lookup(self, track_id: str) -> Optional[StreamPreference]:
        if not track_id:
            return None
        self._ensure_loaded()
        return self._entries.get(track_id)

    def forget(self, track_id: str) -> None:
        self._ensure_loaded()
        if self._entries.pop(track_id, None) is not None:
            self._save()
