"""
Small persisted client stores: playback settings and recent searches.

Both read once on construction and write through on every change. Storage
failures are logged and otherwise ignored; the in-memory value stays
authoritative for the rest of the session.
"""

from __future__ import annotations

import json
from typing import Any, Literal, Optional

from pydantic import Field, ValidationError

from services.common.logging_utils import module_logger
from services.player_client.errors import StorageError
from services.player_client.models import CamelModel
from services.player_client.storage import LocalStorage

log = module_logger("player-client", "settings")

SETTINGS_KEY = "player_settings_v2"
LEGACY_SETTINGS_KEY = "player_settings_v1"
SETTINGS_VERSION = 2

RECENT_SEARCHES_KEY = "recent_searches"
MAX_RECENT_SEARCHES = 10


class PlayerSettings(CamelModel):
    version: int = SETTINGS_VERSION
    volume: float = Field(default=0.7, ge=0.0, le=1.0)
    is_muted: bool = False
    audio_quality: Literal["low", "medium", "high"] = "high"
    codec_preference: Literal["opus", "aac", "any"] = "opus"
    audio_only_mode: bool = True


def _read_json(storage: Optional[LocalStorage], key: str) -> Any:
    if storage is None:
        return None
    try:
        raw = storage.get_item(key)
    except StorageError as e:
        log.warning("Failed to read %s: %s", key, e)
        return None
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        log.warning("Ignoring corrupt value under %s", key)
        return None


def migrate_legacy_settings(legacy: dict) -> PlayerSettings:
    """Convert a ``player_settings_v1`` object (0..100 volume, ``quality``)."""
    defaults = PlayerSettings()
    volume = legacy.get("volume")
    if isinstance(volume, (int, float)) and not isinstance(volume, bool):
        volume = min(max(float(volume) / 100.0, 0.0), 1.0)
    else:
        volume = defaults.volume
    quality = legacy.get("quality")
    if quality not in ("low", "medium", "high"):
        quality = defaults.audio_quality
    return PlayerSettings(
        volume=volume,
        is_muted=bool(legacy.get("isMuted", defaults.is_muted)),
        audio_quality=quality,
        audio_only_mode=bool(legacy.get("audioOnlyMode", defaults.audio_only_mode)),
    )


class PlayerSettingsStore:
    def __init__(self, storage: Optional[LocalStorage]):
        self._storage = storage
        self._settings = self._load()

    @property
    def settings(self) -> PlayerSettings:
        return self._settings

    def _load(self) -> PlayerSettings:
        current = _read_json(self._storage, SETTINGS_KEY)
        if isinstance(current, dict):
            try:
                return PlayerSettings.model_validate({**current, "version": SETTINGS_VERSION})
            except ValidationError:
                log.warning("Resetting malformed player settings")
                return PlayerSettings()

        legacy = _read_json(self._storage, LEGACY_SETTINGS_KEY)
        if not isinstance(legacy, dict):
            return PlayerSettings()

        settings = migrate_legacy_settings(legacy)
        log.info("Migrated player settings from %s", LEGACY_SETTINGS_KEY)
        if self._write(settings):
            try:
                self._storage.remove_item(LEGACY_SETTINGS_KEY)
            except StorageError as e:
                log.warning("Failed to drop %s: %s", LEGACY_SETTINGS_KEY, e)
        return settings

    def _write(self, settings: PlayerSettings) -> bool:
        if self._storage is None:
            return False
        try:
            self._storage.set_item(SETTINGS_KEY, json.dumps(settings.model_dump(by_alias=True)))
        except StorageError as e:
            log.warning("Failed to persist player settings: %s", e)
            return False
        return True

    def update(self, **changes: Any) -> PlayerSettings:
        """Apply field changes (snake_case names) and write through."""
        data = self._settings.model_dump()
        data.update(changes)
        data["version"] = SETTINGS_VERSION
        self._settings = PlayerSettings.model_validate(data)
        self._write(self._settings)
        return self._settings


class RecentSearchStore:
    def __init__(self, storage: Optional[LocalStorage], *, limit: int = MAX_RECENT_SEARCHES):
        self._storage = storage
        self._limit = limit
        self._cache: dict[str, Any] = {}
        stored = _read_json(storage, RECENT_SEARCHES_KEY)
        if isinstance(stored, list):
            self._recent = [q for q in stored if isinstance(q, str)][:limit]
        else:
            self._recent = []

    @property
    def recent(self) -> list[str]:
        return list(self._recent)

    def _persist(self) -> None:
        if self._storage is None:
            return
        try:
            self._storage.set_item(RECENT_SEARCHES_KEY, json.dumps(self._recent))
        except StorageError as e:
            log.warning("Failed to persist recent searches: %s", e)

    def add(self, query: str) -> None:
        cleaned = query.strip()
        if not cleaned:
            return
        self._recent = [cleaned, *(q for q in self._recent if q != cleaned)][: self._limit]
        self._persist()

    def remove(self, term: str) -> None:
        self._recent = [q for q in self._recent if q != term]
        self._persist()

    def clear_all(self) -> None:
        self._recent = []
        self._cache = {}
        if self._storage is None:
            return
        try:
            self._storage.remove_item(RECENT_SEARCHES_KEY)
        except StorageError as e:
            log.warning("Failed to clear recent searches: %s", e)

    # ── Result cache ───────────────────────────────────────────────

    def save_results(self, query: str, results: Any) -> None:
        self._cache[query.lower()] = results

    def cached_results(self, query: str) -> Optional[Any]:
        return self._cache.get(query.lower())
