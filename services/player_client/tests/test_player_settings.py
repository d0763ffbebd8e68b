import json
from pathlib import Path

import pytest

from services.player_client.settings import (
    LEGACY_SETTINGS_KEY,
    MAX_RECENT_SEARCHES,
    RECENT_SEARCHES_KEY,
    SETTINGS_KEY,
    PlayerSettingsStore,
    RecentSearchStore,
)
from services.player_client.storage import LocalStorage


@pytest.fixture
def storage(tmp_path: Path) -> LocalStorage:
    return LocalStorage(tmp_path / "local_storage.json")


def test_defaults_without_stored_settings(storage: LocalStorage) -> None:
    settings = PlayerSettingsStore(storage).settings

    assert settings.version == 2
    assert settings.volume == 0.7
    assert settings.codec_preference == "opus"
    assert storage.get_item(SETTINGS_KEY) is None


def test_update_writes_versioned_camel_case_object(storage: LocalStorage) -> None:
    store = PlayerSettingsStore(storage)

    store.update(volume=0.4, codec_preference="aac")

    raw = json.loads(storage.get_item(SETTINGS_KEY))
    assert raw["version"] == 2
    assert raw["volume"] == 0.4
    assert raw["codecPreference"] == "aac"
    assert raw["audioOnlyMode"] is True


def test_legacy_settings_are_migrated_and_removed(storage: LocalStorage) -> None:
    storage.set_item(LEGACY_SETTINGS_KEY, json.dumps({"volume": 35, "quality": "medium", "isMuted": True}))

    settings = PlayerSettingsStore(storage).settings

    assert settings.volume == pytest.approx(0.35)
    assert settings.audio_quality == "medium"
    assert settings.is_muted is True
    assert storage.get_item(LEGACY_SETTINGS_KEY) is None
    assert json.loads(storage.get_item(SETTINGS_KEY))["audioQuality"] == "medium"


def test_current_key_wins_over_legacy(storage: LocalStorage) -> None:
    storage.set_item(SETTINGS_KEY, json.dumps({"version": 2, "volume": 0.9}))
    storage.set_item(LEGACY_SETTINGS_KEY, json.dumps({"volume": 10}))

    assert PlayerSettingsStore(storage).settings.volume == 0.9


@pytest.mark.parametrize("raw", ["{oops", json.dumps({"volume": 7}), json.dumps({"audioQuality": "ultra"})])
def test_malformed_settings_fall_back_to_defaults(storage: LocalStorage, raw: str) -> None:
    storage.set_item(SETTINGS_KEY, raw)

    assert PlayerSettingsStore(storage).settings.volume == 0.7


def test_recent_searches_are_trimmed_deduped_and_newest_first(storage: LocalStorage) -> None:
    store = RecentSearchStore(storage)

    store.add("  lofi  ")
    store.add("jazz")
    store.add("lofi")
    store.add("   ")

    assert store.recent == ["lofi", "jazz"]
    assert json.loads(storage.get_item(RECENT_SEARCHES_KEY)) == ["lofi", "jazz"]


def test_recent_searches_are_capped(storage: LocalStorage) -> None:
    store = RecentSearchStore(storage)

    for i in range(MAX_RECENT_SEARCHES + 5):
        store.add(f"q{i}")

    assert len(store.recent) == MAX_RECENT_SEARCHES
    assert store.recent[0] == f"q{MAX_RECENT_SEARCHES + 4}"


def test_recent_searches_reload_from_storage(storage: LocalStorage) -> None:
    RecentSearchStore(storage).add("ambient")

    assert RecentSearchStore(storage).recent == ["ambient"]


def test_remove_and_clear_all(storage: LocalStorage) -> None:
    store = RecentSearchStore(storage)
    store.add("a")
    store.add("b")
    store.save_results("B", ["result"])

    store.remove("a")
    assert store.recent == ["b"]
    assert store.cached_results("b") == ["result"]

    store.clear_all()
    assert store.recent == []
    assert store.cached_results("b") is None
    assert storage.get_item(RECENT_SEARCHES_KEY) is None


def test_stores_work_without_storage() -> None:
    settings = PlayerSettingsStore(None)
    settings.update(is_muted=True)
    searches = RecentSearchStore(None)
    searches.add("x")
    searches.clear_all()

    assert settings.settings.is_muted is True
    assert searches.recent == []
