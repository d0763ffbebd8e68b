import random
from pathlib import Path

import pytest

from services.player_client.models import Track
from services.player_client.playback import PlaybackCoordinator, PlaybackState
from services.player_client.settings import PlayerSettingsStore
from services.player_client.storage import LocalStorage


def track(track_id: str) -> Track:
    return Track(id=track_id, title=f"Title {track_id}", artist="Artist")


A, B, C = track("A"), track("B"), track("C")


def test_initial_state_is_idle() -> None:
    coordinator = PlaybackCoordinator()
    state = coordinator.state

    assert state.status == "idle"
    assert state.queue == []
    assert state.volume == 0.7
    assert state.audio_only_mode is True


def test_status_follows_track_and_playing_flag() -> None:
    coordinator = PlaybackCoordinator()

    coordinator.set_is_playing(True)
    assert coordinator.state.status == "idle"

    coordinator.set_current_track(A)
    assert coordinator.state.status == "playing"

    coordinator.toggle_play()
    assert coordinator.state.status == "paused"


def test_set_current_track_does_not_reset_time_or_touch_queue() -> None:
    coordinator = PlaybackCoordinator()
    coordinator.set_queue([A, B])
    coordinator.set_current_time(42)

    coordinator.set_current_track(C)

    state = coordinator.state
    assert state.current_track == C
    assert state.is_playing is True
    assert state.current_time == 42
    assert [t.id for t in state.queue] == ["A", "B"]


def test_set_queue_keeps_current_track_and_dedupes() -> None:
    coordinator = PlaybackCoordinator()
    coordinator.set_current_track(A)

    coordinator.set_queue([B, C, B])

    assert coordinator.state.current_track == A
    assert [t.id for t in coordinator.state.queue] == ["B", "C"]


def test_add_and_remove_from_queue() -> None:
    coordinator = PlaybackCoordinator()
    coordinator.add_to_queue(A)
    coordinator.add_to_queue(B)
    coordinator.add_to_queue(A)

    assert [t.id for t in coordinator.state.queue] == ["A", "B"]

    coordinator.remove_from_queue(0)
    assert [t.id for t in coordinator.state.queue] == ["B"]


@pytest.mark.parametrize("index", [-1, 1, 99])
def test_remove_out_of_range_is_a_noop(index: int) -> None:
    coordinator = PlaybackCoordinator()
    coordinator.set_queue([A])
    seen: list[PlaybackState] = []
    coordinator.subscribe(seen.append)

    coordinator.remove_from_queue(index)

    assert [t.id for t in coordinator.state.queue] == ["A"]
    assert seen == []


def test_play_next_wraps_around() -> None:
    coordinator = PlaybackCoordinator()
    coordinator.set_queue([A, B, C])
    coordinator.set_current_track(B)

    coordinator.play_next()
    assert coordinator.state.current_track.id == "C"

    coordinator.play_next()
    assert coordinator.state.current_track.id == "A"


def test_play_previous_wraps_around() -> None:
    coordinator = PlaybackCoordinator()
    coordinator.set_queue([A, B, C])
    coordinator.set_current_track(A)

    coordinator.play_previous()
    assert coordinator.state.current_track.id == "C"

    coordinator.play_previous()
    assert coordinator.state.current_track.id == "B"


def test_next_and_previous_reset_time_and_start_playing() -> None:
    coordinator = PlaybackCoordinator()
    coordinator.set_queue([A, B])
    coordinator.set_current_track(A)
    coordinator.set_is_playing(False)
    coordinator.set_current_time(30)

    coordinator.play_next()

    assert coordinator.state.current_time == 0
    assert coordinator.state.is_playing is True


def test_current_track_outside_queue_starts_from_the_edges() -> None:
    coordinator = PlaybackCoordinator()
    coordinator.set_queue([A, B, C])
    coordinator.set_current_track(track("X"))

    coordinator.play_next()
    assert coordinator.state.current_track.id == "A"

    coordinator.set_current_track(track("X"))
    coordinator.play_previous()
    assert coordinator.state.current_track.id == "C"


def test_next_on_empty_queue_is_a_noop() -> None:
    coordinator = PlaybackCoordinator()
    coordinator.set_current_track(A)

    coordinator.play_next()
    coordinator.play_previous()

    assert coordinator.state.current_track == A


@pytest.mark.parametrize("step", ["play_next", "play_previous"])
def test_shuffle_with_single_track_replays_it(step: str) -> None:
    coordinator = PlaybackCoordinator()
    coordinator.set_queue([A])
    coordinator.set_current_track(A)
    coordinator.set_current_time(90)
    coordinator.toggle_shuffle()

    getattr(coordinator, step)()

    state = coordinator.state
    assert state.current_track == A
    assert state.current_time == 0
    assert state.is_playing is True


def test_shuffle_never_picks_current_track() -> None:
    coordinator = PlaybackCoordinator(rng=random.Random(7))
    coordinator.set_queue([A, B, C])
    coordinator.set_current_track(A)
    coordinator.toggle_shuffle()

    picks = set()
    for _ in range(30):
        coordinator.set_current_track(A)
        coordinator.play_next()
        picks.add(coordinator.state.current_track.id)

    assert picks == {"B", "C"}


def test_clear_queue_stops_playback() -> None:
    coordinator = PlaybackCoordinator()
    coordinator.set_queue([A, B])
    coordinator.set_current_track(A)

    coordinator.clear_queue()

    state = coordinator.state
    assert state.queue == []
    assert state.current_track is None
    assert state.is_playing is False
    assert state.status == "idle"


def test_flags_are_plain_toggles() -> None:
    coordinator = PlaybackCoordinator()

    coordinator.toggle_repeat()
    coordinator.toggle_shuffle()
    coordinator.toggle_lyrics()
    coordinator.toggle_audio_only_mode()

    state = coordinator.state
    assert state.is_repeat and state.is_shuffle and state.show_lyrics
    assert state.audio_only_mode is False


def test_observers_see_every_mutation_synchronously() -> None:
    coordinator = PlaybackCoordinator()
    seen: list[PlaybackState] = []
    unsubscribe = coordinator.subscribe(seen.append)

    coordinator.set_queue([A, B])
    assert seen[-1].queue == [A, B]
    coordinator.set_current_track(A)
    assert seen[-1].current_track == A
    coordinator.play_next()
    assert seen[-1].current_track == B
    assert len(seen) == 3

    unsubscribe()
    coordinator.toggle_play()
    assert len(seen) == 3


def test_snapshots_are_isolated_from_later_mutations() -> None:
    coordinator = PlaybackCoordinator()
    coordinator.set_queue([A])
    snapshot = coordinator.state

    coordinator.add_to_queue(B)
    snapshot.queue.append(C)

    assert [t.id for t in snapshot.queue] == ["A", "C"]
    assert [t.id for t in coordinator.state.queue] == ["A", "B"]


def test_failing_observer_does_not_block_others() -> None:
    coordinator = PlaybackCoordinator()
    seen: list[PlaybackState] = []

    def broken(_: PlaybackState) -> None:
        raise RuntimeError("ui went away")

    coordinator.subscribe(broken)
    coordinator.subscribe(seen.append)
    coordinator.toggle_play()

    assert len(seen) == 1


def test_volume_is_clamped_and_persisted(tmp_path: Path) -> None:
    storage = LocalStorage(tmp_path / "local_storage.json")
    coordinator = PlaybackCoordinator(settings=PlayerSettingsStore(storage))

    coordinator.set_volume(1.7)
    assert coordinator.state.volume == 1.0
    coordinator.set_volume(-3)
    assert coordinator.state.volume == 0.0
    coordinator.set_volume(0.25)
    coordinator.toggle_mute()

    restored = PlaybackCoordinator(settings=PlayerSettingsStore(LocalStorage(tmp_path / "local_storage.json")))
    assert restored.state.volume == 0.25
    assert restored.state.is_muted is True


@pytest.mark.parametrize("volume", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_volume_is_rejected_without_state_change(tmp_path: Path, volume: float) -> None:
    storage = LocalStorage(tmp_path / "local_storage.json")
    coordinator = PlaybackCoordinator(settings=PlayerSettingsStore(storage))
    coordinator.set_volume(0.4)
    seen = []
    coordinator.subscribe(seen.append)

    with pytest.raises(ValueError):
        coordinator.set_volume(volume)

    assert coordinator.state.volume == 0.4
    assert seen == []
    assert PlayerSettingsStore(LocalStorage(tmp_path / "local_storage.json")).settings.volume == 0.4

def test_time_and_duration_setters() -> None:
    coordinator = PlaybackCoordinator()

    coordinator.set_current_time(12.5)
    coordinator.set_duration(240)

    assert coordinator.state.current_time == 12.5
    assert coordinator.state.duration == 240
