"""
Playback state coordinator.

Holds the current track, the play queue and transport flags. Every
mutation goes through a method here, and subscribed observers are called
synchronously with a snapshot before the method returns.

What happens at the end of a track when ``is_repeat`` is set is up to the
playback engine; the coordinator only carries the flag.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field, replace
from typing import Callable, Literal, Optional

from services.common.logging_utils import module_logger
from services.player_client.models import Track
from services.player_client.settings import PlayerSettingsStore

log = module_logger("player-client", "playback")

PlaybackStatus = Literal["idle", "playing", "paused"]
Observer = Callable[["PlaybackState"], None]


@dataclass
class PlaybackState:
    current_track: Optional[Track] = None
    queue: list[Track] = field(default_factory=list)
    is_playing: bool = False
    volume: float = 0.7
    is_muted: bool = False
    is_repeat: bool = False
    is_shuffle: bool = False
    current_time: float = 0.0
    duration: float = 0.0
    audio_only_mode: bool = True
    show_lyrics: bool = False

    @property
    def status(self) -> PlaybackStatus:
        if self.current_track is None:
            return "idle"
        return "playing" if self.is_playing else "paused"


def _unique(tracks: list[Track]) -> list[Track]:
    seen: set[str] = set()
    out = []
    for track in tracks:
        if track.id in seen:
            continue
        seen.add(track.id)
        out.append(track)
    return out


class PlaybackCoordinator:
    def __init__(
        self,
        *,
        settings: Optional[PlayerSettingsStore] = None,
        rng: Optional[random.Random] = None,
    ):
        self._settings = settings
        self._rng = rng or random.Random()
        self._observers: list[Observer] = []
        self._state = PlaybackState()
        if settings is not None:
            saved = settings.settings
            self._state.volume = saved.volume
            self._state.is_muted = saved.is_muted
            self._state.audio_only_mode = saved.audio_only_mode

    @property
    def state(self) -> PlaybackState:
        return self.snapshot()

    def snapshot(self) -> PlaybackState:
        return replace(self._state, queue=list(self._state.queue))

    # ── Observers ──────────────────────────────────────────────────

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register *observer*; returns a callable that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:
                log.exception("Playback observer %r failed", observer)

    def _set(self, **changes) -> None:
        for name, value in changes.items():
            setattr(self._state, name, value)
        self._notify()

    # ── Track and queue ────────────────────────────────────────────

    def set_current_track(self, track: Track) -> None:
        self._set(current_track=track, is_playing=True)

    def set_queue(self, tracks: list[Track]) -> None:
        self._set(queue=_unique(tracks))

    def add_to_queue(self, track: Track) -> None:
        if any(t.id == track.id for t in self._state.queue):
            return
        self._set(queue=[*self._state.queue, track])

    def remove_from_queue(self, index: int) -> None:
        if not 0 <= index < len(self._state.queue):
            return
        queue = list(self._state.queue)
        del queue[index]
        self._set(queue=queue)

    def clear_queue(self) -> None:
        self._set(queue=[], current_track=None, is_playing=False)

    def _current_index(self) -> int:
        current = self._state.current_track
        if current is None:
            return -1
        for i, track in enumerate(self._state.queue):
            if track.id == current.id:
                return i
        return -1

    def _shuffle_pick(self) -> Track:
        current = self._state.current_track
        current_id = current.id if current is not None else None
        candidates = [t for t in self._state.queue if t.id != current_id]
        if not candidates:
            # only the current track is queued; replay it
            return current if current is not None else self._state.queue[0]
        return self._rng.choice(candidates)

    def play_next(self) -> None:
        queue = self._state.queue
        if not queue:
            return
        if self._state.is_shuffle:
            track = self._shuffle_pick()
        else:
            track = queue[(self._current_index() + 1) % len(queue)]
        self._set(current_track=track, is_playing=True, current_time=0.0)

    def play_previous(self) -> None:
        queue = self._state.queue
        if not queue:
            return
        if self._state.is_shuffle:
            track = self._shuffle_pick()
        else:
            index = self._current_index()
            track = queue[len(queue) - 1 if index <= 0 else index - 1]
        self._set(current_track=track, is_playing=True, current_time=0.0)

    # ── Transport ──────────────────────────────────────────────────

    def toggle_play(self) -> None:
        self._set(is_playing=not self._state.is_playing)

    def set_is_playing(self, playing: bool) -> None:
        self._set(is_playing=bool(playing))

    def toggle_shuffle(self) -> None:
        self._set(is_shuffle=not self._state.is_shuffle)

    def toggle_repeat(self) -> None:
        self._set(is_repeat=not self._state.is_repeat)

    def set_current_time(self, seconds: float) -> None:
        self._set(current_time=max(float(seconds), 0.0))

    def set_duration(self, seconds: float) -> None:
        self._set(duration=max(float(seconds), 0.0))

    def toggle_lyrics(self) -> None:
        self._set(show_lyrics=not self._state.show_lyrics)

    # ── Persisted preferences ──────────────────────────────────────

    def set_volume(self, volume: float) -> None:
        volume = float(volume)
        if not math.isfinite(volume):
            raise ValueError(f"volume must be a finite number, got {volume!r}")
        volume = min(max(volume, 0.0), 1.0)
        self._set(volume=volume)
        if self._settings is not None:
            self._settings.update(volume=volume)

    def toggle_mute(self) -> None:
        self._set(is_muted=not self._state.is_muted)
        if self._settings is not None:
            self._settings.update(is_muted=self._state.is_muted)

    def toggle_audio_only_mode(self) -> None:
        self._set(audio_only_mode=not self._state.audio_only_mode)
        if self._settings is not None:
            self._settings.update(audio_only_mode=self._state.audio_only_mode)
