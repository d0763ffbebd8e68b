"""Pydantic models shared by the gateway providers, resolver and endpoints."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

StreamSource = Literal["piped", "invidious"]
StreamOrigin = Literal["piped", "invidious", "jiosaavn"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class AudioStream(_CamelModel):
    """One audio-only rendition offered by an upstream."""
    url: str
    bitrate: int = 0
    codec: str = ""
    mime_type: str = ""
    quality: str = ""
    content_length: Optional[int] = None
    itag: Optional[int] = None


class VideoStream(AudioStream):
    width: Optional[int] = None
    height: Optional[int] = None
    fps: Optional[int] = None


class ProviderStreams(_CamelModel):
    """Normalized result of a single provider lookup."""
    source: StreamOrigin
    instance: Optional[str] = None
    audio_streams: list[AudioStream] = Field(default_factory=list)
    video_streams: list[VideoStream] = Field(default_factory=list)
    manifest_url: Optional[str] = None


class ResolvedUpstream(_CamelModel):
    """Best playable stream picked by the fallback chain."""
    url: str
    source: StreamOrigin
    instance: Optional[str] = None
    mime_type: Optional[str] = None
    manifest_url: Optional[str] = None
    audio_streams: list[AudioStream] = Field(default_factory=list)
    video_streams: list[VideoStream] = Field(default_factory=list)


class HistoryEntryIn(_CamelModel):
    """Track metadata posted by the player when playback starts."""
    track_id: str
    title: str = "Unknown Title"
    artist: str = "Unknown Artist"
    duration: int = 0
    thumbnail: Optional[str] = None
    source: Optional[StreamOrigin] = None


class HistoryEntry(HistoryEntryIn):
    played_at: str
