"""Value types handed between the player client components."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

StreamSource = Literal["piped", "invidious"]
StreamOrigin = Literal["piped", "invidious", "jiosaavn"]
STREAM_SOURCES: tuple[str, ...] = ("piped", "invidious")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class Track(CamelModel):
    """A playable track as the UI knows it (search result, playlist row...)."""
    id: str
    title: str = "Unknown Title"
    artist: str = "Unknown Artist"
    youtube_id: Optional[str] = None
    thumbnail: Optional[str] = None
    duration: int = 0
    stream_source: Optional[StreamSource] = None
    stream_instance: Optional[str] = None

    @property
    def stream_id(self) -> str:
        """Identifier the resolution backend understands."""
        return self.youtube_id or self.id

    @property
    def search_text(self) -> str:
        return f"{self.title} {self.artist}".strip()


class StreamPreference(CamelModel):
    """Last source/instance that worked for a track."""
    source: StreamSource
    instance: Optional[str] = None
    updated_at: int = 0  # epoch milliseconds


class StreamHint(CamelModel):
    """Explicit source/instance override passed into a resolution."""
    source: Optional[StreamSource] = None
    instance: Optional[str] = None


class StreamVariant(CamelModel):
    """One audio or video rendition; ``proxied_url`` is what players load."""
    url: str
    proxied_url: str
    bitrate: int = 0
    codec: str = ""
    mime_type: str = ""
    quality: str = ""
    width: Optional[int] = None
    height: Optional[int] = None
    fps: Optional[int] = None


class ResolvedStream(CamelModel):
    url: str
    raw_url: str
    proxied_url: Optional[str] = None
    manifest_url: Optional[str] = None
    mime_type: Optional[str] = None
    origin: Optional[StreamOrigin] = None
    instance: Optional[str] = None
    video_streams: list[StreamVariant] = Field(default_factory=list)
    audio_streams: list[StreamVariant] = Field(default_factory=list)
