"""Upstream instance lists and tunables for the stream gateway."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from services.common.sidecar_runtime_utils import env_float, env_int, env_list

DEFAULT_PIPED_INSTANCES = [
    "https://piped.private.coffee",
    "https://api.piped.private.coffee",
    "https://piped.video",
]

DEFAULT_INVIDIOUS_INSTANCES = [
    "https://ytify.pp.ua",
    "https://y.com.sb",
    "https://inv.vern.cc",
    "https://invidious.materialio.us",
    "https://iv.melmac.space",
    "https://inv.perditum.com",
    "https://zoomerville.com",
]

DEFAULT_JIOSAAVN_BASE = "https://saavn-ytify.vercel.app"


@dataclass
class InstanceConfig:
    """Base URLs per upstream family."""
    piped: list[str] = field(default_factory=lambda: list(DEFAULT_PIPED_INSTANCES))
    invidious: list[str] = field(default_factory=lambda: list(DEFAULT_INVIDIOUS_INSTANCES))
    jiosaavn: str = DEFAULT_JIOSAAVN_BASE

    @classmethod
    def from_env(cls) -> "InstanceConfig":
        return cls(
            piped=env_list("PIPED_INSTANCES", DEFAULT_PIPED_INSTANCES),
            invidious=env_list("INVIDIOUS_INSTANCES", DEFAULT_INVIDIOUS_INSTANCES),
            jiosaavn=(os.getenv("JIOSAAVN_BASE") or DEFAULT_JIOSAAVN_BASE).rstrip("/"),
        )


# ── Tunables ────────────────────────────────────────────────────────
DEFAULT_REGION = os.getenv("MUSIC_REGION", "IN")
UPSTREAM_TIMEOUT = env_float("UPSTREAM_TIMEOUT", "12")
STREAM_CACHE_TTL = env_int("STREAM_CACHE_TTL", "600")      # raw provider payloads
RESOLVED_CACHE_TTL = env_int("RESOLVED_CACHE_TTL", "300")  # ranked best-stream results
SEARCH_CACHE_TTL = env_int("SEARCH_CACHE_TTL", "30")
TRENDING_CACHE_TTL = env_int("TRENDING_CACHE_TTL", "600")
TRENDING_SEARCH_CACHE_TTL = env_int("TRENDING_SEARCH_CACHE_TTL", "900")
HISTORY_LIMIT = env_int("HISTORY_LIMIT", "500")
GATEWAY_PORT = env_int("GATEWAY_PORT", "5001")
