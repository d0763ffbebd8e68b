"""Client configuration read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from services.common.sidecar_runtime_utils import env_float

DEFAULT_API_URL = "http://localhost:5001"
DEFAULT_DATA_PATH = "~/.aerogroove"


@dataclass(frozen=True)
class ClientConfig:
    api_url: str = DEFAULT_API_URL
    data_path: Path = Path(DEFAULT_DATA_PATH).expanduser()
    request_timeout: float = 15.0

    @property
    def storage_file(self) -> Path:
        return self.data_path / "local_storage.json"

    @classmethod
    def from_env(cls) -> "ClientConfig":
        return cls(
            api_url=(os.getenv("AEROGROOVE_API_URL") or DEFAULT_API_URL).rstrip("/"),
            data_path=Path(os.getenv("AEROGROOVE_DATA_PATH") or DEFAULT_DATA_PATH).expanduser(),
            request_timeout=env_float("AEROGROOVE_REQUEST_TIMEOUT", "15"),
        )
