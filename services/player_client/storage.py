"""
File-backed key/value storage with the browser localStorage contract.

Values are strings; callers serialize JSON themselves. The whole table
lives in one JSON file that is rewritten atomically on every write.
"""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import Optional

from services.player_client.errors import StorageError


class LocalStorage:
    def __init__(self, path: Path, *, quota_bytes: Optional[int] = None):
        self.path = Path(path)
        self.quota_bytes = quota_bytes
        self._items: Optional[dict[str, str]] = None

    def _load(self) -> dict[str, str]:
        if self._items is not None:
            return self._items
        items: dict[str, str] = {}
        if self.path.exists():
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
            except OSError as e:
                raise StorageError(f"cannot read {self.path}: {e}") from e
            except ValueError:
                raw = {}
            if isinstance(raw, dict):
                items = {k: v for k, v in raw.items() if isinstance(k, str) and isinstance(v, str)}
        self._items = items
        return items

    def _flush(self, items: dict[str, str]) -> None:
        payload = json.dumps(items, ensure_ascii=False)
        if self.quota_bytes is not None and len(payload.encode("utf-8")) > self.quota_bytes:
            raise StorageError(f"quota of {self.quota_bytes} bytes exceeded")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".storage-", suffix=".tmp")
        except OSError as e:
            raise StorageError(f"cannot write {self.path}: {e}") from e
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self.path)
        except OSError as e:
            with contextlib.suppress(OSError):
                os.unlink(tmp)
            raise StorageError(f"cannot write {self.path}: {e}") from e

    def get_item(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        items = dict(self._load())
        items[key] = value
        self._flush(items)
        self._items = items

    def remove_item(self, key: str) -> None:
        items = dict(self._load())
        if items.pop(key, None) is not None:
            self._flush(items)
            self._items = items

    def clear(self) -> None:
        self._flush({})
        self._items = {}

    def keys(self) -> list[str]:
        return list(self._load())
