"""Key-value persistence.

The rest of the system sees persistence as an async get/set of opaque
JSON-serialisable values under string keys. There are no partial-key
updates: callers read a whole value, modify it, and write it back.

Two implementations are provided:

    JsonFileStore — one JSON file per key under a base directory.
    MemoryStore   — a dict; useful for tests and throwaway sessions.

Layout of a JsonFileStore:

    {base}/
      dm-os-chat-history.json    ← list of Session objects
      dm-os-user-context.json    ← list of strings
      dm-os-theme.json           ← scalar UI preferences, one file each
      ...
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any) -> None: ...


class JsonFileStore:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._base.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not re.fullmatch(r"[A-Za-z0-9_.-]+", key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self._base / f"{key}.json"

    async def get(self, key: str) -> Any:
        path = self._path(key)
        if not path.is_file():
            return None
        try:
            return json.loads(path.read_text())
        except json.JSONDecodeError as e:
            # A corrupt file reads as absent; the migrator rebuilds defaults.
            logger.warning("Stored value for %r is not valid JSON: %s", key, e)
            return None

    async def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(value, indent=2))
        tmp.replace(path)


class MemoryStore:
    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, str] = {}
        for key, value in (initial or {}).items():
            self._data[key] = json.dumps(value)

    async def get(self, key: str) -> Any:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)
