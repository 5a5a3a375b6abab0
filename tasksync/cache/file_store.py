from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from tasksync.errors import CacheError
from tasksync.observability import get_json_logger


class FileCacheStore:
    """JSON file snapshot.

    Writes land in a temporary sibling first and are moved into place with
    ``os.replace``, so a reader never sees a half-written file.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> list[dict[str, Any]] | None:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            get_json_logger("tasksync.cache").warning(
                "cache unreadable",
                extra={"event": "cache_unreadable", "error": str(exc)[:200]},
            )
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            get_json_logger("tasksync.cache").warning(
                "cache corrupt", extra={"event": "cache_corrupt"}
            )
            return None
        if not isinstance(data, list):
            return None
        return [r for r in data if isinstance(r, dict)]

    def save(self, records: list[dict[str, Any]]) -> None:
        payload = json.dumps(records, separators=(",", ":"), ensure_ascii=False)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=f".{self._path.name}.", dir=self._path.parent)
        except OSError as e:
            raise CacheError(f"cache write failed: {e}") from e
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self._path)
        except OSError as e:
            Path(tmp).unlink(missing_ok=True)
            raise CacheError(f"cache write failed: {e}") from e


__all__ = ["FileCacheStore"]
