from __future__ import annotations

import json
from typing import Any, cast

import redis

from tasksync.errors import CacheError
from tasksync.observability import get_json_logger


class RedisCacheStore:
    """Snapshot kept under a single Redis string key (``SET`` is atomic)."""

    def __init__(
        self, *, url: str, key: str = "todo_cache", client: redis.Redis | None = None
    ) -> None:
        self._redis: redis.Redis = client if client is not None else redis.Redis.from_url(url)
        self._key = key

    def load(self) -> list[dict[str, Any]] | None:
        logger = get_json_logger("tasksync.cache")
        try:
            raw = cast(bytes | str | None, self._redis.get(self._key))
        except redis.exceptions.RedisError as e:
            logger.warning(
                "cache unreadable",
                extra={"event": "cache_unreadable", "error": str(e)[:200]},
            )
            return None
        if raw is None:
            return None
        try:
            text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            data = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("cache corrupt", extra={"event": "cache_corrupt"})
            return None
        if not isinstance(data, list):
            return None
        return [r for r in data if isinstance(r, dict)]

    def save(self, records: list[dict[str, Any]]) -> None:
        payload = json.dumps(records, separators=(",", ":"), ensure_ascii=False)
        try:
            self._redis.set(self._key, payload)
        except redis.exceptions.RedisError as e:
            raise CacheError(f"cache write failed: {e}") from e


__all__ = ["RedisCacheStore"]
