from __future__ import annotations

import json
from typing import Any

import redis
import redis.asyncio as aioredis
from pydantic import ValidationError

from tasksync.errors import RemoteStoreError
from tasksync.observability import get_json_logger, get_metrics

from .interface import ChangeEvent

PUBLIC_OWNER = "public"


class RedisChangeFeed:
    """Redis Streams-backed change feed.

    - one stream per owner: ``{prefix}:changes:{owner}``
    - publish: XADD with the canonical event id and JSON payload
    - read: XREAD BLOCK after a stream entry id
    """

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        key_prefix: str = "tasksync",
        maxlen: int | None = 10_000,
        client: Any | None = None,
    ) -> None:
        if client is not None:
            self._redis = client
        else:
            # decode_responses=True returns str everywhere for easier JSON handling
            self._redis = aioredis.from_url(
                redis_url or "redis://localhost:6379/0", decode_responses=True
            )
        self._prefix = key_prefix.rstrip(":")
        self._maxlen = maxlen

    def stream_key(self, owner: str | None) -> str:
        return f"{self._prefix}:changes:{owner or PUBLIC_OWNER}"

    async def publish(self, owner: str | None, event: ChangeEvent) -> str:
        fields = {
            "id": event.id,
            "payload": json.dumps(event.model_dump(mode="json"), separators=(",", ":")),
        }
        try:
            entry_id = await self._redis.xadd(
                self.stream_key(owner), fields, maxlen=self._maxlen, approximate=True
            )
        except redis.exceptions.RedisError as e:
            raise RemoteStoreError(f"change feed publish failed: {e}") from e
        return str(entry_id)

    async def latest_cursor(self, owner: str | None) -> str:
        try:
            entries = await self._redis.xrevrange(self.stream_key(owner), "+", "-", count=1)
        except redis.exceptions.RedisError as e:
            raise RemoteStoreError(f"change feed read failed: {e}") from e
        if not entries:
            return "0-0"
        return str(entries[0][0])

    async def read(
        self,
        owner: str | None,
        cursor: str,
        *,
        limit: int = 100,
        block_ms: int = 1000,
    ) -> tuple[list[ChangeEvent], str]:
        key = self.stream_key(owner)
        try:
            resp = await self._redis.xread(streams={key: cursor}, count=limit, block=block_ms)
        except redis.exceptions.RedisError as e:
            raise RemoteStoreError(f"change feed read failed: {e}") from e
        if not resp:
            return [], cursor
        # resp shape: [(stream, [(entry_id, {field: value, ...}), ...])]
        _, items = resp[0]
        events: list[ChangeEvent] = []
        for entry_id, data in items:
            cursor = str(entry_id)
            event = self._to_event(key, data, cursor)
            if event is not None:
                events.append(event)
        return events, cursor

    async def aclose(self) -> None:
        await self._redis.aclose()

    @staticmethod
    def _to_event(key: str, data: dict[str, str], entry_id: str) -> ChangeEvent | None:
        try:
            payload = json.loads(data.get("payload", "{}"))
            event = ChangeEvent.model_validate(payload)
        except (json.JSONDecodeError, ValidationError):
            get_json_logger("tasksync.feed").warning(
                "invalid change event",
                extra={
                    "event": "feed_payload_invalid",
                    "metadata": {"stream": key, "entry_id": entry_id},
                },
            )
            get_metrics().increment("feed_payload_decode_errors")
            return None
        event.cursor = entry_id
        return event


__all__ = ["RedisChangeFeed", "PUBLIC_OWNER"]
