from __future__ import annotations

import datetime as _dt
import json
import uuid
from collections.abc import Sequence
from typing import Any

import redis
import redis.asyncio as aioredis

from tasksync.errors import RemoteStoreError
from tasksync.feed.interface import ChangeEvent, ChangeFeed
from tasksync.feed.redis_feed import PUBLIC_OWNER
from tasksync.models.task import Task
from tasksync.observability import get_json_logger, get_metrics


class RedisTaskStore:
    """Redis-backed remote task collection.

    Data structures:
    - Hash per task: key ``{prefix}:task:{id}`` with field ``json``
    - Sorted set per owner ordered by ``created_at``:
      key ``{prefix}:owner:{user_id}`` with score=created_at epoch seconds, member=task id

    Every successful write publishes a ``ChangeEvent`` to ``feed`` when one
    is attached, the way a database trigger feeds a realtime channel. A write
    that committed stays committed when its publish fails; the failure is
    logged and counted instead of raised.
    """

    def __init__(
        self,
        *,
        url: str,
        key_prefix: str = "tasksync",
        feed: ChangeFeed | None = None,
        client: Any | None = None,
    ) -> None:
        self._redis = client if client is not None else aioredis.from_url(url)
        self._prefix = key_prefix.rstrip(":")
        self._feed = feed

    # key helpers
    def _task_key(self, task_id: str) -> str:
        return f"{self._prefix}:task:{task_id}"

    def _owner_key(self, owner: str | None) -> str:
        return f"{self._prefix}:owner:{owner or PUBLIC_OWNER}"

    async def _get(self, task_id: str) -> dict[str, Any] | None:
        raw = await self._redis.hget(self._task_key(task_id), "json")
        if raw is None:
            return None
        try:
            data = json.loads(raw.decode("utf-8") if isinstance(raw, bytes) else raw)
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        return data if isinstance(data, dict) else None

    async def _put(self, row: dict[str, Any]) -> None:
        payload = json.dumps(row, separators=(",", ":"))
        await self._redis.hset(self._task_key(row["id"]), mapping={"json": payload})

    async def _emit(self, owner: str | None, event: ChangeEvent) -> None:
        if self._feed is None:
            return
        try:
            await self._feed.publish(owner, event)
        except (RemoteStoreError, redis.exceptions.RedisError) as e:
            get_json_logger("tasksync.remote").warning(
                "change publish failed",
                extra={
                    "event": "change_publish_failed",
                    "task_id": event.row_id,
                    "error": str(e)[:200],
                    "metadata": {"type": event.eventType},
                },
            )
            get_metrics().increment("change_publish_failures", {"type": event.eventType})

    async def list_tasks(self, owner: str | None, *, deleted: bool) -> list[dict[str, Any]]:
        try:
            ids_raw = await self._redis.zrevrange(self._owner_key(owner), 0, -1)
            rows: list[dict[str, Any]] = []
            for raw_id in ids_raw:
                tid = raw_id.decode("utf-8") if isinstance(raw_id, bytes) else str(raw_id)
                row = await self._get(tid)
                if row is not None and bool(row.get("is_deleted")) == deleted:
                    rows.append(row)
            return rows
        except redis.exceptions.RedisError as e:
            raise RemoteStoreError(f"list failed: {e}") from e

    async def insert_task(self, record: dict[str, Any]) -> dict[str, Any]:
        created_at = _dt.datetime.now(_dt.UTC)
        row = Task.model_validate(
            {**record, "id": str(uuid.uuid4()), "created_at": created_at, "isPending": False}
        ).to_record()
        try:
            payload = json.dumps(row, separators=(",", ":"))
            p = self._redis.pipeline()
            p.hset(self._task_key(row["id"]), mapping={"json": payload})
            p.zadd(self._owner_key(row.get("user_id")), {row["id"]: created_at.timestamp()})
            await p.execute()
        except redis.exceptions.RedisError as e:
            raise RemoteStoreError(f"insert failed: {e}") from e
        await self._emit(row.get("user_id"), ChangeEvent(eventType="INSERT", new=row))
        return row

    async def update_tasks(self, ids: Sequence[str], fields: dict[str, Any]) -> None:
        try:
            for tid in ids:
                current = await self._get(tid)
                if current is None:
                    continue
                row = Task.model_validate({**current, **fields}).to_record()
                await self._put(row)
                await self._emit(
                    row.get("user_id"), ChangeEvent(eventType="UPDATE", new=row, old=current)
                )
        except redis.exceptions.RedisError as e:
            raise RemoteStoreError(f"update failed: {e}") from e

    async def delete_task(self, task_id: str) -> None:
        try:
            current = await self._get(task_id)
            if current is None:
                return
            p = self._redis.pipeline()
            p.delete(self._task_key(task_id))
            p.zrem(self._owner_key(current.get("user_id")), task_id)
            await p.execute()
        except redis.exceptions.RedisError as e:
            raise RemoteStoreError(f"delete failed: {e}") from e
        await self._emit(
            current.get("user_id"), ChangeEvent(eventType="DELETE", old={"id": task_id})
        )

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except redis.exceptions.RedisError as e:
            raise RemoteStoreError(f"ping failed: {e}") from e

    async def aclose(self) -> None:
        await self._redis.aclose()


__all__ = ["RedisTaskStore"]
