from __future__ import annotations

import asyncio
import datetime as _dt
import uuid
from collections.abc import Callable, Sequence
from typing import Any

from tasksync.errors import CacheError, RemoteStoreError
from tasksync.feed.interface import ChangeEvent
from tasksync.models.task import Task


class InMemoryCacheStore:
    def __init__(self, records: list[dict[str, Any]] | None = None) -> None:
        self.records = records
        self.saves = 0
        self.fail = False

    def load(self) -> list[dict[str, Any]] | None:
        return None if self.records is None else [dict(r) for r in self.records]

    def save(self, records: list[dict[str, Any]]) -> None:
        if self.fail:
            raise CacheError("disk full")
        self.records = [dict(r) for r in records]
        self.saves += 1


class InMemoryChangeFeed:
    """Per-owner lists of events; cursors are list offsets as strings."""

    def __init__(self) -> None:
        self._streams: dict[str, list[ChangeEvent]] = {}
        self._changed = asyncio.Event()
        self.fail_reads = 0

    def _stream(self, owner: str | None) -> list[ChangeEvent]:
        return self._streams.setdefault(owner or "public", [])

    def events(self, owner: str | None = None) -> list[ChangeEvent]:
        return list(self._stream(owner))

    async def publish(self, owner: str | None, event: ChangeEvent) -> str:
        stream = self._stream(owner)
        stream.append(event.model_copy(deep=True))
        self._changed.set()
        return str(len(stream))

    async def latest_cursor(self, owner: str | None) -> str:
        return str(len(self._stream(owner)))

    async def read(
        self,
        owner: str | None,
        cursor: str,
        *,
        limit: int = 100,
        block_ms: int = 1000,
    ) -> tuple[list[ChangeEvent], str]:
        if self.fail_reads:
            self.fail_reads -= 1
            raise RemoteStoreError("feed unavailable")
        stream = self._stream(owner)
        start = len(stream) if cursor == "$" else int(cursor)
        if start >= len(stream):
            self._changed.clear()
            try:
                await asyncio.wait_for(self._changed.wait(), block_ms / 1000)
            except TimeoutError:
                return [], str(start)
        items = stream[start : start + limit]
        out = []
        for offset, event in enumerate(items, start=start + 1):
            copy = event.model_copy(deep=True)
            copy.cursor = str(offset)
            out.append(copy)
        return out, str(start + len(items))


class InMemoryRemoteStore:
    """Remote store double that behaves like the Redis store.

    - ``insert_gate``: when set, inserts commit (and publish) immediately but
      wait for the gate before returning, which holds the acknowledgment
      back the way a slow network would.
    - ``fail_*`` counters make the next N calls raise ``RemoteStoreError``.
    - ``online`` false makes every call fail.
    """

    def __init__(self, feed: InMemoryChangeFeed | None = None) -> None:
        self.rows: dict[str, dict[str, Any]] = {}
        self.feed = feed
        self.calls: list[tuple[str, Any]] = []
        self.insert_gate: asyncio.Event | None = None
        self.on_insert: Callable[[dict[str, Any]], None] | None = None
        self.fail_inserts = 0
        self.fail_updates = 0
        self.fail_lists = 0
        self.online = True
        self.closed = False

    def seed(self, **fields: Any) -> dict[str, Any]:
        fields.setdefault("id", str(uuid.uuid4()))
        fields.setdefault("task", "Seeded")
        row = Task.model_validate(fields).to_record()
        self.rows[row["id"]] = row
        return row

    def _check(self, counter: str | None = None) -> None:
        if not self.online:
            raise RemoteStoreError("unreachable")
        if counter and getattr(self, counter) > 0:
            setattr(self, counter, getattr(self, counter) - 1)
            raise RemoteStoreError("server error")

    async def _emit(self, owner: str | None, event: ChangeEvent) -> None:
        if self.feed is not None:
            await self.feed.publish(owner, event)

    async def list_tasks(self, owner: str | None, *, deleted: bool) -> list[dict[str, Any]]:
        self.calls.append(("list", deleted))
        self._check("fail_lists")
        rows = [
            dict(r)
            for r in self.rows.values()
            if bool(r.get("is_deleted")) == deleted and (owner is None or r.get("user_id") == owner)
        ]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return rows

    async def insert_task(self, record: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("insert", dict(record)))
        self._check("fail_inserts")
        row = Task.model_validate(
            {**record, "id": str(uuid.uuid4()), "created_at": _dt.datetime.now(_dt.UTC)}
        ).to_record()
        self.rows[row["id"]] = row
        await self._emit(row.get("user_id"), ChangeEvent(eventType="INSERT", new=dict(row)))
        if self.on_insert is not None:
            self.on_insert(row)
        if self.insert_gate is not None:
            await self.insert_gate.wait()
        return dict(row)

    async def update_tasks(self, ids: Sequence[str], fields: dict[str, Any]) -> None:
        self.calls.append(("update", (list(ids), dict(fields))))
        self._check("fail_updates")
        for tid in ids:
            current = self.rows.get(tid)
            if current is None:
                continue
            row = Task.model_validate({**current, **fields}).to_record()
            self.rows[tid] = row
            await self._emit(
                row.get("user_id"),
                ChangeEvent(eventType="UPDATE", new=dict(row), old=dict(current)),
            )

    async def delete_task(self, task_id: str) -> None:
        self.calls.append(("delete", task_id))
        self._check()
        current = self.rows.pop(task_id, None)
        if current is not None:
            await self._emit(
                current.get("user_id"), ChangeEvent(eventType="DELETE", old={"id": task_id})
            )

    async def ping(self) -> bool:
        self.calls.append(("ping", None))
        self._check()
        return True

    async def aclose(self) -> None:
        self.closed = True

    def ops(self, name: str) -> list[Any]:
        return [args for op, args in self.calls if op == name]


async def wait_until(check: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not check():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


__all__ = [
    "InMemoryCacheStore",
    "InMemoryChangeFeed",
    "InMemoryRemoteStore",
    "wait_until",
]
