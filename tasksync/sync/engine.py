from __future__ import annotations

import asyncio
import datetime as _dt
from collections.abc import Awaitable, Callable, Coroutine, Iterable, Mapping
from typing import Any, Literal, TypeVar

from pydantic import ValidationError

from tasksync.cache.interface import CacheStore
from tasksync.errors import CacheError, RemoteStoreError
from tasksync.feed.interface import ChangeEvent
from tasksync.models.task import (
    Context,
    Task,
    TaskDraft,
    TaskPatch,
    capitalize,
    is_temp_id,
    new_temp_id,
    normalize_task,
    parse_title,
)
from tasksync.observability import get_json_logger, get_metrics
from tasksync.remote.interface import RemoteTaskStore

from .connectivity import ConnectivityMonitor
from .views import is_urgent

T = TypeVar("T")

ChangeListener = Callable[["SyncEngine"], None]

_NULLABLE_FIELDS = frozenset({"category", "deadline"})


def _normalize_all(rows: Iterable[Mapping[str, Any]], *, source: str) -> list[Task]:
    out: list[Task] = []
    for row in rows:
        try:
            out.append(normalize_task(row))
        except ValidationError as e:
            get_json_logger("tasksync.sync").warning(
                "dropping invalid record",
                extra={
                    "event": "record_invalid",
                    "task_id": str(row.get("id")),
                    "error": str(e)[:200],
                    "metadata": {"source": source},
                },
            )
    return out


class SyncEngine:
    """Authoritative in-memory task list kept consistent with cache and remote.

    - Every mutation updates the list, then writes the cache snapshot, then
      (when online) pushes to the remote store without waiting for it.
    - ``flush_pending`` inserts locally created tasks one at a time and swaps
      their temporary ids for server ids.
    - ``apply_event`` folds realtime row changes into the list.

    All list mutations happen between suspension points, so on a single
    event loop no operation can observe another one half-applied.
    """

    def __init__(
        self,
        *,
        remote: RemoteTaskStore,
        cache: CacheStore,
        connectivity: ConnectivityMonitor | None = None,
        owner: str | None = None,
        remote_timeout: float | None = None,
    ) -> None:
        self._remote = remote
        self._cache = cache
        self._connectivity = connectivity or ConnectivityMonitor()
        self._owner = owner
        self._remote_timeout = remote_timeout
        self._tasks: list[Task] = []
        self._archived: list[Task] = []
        # Single-flight guard for flush_pending plus a "run again" request flag
        self._flush_lock = asyncio.Lock()
        self._flush_requested = False
        # Temporary ids whose insert is awaiting acknowledgment, and what to do
        # with the server row of those archived or purged in the meantime
        self._inflight: set[str] = set()
        self._inflight_drops: dict[str, Literal["archive", "purge"]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._listeners: list[ChangeListener] = []
        self._logger = get_json_logger("tasksync.sync")

    # ----------------------------
    # Read side
    # ----------------------------
    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks)

    @property
    def archived(self) -> list[Task]:
        return list(self._archived)

    @property
    def owner(self) -> str | None:
        return self._owner

    @property
    def is_online(self) -> bool:
        return self._connectivity.is_online

    @property
    def is_flushing(self) -> bool:
        return self._flush_lock.locked()

    def get(self, task_id: str) -> Task | None:
        idx = self._index(task_id)
        return self._tasks[idx] if idx is not None else None

    def get_archived(self, task_id: str) -> Task | None:
        for t in self._archived:
            if t.id == task_id:
                return t
        return None

    def badge_count(self, context: Context | None = None) -> int:
        return sum(
            1 for t in self._tasks if is_urgent(t) and (context is None or t.context == context)
        )

    def on_change(self, listener: ChangeListener) -> None:
        """Register a callback run after every persisted mutation."""
        self._listeners.append(listener)

    # ----------------------------
    # Cache and fetch
    # ----------------------------
    def load_from_cache(self) -> list[Task]:
        records = _normalize_all(self._cache.load() or [], source="cache")
        self._tasks = [t for t in records if not t.is_deleted]
        # Archived tasks that never reached the store live only in the cache
        self._archived = [t for t in records if t.is_deleted]
        self._logger.info(
            "cache loaded", extra={"event": "cache_loaded", "count": len(self._tasks)}
        )
        self._notify()
        return self.tasks

    async def fetch_remote(self) -> list[Task]:
        if not self.is_online:
            return self.tasks
        known_ids = {t.id for t in self._tasks}
        try:
            rows = await self._call(self._remote.list_tasks(self._owner, deleted=False))
        except RemoteStoreError as e:
            self._remote_failed("fetch", None, e)
            return self.tasks
        server = _normalize_all(rows, source="fetch")
        server_ids = {t.id for t in server}
        # Keep what the snapshot cannot know about: still-pending tasks and
        # tasks acknowledged while the fetch was in flight
        local = [
            t
            for t in self._tasks
            if t.isPending or (t.id not in known_ids and t.id not in server_ids)
        ]
        self._tasks = local + [t for t in server if not t.is_deleted]
        self._persist()
        self._logger.info(
            "remote fetched",
            extra={"event": "remote_fetched", "count": len(server)},
        )
        return self.tasks

    async def fetch_archive(self) -> list[Task]:
        if not self.is_online:
            return self.archived
        try:
            rows = await self._call(self._remote.list_tasks(self._owner, deleted=True))
        except RemoteStoreError as e:
            self._remote_failed("fetch_archive", None, e)
            return self.archived
        local = [t for t in self._archived if t.isPending]
        server = [t for t in _normalize_all(rows, source="archive") if t.is_deleted]
        self._archived = local + server
        return self.archived

    # ----------------------------
    # Create and flush
    # ----------------------------
    def create(self, draft: TaskDraft | str) -> Task | None:
        """Add a task locally and schedule its insert. Empty titles are ignored."""
        if isinstance(draft, str):
            draft = TaskDraft(task=draft)
        title, category = parse_title(draft.task)
        if not title:
            return None
        task = Task(
            id=new_temp_id(),
            task=title,
            description=draft.description,
            category=category,
            importance=draft.importance,
            deadline=draft.deadline,
            context=draft.context,
            user_id=self._owner,
            subtasks=[s.model_dump() for s in draft.subtasks],
            created_at=_dt.datetime.now(_dt.UTC),
            isPending=True,
        )
        self._tasks.insert(0, task)
        self._persist()
        self._logger.info("task created", extra={"event": "task_created", "task_id": task.id})
        if self.is_online:
            self._spawn(self.flush_pending(), name="flush")
        return task

    async def flush_pending(self) -> int:
        """Insert pending tasks sequentially; returns how many were accepted.

        A call made while a flush is running does not start a second one; it
        asks the running flush to make another pass once the current one ends.
        """
        if not self.is_online:
            return 0
        if self._flush_lock.locked():
            self._flush_requested = True
            return 0
        accepted = 0
        async with self._flush_lock:
            while True:
                self._flush_requested = False
                for temp_id in [t.id for t in self._tasks if t.isPending]:
                    if not self.is_online:
                        break
                    task = self.get(temp_id)
                    if task is None or not task.isPending:
                        continue
                    submitted = task.insert_payload()
                    self._inflight.add(temp_id)
                    try:
                        row = await self._call(self._remote.insert_task(submitted))
                    except RemoteStoreError as e:
                        self._remote_failed("insert", temp_id, e)
                        self._inflight_drops.pop(temp_id, None)
                        continue
                    finally:
                        self._inflight.discard(temp_id)
                    if self._acknowledge(temp_id, submitted, row):
                        accepted += 1
                        self._persist()
                if not (self._flush_requested and any(t.isPending for t in self._tasks)):
                    break
        if accepted:
            get_metrics().increment("tasks_flushed", amount=accepted)
        return accepted

    def _acknowledge(
        self, temp_id: str, submitted: dict[str, Any], row: Mapping[str, Any]
    ) -> bool:
        try:
            server = normalize_task(row)
        except ValidationError as e:
            self._remote_failed("insert", temp_id, e)
            return False
        idx = self._index(temp_id)
        if idx is None:
            self._settle_dropped(temp_id, server)
            return True
        current = self._tasks[idx]
        # Local edits made during the insert win over the acknowledged row
        edits = {k: v for k, v in current.insert_payload().items() if submitted.get(k) != v}
        existing = self._index(server.id)
        if existing is not None:
            # The realtime INSERT got here first
            del self._tasks[idx]
            existing = self._index(server.id)
            merged = self._tasks[existing].with_fields(edits) if edits else self._tasks[existing]
            self._tasks[existing] = merged
        else:
            self._tasks[idx] = server.with_fields(edits) if edits else server
        if edits:
            self._push_update([server.id], edits, op="update")
        self._logger.info(
            "task acknowledged",
            extra={"event": "task_acknowledged", "task_id": server.id, "temp_id": temp_id},
        )
        return True

    def _settle_dropped(self, temp_id: str, server: Task) -> None:
        """Apply an archive or purge made while the insert of ``temp_id`` was in flight."""
        drop = self._inflight_drops.pop(temp_id, None)
        if drop is None:
            return
        # A realtime INSERT may already have listed the server row
        self._tasks = [t for t in self._tasks if t.id != server.id]
        self._archived = [t for t in self._archived if t.id != temp_id]
        if drop == "archive":
            self._upsert_archived(server.with_fields({"is_deleted": True}))
            self._push_update([server.id], {"is_deleted": True}, op="soft_delete")
        elif self.is_online:
            self._spawn(self._remote_delete(server.id), name="purge")
        self._logger.info(
            "dropped task acknowledged",
            extra={
                "event": "task_acknowledged",
                "task_id": server.id,
                "temp_id": temp_id,
                "metadata": {"dropped": drop},
            },
        )

    # ----------------------------
    # State transitions
    # ----------------------------
    def update(self, task_id: str, patch: TaskPatch | Mapping[str, Any]) -> Task | None:
        if not isinstance(patch, TaskPatch):
            patch = TaskPatch.model_validate(patch)
        fields = {
            k: v for k, v in patch.fields().items() if v is not None or k in _NULLABLE_FIELDS
        }
        if "task" in fields:
            title = capitalize((fields["task"] or "").strip())
            if title:
                fields["task"] = title
            else:
                fields.pop("task")
        if "category" in fields and not fields["category"]:
            fields["category"] = None
        idx = self._index(task_id)
        if idx is None or not fields:
            return None
        updated = self._tasks[idx].with_fields(fields)
        self._tasks[idx] = updated
        self._persist()
        if not updated.isPending:
            self._push_update([updated.id], fields, op="update")
        return updated

    def toggle_complete(self, task_id: str) -> Task | None:
        task = self.get(task_id)
        if task is None:
            return None
        return self.update(task_id, TaskPatch(is_completed=not task.is_completed))

    def soft_delete(self, task_id: str) -> bool:
        return bool(self.archive_many([task_id]))

    def archive_many(self, ids: Iterable[str]) -> list[str]:
        """Move tasks from the active list to the archive with one remote update."""
        wanted = set(ids)
        moved = [t for t in self._tasks if t.id in wanted]
        if not moved:
            return []
        self._tasks = [t for t in self._tasks if t.id not in wanted]
        server_ids: list[str] = []
        for t in moved:
            # Pending tasks keep their flag so a restore queues them again
            self._upsert_archived(t.with_fields({"is_deleted": True}))
            if t.id in self._inflight:
                self._inflight_drops[t.id] = "archive"
            elif not (t.isPending or t.is_temporary):
                server_ids.append(t.id)
        self._persist()
        if server_ids:
            self._push_update(server_ids, {"is_deleted": True}, op="soft_delete")
        self._logger.info(
            "tasks archived", extra={"event": "tasks_archived", "count": len(moved)}
        )
        return [t.id for t in moved]

    def restore(self, task: Task | str) -> Task | None:
        task_id = task if isinstance(task, str) else task.id
        source = self.get_archived(task_id) or (task if isinstance(task, Task) else None)
        if source is None:
            return None
        self._archived = [t for t in self._archived if t.id != task_id]
        self._inflight_drops.pop(task_id, None)
        restored = source.with_fields({"is_deleted": False})
        idx = self._index(task_id)
        if idx is not None:
            self._tasks[idx] = restored
        else:
            self._tasks.insert(0, restored)
        self._persist()
        if not restored.isPending:
            self._push_update([task_id], {"is_deleted": False}, op="restore")
        elif self.is_online and task_id not in self._inflight:
            self._spawn(self.flush_pending(), name="flush")
        return restored

    def purge(self, task_id: str) -> bool:
        """Irreversibly remove an archived task here and in the remote store."""
        before = len(self._archived) + len(self._tasks)
        self._archived = [t for t in self._archived if t.id != task_id]
        self._tasks = [t for t in self._tasks if t.id != task_id]
        removed = before != len(self._archived) + len(self._tasks)
        self._persist()
        if task_id in self._inflight:
            self._inflight_drops[task_id] = "purge"
        elif not is_temp_id(task_id) and self.is_online:
            self._spawn(self._remote_delete(task_id), name="purge")
        return removed

    # ----------------------------
    # Realtime reconciliation
    # ----------------------------
    def apply_event(self, event: ChangeEvent | Mapping[str, Any]) -> None:
        """Fold one realtime row change into the lists. Safe to apply twice."""
        if not isinstance(event, ChangeEvent):
            event = ChangeEvent.model_validate(event)
        get_metrics().increment("realtime_events", {"type": event.eventType})
        if event.eventType == "DELETE":
            row_id = event.row_id
            if row_id is None:
                return
            self._tasks = [t for t in self._tasks if t.id != row_id]
            self._archived = [t for t in self._archived if t.id != row_id]
            self._persist()
            return
        if not event.new:
            return
        try:
            incoming = normalize_task(event.new)
        except ValidationError as e:
            self._logger.warning(
                "invalid realtime record",
                extra={"event": "record_invalid", "error": str(e)[:200]},
            )
            return
        idx = self._index(incoming.id)
        if incoming.is_deleted:
            # Archival wins over any local state
            if idx is not None:
                del self._tasks[idx]
            self._upsert_archived(incoming)
        elif event.eventType == "INSERT":
            # A row already known here is at least as new as its INSERT
            if idx is None and self.get_archived(incoming.id) is None:
                self._tasks.insert(0, incoming)
        else:
            if idx is not None:
                self._tasks[idx] = self._tasks[idx].with_fields(
                    {**incoming.model_dump(), "isPending": False}
                )
            else:
                self._tasks.insert(0, incoming)
            self._archived = [t for t in self._archived if t.id != incoming.id]
        self._persist()

    # ----------------------------
    # Lifecycle
    # ----------------------------
    async def drain(self) -> None:
        """Wait for every in-flight background push to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ----------------------------
    # Internals
    # ----------------------------
    def _index(self, task_id: str) -> int | None:
        for i, t in enumerate(self._tasks):
            if t.id == task_id:
                return i
        return None

    def _upsert_archived(self, task: Task) -> None:
        for i, t in enumerate(self._archived):
            if t.id == task.id:
                self._archived[i] = task
                return
        self._archived.insert(0, task)

    def _persist(self) -> None:
        try:
            unsent = [t for t in self._archived if t.isPending]
            self._cache.save([t.to_cache() for t in self._tasks + unsent])
        except CacheError as e:
            self._logger.error(
                "cache write failed",
                extra={"event": "cache_write_failed", "error": str(e)[:200]},
            )
            get_metrics().increment("cache_write_failures")
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                self._logger.exception(
                    "change listener failed", extra={"event": "listener_failed"}
                )

    async def _call(self, awaitable: Awaitable[T]) -> T:
        if self._remote_timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, self._remote_timeout)
        except TimeoutError as e:
            raise RemoteStoreError(f"timed out after {self._remote_timeout}s") from e

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to push from; the next flush/fetch cycle reconciles
            coro.close()
            self._logger.warning(
                "remote push skipped",
                extra={"event": "remote_push_skipped", "metadata": {"op": name}},
            )
            return
        task = loop.create_task(coro, name=f"tasksync-{name}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _push_update(self, ids: list[str], fields: dict[str, Any], *, op: str) -> None:
        if self.is_online and ids:
            self._spawn(self._remote_update(ids, dict(fields), op), name=op)

    async def _remote_update(self, ids: list[str], fields: dict[str, Any], op: str) -> None:
        try:
            await self._call(self._remote.update_tasks(ids, fields))
        except RemoteStoreError as e:
            self._remote_failed(op, ids[0] if len(ids) == 1 else None, e, count=len(ids))

    async def _remote_delete(self, task_id: str) -> None:
        try:
            await self._call(self._remote.delete_task(task_id))
        except RemoteStoreError as e:
            self._remote_failed("purge", task_id, e)

    def _remote_failed(
        self, op: str, task_id: str | None, exc: Exception, *, count: int | None = None
    ) -> None:
        self._logger.warning(
            "remote push failed",
            extra={
                "event": "remote_push_failed",
                "task_id": task_id,
                "count": count,
                "error": str(exc)[:200],
                "metadata": {"op": op},
            },
        )
        get_metrics().increment("remote_push_failed", {"op": op})


__all__ = ["SyncEngine", "ChangeListener"]
