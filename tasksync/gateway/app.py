from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Query

from tasksync.errors import RemoteStoreError
from tasksync.models.task import Context, Task, TaskDraft, TaskPatch
from tasksync.observability import configure_uvicorn_logging, get_json_logger, get_metrics
from tasksync.session import Session
from tasksync.sync.views import (
    DeadlineFilter,
    SortBy,
    ViewOptions,
    active_tasks,
    completed_tasks,
    deadline_proximity,
    has_active_filters,
    unique_categories,
)


def _serialize(task: Task) -> dict[str, Any]:
    data = task.to_cache()
    data["deadline_proximity"] = deadline_proximity(task.deadline)
    return data


def create_app(session: Session, *, manage_lifecycle: bool = False) -> FastAPI:
    """HTTP surface over one ``Session``.

    With ``manage_lifecycle`` the app starts and closes the session itself;
    otherwise the caller owns it.
    """

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        configure_uvicorn_logging()
        if manage_lifecycle:
            await session.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await session.close()
            get_json_logger("tasksync.gateway").info(
                "gateway shutdown", extra={"event": "gateway_shutdown", "service": "gateway"}
            )

    app = FastAPI(lifespan=lifespan)
    engine = session.engine
    archive = session.archive

    def _options(
        context: Context,
        search: str,
        deadline: DeadlineFilter,
        category: str | None,
        sort: SortBy,
    ) -> ViewOptions:
        return ViewOptions(
            context=context,
            search=search,
            deadline_filter=deadline,
            category=category or None,
            sort_by=sort,
        )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "online": engine.is_online}

    @app.get("/keep-alive")
    async def keep_alive() -> dict[str, str]:
        try:
            await session.keep_alive()
        except RemoteStoreError as exc:
            get_metrics().increment("keep_alive_failures")
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"status": "alive"}

    @app.get("/tasks")
    async def list_tasks(
        context: Context = "personal",
        view: Literal["active", "completed"] = "active",
        search: str = "",
        deadline: DeadlineFilter = "all",
        category: str | None = None,
        sort: SortBy = "newest",
    ) -> dict[str, Any]:
        opts = _options(context, search, deadline, category, sort)
        select = completed_tasks if view == "completed" else active_tasks
        return {
            "tasks": [_serialize(t) for t in select(engine.tasks, opts)],
            "categories": unique_categories(engine.tasks),
            "badge_count": engine.badge_count(context),
            "has_filters": has_active_filters(opts),
        }

    @app.post("/tasks", status_code=201)
    async def create_task(draft: TaskDraft) -> dict[str, Any]:
        task = engine.create(draft)
        if task is None:
            raise HTTPException(status_code=422, detail="task title must be non-empty")
        return {"task": _serialize(task)}

    @app.patch("/tasks/{task_id}")
    async def update_task(task_id: str, patch: TaskPatch) -> dict[str, Any]:
        if engine.get(task_id) is None:
            raise HTTPException(status_code=404, detail="task not found")
        task = engine.update(task_id, patch)
        return {"task": _serialize(task) if task is not None else None}

    @app.post("/tasks/{task_id}/toggle")
    async def toggle_task(task_id: str) -> dict[str, Any]:
        task = engine.toggle_complete(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="task not found")
        return {"task": _serialize(task)}

    @app.delete("/tasks/{task_id}")
    async def archive_task(task_id: str) -> dict[str, bool]:
        if not engine.soft_delete(task_id):
            raise HTTPException(status_code=404, detail="task not found")
        return {"ok": True}

    @app.post("/sync")
    async def sync() -> dict[str, Any]:
        await session.sync()
        return {"tasks": len(engine.tasks), "pending": sum(t.isPending for t in engine.tasks)}

    @app.get("/archive")
    async def list_archive(
        context: Context = "personal",
        search: str = "",
        deadline: DeadlineFilter = "all",
        category: str | None = None,
        sort: SortBy = "newest",
        refresh: bool = True,
    ) -> dict[str, Any]:
        if refresh:
            await archive.fetch_archive()
        opts = _options(context, search, deadline, category, sort)
        return {
            "tasks": [_serialize(t) for t in archive.archive_view(opts)],
            "has_filters": has_active_filters(opts),
        }

    @app.post("/archive/completed")
    async def archive_completed(context: Context = "personal") -> dict[str, Any]:
        result = archive.archive_completed(context)
        return {"archived": result.archived, "nothing_to_do": result.nothing_to_do}

    @app.post("/archive/old")
    async def archive_old(
        context: Context = "personal",
        days: int | None = Query(default=None, ge=0),
    ) -> dict[str, Any]:
        age = session.archive_age_days if days is None else days
        result = archive.archive_older_than(context, age)
        return {"archived": result.archived, "nothing_to_do": result.nothing_to_do}

    @app.post("/archive/{task_id}/restore")
    async def restore_task(task_id: str) -> dict[str, Any]:
        task = archive.restore(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="task not in archive")
        return {"task": _serialize(task)}

    @app.delete("/archive/{task_id}")
    async def purge_task(task_id: str) -> dict[str, bool]:
        if engine.get_archived(task_id) is None:
            raise HTTPException(status_code=404, detail="task not in archive")
        archive.purge(task_id)
        return {"ok": True}

    @app.get("/badge")
    async def badge(context: Context | None = None) -> dict[str, int]:
        return {"badge_count": engine.badge_count(context)}

    return app


__all__ = ["create_app"]
