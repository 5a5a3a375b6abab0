from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field

from tasksync.models.task import Context, Task

from .engine import SyncEngine
from .views import ViewOptions, archive_view, local_today

DEFAULT_ARCHIVE_AGE_DAYS = 28


@dataclass(slots=True)
class ArchiveResult:
    archived: list[str] = field(default_factory=list)

    @property
    def nothing_to_do(self) -> bool:
        return not self.archived


class ArchiveManager:
    """Batch lifecycle transitions: active -> archived -> purged.

    Callers confirm with the user before invoking any of these.
    """

    def __init__(self, engine: SyncEngine) -> None:
        self._engine = engine

    def archive_completed(self, context: Context) -> ArchiveResult:
        ids = [t.id for t in self._engine.tasks if t.is_completed and t.context == context]
        if not ids:
            return ArchiveResult()
        return ArchiveResult(self._engine.archive_many(ids))

    def archive_older_than(
        self,
        context: Context,
        age_days: int = DEFAULT_ARCHIVE_AGE_DAYS,
        *,
        now: _dt.datetime | None = None,
    ) -> ArchiveResult:
        """Archive tasks created on a calendar day before ``today - age_days``."""
        now = now or _dt.datetime.now().astimezone()
        cutoff = local_today(now) - _dt.timedelta(days=age_days)
        tz = now.tzinfo
        ids = [
            t.id
            for t in self._engine.tasks
            if t.context == context and t.created_at.astimezone(tz).date() < cutoff
        ]
        if not ids:
            return ArchiveResult()
        return ArchiveResult(self._engine.archive_many(ids))

    async def fetch_archive(self) -> list[Task]:
        return await self._engine.fetch_archive()

    def archive_view(self, options: ViewOptions) -> list[Task]:
        return archive_view(self._engine.archived, options)

    def restore(self, task: Task | str) -> Task | None:
        return self._engine.restore(task)

    def purge(self, task_id: str) -> bool:
        return self._engine.purge(task_id)


__all__ = ["ArchiveManager", "ArchiveResult", "DEFAULT_ARCHIVE_AGE_DAYS"]
