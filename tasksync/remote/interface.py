from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol


class RemoteTaskStore(Protocol):
    """Remote task collection with server-assigned ids and a soft-delete flag.

    Rows are plain wire dicts (see ``tasksync.models.task.RECORD_FIELDS``);
    callers normalize them. Every failure is raised as ``RemoteStoreError``.
    """

    async def list_tasks(self, owner: str | None, *, deleted: bool) -> list[dict[str, Any]]:
        """Rows with the given ``is_deleted`` value, newest ``created_at`` first."""

    async def insert_task(self, record: dict[str, Any]) -> dict[str, Any]:
        """Insert one row and return it with ``id``, ``created_at`` and defaults filled."""

    async def update_tasks(self, ids: Sequence[str], fields: dict[str, Any]) -> None:
        """Apply the same field values to every row in ``ids``."""

    async def delete_task(self, task_id: str) -> None:
        """Hard delete. Deleting a missing row is not an error."""

    async def ping(self) -> bool:
        """Cheap read proving the store is reachable."""

    async def aclose(self) -> None: ...


__all__ = ["RemoteTaskStore"]
