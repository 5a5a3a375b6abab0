from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx

from tasksync.errors import RemoteStoreError


class RestTaskStore:
    """PostgREST-style HTTP backend (Supabase ``/rest/v1``).

    Owner scoping uses ``user_id=eq.<owner>`` when an owner is known;
    without one, row-level security on the server decides visibility.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        table: str = "todos",
        timeout: float | None = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._table = table
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/rest/v1",
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    @property
    def _path(self) -> str:
        return f"/{self._table}"

    async def _request(self, method: str, **kwargs: Any) -> httpx.Response:
        try:
            r = await self._client.request(method, self._path, **kwargs)
        except httpx.HTTPError as e:
            raise RemoteStoreError(f"{method} {self._table} failed: {e}") from e
        if r.is_error:
            transient = r.status_code >= 500 or r.status_code == 429
            raise RemoteStoreError(
                f"{method} {self._table} failed: {r.status_code} {r.text[:200]}",
                transient=transient,
            )
        return r

    async def list_tasks(self, owner: str | None, *, deleted: bool) -> list[dict[str, Any]]:
        params = {
            "select": "*",
            "is_deleted": f"eq.{str(deleted).lower()}",
            "order": "created_at.desc",
        }
        if owner:
            params["user_id"] = f"eq.{owner}"
        r = await self._request("GET", params=params)
        data = r.json()
        return [row for row in data if isinstance(row, dict)] if isinstance(data, list) else []

    async def insert_task(self, record: dict[str, Any]) -> dict[str, Any]:
        r = await self._request(
            "POST", json=[record], headers={"Prefer": "return=representation"}
        )
        data = r.json()
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            raise RemoteStoreError("insert returned no row", transient=False)
        return data[0]

    async def update_tasks(self, ids: Sequence[str], fields: dict[str, Any]) -> None:
        if not ids:
            return
        await self._request(
            "PATCH", params={"id": f"in.({','.join(ids)})"}, json=fields
        )

    async def delete_task(self, task_id: str) -> None:
        await self._request("DELETE", params={"id": f"eq.{task_id}"})

    async def ping(self) -> bool:
        await self._request("GET", params={"select": "id", "limit": "1"})
        return True

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["RestTaskStore"]
