from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Literal

from tasksync.errors import ConfigError

Backend = Literal["redis", "rest"]
CacheKind = Literal["file", "redis"]


@dataclass(slots=True)
class SyncConfig:
    backend: Backend
    redis_url: str
    key_prefix: str
    rest_url: str | None
    rest_key: str | None
    table: str
    user_id: str | None
    cache: CacheKind
    cache_path: str
    cache_key: str
    archive_age_days: int
    remote_timeout: float | None
    probe_interval: float


def _int(raw: str | None, default: int, *, minimum: int = 0) -> int:
    value = (raw or "").strip()
    try:
        parsed = int(value) if value else default
    except ValueError:
        parsed = default
    return max(minimum, parsed)


def _float(raw: str | None, default: float) -> float:
    value = (raw or "").strip()
    try:
        return float(value) if value else default
    except ValueError:
        return default


def load_config(env: dict[str, str] | None = None) -> SyncConfig:
    e: dict[str, Any] = dict(os.environ)
    if env:
        e.update(env)

    backend = (e.get("TASKSYNC_BACKEND") or "redis").strip().lower()
    if backend not in ("redis", "rest"):
        raise ConfigError(f"unknown TASKSYNC_BACKEND: {backend!r}")
    cache = (e.get("TASKSYNC_CACHE") or "file").strip().lower()
    if cache not in ("file", "redis"):
        raise ConfigError(f"unknown TASKSYNC_CACHE: {cache!r}")

    rest_url = (e.get("SUPABASE_URL") or "").strip() or None
    rest_key = (e.get("SUPABASE_KEY") or "").strip() or None
    if backend == "rest" and not (rest_url and rest_key):
        raise ConfigError("rest backend requires SUPABASE_URL and SUPABASE_KEY")

    # 0 disables the per-call timeout
    timeout = _float(e.get("TASKSYNC_REMOTE_TIMEOUT"), 10.0)

    return SyncConfig(
        backend=backend,  # type: ignore[arg-type]
        redis_url=e.get("REDIS_URL") or "redis://localhost:6379/0",
        key_prefix=(e.get("TASKSYNC_KEY_PREFIX") or "tasksync").rstrip(":"),
        rest_url=rest_url,
        rest_key=rest_key,
        table=e.get("TASKSYNC_TABLE") or "todos",
        user_id=(e.get("TASKSYNC_USER_ID") or "").strip() or None,
        cache=cache,  # type: ignore[arg-type]
        cache_path=os.path.expanduser(
            e.get("TASKSYNC_CACHE_PATH") or "~/.tasksync/todo_cache.json"
        ),
        cache_key=e.get("TASKSYNC_CACHE_KEY") or "todo_cache",
        archive_age_days=_int(e.get("TASKSYNC_ARCHIVE_AGE_DAYS"), 28),
        remote_timeout=timeout if timeout > 0 else None,
        probe_interval=max(1.0, _float(e.get("TASKSYNC_PROBE_INTERVAL"), 30.0)),
    )


__all__ = ["SyncConfig", "load_config"]
