from __future__ import annotations

import os
import time
from collections.abc import Callable, Iterator
from functools import lru_cache
from pathlib import Path

import pytest

from tasksync.observability import clear_session_context, reset_metrics

ROOT = Path(__file__).resolve().parents[1]


def _wait_until(timeout_s: float, pause_s: float, check: Callable[[], bool]) -> bool:
    deadline = time.time() + timeout_s
    while time.time() < deadline:
        if check():
            return True
        time.sleep(pause_s)
    return False


def _redis_ping(url: str) -> bool:
    try:
        import redis

        r = redis.Redis.from_url(url, socket_connect_timeout=0.5)
        return bool(r.ping())
    except Exception:
        return False


@lru_cache(maxsize=1)
def _local_redis_url() -> str | None:
    for url in (os.getenv("REDIS_URL"), "redis://localhost:6379/0"):
        if url and _wait_until(1.0, 0.2, lambda u=url: _redis_ping(u)):
            return url
    return None


@pytest.fixture(scope="session")
def redis_url() -> str:
    """Reachable Redis URL: REDIS_URL when set and reachable, else localhost."""
    url = _local_redis_url()
    if url is None:
        pytest.skip("Redis not available; set REDIS_URL or start local Redis")
    return url


@pytest.fixture()
def unique_prefix() -> str:
    # millisecond prefix to avoid collisions
    return f"test:{int(time.time() * 1000)}"


@pytest.fixture(autouse=True)
def _isolated_observability(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Fresh metrics and no leaked session context between tests."""
    monkeypatch.delenv("LOG_MODULE_LEVELS", raising=False)
    reset_metrics()
    yield
    clear_session_context()
    reset_metrics()


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip tests that use ``redis_url`` up front when no Redis is reachable."""
    if _local_redis_url() is not None:
        return
    for item in items:
        if "redis_url" in set(getattr(item, "fixturenames", []) or []):
            item.add_marker(
                pytest.mark.skip(reason="Redis not available; set REDIS_URL or start local Redis")
            )
