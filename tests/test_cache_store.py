from __future__ import annotations

import json
from pathlib import Path

import pytest
import redis

from tasksync.cache.file_store import FileCacheStore
from tasksync.cache.redis_store import RedisCacheStore
from tasksync.errors import CacheError


def test_file_store_round_trip_and_missing_file(tmp_path: Path) -> None:
    store = FileCacheStore(tmp_path / "nested" / "todo_cache.json")
    assert store.load() is None

    store.save([{"id": "a", "task": "Ünïcode"}])

    assert store.load() == [{"id": "a", "task": "Ünïcode"}]
    assert [p.name for p in store.path.parent.iterdir()] == ["todo_cache.json"]


def test_file_store_overwrites_wholesale(tmp_path: Path) -> None:
    store = FileCacheStore(tmp_path / "cache.json")
    store.save([{"id": "a"}, {"id": "b"}])
    store.save([{"id": "c"}])
    assert store.load() == [{"id": "c"}]


@pytest.mark.parametrize("content", ["{not json", '{"id": "a"}', "[1, 2]"])
def test_file_store_treats_corrupt_snapshot_as_empty(tmp_path: Path, content: str) -> None:
    path = tmp_path / "cache.json"
    path.write_text(content, encoding="utf-8")
    loaded = FileCacheStore(path).load()
    assert loaded in (None, [])


def test_file_store_save_failure_raises_cache_error(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    store = FileCacheStore(blocker / "cache.json")
    with pytest.raises(CacheError):
        store.save([{"id": "a"}])


class _BrokenRedis:
    def get(self, key: str) -> bytes:
        raise redis.exceptions.ConnectionError("down")

    def set(self, key: str, value: str) -> None:
        raise redis.exceptions.ConnectionError("down")


def test_redis_cache_errors_are_wrapped() -> None:
    store = RedisCacheStore(url="redis://unused", client=_BrokenRedis())  # type: ignore[arg-type]
    assert store.load() is None
    with pytest.raises(CacheError):
        store.save([])


def test_redis_cache_round_trip(redis_url: str, unique_prefix: str) -> None:
    key = f"{unique_prefix}:todo_cache"
    store = RedisCacheStore(url=redis_url, key=key)
    assert store.load() is None

    store.save([{"id": "a", "task": "Cached"}])

    assert RedisCacheStore(url=redis_url, key=key).load() == [{"id": "a", "task": "Cached"}]
    client = redis.Redis.from_url(redis_url)
    assert json.loads(client.get(key)) == [{"id": "a", "task": "Cached"}]
    client.delete(key)
