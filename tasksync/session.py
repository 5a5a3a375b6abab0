from __future__ import annotations

import uuid
from types import TracebackType
from typing import Any

from tasksync.cache.file_store import FileCacheStore
from tasksync.cache.interface import CacheStore
from tasksync.cache.redis_store import RedisCacheStore
from tasksync.config import SyncConfig
from tasksync.errors import ConfigError
from tasksync.feed.interface import ChangeFeed
from tasksync.feed.redis_feed import RedisChangeFeed
from tasksync.observability import (
    clear_session_context,
    get_json_logger,
    set_session_context,
)
from tasksync.remote.interface import RemoteTaskStore
from tasksync.remote.redis_store import RedisTaskStore
from tasksync.remote.rest_store import RestTaskStore
from tasksync.sync.archive import DEFAULT_ARCHIVE_AGE_DAYS, ArchiveManager
from tasksync.sync.connectivity import ConnectivityMonitor
from tasksync.sync.engine import SyncEngine
from tasksync.sync.realtime import RealtimeListener


class Session:
    """Application state for one signed-in session.

    Owns the engine and every collaborator wired to it. ``start`` paints
    from the cache, subscribes to realtime changes, then reconciles with the
    remote store; ``close`` tears everything down in reverse.
    """

    def __init__(
        self,
        *,
        remote: RemoteTaskStore,
        cache: CacheStore,
        feed: ChangeFeed | None = None,
        connectivity: ConnectivityMonitor | None = None,
        owner: str | None = None,
        remote_timeout: float | None = None,
        archive_age_days: int = DEFAULT_ARCHIVE_AGE_DAYS,
        probe_interval: float | None = None,
        session_id: str | None = None,
    ) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self.owner = owner
        self.archive_age_days = archive_age_days
        self.remote = remote
        self.feed = feed
        self.connectivity = connectivity or ConnectivityMonitor()
        self.engine = SyncEngine(
            remote=remote,
            cache=cache,
            connectivity=self.connectivity,
            owner=owner,
            remote_timeout=remote_timeout,
        )
        self.archive = ArchiveManager(self.engine)
        self.listener = (
            RealtimeListener(feed, self.engine, owner=owner) if feed is not None else None
        )
        self._probe_interval = probe_interval
        self._started = False
        self.connectivity.on_change(self._on_connectivity)

    @classmethod
    def from_config(cls, config: SyncConfig, **kwargs: Any) -> Session:
        cache: CacheStore
        if config.cache == "redis":
            cache = RedisCacheStore(url=config.redis_url, key=config.cache_key)
        else:
            cache = FileCacheStore(config.cache_path)

        feed: RedisChangeFeed | None = None
        remote: RemoteTaskStore
        if config.backend == "rest":
            if not (config.rest_url and config.rest_key):
                raise ConfigError("rest backend requires SUPABASE_URL and SUPABASE_KEY")
            remote = RestTaskStore(
                config.rest_url,
                config.rest_key,
                table=config.table,
                timeout=config.remote_timeout,
            )
        else:
            feed = RedisChangeFeed(config.redis_url, key_prefix=config.key_prefix)
            remote = RedisTaskStore(url=config.redis_url, key_prefix=config.key_prefix, feed=feed)

        kwargs.setdefault("probe_interval", config.probe_interval)
        return cls(
            remote=remote,
            cache=cache,
            feed=feed,
            owner=config.user_id,
            remote_timeout=config.remote_timeout,
            archive_age_days=config.archive_age_days,
            **kwargs,
        )

    async def _on_connectivity(self, online: bool) -> None:
        if online:
            await self.engine.flush_pending()
            await self.engine.fetch_remote()

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        set_session_context(self.session_id, self.owner)
        get_json_logger("tasksync").info("session started", extra={"event": "session_started"})
        self.engine.load_from_cache()
        if self.listener is not None:
            await self.listener.start()
        await self.engine.fetch_remote()
        await self.engine.flush_pending()
        if self._probe_interval:
            self.connectivity.start_probe(self.remote.ping, self._probe_interval)

    async def close(self) -> None:
        await self.connectivity.stop()
        if self.listener is not None:
            await self.listener.stop()
        await self.engine.drain()
        await self.remote.aclose()
        aclose = getattr(self.feed, "aclose", None)
        if aclose is not None:
            await aclose()
        self._started = False
        get_json_logger("tasksync").info("session closed", extra={"event": "session_closed"})
        clear_session_context()

    async def keep_alive(self) -> bool:
        """Touch the remote store so hosted backends count the project as active."""
        return await self.remote.ping()

    async def sync(self) -> None:
        await self.engine.flush_pending()
        await self.engine.fetch_remote()

    async def __aenter__(self) -> Session:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


__all__ = ["Session"]
