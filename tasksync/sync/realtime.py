from __future__ import annotations

import asyncio

from tasksync.errors import RemoteStoreError
from tasksync.feed.interface import ChangeFeed
from tasksync.observability import get_json_logger, get_metrics

from .engine import SyncEngine


class RealtimeListener:
    """One change-feed subscription per session, forwarding events in order.

    The listener starts reading after the newest event present when
    ``start`` runs, so it only sees changes made from that point on.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        engine: SyncEngine,
        *,
        owner: str | None = None,
        block_ms: int = 1000,
        retry_delay: float = 1.0,
    ) -> None:
        self._feed = feed
        self._engine = engine
        self._owner = owner
        self._block_ms = block_ms
        self._retry_delay = retry_delay
        self._cursor: str | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cursor(self) -> str | None:
        return self._cursor

    async def start(self) -> None:
        if self.running:
            return
        if self._cursor is None:
            try:
                self._cursor = await self._feed.latest_cursor(self._owner)
            except RemoteStoreError as e:
                get_json_logger("tasksync.realtime").warning(
                    "subscribe failed",
                    extra={"event": "realtime_subscribe_failed", "error": str(e)[:200]},
                )
                self._cursor = "$"
        self._task = asyncio.get_running_loop().create_task(self._run(), name="realtime")
        get_json_logger("tasksync.realtime").info(
            "realtime subscribed", extra={"event": "realtime_subscribed", "owner": self._owner}
        )

    async def _run(self) -> None:
        logger = get_json_logger("tasksync.realtime")
        while True:
            try:
                events, cursor = await self._feed.read(
                    self._owner, self._cursor or "$", block_ms=self._block_ms
                )
            except RemoteStoreError as e:
                logger.warning(
                    "realtime read failed",
                    extra={"event": "realtime_read_failed", "error": str(e)[:200]},
                )
                get_metrics().increment("realtime_read_failures")
                await asyncio.sleep(self._retry_delay)
                continue
            for event in events:
                try:
                    self._engine.apply_event(event)
                except Exception:
                    logger.exception(
                        "realtime event failed",
                        extra={
                            "event": "realtime_apply_failed",
                            "metadata": {"type": event.eventType, "cursor": event.cursor},
                        },
                    )
                    get_metrics().increment("realtime_apply_failures")
            self._cursor = cursor
            if not events:
                # let other tasks run even when the feed returns immediately
                await asyncio.sleep(0)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


__all__ = ["RealtimeListener"]
