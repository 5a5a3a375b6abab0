from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable

from tasksync.observability import get_json_logger, get_metrics

ConnectivityCallback = Callable[[bool], Awaitable[None] | None]


class ConnectivityMonitor:
    """Online/offline gate for remote operations.

    Transitions come either from the host (``set_online``) or from an
    optional probe loop that periodically runs a reachability check.
    Callbacks fire only when the state actually changes.
    """

    def __init__(self, *, online: bool = True) -> None:
        self._online = online
        self._callbacks: list[ConnectivityCallback] = []
        self._probe_task: asyncio.Task[None] | None = None

    @property
    def is_online(self) -> bool:
        return self._online

    def on_change(self, callback: ConnectivityCallback) -> None:
        self._callbacks.append(callback)

    async def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger = get_json_logger("tasksync.connectivity")
        logger.info(
            "connectivity changed",
            extra={"event": "connectivity_online" if online else "connectivity_offline"},
        )
        get_metrics().increment("connectivity_transitions", {"online": str(online).lower()})
        for callback in list(self._callbacks):
            try:
                result = callback(online)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "connectivity callback failed",
                    extra={"event": "connectivity_callback_failed"},
                )

    def start_probe(self, check: Callable[[], Awaitable[bool]], interval: float) -> None:
        if self._probe_task is not None and not self._probe_task.done():
            return
        self._probe_task = asyncio.get_running_loop().create_task(
            self._probe_loop(check, interval), name="connectivity-probe"
        )

    async def _probe_loop(self, check: Callable[[], Awaitable[bool]], interval: float) -> None:
        while True:
            try:
                ok = bool(await check())
            except Exception as exc:  # noqa: BLE001
                get_json_logger("tasksync.connectivity").debug(
                    "probe failed", extra={"event": "probe_failed", "error": str(exc)[:200]}
                )
                ok = False
            await self.set_online(ok)
            await asyncio.sleep(interval)

    async def stop(self) -> None:
        task, self._probe_task = self._probe_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


__all__ = ["ConnectivityMonitor", "ConnectivityCallback"]
