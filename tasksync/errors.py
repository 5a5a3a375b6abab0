from __future__ import annotations


class TaskSyncError(Exception):
    pass


class ConfigError(TaskSyncError):
    """Missing or unusable backend configuration. Fatal at startup."""


class CacheError(TaskSyncError):
    """The durable snapshot could not be written."""


class RemoteStoreError(TaskSyncError):
    """A remote store or change feed call failed.

    ``transient`` is True for connection-level failures (timeouts, refused
    connections, 5xx responses) that a later sync cycle may succeed on.
    """

    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


__all__ = ["TaskSyncError", "CacheError", "ConfigError", "RemoteStoreError"]
