from __future__ import annotations

from typing import Any, Protocol


class CacheStore(Protocol):
    """Single durable slot holding the serialized task list.

    The slot is overwritten wholesale on every save and read once at startup.
    """

    def load(self) -> list[dict[str, Any]] | None:
        """Return the last snapshot, or None if absent or unreadable."""

    def save(self, records: list[dict[str, Any]]) -> None:
        """Replace the snapshot atomically. Raises CacheError on failure."""


__all__ = ["CacheStore"]
