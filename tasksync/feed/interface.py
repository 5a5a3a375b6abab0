from __future__ import annotations

import uuid
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

EventType = Literal["INSERT", "UPDATE", "DELETE"]


class ChangeEvent(BaseModel):
    """One row-level change on the remote task collection.

    ``new`` carries the row after INSERT/UPDATE, ``old`` the row (or at least
    its id) before UPDATE/DELETE. ``cursor`` is the transport position the
    event was read at and is never published.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    eventType: EventType
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None
    cursor: str | None = Field(default=None, exclude=True)

    @property
    def row_id(self) -> str | None:
        for rec in (self.new, self.old):
            if rec and rec.get("id") is not None:
                return str(rec["id"])
        return None


class ChangeFeed(Protocol):
    """Per-owner stream of change events."""

    async def publish(self, owner: str | None, event: ChangeEvent) -> str:
        """Append one event to the owner's stream. Returns the transport cursor."""

    async def latest_cursor(self, owner: str | None) -> str:
        """Cursor of the newest event; reading after it yields only future events."""

    async def read(
        self,
        owner: str | None,
        cursor: str,
        *,
        limit: int = 100,
        block_ms: int = 1000,
    ) -> tuple[list[ChangeEvent], str]:
        """Wait up to block_ms for events strictly after cursor, in delivery order.

        Returns the events and the cursor to resume from, which moves past
        entries that could not be decoded.
        """


__all__ = ["ChangeEvent", "ChangeFeed", "EventType"]
