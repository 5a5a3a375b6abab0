from __future__ import annotations

import datetime as _dt
import re
import uuid
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

TEMP_ID_PREFIX = "temp-"
CONTEXTS = ("personal", "work")
DEFAULT_IMPORTANCE = 2

Context = Literal["personal", "work"]

# Wire schema of the remote collection; field order matches the table
RECORD_FIELDS = (
    "id",
    "task",
    "description",
    "category",
    "importance",
    "deadline",
    "is_completed",
    "is_deleted",
    "context",
    "user_id",
    "created_at",
    "subtasks",
)

_TAG_RE = re.compile(r"#(\w+)")


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.UTC)


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def is_temp_id(task_id: Any) -> bool:
    return str(task_id).startswith(TEMP_ID_PREFIX)


def capitalize(text: str) -> str:
    if not text:
        return ""
    return text[0].upper() + text[1:]


def parse_title(text: str) -> tuple[str, str | None]:
    """Split raw title input into (capitalized title, category).

    The first ``#word`` token becomes the category and is removed from the
    title. Whitespace-only input yields an empty title.
    """
    title = (text or "").strip()
    category: str | None = None
    match = _TAG_RE.search(title)
    if match:
        category = match.group(1)
        head, tail = title[: match.start()].rstrip(), title[match.end() :].lstrip()
        title = f"{head} {tail}".strip()
    return capitalize(title), category


def apply_category(text: str, category: str) -> str:
    """Replace any ``#tag`` in draft text with ``#category``."""
    stripped = _TAG_RE.sub("", text or "").strip()
    return f"{stripped} #{category}".strip()


def _coerce_importance(value: Any) -> int:
    try:
        importance = int(value)
    except (TypeError, ValueError):
        return DEFAULT_IMPORTANCE
    return min(3, max(1, importance))


def _coerce_deadline(value: Any) -> Any:
    if value in (None, ""):
        return None
    if isinstance(value, _dt.datetime):
        return value.date()
    if isinstance(value, str) and len(value) > 10:
        # timestamp-shaped deadlines keep only their calendar date
        return value[:10]
    return value


def _coerce_subtasks(value: Any) -> list[Any]:
    if not isinstance(value, list):
        return []
    out: list[Any] = []
    for item in value:
        if isinstance(item, Subtask):
            out.append(item)
        elif isinstance(item, Mapping) and item.get("text") is not None:
            out.append(dict(item))
        elif isinstance(item, str) and item.strip():
            out.append({"text": item})
    return out


class Subtask(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str
    description: str = ""
    done: bool = False


class Task(BaseModel):
    """A task as held in the in-memory list, the cache and the remote store.

    Every construction path goes through :func:`normalize_task`, so records
    from a fetch, a realtime event or an old cache snapshot always carry the
    full set of defaults.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    task: str
    description: str = ""
    category: str | None = None
    importance: int = Field(default=DEFAULT_IMPORTANCE, ge=1, le=3)
    deadline: _dt.date | None = None
    context: Context = "personal"
    is_completed: bool = False
    is_deleted: bool = False
    user_id: str | None = None
    created_at: _dt.datetime = Field(default_factory=_utcnow)
    subtasks: list[Subtask] = Field(default_factory=list)
    # client-only: created locally, not yet accepted by the remote store
    isPending: bool = False

    @model_validator(mode="before")
    @classmethod
    def _sanitize(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        clean = dict(data)
        if clean.get("id") is not None:
            clean["id"] = str(clean["id"])
        clean["task"] = str(clean.get("task") or "")
        clean["description"] = clean.get("description") or ""
        clean["category"] = clean.get("category") or None
        clean["importance"] = _coerce_importance(clean.get("importance", DEFAULT_IMPORTANCE))
        clean["deadline"] = _coerce_deadline(clean.get("deadline"))
        if clean.get("context") not in CONTEXTS:
            clean["context"] = "personal"
        clean["is_completed"] = bool(clean.get("is_completed") or False)
        clean["is_deleted"] = bool(clean.get("is_deleted") or False)
        clean["isPending"] = bool(clean.get("isPending") or False)
        clean["subtasks"] = _coerce_subtasks(clean.get("subtasks"))
        if not clean.get("created_at"):
            clean.pop("created_at", None)
        return clean

    @field_validator("created_at")
    @classmethod
    def _aware(cls, value: _dt.datetime) -> _dt.datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=_dt.UTC)
        return value

    def with_fields(self, fields: Mapping[str, Any]) -> Task:
        """Return a re-validated copy with ``fields`` applied on top."""
        return Task.model_validate({**self.model_dump(), **fields})

    @property
    def is_temporary(self) -> bool:
        return is_temp_id(self.id)

    def to_record(self) -> dict[str, Any]:
        """Wire representation (remote schema fields only)."""
        data = self.model_dump(mode="json")
        return {name: data[name] for name in RECORD_FIELDS}

    def to_cache(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def insert_payload(self) -> dict[str, Any]:
        """Fields submitted on insert; the store assigns id and created_at."""
        data = self.to_record()
        data.pop("id")
        data.pop("created_at")
        data["task"] = capitalize(data["task"])
        data["is_deleted"] = False
        return data


def normalize_task(raw: Mapping[str, Any] | Task) -> Task:
    if isinstance(raw, Task):
        return raw.model_copy(deep=True)
    return Task.model_validate(raw)


class TaskDraft(BaseModel):
    """User input for creating a task. ``task`` is the raw title text."""

    task: str
    description: str = ""
    importance: int = Field(default=DEFAULT_IMPORTANCE, ge=1, le=3)
    deadline: _dt.date | None = None
    context: Context = "personal"
    subtasks: list[Subtask] = Field(default_factory=list)


class TaskPatch(BaseModel):
    task: str | None = None
    description: str | None = None
    category: str | None = None
    importance: int | None = Field(default=None, ge=1, le=3)
    deadline: _dt.date | None = None
    context: Context | None = None
    subtasks: list[Subtask] | None = None
    is_completed: bool | None = None

    def fields(self) -> dict[str, Any]:
        """Explicitly set fields, JSON-safe."""
        return self.model_dump(mode="json", exclude_unset=True)


__all__ = [
    "CONTEXTS",
    "RECORD_FIELDS",
    "TEMP_ID_PREFIX",
    "Context",
    "Subtask",
    "Task",
    "TaskDraft",
    "TaskPatch",
    "apply_category",
    "capitalize",
    "is_temp_id",
    "new_temp_id",
    "normalize_task",
    "parse_title",
]
