from __future__ import annotations

import datetime as _dt
from collections.abc import Iterable
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Literal

from tasksync.models.task import Context, Task

SortBy = Literal["newest", "deadline", "importance"]
DeadlineFilter = Literal["all", "scheduled", "anytime"]
Proximity = Literal["overdue", "soon", "later"]

# Deadlines this many days out or closer count as "soon"
SOON_DAYS = 5


@dataclass(slots=True)
class ViewOptions:
    context: Context = "personal"
    search: str = ""
    deadline_filter: DeadlineFilter = "all"
    category: str | None = None
    sort_by: SortBy = "newest"


def local_today(now: _dt.datetime | None = None) -> _dt.date:
    """Calendar date of ``now`` in local time (or in ``now``'s own zone)."""
    if now is None:
        return _dt.datetime.now().astimezone().date()
    return now.date()


def deadline_proximity(
    deadline: _dt.date | None, today: _dt.date | None = None
) -> Proximity | None:
    if deadline is None:
        return None
    days = (deadline - (today or local_today())).days
    if days < 0:
        return "overdue"
    if days <= SOON_DAYS:
        return "soon"
    return "later"


def _cmp(a: int | float, b: int | float) -> int:
    return (a > b) - (a < b)


def _compare_deadline(a: Task, b: Task) -> int:
    if a.deadline and not b.deadline:
        return -1
    if not a.deadline and b.deadline:
        return 1
    if a.deadline and b.deadline and a.deadline != b.deadline:
        return _cmp(a.deadline.toordinal(), b.deadline.toordinal())
    return b.importance - a.importance


def _compare_importance(a: Task, b: Task) -> int:
    if b.importance != a.importance:
        return b.importance - a.importance
    if a.deadline and b.deadline:
        return _cmp(a.deadline.toordinal(), b.deadline.toordinal())
    return _compare_newest(a, b)


def _compare_newest(a: Task, b: Task) -> int:
    return _cmp(b.created_at.timestamp(), a.created_at.timestamp())


_COMPARATORS = {
    "deadline": _compare_deadline,
    "importance": _compare_importance,
    "newest": _compare_newest,
}


def apply_filters_and_sort(tasks: Iterable[Task], options: ViewOptions) -> list[Task]:
    """Search, deadline-presence and category filters, then the chosen sort."""
    items = list(tasks)
    query = options.search.strip().lower()
    if query:
        items = [t for t in items if query in t.task.lower()]
    if options.deadline_filter == "scheduled":
        items = [t for t in items if t.deadline]
    elif options.deadline_filter == "anytime":
        items = [t for t in items if not t.deadline]
    if options.category:
        items = [t for t in items if t.category == options.category]
    compare = _COMPARATORS.get(options.sort_by, _compare_newest)
    return sorted(items, key=cmp_to_key(compare))


def active_tasks(tasks: Iterable[Task], options: ViewOptions) -> list[Task]:
    return apply_filters_and_sort(
        (
            t
            for t in tasks
            if not t.is_deleted and not t.is_completed and t.context == options.context
        ),
        options,
    )


def completed_tasks(tasks: Iterable[Task], options: ViewOptions) -> list[Task]:
    return apply_filters_and_sort(
        (t for t in tasks if not t.is_deleted and t.is_completed and t.context == options.context),
        options,
    )


def archive_view(archived: Iterable[Task], options: ViewOptions) -> list[Task]:
    return apply_filters_and_sort(
        (t for t in archived if t.is_deleted and t.context == options.context), options
    )


def has_active_filters(options: ViewOptions) -> bool:
    return (
        options.sort_by != "newest"
        or options.deadline_filter != "all"
        or options.category is not None
        or bool(options.search)
    )


def unique_categories(tasks: Iterable[Task]) -> list[str]:
    return sorted({t.category for t in tasks if t.category})


def is_urgent(task: Task) -> bool:
    """Counts toward the badge: open, not archived, and dated or top importance."""
    return (
        not task.is_completed
        and not task.is_deleted
        and (task.deadline is not None or task.importance == 3)
    )


__all__ = [
    "SOON_DAYS",
    "DeadlineFilter",
    "Proximity",
    "SortBy",
    "ViewOptions",
    "active_tasks",
    "apply_filters_and_sort",
    "archive_view",
    "completed_tasks",
    "deadline_proximity",
    "has_active_filters",
    "is_urgent",
    "local_today",
    "unique_categories",
]
