from .task import (
    Subtask,
    Task,
    TaskDraft,
    TaskPatch,
    normalize_task,
)

__all__ = ["Subtask", "Task", "TaskDraft", "TaskPatch", "normalize_task"]
