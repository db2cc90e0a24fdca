"""Provide the public `bosun_kanban` package exports."""

from __future__ import annotations

from .adapter import KanbanAdapter
from .config import KanbanSettings, load_settings
from .coordination import CoordinationState
from .errors import (
    BackoffActiveError,
    InvalidIdentifierError,
    KanbanError,
    NotFoundError,
    PermanentBackendError,
    RateLimitedError,
    TransientBackendError,
)
from .lease import ClaimResult, LeaseManager
from .models import LeaseStatus, SharedState, Task, TaskDraft, TaskFilter, TaskPatch, TaskStatus

__all__ = [
    "BackoffActiveError",
    "ClaimResult",
    "CoordinationState",
    "InvalidIdentifierError",
    "KanbanAdapter",
    "KanbanError",
    "KanbanSettings",
    "LeaseManager",
    "LeaseStatus",
    "NotFoundError",
    "PermanentBackendError",
    "RateLimitedError",
    "SharedState",
    "Task",
    "TaskDraft",
    "TaskFilter",
    "TaskPatch",
    "TaskStatus",
    "TransientBackendError",
    "load_settings",
]
