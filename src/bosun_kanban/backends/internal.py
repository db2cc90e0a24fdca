"""File-backed task store for single-host setups and tests.

Tasks live in one YAML file (``kanban-tasks.yaml``) inside the state
directory. Every read and write goes through :meth:`InternalTaskStore.transaction`,
which holds an exclusive file lock and writes back atomically on exit.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import yaml
from loguru import logger

from ..config import KanbanSettings
from ..constants import INTERNAL_STORE_FILE, INTERNAL_STORE_LOCK
from ..errors import InvalidIdentifierError, NotFoundError, PermanentBackendError
from ..io_utils import FileLock
from ..models import (
    BackendName,
    Project,
    SharedState,
    Task,
    TaskDraft,
    TaskFilter,
    TaskPatch,
    TaskStatus,
    normalise_status,
    normalize_labels,
    normalize_priority,
)
from ..shared_state import ignored_state
from ..utils import _now_iso
from .base import TaskBackend

STORE_VERSION = 1
INTERNAL_PROJECT_ID = "internal"


def _load_raw(path: Path) -> list[dict[str, Any]]:
    """Load the raw task list from *path*, returning ``[]`` if missing."""
    if not path.exists():
        return []
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise PermanentBackendError(f"internal: {path.name} is not valid YAML: {exc}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("tasks"), list):
        return []
    return [t for t in data["tasks"] if isinstance(t, dict)]


def _save_raw(path: Path, tasks: list[dict[str, Any]]) -> None:
    """Atomically write *tasks* to *path* (write-tmp-then-rename)."""
    payload = {"version": STORE_VERSION, "tasks": tasks}
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(f"{path.suffix}.{os.getpid()}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(payload, handle, sort_keys=False)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def validate_task_id(task_id: Any) -> str:
    value = str(task_id or "").strip()
    if not value or any(ch.isspace() for ch in value):
        raise InvalidIdentifierError(f"internal: invalid task id {task_id!r}")
    return value


class _TaskTx:
    """In-memory view of the store; flushed when the transaction exits."""

    def __init__(self, tasks: list[Task]) -> None:
        self.tasks = tasks
        self.dirty = False
        self._index: dict[str, int] = {t.id: i for i, t in enumerate(tasks)}

    def get(self, task_id: str) -> Optional[Task]:
        idx = self._index.get(task_id)
        return self.tasks[idx] if idx is not None else None

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise NotFoundError(f"internal: task {task_id} not found")
        return task

    def add(self, task: Task) -> Task:
        if task.id in self._index:
            raise ValueError(f"Task {task.id} already exists")
        self._index[task.id] = len(self.tasks)
        self.tasks.append(task)
        self.dirty = True
        return task

    def remove(self, task_id: str) -> bool:
        idx = self._index.get(task_id)
        if idx is None:
            return False
        del self.tasks[idx]
        self._index = {t.id: i for i, t in enumerate(self.tasks)}
        self.dirty = True
        return True

    def touch(self, task: Task) -> Task:
        task.meta["updated_at"] = _now_iso()
        self.dirty = True
        return task


class InternalTaskStore:
    """Thread- and process-safe YAML store for :class:`Task` objects."""

    def __init__(self, state_dir: Path) -> None:
        self._store_path = state_dir / INTERNAL_STORE_FILE
        self._lock_path = state_dir / INTERNAL_STORE_LOCK

    @property
    def path(self) -> Path:
        return self._store_path

    @contextmanager
    def transaction(self) -> Iterator[_TaskTx]:
        # One lock object per transaction; FileLock keeps its handle on self.
        with FileLock(self._lock_path):
            tx = _TaskTx([Task.from_dict(d) for d in _load_raw(self._store_path)])
            yield tx
            if tx.dirty:
                _save_raw(self._store_path, [t.to_dict() for t in tx.tasks])

    def read_snapshot(self) -> list[Task]:
        with FileLock(self._lock_path):
            return [Task.from_dict(d) for d in _load_raw(self._store_path)]

    def find(self, task_id: str) -> Optional[Task]:
        return next((task for task in self.read_snapshot() if task.id == task_id), None)


class InternalStoreBackend(TaskBackend):
    """Task backend over :class:`InternalTaskStore`.

    File locking and YAML parsing block, so every operation runs in a worker
    thread via :func:`asyncio.to_thread`.
    """

    name = BackendName.INTERNAL.value
    supports_shared_state = True

    def __init__(self, state_dir: Path) -> None:
        self.store = InternalTaskStore(state_dir)

    @classmethod
    def from_settings(cls, settings: KanbanSettings) -> "InternalStoreBackend":
        return cls(settings.state_dir)

    async def list_tasks(self, scope: Optional[str] = None, filters: Optional[TaskFilter] = None) -> list[Task]:
        filters = filters or TaskFilter()
        tasks = await asyncio.to_thread(self.store.read_snapshot)
        if filters.status is None:
            tasks = [t for t in tasks if t.status not in (TaskStatus.DONE, TaskStatus.IGNORED)]
        return filters.apply(tasks)

    async def get_task(self, task_id: str) -> Task:
        task_id = validate_task_id(task_id)
        task = await asyncio.to_thread(self.store.find, task_id)
        if task is None:
            raise NotFoundError(f"internal: task {task_id} not found")
        return task

    async def create_task(self, scope: Optional[str], draft: TaskDraft) -> Task:
        title = (draft.title or "").strip()
        if not title:
            raise InvalidIdentifierError("internal: task title must not be empty")
        now = _now_iso()
        task = Task(
            id=f"task-{uuid.uuid4().hex[:8]}",
            title=title,
            description=draft.description or "",
            status=normalise_status(draft.status),
            labels=normalize_labels(draft.labels),
            assignee=draft.assignee,
            backend=BackendName.INTERNAL,
            project_id=scope or INTERNAL_PROJECT_ID,
            priority=normalize_priority(draft.priority),
            meta={"created_at": now, "updated_at": now, "comments": []},
        )

        def _add() -> None:
            with self.store.transaction() as tx:
                tx.add(task)

        await asyncio.to_thread(_add)
        logger.info("Created internal task {}", task.id)
        return task

    def _update_sync(self, task_id: str, patch: TaskPatch) -> Task:
        with self.store.transaction() as tx:
            task = tx.require(task_id)
            if patch.title is not None:
                task.title = patch.title
            if patch.description is not None:
                task.description = patch.description
            if patch.labels is not None:
                task.labels = normalize_labels(patch.labels)
            if patch.assignee is not None:
                task.assignee = patch.assignee or None
            if patch.priority is not None:
                task.priority = normalize_priority(patch.priority)
            if patch.branch_name is not None:
                task.branch_name = patch.branch_name or None
            if patch.pr_number is not None:
                task.pr_number = patch.pr_number or None
            if patch.status is not None:
                task.status = normalise_status(patch.status)
            return tx.touch(task)

    async def update_task(self, task_id: str, patch: TaskPatch) -> Task:
        return await asyncio.to_thread(self._update_sync, validate_task_id(task_id), patch)

    def _update_status_sync(self, task_id: str, status: TaskStatus, shared_state: Optional[SharedState]) -> Task:
        with self.store.transaction() as tx:
            task = tx.require(task_id)
            task.status = normalise_status(status)
            if shared_state is not None:
                task.shared_state = shared_state
            return tx.touch(task)

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        shared_state: Optional[SharedState] = None,
    ) -> Task:
        return await asyncio.to_thread(self._update_status_sync, validate_task_id(task_id), status, shared_state)

    def _delete_sync(self, task_id: str) -> bool:
        with self.store.transaction() as tx:
            return tx.remove(task_id)

    async def delete_task(self, task_id: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, validate_task_id(task_id))

    def _comment_sync(self, task_id: str, body: str) -> bool:
        with self.store.transaction() as tx:
            task = tx.require(task_id)
            comments = task.meta.setdefault("comments", [])
            comments.append({"body": body, "created_at": _now_iso()})
            tx.touch(task)
        return True

    async def add_comment(self, task_id: str, body: str) -> bool:
        task_id = validate_task_id(task_id)
        if not str(body or "").strip():
            raise InvalidIdentifierError(f"internal: comment body for {task_id} must not be empty")
        return await asyncio.to_thread(self._comment_sync, task_id, str(body))

    async def list_projects(self) -> list[Project]:
        return [Project(id=INTERNAL_PROJECT_ID, name="Internal task store", backend=BackendName.INTERNAL)]

    def _persist_sync(self, task_id: str, state: SharedState) -> bool:
        with self.store.transaction() as tx:
            task = tx.get(task_id)
            if task is None:
                logger.warning("Cannot persist lease for missing task {}", task_id)
                return False
            task.shared_state = state
            tx.touch(task)
        return True

    async def persist_shared_state(self, task_id: str, state: SharedState) -> bool:
        return await asyncio.to_thread(self._persist_sync, validate_task_id(task_id), state)

    async def read_shared_state(self, task_id: str) -> Optional[SharedState]:
        task = await asyncio.to_thread(self.store.find, validate_task_id(task_id))
        return task.shared_state if task is not None else None

    def _ignore_sync(self, task_id: str, reason: str) -> bool:
        with self.store.transaction() as tx:
            task = tx.get(task_id)
            if task is None:
                logger.warning("Cannot ignore missing task {}", task_id)
                return False
            task.shared_state = ignored_state(reason, task.shared_state)
            task.status = TaskStatus.IGNORED
            task.meta.setdefault("comments", []).append(
                {"body": f"Marked as ignored: {reason}", "created_at": _now_iso()}
            )
            tx.touch(task)
        return True

    async def mark_task_ignored(self, task_id: str, reason: str) -> bool:
        return await asyncio.to_thread(self._ignore_sync, validate_task_id(task_id), reason)
