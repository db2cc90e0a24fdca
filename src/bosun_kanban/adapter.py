"""Single entry point the scheduling loop uses to reach whichever backend is configured."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from .backends import GitHubIssueBackend, InternalStoreBackend, JiraBackend, TaskBackend
from .config import VALID_BACKENDS, KanbanSettings, load_settings
from .coordination import CoordinationState
from .models import Project, SharedState, Task, TaskDraft, TaskFilter, TaskPatch, TaskStatus

BackendFactory = Callable[[KanbanSettings, CoordinationState], TaskBackend]

_DEFAULT_FACTORIES: dict[str, BackendFactory] = {
    "internal": lambda settings, _coordination: InternalStoreBackend.from_settings(settings),
    "github": lambda settings, coordination: GitHubIssueBackend.from_settings(settings, coordination),
    "jira": lambda settings, coordination: JiraBackend.from_settings(settings, coordination),
}


class KanbanAdapter:
    """Delegates every task operation to the active backend.

    Backends are built lazily and cached, so switching with
    :meth:`set_backend` and back reuses the same instance (and its caches).
    All backends share one :class:`CoordinationState`.
    """

    def __init__(
        self,
        settings: Optional[KanbanSettings] = None,
        *,
        backend: Optional[str] = None,
        coordination: Optional[CoordinationState] = None,
        factories: Optional[dict[str, BackendFactory]] = None,
        project_dir: Optional[Path] = None,
    ):
        self.settings = settings or load_settings(project_dir)
        self.coordination = coordination or CoordinationState.from_settings(self.settings)
        self.coordination.reload()
        self._factories = dict(_DEFAULT_FACTORIES)
        self._factories.update(factories or {})
        self._backends: dict[str, TaskBackend] = {}
        self._backend_name = self._validate(backend or self.settings.backend)

    def _validate(self, name: str) -> str:
        key = str(name or "").strip().lower()
        if key not in self._factories:
            raise ValueError(f"Unknown kanban backend '{name}'. Available: {', '.join(self.available_backends())}")
        return key

    @property
    def backend_name(self) -> str:
        return self._backend_name

    @property
    def backend(self) -> TaskBackend:
        instance = self._backends.get(self._backend_name)
        if instance is None:
            instance = self._factories[self._backend_name](self.settings, self.coordination)
            self._backends[self._backend_name] = instance
        return instance

    def set_backend(self, name: str) -> None:
        self._backend_name = self._validate(name)
        logger.info("Kanban backend switched to {}", self._backend_name)

    def available_backends(self) -> list[str]:
        ordered = [name for name in VALID_BACKENDS if name in self._factories]
        return ordered + sorted(name for name in self._factories if name not in ordered)

    def reload_coordination(self) -> None:
        """Merge backoff and invalid-owner state written by sibling processes."""
        self.coordination.reload()

    async def aclose(self) -> None:
        for instance in self._backends.values():
            await instance.aclose()
        self._backends.clear()

    # -- task operations ----------------------------------------------------

    async def list_projects(self) -> list[Project]:
        return await self.backend.list_projects()

    async def list_tasks(self, scope: Optional[str] = None, filters: Optional[TaskFilter] = None) -> list[Task]:
        return await self.backend.list_tasks(scope, filters)

    async def get_task(self, task_id: str) -> Task:
        return await self.backend.get_task(task_id)

    async def create_task(self, scope: Optional[str], draft: TaskDraft) -> Task:
        return await self.backend.create_task(scope, draft)

    async def update_task(self, task_id: str, patch: TaskPatch) -> Task:
        return await self.backend.update_task(task_id, patch)

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        shared_state: Optional[SharedState] = None,
    ) -> Task:
        return await self.backend.update_task_status(task_id, status, shared_state)

    async def delete_task(self, task_id: str) -> bool:
        return await self.backend.delete_task(task_id)

    async def add_comment(self, task_id: str, body: str) -> bool:
        return await self.backend.add_comment(task_id, body)

    # -- lease operations ---------------------------------------------------

    def _lease_unsupported(self, operation: str) -> bool:
        if self.backend.supports_shared_state:
            return False
        logger.warning("Backend {} does not support {}", self._backend_name, operation)
        return True

    async def persist_shared_state(self, task_id: str, state: SharedState) -> bool:
        if self._lease_unsupported("persist_shared_state"):
            return False
        return await self.backend.persist_shared_state(task_id, state)

    async def read_shared_state(self, task_id: str) -> Optional[SharedState]:
        if self._lease_unsupported("read_shared_state"):
            return None
        return await self.backend.read_shared_state(task_id)

    async def mark_task_ignored(self, task_id: str, reason: str) -> bool:
        if self._lease_unsupported("mark_task_ignored"):
            return False
        return await self.backend.mark_task_ignored(task_id, reason)
