from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from ..models import Project, SharedState, Task, TaskDraft, TaskFilter, TaskPatch, TaskStatus


class TaskBackend(ABC):
    """Contract every task tracker backend implements.

    All methods are coroutines. ``scope`` is backend specific: a GitHub
    project number, a Jira project key, or ignored by the internal store.
    """

    name: str = ""
    supports_shared_state: bool = True

    @abstractmethod
    async def list_tasks(self, scope: Optional[str] = None, filters: Optional[TaskFilter] = None) -> list[Task]:
        raise NotImplementedError

    @abstractmethod
    async def get_task(self, task_id: str) -> Task:
        raise NotImplementedError

    @abstractmethod
    async def create_task(self, scope: Optional[str], draft: TaskDraft) -> Task:
        raise NotImplementedError

    @abstractmethod
    async def update_task(self, task_id: str, patch: TaskPatch) -> Task:
        raise NotImplementedError

    @abstractmethod
    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        shared_state: Optional[SharedState] = None,
    ) -> Task:
        raise NotImplementedError

    @abstractmethod
    async def delete_task(self, task_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def add_comment(self, task_id: str, body: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def list_projects(self) -> list[Project]:
        raise NotImplementedError

    async def persist_shared_state(self, task_id: str, state: SharedState) -> bool:
        raise NotImplementedError

    async def read_shared_state(self, task_id: str) -> Optional[SharedState]:
        raise NotImplementedError

    async def mark_task_ignored(self, task_id: str, reason: str) -> bool:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None
