"""Tests for backend resolution and delegation in KanbanAdapter."""

from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from bosun_kanban.adapter import KanbanAdapter
from bosun_kanban.backends import GitHubIssueBackend, InternalStoreBackend, JiraBackend, TaskBackend
from bosun_kanban.config import KanbanSettings, load_settings
from bosun_kanban.coordination import CoordinationState
from bosun_kanban.errors import FailureKind
from bosun_kanban.lease import LeaseManager
from bosun_kanban.models import Project, SharedState, Task, TaskDraft, TaskFilter, TaskStatus


class ReadOnlyBoard(TaskBackend):
    """A tracker without lease support."""

    name = "readonly"
    supports_shared_state = False

    def __init__(self) -> None:
        self.closed = False

    async def list_tasks(self, scope=None, filters: Optional[TaskFilter] = None) -> list[Task]:
        return [Task(id="r-1", title="from board")]

    async def get_task(self, task_id: str) -> Task:
        return Task(id=task_id)

    async def create_task(self, scope, draft: TaskDraft) -> Task:
        return Task(id="r-2", title=draft.title)

    async def update_task(self, task_id, patch) -> Task:
        return Task(id=task_id)

    async def update_task_status(self, task_id, status: TaskStatus, shared_state: Optional[SharedState] = None) -> Task:
        return Task(id=task_id, status=status)

    async def delete_task(self, task_id: str) -> bool:
        return True

    async def add_comment(self, task_id: str, body: str) -> bool:
        return True

    async def list_projects(self) -> list[Project]:
        return []

    async def aclose(self) -> None:
        self.closed = True


def _settings(tmp_path, **env) -> KanbanSettings:
    return load_settings(tmp_path, env={"BOSUN_STATE_DIR": str(tmp_path / "state"), **env})


class TestResolution:
    def test_defaults_to_internal(self, tmp_path) -> None:
        adapter = KanbanAdapter(_settings(tmp_path))
        assert adapter.backend_name == "internal"
        assert isinstance(adapter.backend, InternalStoreBackend)

    def test_backend_from_environment(self, tmp_path) -> None:
        adapter = KanbanAdapter(_settings(tmp_path, KANBAN_BACKEND="GitHub", GITHUB_REPOSITORY="acme/widgets"))
        assert adapter.backend_name == "github"
        assert isinstance(adapter.backend, GitHubIssueBackend)

    def test_explicit_backend_wins(self, tmp_path) -> None:
        adapter = KanbanAdapter(_settings(tmp_path, KANBAN_BACKEND="github"), backend="jira")
        assert isinstance(adapter.backend, JiraBackend)
        asyncio.run(adapter.aclose())

    def test_unknown_backend_rejected(self, tmp_path) -> None:
        with pytest.raises(ValueError, match="trello"):
            KanbanAdapter(_settings(tmp_path), backend="trello")

    def test_unknown_backend_in_environment_falls_back(self, tmp_path, log_messages) -> None:
        settings = _settings(tmp_path, KANBAN_BACKEND="trello")
        assert settings.backend == "internal"
        assert any("trello" in m for m in log_messages)

    def test_available_backends(self, tmp_path) -> None:
        adapter = KanbanAdapter(_settings(tmp_path), factories={"readonly": lambda s, c: ReadOnlyBoard()})
        assert adapter.available_backends() == ["internal", "github", "jira", "readonly"]


class TestSwitching:
    def test_backends_are_cached_per_name(self, tmp_path) -> None:
        adapter = KanbanAdapter(_settings(tmp_path, GITHUB_REPOSITORY="acme/widgets"))
        internal = adapter.backend
        adapter.set_backend("github")
        github = adapter.backend
        adapter.set_backend("internal")
        assert adapter.backend is internal
        adapter.set_backend("github")
        assert adapter.backend is github

    def test_set_backend_validates(self, tmp_path) -> None:
        adapter = KanbanAdapter(_settings(tmp_path))
        with pytest.raises(ValueError):
            adapter.set_backend("asana")
        assert adapter.backend_name == "internal"

    def test_reload_coordination_sees_sibling_backoff(self, tmp_path) -> None:
        settings = _settings(tmp_path)
        adapter = KanbanAdapter(settings)
        sibling = CoordinationState.from_settings(settings)
        sibling.record_failure("issue-list:acme/widgets", FailureKind.RATE_LIMIT, "API rate limit exceeded")
        assert not adapter.coordination.should_skip("issue-list:acme/widgets")
        adapter.reload_coordination()
        assert adapter.coordination.should_skip("issue-list:acme/widgets")

    def test_backends_share_coordination_state(self, tmp_path) -> None:
        coordination = CoordinationState()
        adapter = KanbanAdapter(_settings(tmp_path, GITHUB_REPOSITORY="acme/widgets"), backend="github", coordination=coordination)
        assert adapter.backend.coordination is coordination
        adapter.set_backend("jira")
        assert adapter.backend.coordination is coordination
        asyncio.run(adapter.aclose())


class TestDelegation:
    def test_task_operations_reach_internal_store(self, tmp_path) -> None:
        adapter = KanbanAdapter(_settings(tmp_path))

        async def main():
            task = await adapter.create_task(None, TaskDraft(title="via adapter"))
            await adapter.update_task_status(task.id, TaskStatus.INPROGRESS)
            await adapter.add_comment(task.id, "note")
            listed = await adapter.list_tasks()
            fetched = await adapter.get_task(task.id)
            deleted = await adapter.delete_task(task.id)
            return listed, fetched, deleted

        listed, fetched, deleted = asyncio.run(main())
        assert [t.title for t in listed] == ["via adapter"]
        assert fetched.status is TaskStatus.INPROGRESS
        assert deleted is True
        assert (tmp_path / "state" / "kanban-tasks.yaml").exists()

    def test_lease_manager_over_adapter(self, tmp_path) -> None:
        adapter = KanbanAdapter(_settings(tmp_path))

        async def main():
            task = await adapter.create_task(None, TaskDraft(title="lease via adapter"))
            manager = LeaseManager(adapter, "host-a/w1")
            claimed = await manager.claim(task.id)
            return claimed, await adapter.read_shared_state(task.id)

        claimed, stored = asyncio.run(main())
        assert claimed.acquired
        assert stored == claimed.lease

    def test_unsupported_lease_operations_degrade(self, tmp_path, log_messages) -> None:
        adapter = KanbanAdapter(
            _settings(tmp_path),
            backend="readonly",
            factories={"readonly": lambda s, c: ReadOnlyBoard()},
        )
        lease = SharedState(
            owner_id="h/w",
            attempt_token="t",
            attempt_started="2026-01-01T00:00:00Z",
            heartbeat="2026-01-01T00:00:00Z",
            status="claimed",
        )

        async def main():
            return (
                await adapter.persist_shared_state("r-1", lease),
                await adapter.read_shared_state("r-1"),
                await adapter.mark_task_ignored("r-1", "no"),
                await adapter.list_tasks(),
            )

        persisted, read_back, ignored, tasks = asyncio.run(main())
        assert persisted is False
        assert read_back is None
        assert ignored is False
        assert [t.id for t in tasks] == ["r-1"]
        assert sum("does not support" in m for m in log_messages) == 3

    def test_aclose_closes_built_backends(self, tmp_path) -> None:
        board = ReadOnlyBoard()
        adapter = KanbanAdapter(_settings(tmp_path), backend="readonly", factories={"readonly": lambda s, c: board})
        assert adapter.backend is board
        asyncio.run(adapter.aclose())
        assert board.closed
