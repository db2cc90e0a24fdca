"""Tests for the Jira REST backend against an in-memory httpx transport."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from bosun_kanban.backends.jira import (
    JiraBackend,
    adf_to_text,
    parse_issue_key,
    sanitize_label,
    text_to_adf,
)
from bosun_kanban.config import BackoffWindows, JiraSettings
from bosun_kanban.coordination import CoordinationState
from bosun_kanban.errors import InvalidIdentifierError, PermanentBackendError
from bosun_kanban.models import LeaseStatus, SharedState, TaskDraft, TaskFilter, TaskPatch, TaskStatus
from bosun_kanban.utils import _ms_to_datetime

from conftest import FakeJira, no_sleep

WINDOWS = BackoffWindows(command_backoff_ms=60_000, warning_throttle_ms=300_000)


def _settings(**overrides) -> JiraSettings:
    data = dict(
        base_url="https://acme.atlassian.net",
        email="bot@acme.test",
        api_token="secret",
        project_key="PROJ",
    )
    data.update(overrides)
    return JiraSettings(**data)


def _backend(fake_jira: FakeJira, state_dir: Path, clock, **overrides) -> JiraBackend:
    return JiraBackend(
        _settings(**overrides),
        CoordinationState(state_dir, WINDOWS, clock),
        transport=fake_jira.transport,
        transient_retry_ms=10,
        transient_retry_count=2,
        sleep=no_sleep,
    )


def _lease(clock, **overrides) -> SharedState:
    data = dict(
        owner_id="host-a/w1",
        attempt_token="tok-a",
        attempt_started=_ms_to_datetime(clock()),
        heartbeat=_ms_to_datetime(clock()),
        status=LeaseStatus.CLAIMED,
    )
    data.update(overrides)
    return SharedState(**data)


def _run(backend: JiraBackend, coro):
    async def main():
        try:
            return await coro
        finally:
            await backend.aclose()

    return asyncio.run(main())


class TestHelpers:
    @pytest.mark.parametrize("raw,expected", [("proj-12", "PROJ-12"), (" AB_C-1 ", "AB_C-1")])
    def test_valid_keys(self, raw, expected) -> None:
        assert parse_issue_key(raw) == expected

    @pytest.mark.parametrize("raw", ["", None, "12", "PROJ", "PROJ-", "1PROJ-2", "PROJ-x"])
    def test_invalid_keys(self, raw) -> None:
        with pytest.raises(InvalidIdentifierError):
            parse_issue_key(raw)

    def test_sanitize_label(self) -> None:
        assert sanitize_label("bosun:claimed") == "bosun-claimed"
        assert sanitize_label("  Needs Review ") == "needs-review"

    def test_adf_round_trip(self) -> None:
        text = "line one\n\nline three"
        assert adf_to_text(text_to_adf(text)).strip() == text


class TestListing:
    def test_list_tasks_maps_status_and_labels(self, fake_jira, state_dir, clock) -> None:
        fake_jira.add_issue("PROJ-1", "Plan", status="To Do")
        fake_jira.add_issue("PROJ-2", "Build", status="In Progress", labels=["bosun", "backend"])
        fake_jira.add_issue("PROJ-3", "Other team", labels=["unrelated"])
        backend = _backend(fake_jira, state_dir, clock)

        tasks = _run(backend, backend.list_tasks())
        by_id = {t.id: t for t in tasks}
        assert set(by_id) == {"PROJ-1", "PROJ-2"}
        assert by_id["PROJ-1"].status is TaskStatus.TODO
        assert by_id["PROJ-2"].status is TaskStatus.INPROGRESS
        assert by_id["PROJ-2"].task_url == "https://acme.atlassian.net/browse/PROJ-2"

        request = fake_jira.requests_to("GET", "/search/jql")[0]
        jql = request.url.params["jql"]
        assert 'project = "PROJ"' in jql
        assert 'labels = "bosun"' in jql
        assert request.headers["authorization"].startswith("Basic ")

    def test_status_filter_uses_category(self, fake_jira, state_dir, clock) -> None:
        backend = _backend(fake_jira, state_dir, clock)
        _run(backend, backend.list_tasks(filters=TaskFilter(status=TaskStatus.INPROGRESS)))
        jql = fake_jira.requests_to("GET", "/search/jql")[0].url.params["jql"]
        assert 'statusCategory = "In Progress"' in jql

    def test_falls_back_to_legacy_search(self, fake_jira, state_dir, clock) -> None:
        fake_jira.add_issue("PROJ-1", "Plan")
        fake_jira.fail_paths["/rest/api/3/search/jql"] = 404
        backend = _backend(fake_jira, state_dir, clock)
        tasks = _run(backend, backend.list_tasks())
        assert [t.id for t in tasks] == ["PROJ-1"]
        assert fake_jira.requests_to("GET", "/rest/api/3/search")

    def test_server_errors_retry_then_back_off(self, fake_jira, state_dir, clock) -> None:
        fake_jira.fail_paths["/rest/api/3/search"] = 503
        backend = _backend(fake_jira, state_dir, clock)

        assert _run(backend, backend.list_tasks()) == []
        assert len(fake_jira.requests) == 3
        assert backend.coordination.should_skip("jira-search:PROJ")

        backend = _backend(fake_jira, state_dir, clock)
        backend.coordination.reload()
        assert _run(backend, backend.list_tasks()) == []
        assert len(fake_jira.requests) == 3

    def test_rate_limit_backs_off(self, fake_jira, state_dir, clock) -> None:
        fake_jira.fail_paths["/rest/api/3/search"] = 429
        backend = _backend(fake_jira, state_dir, clock)
        assert _run(backend, backend.list_tasks()) == []
        assert len(fake_jira.requests) == 1
        assert backend.coordination.remaining_ms("jira-search:PROJ") == WINDOWS.rate_limit_backoff_ms

    def test_project_key_required(self, fake_jira, state_dir, clock) -> None:
        backend = _backend(fake_jira, state_dir, clock, project_key="")
        with pytest.raises(InvalidIdentifierError):
            _run(backend, backend.list_tasks())

    def test_not_configured_is_permanent(self, fake_jira, state_dir, clock) -> None:
        backend = _backend(fake_jira, state_dir, clock, api_token=None)
        with pytest.raises(PermanentBackendError):
            _run(backend, backend.get_task("PROJ-1"))
        assert fake_jira.requests == []


class TestIssueOperations:
    def test_create_and_get(self, fake_jira, state_dir, clock) -> None:
        backend = _backend(fake_jira, state_dir, clock)
        task = _run(backend, backend.create_task(None, TaskDraft(title="Ship it", description="Details", labels=["Needs Review"])))
        assert task.id == "PROJ-1"
        assert task.title == "Ship it"
        assert set(task.labels) == {"needs-review", "bosun"}

        created = json.loads(fake_jira.requests_to("POST", "/rest/api/3/issue")[0].content)
        assert created["fields"]["description"]["type"] == "doc"
        assert created["fields"]["issuetype"] == {"name": "Task"}

    def test_transitions(self, fake_jira, state_dir, clock) -> None:
        fake_jira.add_issue("PROJ-4", "Move")
        backend = _backend(fake_jira, state_dir, clock)

        async def main():
            try:
                started = await backend.update_task_status("PROJ-4", TaskStatus.INPROGRESS)
                finished = await backend.update_task_status("proj-4", TaskStatus.DONE)
                return started, finished
            finally:
                await backend.aclose()

        started, finished = asyncio.run(main())
        assert started.status is TaskStatus.INPROGRESS
        assert finished.status is TaskStatus.DONE
        assert fake_jira.issues["PROJ-4"]["fields"]["status"]["name"] == "Done"

    def test_ignore_without_workflow_state_uses_label(self, state_dir, clock) -> None:
        fake_jira = FakeJira(transitions=("To Do", "In Progress", "Done"))
        fake_jira.add_issue("PROJ-5", "No won't do")
        backend = _backend(fake_jira, state_dir, clock)

        deleted = _run(backend, backend.delete_task("PROJ-5"))
        assert deleted is True
        assert "bosun-ignore" in fake_jira.issues["PROJ-5"]["fields"]["labels"]
        assert fake_jira.issues["PROJ-5"]["fields"]["status"]["name"] == "To Do"

    def test_update_task_keeps_lease_labels(self, fake_jira, state_dir, clock) -> None:
        fake_jira.add_issue("PROJ-6", "Edit", labels=["bosun", "bosun-working", "old"])
        backend = _backend(fake_jira, state_dir, clock)
        task = _run(backend, backend.update_task("PROJ-6", TaskPatch(title="Edited", labels=["bosun", "new"])))
        assert task.title == "Edited"
        assert set(task.labels) == {"bosun", "new", "bosun-working"}

    def test_priority_branch_and_pr_are_read_from_the_issue(self, fake_jira, state_dir, clock) -> None:
        fake_jira.add_issue("PROJ-8", "Tracked")
        fields = fake_jira.issues["PROJ-8"]["fields"]
        fields["priority"] = {"name": "Blocker"}
        fields["description"] = text_to_adf("Work happens on branch: ve/proj-8")
        fake_jira.comments["PROJ-8"].append({"id": "1", "body": text_to_adf("PR: #52 is up")})
        backend = _backend(fake_jira, state_dir, clock)

        task = _run(backend, backend.get_task("PROJ-8"))
        assert task.priority == "critical"
        assert task.branch_name == "ve/proj-8"
        assert task.pr_number == "52"

    def test_priority_is_written_with_jira_names(self, fake_jira, state_dir, clock) -> None:
        backend = _backend(fake_jira, state_dir, clock)

        async def main():
            try:
                created = await backend.create_task(None, TaskDraft(title="Hot", priority="critical"))
                return await backend.update_task(created.id, TaskPatch(priority="medium"))
            finally:
                await backend.aclose()

        updated = asyncio.run(main())
        created = json.loads(fake_jira.requests_to("POST", "/rest/api/3/issue")[0].content)
        assert created["fields"]["priority"] == {"name": "Highest"}
        assert fake_jira.issues[updated.id]["fields"]["priority"] == {"name": "Medium"}
        assert updated.priority == "medium"

    def test_comment(self, fake_jira, state_dir, clock) -> None:
        fake_jira.add_issue("PROJ-7", "Chat")
        backend = _backend(fake_jira, state_dir, clock)
        assert _run(backend, backend.add_comment("PROJ-7", "hello\nworld"))
        body = fake_jira.comments["PROJ-7"][0]["body"]
        assert body["type"] == "doc"
        assert adf_to_text(body).strip() == "hello\nworld"


class TestLeasePersistence:
    def test_round_trip_through_adf_comments(self, fake_jira, state_dir, clock) -> None:
        fake_jira.add_issue("PROJ-1", "Lease")
        backend = _backend(fake_jira, state_dir, clock)
        lease = _lease(clock)
        working = lease.model_copy(update={"status": LeaseStatus.WORKING})

        async def main():
            try:
                assert await backend.persist_shared_state("PROJ-1", lease)
                first = await backend.read_shared_state("PROJ-1")
                assert await backend.persist_shared_state("PROJ-1", working)
                second = await backend.read_shared_state("PROJ-1")
                task = await backend.get_task("PROJ-1")
                return first, second, task
            finally:
                await backend.aclose()

        first, second, task = asyncio.run(main())
        assert first == lease
        assert second == working
        assert task.shared_state == working
        assert len(fake_jira.comments["PROJ-1"]) == 1
        labels = fake_jira.issues["PROJ-1"]["fields"]["labels"]
        assert "bosun-working" in labels
        assert "bosun-claimed" not in labels

    def test_custom_field_is_preferred(self, fake_jira, state_dir, clock) -> None:
        fake_jira.add_issue("PROJ-2", "Field")
        backend = _backend(fake_jira, state_dir, clock, shared_state_field="customfield_10042")
        lease = _lease(clock)

        async def main():
            try:
                await backend.persist_shared_state("PROJ-2", lease)
                fake_jira.comments["PROJ-2"].clear()
                return await backend.read_shared_state("PROJ-2")
            finally:
                await backend.aclose()

        assert asyncio.run(main()) == lease
        stored = fake_jira.issues["PROJ-2"]["fields"]["customfield_10042"]
        assert json.loads(stored)["attemptToken"] == "tok-a"

    def test_missing_issue(self, fake_jira, state_dir, clock) -> None:
        backend = _backend(fake_jira, state_dir, clock)

        async def main():
            try:
                persisted = await backend.persist_shared_state("PROJ-99", _lease(clock))
                first = await backend.read_shared_state("PROJ-99")
                count = len(fake_jira.requests)
                second = await backend.read_shared_state("PROJ-99")
                return persisted, first, second, count
            finally:
                await backend.aclose()

        persisted, first, second, count = asyncio.run(main())
        assert persisted is False
        assert first is None and second is None
        assert len(fake_jira.requests) == count

    def test_mark_task_ignored(self, fake_jira, state_dir, clock) -> None:
        fake_jira.add_issue("PROJ-3", "Ignore me")
        backend = _backend(fake_jira, state_dir, clock)

        async def main():
            try:
                ok = await backend.mark_task_ignored("PROJ-3", "duplicate of PROJ-1")
                return ok, await backend.get_task("PROJ-3")
            finally:
                await backend.aclose()

        ok, task = asyncio.run(main())
        assert ok
        assert task.status is TaskStatus.IGNORED
        assert task.shared_state.status is LeaseStatus.IGNORED
        assert task.shared_state.reason == "duplicate of PROJ-1"
        assert "bosun-ignore" in task.labels

    def test_invalid_key_raises(self, fake_jira, state_dir, clock) -> None:
        backend = _backend(fake_jira, state_dir, clock)
        with pytest.raises(InvalidIdentifierError):
            _run(backend, backend.persist_shared_state("nope", _lease(clock)))
