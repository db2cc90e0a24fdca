from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
from loguru import logger

from bosun_kanban.cli import main

_ENV_KEYS = (
    "KANBAN_BACKEND",
    "BOSUN_STATE_DIR",
    "BOSUN_TASK_LABEL",
    "GITHUB_REPOSITORY",
    "GITHUB_REPO_OWNER",
    "GITHUB_REPO_NAME",
    "JIRA_BASE_URL",
    "JIRA_EMAIL",
    "JIRA_API_TOKEN",
    "JIRA_PROJECT_KEY",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    yield
    logger.remove()
    logger.add(sys.stderr)


def _run(tmp_path: Path, capsys, *argv: str) -> tuple[int, dict]:
    rc = main(["--project-dir", str(tmp_path), *argv])
    out = capsys.readouterr().out
    return rc, json.loads(out) if out.strip().startswith("{") else {}


def test_create_list_and_status(tmp_path: Path, capsys) -> None:
    rc, created = _run(tmp_path, capsys, "create", "--title", "CLI task", "--label", "ops")
    assert rc == 0
    task_id = created["task"]["id"]
    assert created["task"]["labels"] == ["ops"]

    rc, listed = _run(tmp_path, capsys, "list", "--json")
    assert rc == 0
    assert listed["backend"] == "internal"
    assert [t["id"] for t in listed["tasks"]] == [task_id]

    rc, updated = _run(tmp_path, capsys, "status", task_id, "inprogress")
    assert rc == 0
    assert updated["task"]["status"] == "inprogress"

    rc, commented = _run(tmp_path, capsys, "comment", task_id, "looks good")
    assert commented == {"task_id": task_id, "commented": True}


def test_table_output(tmp_path: Path, capsys) -> None:
    _run(tmp_path, capsys, "create", "--title", "Rendered")
    assert main(["--project-dir", str(tmp_path), "list"]) == 0
    out = capsys.readouterr().out
    assert "Tasks (1)" in out
    assert "Rendered" in out


def test_create_with_priority(tmp_path: Path, capsys) -> None:
    rc, created = _run(tmp_path, capsys, "create", "--title", "Hot fix", "--priority", "high")
    assert rc == 0
    assert created["task"]["priority"] == "high"

    assert main(["--project-dir", str(tmp_path), "get", created["task"]["id"]]) == 0
    assert "priority: high" in capsys.readouterr().out


def test_claim_release_and_ignore(tmp_path: Path, capsys) -> None:
    _, created = _run(tmp_path, capsys, "create", "--title", "Lease me")
    task_id = created["task"]["id"]

    rc, claimed = _run(tmp_path, capsys, "claim", task_id, "--owner", "host-a/w1")
    assert rc == 0
    assert claimed["acquired"] is True
    assert claimed["shared_state"]["ownerId"] == "host-a/w1"

    rc, rival = _run(tmp_path, capsys, "claim", task_id, "--owner", "host-b/w2")
    assert rc == 1
    assert rival["reason"] == "held-by-other"

    rc, state = _run(tmp_path, capsys, "state", task_id)
    assert state["shared_state"]["status"] == "claimed"

    rc, released = _run(tmp_path, capsys, "release", task_id)
    assert rc == 0
    assert released["released"] is True

    rc, ignored = _run(tmp_path, capsys, "ignore", task_id, "--reason", "obsolete")
    assert rc == 0
    assert ignored["ignored"] is True

    _, listed = _run(tmp_path, capsys, "list", "--json")
    assert listed["tasks"] == []
    _, listed = _run(tmp_path, capsys, "list", "--json", "--status", "ignored")
    assert [t["id"] for t in listed["tasks"]] == [task_id]


def test_release_without_lease(tmp_path: Path, capsys) -> None:
    _, created = _run(tmp_path, capsys, "create", "--title", "Never claimed")
    assert main(["--project-dir", str(tmp_path), "release", created["task"]["id"]]) == 1
    assert "No lease found" in capsys.readouterr().err


def test_missing_task_reports_error(tmp_path: Path, capsys) -> None:
    assert main(["--project-dir", str(tmp_path), "get", "task-missing"]) == 1
    assert "task-missing" in capsys.readouterr().err


def test_backoff_json_is_empty_on_fresh_project(tmp_path: Path, capsys) -> None:
    rc, data = _run(tmp_path, capsys, "backoff", "--json")
    assert rc == 0
    assert data == {"backoff": {}, "invalid_owners": {"owners": [], "allInvalidUntil": 0}}


def test_unknown_backend_rejected_by_parser(tmp_path: Path) -> None:
    with pytest.raises(SystemExit):
        main(["--project-dir", str(tmp_path), "--backend", "trello", "list"])
