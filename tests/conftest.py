"""Shared fixtures: a controllable clock, a scripted ``gh`` and a fake Jira server."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

import httpx
import pytest
from loguru import logger

from bosun_kanban.backends.gh_cli import GhResult

START_MS = 1_767_225_600_000  # 2026-01-01T00:00:00Z


class FakeClock:
    def __init__(self, now_ms: int = START_MS) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    d = tmp_path / ".bosun"
    d.mkdir()
    return d


@pytest.fixture
def log_messages():
    """Collect loguru records at WARNING and above."""
    messages: list[str] = []
    handler_id = logger.add(lambda message: messages.append(str(message.record["message"])), level="WARNING")
    yield messages
    logger.remove(handler_id)


# ---------------------------------------------------------------------------
# Fake gh
# ---------------------------------------------------------------------------

def _flag(args: Sequence[str], name: str) -> Optional[str]:
    for idx, arg in enumerate(args):
        if arg == name and idx + 1 < len(args):
            return args[idx + 1]
    return None


def _flags(args: Sequence[str], name: str) -> list[str]:
    return [args[idx + 1] for idx, arg in enumerate(args) if arg == name and idx + 1 < len(args)]


class FakeGh:
    """In-memory stand-in for the ``gh`` CLI.

    Issues and comments are stored in dicts; ``script`` entries take
    precedence and let a test force failures for matching argument vectors.
    """

    def __init__(self, slug: str = "acme/widgets") -> None:
        self.slug = slug
        self.calls: list[list[str]] = []
        self.issues: dict[str, dict[str, Any]] = {}
        self.comments: dict[str, list[dict[str, Any]]] = {}
        self.script: list[tuple[Callable[[list[str]], bool], Callable[[list[str]], GhResult]]] = []
        self.project_items: Any = {"items": []}
        self.project_fields: Any = {"fields": []}
        self.item_edits: list[dict[str, Optional[str]]] = []
        self._next_comment_id = 1000

    # helpers for tests -------------------------------------------------

    def add_issue(self, number: int, title: str, labels: Sequence[str] = ("bosun",), state: str = "OPEN") -> None:
        num = str(number)
        self.issues[num] = {
            "number": number,
            "title": title,
            "body": f"Body of {title}",
            "state": state,
            "stateReason": None,
            "url": f"https://github.com/{self.slug}/issues/{number}",
            "assignees": [],
            "labels": [{"name": label} for label in labels],
        }
        self.comments.setdefault(num, [])

    def labels(self, number: int) -> list[str]:
        return [label["name"] for label in self.issues[str(number)]["labels"]]

    def fail_when(self, predicate: Callable[[list[str]], bool], stderr: str, code: int = 1) -> None:
        self.script.append((predicate, lambda _args: GhResult(code, "", stderr)))

    def calls_matching(self, *prefix: str) -> list[list[str]]:
        return [call for call in self.calls if call[: len(prefix)] == list(prefix)]

    # dispatch ----------------------------------------------------------

    async def __call__(self, args: Sequence[str]) -> GhResult:
        argv = list(args)
        self.calls.append(argv)
        for predicate, respond in self.script:
            if predicate(argv):
                return respond(argv)
        return self._dispatch(argv)

    def _ok(self, payload: Any = None, text: str = "") -> GhResult:
        if payload is not None:
            return GhResult(0, json.dumps(payload), "")
        return GhResult(0, text, "")

    def _missing(self, num: str) -> GhResult:
        return GhResult(1, "", f"GraphQL: Could not resolve to an issue or pull request with the number of {num}.")

    def _dispatch(self, argv: list[str]) -> GhResult:
        head = argv[:2]
        if head == ["issue", "view"]:
            return self._issue_view(argv)
        if head == ["issue", "edit"]:
            return self._issue_edit(argv)
        if head == ["issue", "comment"]:
            num = argv[2]
            if num not in self.issues:
                return self._missing(num)
            self._append_comment(num, _flag(argv, "--body") or "")
            return self._ok(text=f"https://github.com/{self.slug}/issues/{num}#issuecomment-1\n")
        if head == ["issue", "close"]:
            num = argv[2]
            if num not in self.issues:
                return self._missing(num)
            self.issues[num]["state"] = "CLOSED"
            reason = _flag(argv, "--reason")
            self.issues[num]["stateReason"] = "NOT_PLANNED" if reason == "not planned" else "COMPLETED"
            return self._ok()
        if head == ["issue", "reopen"]:
            self.issues[argv[2]]["state"] = "OPEN"
            self.issues[argv[2]]["stateReason"] = "REOPENED"
            return self._ok()
        if head == ["issue", "list"]:
            return self._issue_list(argv)
        if head == ["issue", "create"]:
            number = max([int(n) for n in self.issues] + [0]) + 1
            self.add_issue(number, _flag(argv, "--title") or "", labels=_flags(argv, "--label"))
            assignee = _flag(argv, "--assignee")
            if assignee:
                self.issues[str(number)]["assignees"] = [{"login": assignee}]
            return self._ok(text=f"https://github.com/{self.slug}/issues/{number}\n")
        if head == ["label", "create"]:
            return self._ok()
        if head == ["api", "user"]:
            return self._ok(text="octocat\n")
        if argv[0] == "api":
            return self._api(argv)
        if head == ["project", "item-list"]:
            return self._ok(self.project_items)
        if head == ["project", "field-list"]:
            return self._ok(self.project_fields)
        if head == ["project", "view"]:
            return self._ok({"id": "PVT_1"})
        if head == ["project", "item-add"]:
            num = (_flag(argv, "--url") or "").rsplit("/", 1)[-1]
            return self._ok({"id": f"PVTI_{num}"})
        if head == ["project", "item-edit"]:
            self.item_edits.append({name: _flag(argv, name) for name in argv if name.startswith("--")})
            return self._ok()
        return GhResult(1, "", f"unknown command: {' '.join(argv)}")

    def _issue_view(self, argv: list[str]) -> GhResult:
        num = argv[2]
        issue = self.issues.get(num)
        if issue is None:
            return self._missing(num)
        fields = (_flag(argv, "--json") or "").split(",")
        data = {k: v for k, v in issue.items() if k in fields}
        if "comments" in fields:
            data["comments"] = [{"body": c["body"]} for c in self.comments.get(num, [])]
        return self._ok(data)

    def _issue_edit(self, argv: list[str]) -> GhResult:
        num = argv[2]
        issue = self.issues.get(num)
        if issue is None:
            return self._missing(num)
        names = [label["name"] for label in issue["labels"]]
        for label in _flags(argv, "--remove-label"):
            if label in names:
                names.remove(label)
        for label in _flags(argv, "--add-label"):
            if label not in names:
                names.append(label)
        issue["labels"] = [{"name": name} for name in names]
        if _flag(argv, "--title") is not None:
            issue["title"] = _flag(argv, "--title")
        if _flag(argv, "--body") is not None:
            issue["body"] = _flag(argv, "--body")
        return self._ok()

    def _issue_list(self, argv: list[str]) -> GhResult:
        state = (_flag(argv, "--state") or "open").upper()
        label = _flag(argv, "--label")
        out = []
        for issue in self.issues.values():
            if issue["state"] != state:
                continue
            if label and label not in [entry["name"] for entry in issue["labels"]]:
                continue
            out.append(issue)
        return self._ok(out)

    def _append_comment(self, num: str, body: str) -> None:
        self._next_comment_id += 1
        self.comments.setdefault(num, []).append({"id": self._next_comment_id, "body": body})

    def _api(self, argv: list[str]) -> GhResult:
        if "PATCH" in argv:
            match = re.search(r"issues/comments/(\d+)$", argv[3])
            body = (_flag(argv, "-f") or "").split("=", 1)[1]
            for comments in self.comments.values():
                for comment in comments:
                    if match and comment["id"] == int(match.group(1)):
                        comment["body"] = body
                        return self._ok(text="{}")
            return GhResult(1, "", "gh: Not Found (HTTP 404)")
        match = re.search(r"issues/(\d+)/comments$", argv[1])
        if match:
            num = match.group(1)
            if num not in self.issues:
                return GhResult(1, "", "gh: Not Found (HTTP 404)")
            lines = [json.dumps({"id": c["id"], "body": c["body"]}) for c in self.comments.get(num, [])]
            return self._ok(text="\n".join(lines))
        return GhResult(1, "", f"unknown api call: {' '.join(argv)}")


@pytest.fixture
def fake_gh() -> FakeGh:
    return FakeGh()


# ---------------------------------------------------------------------------
# Fake Jira
# ---------------------------------------------------------------------------

JIRA_STATUSES = {
    "To Do": "new",
    "In Progress": "indeterminate",
    "Done": "done",
    "Won't Do": "done",
}


class FakeJira:
    """Minimal Jira Cloud REST v3 server behind ``httpx.MockTransport``."""

    def __init__(self, transitions: Sequence[str] = ("To Do", "In Progress", "Done", "Won't Do")) -> None:
        self.issues: dict[str, dict[str, Any]] = {}
        self.comments: dict[str, list[dict[str, Any]]] = {}
        self.requests: list[httpx.Request] = []
        self.transition_targets = list(transitions)
        self.fail_paths: dict[str, int] = {}
        self._next_id = 100

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def add_issue(self, key: str, summary: str, status: str = "To Do", labels: Sequence[str] = ("bosun",)) -> None:
        self.issues[key] = {
            "id": str(len(self.issues) + 1),
            "key": key,
            "fields": {
                "summary": summary,
                "description": None,
                "status": {"name": status, "statusCategory": {"key": JIRA_STATUSES.get(status, "new")}},
                "labels": list(labels),
                "assignee": None,
                "project": {"key": key.split("-")[0]},
            },
        }
        self.comments.setdefault(key, [])

    def requests_to(self, method: str, suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path.endswith(suffix)]

    def _issue_payload(self, key: str) -> dict[str, Any]:
        issue = json.loads(json.dumps(self.issues[key]))
        issue["fields"]["comment"] = {"comments": list(self.comments.get(key, []))}
        return issue

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        for prefix, status in self.fail_paths.items():
            if path.startswith(prefix):
                return httpx.Response(status, json={"errorMessages": [f"forced {status}"]})
        body = json.loads(request.content) if request.content else None
        parts = path.split("/rest/api/3/", 1)[-1].split("/")

        if parts in (["search", "jql"], ["search"]) and request.method == "GET":
            issues = [self._issue_payload(key) for key in self.issues]
            return httpx.Response(200, json={"issues": issues})
        if parts == ["issue"] and request.method == "POST":
            project = body["fields"]["project"]["key"]
            key = f"{project}-{len(self.issues) + 1}"
            self.add_issue(key, body["fields"]["summary"], labels=body["fields"].get("labels", []))
            return httpx.Response(201, json={"id": self.issues[key]["id"], "key": key})
        if len(parts) >= 2 and parts[0] == "issue":
            key = parts[1]
            if key not in self.issues:
                return httpx.Response(404, json={"errorMessages": ["Issue does not exist or you do not have permission to see it."]})
            return self._issue_route(request, key, parts[2:], body)
        return httpx.Response(404, json={"errorMessages": [f"no route for {path}"]})

    def _issue_route(self, request: httpx.Request, key: str, rest: list[str], body: Any) -> httpx.Response:
        issue = self.issues[key]
        if not rest:
            if request.method == "GET":
                return httpx.Response(200, json=self._issue_payload(key))
            if request.method == "PUT":
                fields = issue["fields"]
                for op in (body.get("update") or {}).get("labels", []):
                    if "add" in op and op["add"] not in fields["labels"]:
                        fields["labels"].append(op["add"])
                    if "remove" in op and op["remove"] in fields["labels"]:
                        fields["labels"].remove(op["remove"])
                fields.update(body.get("fields") or {})
                return httpx.Response(204)
        if rest == ["comment"]:
            if request.method == "GET":
                comments = self.comments[key]
                start = int(request.url.params.get("startAt", 0))
                size = int(request.url.params.get("maxResults", 50))
                page = comments[start : start + size]
                return httpx.Response(
                    200,
                    json={"comments": page, "startAt": start, "maxResults": size, "total": len(comments)},
                )
            self._next_id += 1
            comment = {"id": str(self._next_id), "body": body["body"]}
            self.comments[key].append(comment)
            return httpx.Response(201, json=comment)
        if len(rest) == 2 and rest[0] == "comment" and request.method == "PUT":
            for comment in self.comments[key]:
                if comment["id"] == rest[1]:
                    comment["body"] = body["body"]
                    return httpx.Response(200, json=comment)
            return httpx.Response(404, json={"errorMessages": ["comment not found"]})
        if rest == ["transitions"]:
            if request.method == "GET":
                transitions = [
                    {
                        "id": str(idx + 11),
                        "name": f"Move to {name}",
                        "to": {"name": name, "statusCategory": {"key": JIRA_STATUSES.get(name, "new")}},
                    }
                    for idx, name in enumerate(self.transition_targets)
                ]
                return httpx.Response(200, json={"transitions": transitions})
            target = self.transition_targets[int(body["transition"]["id"]) - 11]
            issue["fields"]["status"] = {"name": target, "statusCategory": {"key": JIRA_STATUSES.get(target, "new")}}
            return httpx.Response(204)
        return httpx.Response(405, json={"errorMessages": ["method not allowed"]})


@pytest.fixture
def fake_jira() -> FakeJira:
    return FakeJira()
