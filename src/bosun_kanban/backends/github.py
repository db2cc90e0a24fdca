"""GitHub issues (and optionally a Projects v2 board) as a task backend.

Every call goes through the ``gh`` CLI. Calls are keyed for the backoff
registry as ``<command>:<resource>``; a key inside its cooldown window is
not sent at all. Project-board calls pass ``--owner`` unless the owner is
known to be invalid and fall back to an ownerless call when the backend
rejects the owner type.
"""

from __future__ import annotations

import asyncio
import json
import math
import re
from typing import Any, Awaitable, Callable, Optional, Sequence

from loguru import logger

from ..config import GitHubSettings, KanbanSettings
from ..constants import (
    DEFAULT_COMMAND_TIMEOUT_MS,
    DEFAULT_RATE_LIMIT_RETRY_MS,
    DEFAULT_TRANSIENT_RETRY_COUNT,
    DEFAULT_TRANSIENT_RETRY_MS,
    GH_MAX_COMMENT_CHARS,
    INPROGRESS_LABEL,
    INPROGRESS_LABEL_ALIASES,
    LEASE_LABEL_CLAIMED,
    LEASE_LABEL_IGNORE,
    LEASE_LABEL_STALE,
    LEASE_LABEL_WORKING,
    LEASE_LABELS,
    PROJECT_FIELDS_CACHE_TTL_MS,
)
from ..coordination import CoordinationState
from ..errors import (
    BackoffActiveError,
    FailureKind,
    InvalidIdentifierError,
    KanbanError,
    NotFoundError,
    OwnerTypeError,
    PermanentBackendError,
    ShapeError,
    TransientBackendError,
    classify_failure,
    error_for,
)
from ..models import (
    BackendName,
    LeaseStatus,
    Project,
    ProjectFieldCache,
    SharedState,
    Task,
    TaskDraft,
    TaskFilter,
    TaskPatch,
    TaskStatus,
    extract_branch,
    extract_pr_number,
    normalise_status,
    normalize_labels,
    normalize_priority,
    priority_from_labels,
)
from ..payloads import normalize_list_payload
from ..shared_state import encode_shared_state, has_marker, ignored_state, latest_shared_state
from .base import TaskBackend
from .gh_cli import GhCli, GhResult, GhRunner

ISSUE_FIELDS = "number,title,body,state,stateReason,url,assignees,labels"
ISSUE_URL_RE = re.compile(r"https?://\S+/issues/(\d+)")

_LEASE_LABEL_BY_STATUS = {
    LeaseStatus.CLAIMED: LEASE_LABEL_CLAIMED,
    LeaseStatus.WORKING: LEASE_LABEL_WORKING,
    LeaseStatus.STALE: LEASE_LABEL_STALE,
    LeaseStatus.IGNORED: LEASE_LABEL_IGNORE,
}

_UNSET = object()


def parse_issue_number(task_id: Any) -> str:
    """Validate a GitHub issue id (``42`` or ``#42``) and return the bare number."""
    num = str(task_id if task_id is not None else "").strip()
    if num.startswith("#"):
        num = num[1:]
    if not num.isdigit() or int(num) <= 0:
        raise InvalidIdentifierError(f"GitHub: invalid issue number {task_id!r}, expected a positive integer")
    return str(int(num))


def _project_value_args(field_def: dict[str, Any], value: Any) -> Optional[list[str]]:
    """Map *value* onto the ``gh project item-edit`` flag for the field's type.

    Returns ``None`` when the value cannot be stored in that field.
    """
    # gh reports "ProjectV2SingleSelectField"; plain fields carry a dataType.
    kind = str(field_def.get("dataType") or field_def.get("data_type") or field_def.get("type") or "").upper()
    kind = kind.replace("PROJECTV2", "").replace("FIELD", "").strip("_")
    text = str(value if value is not None else "").strip()
    if kind in ("SINGLESELECT", "SINGLE_SELECT"):
        for option in field_def.get("options") or []:
            if not isinstance(option, dict):
                continue
            if text and (text == str(option.get("id")) or text.lower() == str(option.get("name") or "").strip().lower()):
                return ["--single-select-option-id", str(option["id"])]
        return None
    if kind == "ITERATION":
        config = field_def.get("configuration") if isinstance(field_def.get("configuration"), dict) else {}
        iterations = config.get("iterations") or field_def.get("iterations") or field_def.get("options") or []
        for iteration in iterations:
            if not isinstance(iteration, dict):
                continue
            title = str(iteration.get("title") or iteration.get("name") or "").strip().lower()
            if text and (text == str(iteration.get("id")) or text.lower() == title):
                return ["--iteration-id", str(iteration["id"])]
        return None
    if kind == "NUMBER":
        try:
            number = float(text)
        except ValueError:
            return None
        if not math.isfinite(number):
            return None
        return ["--number", text]
    if kind == "DATE":
        return ["--date", text] if text else None
    return ["--text", text]


def _parse_json_lines(text: str) -> list[Any]:
    text = text.strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise ShapeError(f"comments payload is not JSON: {exc}") from exc
        return data if isinstance(data, list) else []
    out = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            out.append(json.loads(line))
        except ValueError as exc:
            raise ShapeError(f"comments payload is not JSON: {exc}") from exc
    return out


class GitHubIssueBackend(TaskBackend):
    name = BackendName.GITHUB.value
    supports_shared_state = True

    def __init__(
        self,
        settings: GitHubSettings,
        coordination: CoordinationState,
        *,
        runner: Optional[GhRunner] = None,
        rate_limit_retry_ms: int = DEFAULT_RATE_LIMIT_RETRY_MS,
        transient_retry_ms: int = DEFAULT_TRANSIENT_RETRY_MS,
        transient_retry_count: int = DEFAULT_TRANSIENT_RETRY_COUNT,
        command_timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not settings.repo_slug:
            raise ValueError("GitHub backend requires GITHUB_REPOSITORY (owner/repo)")
        self.settings = settings
        self.coordination = coordination
        self.slug = settings.repo_slug
        self.rate_limit_retry_ms = rate_limit_retry_ms
        self.transient_retry_ms = transient_retry_ms
        self.transient_retry_count = transient_retry_count
        self._runner: GhRunner = runner or GhCli(settings.gh_bin, command_timeout_ms)
        self._sleep = sleep
        self._field_cache: dict[str, ProjectFieldCache] = {}
        self._project_item_ids: dict[tuple[str, str], str] = {}
        self._known_labels: set[str] = set()
        self._default_assignee: Any = _UNSET

    @classmethod
    def from_settings(
        cls,
        settings: KanbanSettings,
        coordination: CoordinationState,
        runner: Optional[GhRunner] = None,
    ) -> "GitHubIssueBackend":
        return cls(
            settings.github,
            coordination,
            runner=runner,
            rate_limit_retry_ms=settings.rate_limit_retry_ms,
            transient_retry_ms=settings.transient_retry_ms,
            transient_retry_count=settings.transient_retry_count,
            command_timeout_ms=settings.command_timeout_ms,
        )

    # ------------------------------------------------------------------
    # gh plumbing
    # ------------------------------------------------------------------

    @property
    def project_mode(self) -> bool:
        return self.settings.project_mode == "kanban" and bool(self.settings.project_number)

    def _result_value(self, result: GhResult, parse_json: bool) -> Any:
        return result.json() if parse_json else result.stdout

    async def _gh(self, args: Sequence[str], *, parse_json: bool = True) -> Any:
        """Run one gh command, retrying a rate limit once after a pause."""
        result = await self._runner(list(args))
        if result.ok:
            return self._result_value(result, parse_json)
        classification = classify_failure(result.error_text)
        if classification.kind is FailureKind.RATE_LIMIT and self.rate_limit_retry_ms > 0:
            logger.warning(
                "gh {} rate limited; retrying once in {}s",
                " ".join(args[:2]),
                self.rate_limit_retry_ms // 1000,
            )
            await self._sleep(self.rate_limit_retry_ms / 1000)
            result = await self._runner(list(args))
            if result.ok:
                return self._result_value(result, parse_json)
            classification = classify_failure(result.error_text)
        raise error_for(classification, f"gh {' '.join(args[:2])}: {result.error_text}")

    async def _call(self, key: str, args: Sequence[str], *, parse_json: bool = True) -> Any:
        return await self.coordination.guarded_call(
            key,
            lambda: self._gh(args, parse_json=parse_json),
            retries=self.transient_retry_count,
            base_ms=self.transient_retry_ms,
            sleep=self._sleep,
        )

    def _owner_candidates(self) -> list[str]:
        return self.settings.owner_candidates

    def _project_owner(self) -> Optional[str]:
        usable = self.coordination.owners.usable(self._owner_candidates())
        return usable[0] if usable else None

    @staticmethod
    def _project_args(command: str, number: str, owner: Optional[str], extra: Sequence[str]) -> list[str]:
        args = ["project", command, str(number)]
        if owner:
            args += ["--owner", owner]
        return args + list(extra)

    async def _project_call(self, command: str, number: str, extra: Sequence[str] = (), *, parse_json: bool = True) -> Any:
        """Run an owner-scoped project command with ownerless fallback."""
        key = f"project-{command}:{number}"
        owner = self._project_owner()
        try:
            return await self._call(key, self._project_args(command, number, owner, extra), parse_json=parse_json)
        except OwnerTypeError as exc:
            if owner is None:
                self.coordination.record_failure(key, FailureKind.OWNER_TYPE, str(exc))
                raise
            self.coordination.mark_owner_invalid(owner, self._owner_candidates())
        try:
            return await self._call(key, self._project_args(command, number, None, extra), parse_json=parse_json)
        except BackoffActiveError:
            raise
        except KanbanError as exc:
            self.coordination.record_failure(key, FailureKind.OWNER_TYPE, str(exc))
            raise

    # ------------------------------------------------------------------
    # mapping
    # ------------------------------------------------------------------

    def _status_from_labels(self, labels: list[str]) -> Optional[TaskStatus]:
        if LEASE_LABEL_IGNORE in labels:
            return TaskStatus.IGNORED
        if any(label in INPROGRESS_LABEL_ALIASES for label in labels):
            return TaskStatus.INPROGRESS
        return None

    def _status_from_issue(self, state: Any, state_reason: Any, labels: list[str]) -> TaskStatus:
        if LEASE_LABEL_IGNORE in labels:
            return TaskStatus.IGNORED
        if str(state or "").upper() == "CLOSED":
            if str(state_reason or "").upper().replace(" ", "_") == "NOT_PLANNED":
                return TaskStatus.IGNORED
            return TaskStatus.DONE
        return self._status_from_labels(labels) or TaskStatus.TODO

    def _status_from_project(self, name: str) -> TaskStatus:
        key = name.strip().lower()
        for status, configured in self.settings.project_status_names.items():
            if configured.strip().lower() == key:
                return TaskStatus(status)
        return normalise_status(name)

    @staticmethod
    def _first_assignee(raw: Any) -> Optional[str]:
        if not isinstance(raw, list) or not raw:
            return None
        first = raw[0]
        if isinstance(first, dict):
            return first.get("login") or first.get("name") or None
        return str(first) or None

    def _task_from_issue(self, issue: dict[str, Any]) -> Task:
        labels = normalize_labels(issue.get("labels"))
        body = str(issue.get("body") or "")
        comments = issue.get("comments")
        bodies = [str(c.get("body") or "") for c in comments if isinstance(c, dict)] if isinstance(comments, list) else []
        shared_state = latest_shared_state(bodies) if bodies else None
        return Task(
            id=str(issue.get("number") or ""),
            title=str(issue.get("title") or ""),
            description=body,
            status=self._status_from_issue(issue.get("state"), issue.get("stateReason"), labels),
            labels=labels,
            assignee=self._first_assignee(issue.get("assignees")),
            task_url=issue.get("url") or None,
            backend=BackendName.GITHUB,
            project_id=self.slug,
            priority=priority_from_labels(labels),
            branch_name=extract_branch(body, *bodies),
            pr_number=extract_pr_number(body, *bodies),
            shared_state=shared_state,
            meta={"state": issue.get("state"), "state_reason": issue.get("stateReason")},
        )

    def _task_from_project_item(self, item: dict[str, Any], number: str) -> Optional[Task]:
        content = item.get("content") if isinstance(item.get("content"), dict) else {}
        if str(content.get("type") or "") == "PullRequest":
            return None
        issue_number = content.get("number")
        if not issue_number:
            match = ISSUE_URL_RE.search(str(content.get("url") or ""))
            issue_number = match.group(1) if match else None
        if not issue_number:
            return None
        labels = normalize_labels(content.get("labels") or item.get("labels"))
        project_status = item.get("status")
        if not project_status and isinstance(item.get("fieldValues"), dict):
            project_status = item["fieldValues"].get("Status")
        if LEASE_LABEL_IGNORE in labels:
            status = TaskStatus.IGNORED
        elif project_status:
            status = self._status_from_project(str(project_status))
        else:
            status = self._status_from_issue(content.get("state"), content.get("stateReason"), labels)
        body = str(content.get("body") or "")
        task = Task(
            id=str(issue_number),
            title=str(content.get("title") or item.get("title") or ""),
            description=body,
            status=status,
            labels=labels,
            assignee=self._first_assignee(content.get("assignees") or item.get("assignees")),
            task_url=content.get("url") or None,
            backend=BackendName.GITHUB,
            project_id=str(number),
            priority=priority_from_labels(labels),
            branch_name=extract_branch(body),
            pr_number=extract_pr_number(body),
            meta={"project_item_id": item.get("id"), "project_status": project_status},
        )
        if item.get("id"):
            self._project_item_ids[(str(number), task.id)] = str(item["id"])
        return task

    def _scoped(self, tasks: list[Task]) -> list[Task]:
        if not self.settings.enforce_task_label:
            return tasks
        return [task for task in tasks if self.settings.task_label in task.labels]

    # ------------------------------------------------------------------
    # listing
    # ------------------------------------------------------------------

    async def _fetch_project_items(self, number: str) -> list[dict[str, Any]]:
        key = f"project-item-list:{number}"

        async def _fetch() -> list[dict[str, Any]]:
            raw = await self._project_call(
                "item-list", number, ["--format", "json", "--limit", str(self.settings.list_limit)]
            )
            return normalize_list_payload(raw, "items", warn_key=key, throttle=self.coordination.backoff)

        return await self.coordination.dedup.dedupe(key, _fetch)

    def _project_tasks(self, items: list[dict[str, Any]], number: str, filters: TaskFilter) -> list[Task]:
        tasks = []
        for item in items:
            task = self._task_from_project_item(item, number)
            if task is None:
                continue
            if filters.project_field and not self._matches_project_fields(item, filters.project_field):
                continue
            tasks.append(task)
        return filters.apply(self._scoped(tasks))

    @staticmethod
    def _matches_project_fields(item: dict[str, Any], wanted: dict[str, Any]) -> bool:
        values = {str(k).lower(): v for k, v in item.items()}
        if isinstance(item.get("fieldValues"), dict):
            values.update({str(k).lower(): v for k, v in item["fieldValues"].items()})
        for name, expected in wanted.items():
            actual = values.get(str(name).lower())
            if str(actual or "").strip().lower() != str(expected or "").strip().lower():
                return False
        return True

    async def list_tasks_from_project(self, number: str, filters: Optional[TaskFilter] = None) -> list[Task]:
        """List board items as tasks. Never raises; failures degrade to ``[]``."""
        filters = filters or TaskFilter()
        try:
            items = await self._fetch_project_items(str(number))
        except KanbanError as exc:
            self.coordination.warn(
                f"project-item-list:{number}",
                f"Failed to list tasks from project {number}: {exc}",
            )
            return []
        return self._project_tasks(items, str(number), filters)

    async def list_tasks(self, scope: Optional[str] = None, filters: Optional[TaskFilter] = None) -> list[Task]:
        filters = filters or TaskFilter()
        number = str(scope or self.settings.project_number or "")
        mode_key = f"mode:project:{number}"
        if self.project_mode and number and not self.coordination.should_skip(mode_key):
            try:
                items = await self._fetch_project_items(number)
            except KanbanError as exc:
                self.coordination.record_failure(
                    mode_key,
                    FailureKind.TRANSIENT,
                    str(exc),
                    window_ms=self.coordination.windows.mode_fallback_ms,
                )
                self.coordination.warn(mode_key, f"Project {number} listing failed, using issue mode: {exc}")
            else:
                return self._project_tasks(items, number, filters)
        return await self._list_issues(filters)

    async def _list_issues(self, filters: TaskFilter) -> list[Task]:
        key = f"issue-list:{self.slug}"
        state = "open"
        if filters.status is not None and normalise_status(filters.status) in (TaskStatus.DONE, TaskStatus.IGNORED):
            state = "closed"
        limit = filters.limit if filters.limit > 0 else self.settings.list_limit
        args = ["issue", "list", "--repo", self.slug, "--state", state, "--json", ISSUE_FIELDS, "--limit", str(limit)]
        if self.settings.enforce_task_label and self.settings.task_label:
            args += ["--label", self.settings.task_label]
        try:
            raw = await self._call(key, args)
        except TransientBackendError as exc:
            self.coordination.warn(key, f"Failed to list issues for {self.slug}: {exc}")
            return []
        issues = normalize_list_payload(raw, "issues", warn_key=key, throttle=self.coordination.backoff)
        tasks = [self._task_from_issue(issue) for issue in issues]
        return filters.apply(self._scoped(tasks))

    async def list_projects(self) -> list[Project]:
        projects = [Project(id=self.slug, name=self.slug, backend=BackendName.GITHUB)]
        if self.settings.project_number:
            projects.append(
                Project(
                    id=str(self.settings.project_number),
                    name=f"{self.settings.project_owner or self.settings.repo_owner} project {self.settings.project_number}",
                    backend=BackendName.GITHUB,
                    meta={"owner": self.settings.project_owner or self.settings.repo_owner},
                )
            )
        return projects

    # ------------------------------------------------------------------
    # single issue operations
    # ------------------------------------------------------------------

    async def _view_issue(self, num: str, fields: str) -> dict[str, Any]:
        data = await self._call(f"issue-view:{num}", ["issue", "view", num, "--repo", self.slug, "--json", fields])
        if not isinstance(data, dict):
            raise ShapeError(f"issue view #{num} returned {type(data).__name__}")
        return data

    async def get_task(self, task_id: str) -> Task:
        num = parse_issue_number(task_id)
        issue = await self._view_issue(num, ISSUE_FIELDS + ",comments")
        return self._task_from_issue(issue)

    async def _issue_labels(self, num: str) -> list[str]:
        issue = await self._view_issue(num, "labels")
        return normalize_labels(issue.get("labels"))

    async def _ensure_label(self, label: str) -> None:
        if label in self._known_labels:
            return
        try:
            await self._call(f"label-create:{label}", ["label", "create", label, "--repo", self.slug], parse_json=False)
        except PermanentBackendError as exc:
            if "already exists" not in str(exc).lower():
                raise
        self._known_labels.add(label)

    async def _edit_labels(self, num: str, add: Sequence[str] = (), remove: Sequence[str] = ()) -> None:
        if not add and not remove:
            return
        for label in add:
            await self._ensure_label(label)
        args = ["issue", "edit", num, "--repo", self.slug]
        for label in add:
            args += ["--add-label", label]
        for label in remove:
            args += ["--remove-label", label]
        await self._call(f"issue-edit:{num}", args, parse_json=False)

    async def _resolve_default_assignee(self) -> Optional[str]:
        if self.settings.default_assignee:
            return self.settings.default_assignee
        if self._default_assignee is not _UNSET:
            return self._default_assignee
        self._default_assignee = None
        if self.settings.auto_assign_creator:
            try:
                login = await self._call("api-user:login", ["api", "user", "--jq", ".login"], parse_json=False)
                self._default_assignee = str(login or "").strip() or None
            except KanbanError as exc:
                logger.debug("Could not resolve gh user for default assignee: {}", exc)
        return self._default_assignee

    async def create_task(self, scope: Optional[str], draft: TaskDraft) -> Task:
        title = (draft.title or "").strip()
        if not title:
            raise InvalidIdentifierError("GitHub: task title must not be empty")
        status = normalise_status(draft.status)
        labels = normalize_labels(list(draft.labels) + [self.settings.task_label])
        if status is TaskStatus.INPROGRESS and INPROGRESS_LABEL not in labels:
            labels.append(INPROGRESS_LABEL)
        priority = normalize_priority(draft.priority)
        if priority and f"priority:{priority}" not in labels:
            labels.append(f"priority:{priority}")
        for label in labels:
            await self._ensure_label(label)
        assignee = draft.assignee or await self._resolve_default_assignee()

        args = ["issue", "create", "--repo", self.slug, "--title", title, "--body", draft.description or ""]
        if assignee:
            args += ["--assignee", assignee]
        for label in labels:
            args += ["--label", label]
        output = str(await self._call(f"issue-create:{self.slug}", args, parse_json=False) or "")

        match = ISSUE_URL_RE.search(output)
        if match:
            num, url = match.group(1), match.group(0)
        else:
            bare = re.match(r"^#?(\d+)$", output.strip())
            if not bare:
                raise PermanentBackendError(f"gh issue create: could not find issue number in output {output.strip()[:200]!r}")
            num, url = bare.group(1), None
        logger.info("Created GitHub issue #{} in {}", num, self.slug)

        if status in (TaskStatus.DONE, TaskStatus.IGNORED):
            return await self.update_task_status(num, status)
        number = str(scope or self.settings.project_number or "")
        if url and self.project_mode and number and self.settings.project_auto_sync:
            await self._sync_project_status(number, url, num, status)
        return await self.get_task(num)

    async def update_task(self, task_id: str, patch: TaskPatch) -> Task:
        num = parse_issue_number(task_id)
        args = ["issue", "edit", num, "--repo", self.slug]
        if patch.title is not None:
            args += ["--title", patch.title]
        if patch.description is not None:
            args += ["--body", patch.description]
        if patch.assignee:
            args += ["--add-assignee", patch.assignee]
        if len(args) > 5:
            await self._call(f"issue-edit:{num}", args, parse_json=False)
        if patch.labels is not None:
            current = await self._issue_labels(num)
            wanted = normalize_labels(patch.labels)
            # Lease and status labels are managed by their own operations.
            managed = set(LEASE_LABELS) | set(INPROGRESS_LABEL_ALIASES)
            add = [label for label in wanted if label not in current]
            remove = [label for label in current if label not in wanted and label not in managed]
            await self._edit_labels(num, add, remove)
        if patch.priority is not None:
            await self._set_priority_label(num, normalize_priority(patch.priority))
        if patch.status is not None:
            return await self.update_task_status(num, patch.status)
        return await self.get_task(num)

    async def _set_priority_label(self, num: str, priority: Optional[str]) -> None:
        current = await self._issue_labels(num)
        label = f"priority:{priority}" if priority else None
        remove = [name for name in current if name.startswith("priority:") and name != label]
        add = [label] if label and label not in current else []
        await self._edit_labels(num, add, remove)

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        shared_state: Optional[SharedState] = None,
    ) -> Task:
        num = parse_issue_number(task_id)
        target = normalise_status(status)
        if target in (TaskStatus.DONE, TaskStatus.IGNORED):
            args = ["issue", "close", num, "--repo", self.slug]
            if target is TaskStatus.IGNORED:
                args += ["--reason", "not planned"]
            await self._call(f"issue-close:{num}", args, parse_json=False)
        else:
            issue = await self._view_issue(num, "state,labels")
            labels = normalize_labels(issue.get("labels"))
            if str(issue.get("state") or "").upper() == "CLOSED":
                await self._call(f"issue-reopen:{num}", ["issue", "reopen", num, "--repo", self.slug], parse_json=False)
            present = [label for label in labels if label in INPROGRESS_LABEL_ALIASES]
            if target is TaskStatus.INPROGRESS:
                add = [] if INPROGRESS_LABEL in labels else [INPROGRESS_LABEL]
                remove = [label for label in present if label != INPROGRESS_LABEL]
            else:
                add, remove = [], present
            await self._edit_labels(num, add, remove)

        if shared_state is not None and not await self.persist_shared_state(num, shared_state):
            logger.warning("Status of #{} updated but lease was not persisted", num)

        task = await self.get_task(num)
        number = str(self.settings.project_number or "")
        if self.project_mode and number and self.settings.project_auto_sync and task.task_url:
            await self._sync_project_status(number, task.task_url, num, target)
        return task

    async def delete_task(self, task_id: str) -> bool:
        # Issues cannot be deleted through the CLI; close them as not planned.
        num = parse_issue_number(task_id)
        await self._call(
            f"issue-close:{num}",
            ["issue", "close", num, "--repo", self.slug, "--reason", "not planned"],
            parse_json=False,
        )
        return True

    async def add_comment(self, task_id: str, body: str) -> bool:
        num = parse_issue_number(task_id)
        if not str(body or "").strip():
            raise InvalidIdentifierError(f"GitHub: comment body for #{num} must not be empty")
        try:
            await self._post_comment(num, body)
        except TransientBackendError as exc:
            self.coordination.warn(f"issue-comment:{num}", f"Failed to comment on #{num}: {exc}")
            return False
        return True

    async def _post_comment(self, num: str, body: str) -> None:
        await self._call(
            f"issue-comment:{num}",
            ["issue", "comment", num, "--repo", self.slug, "--body", str(body)[:GH_MAX_COMMENT_CHARS]],
            parse_json=False,
        )

    # ------------------------------------------------------------------
    # project board sync
    # ------------------------------------------------------------------

    async def _project_fields(self, number: str) -> ProjectFieldCache:
        cached = self._field_cache.get(number)
        now = self.coordination.clock()
        if cached is not None and now - cached.fetched_at_ms < PROJECT_FIELDS_CACHE_TTL_MS:
            return cached
        key = f"project-field-list:{number}"

        async def _fetch() -> ProjectFieldCache:
            raw = await self._project_call("field-list", number, ["--format", "json"])
            fields = normalize_list_payload(raw, "fields", warn_key=key, throttle=self.coordination.backoff)
            status_field = next(
                (f for f in fields if str(f.get("name") or "").strip().lower() == "status" and isinstance(f.get("options"), list)),
                None,
            )
            options: dict[str, str] = {}
            if status_field is not None:
                for option in status_field["options"]:
                    if isinstance(option, dict) and option.get("id") and option.get("name"):
                        options[str(option["name"]).strip().lower()] = str(option["id"])
            cache = ProjectFieldCache(
                status_field_id=str(status_field["id"]) if status_field and status_field.get("id") else None,
                status_options=options,
                fields=fields,
                project_node_id=cached.project_node_id if cached else None,
                fetched_at_ms=now,
            )
            self._field_cache[number] = cache
            return cache

        return await self.coordination.dedup.dedupe(key, _fetch)

    async def _project_node_id(self, number: str, cache: ProjectFieldCache) -> Optional[str]:
        if cache.project_node_id:
            return cache.project_node_id
        data = await self._project_call("view", number, ["--format", "json"])
        node_id = data.get("id") if isinstance(data, dict) else None
        cache.project_node_id = str(node_id) if node_id else None
        return cache.project_node_id

    async def _project_item_id(self, number: str, num: str, url: str) -> Optional[str]:
        cached = self._project_item_ids.get((number, num))
        if cached:
            return cached
        data = await self._project_call("item-add", number, ["--url", url, "--format", "json"])
        item_id = data.get("id") if isinstance(data, dict) else None
        if item_id:
            self._project_item_ids[(number, num)] = str(item_id)
        return str(item_id) if item_id else None

    async def _sync_project_status(self, number: str, url: str, num: str, status: TaskStatus) -> bool:
        """Move the board item to the column for *status*. Best effort."""
        try:
            fields = await self._project_fields(number)
            if not fields.status_field_id:
                self.coordination.warn(f"project-sync:{number}", f"Project {number} has no Status field; skipping sync")
                return False
            target_name = self.settings.project_status_names.get(status.value, status.value)
            option_id = fields.option_id(target_name)
            if option_id is None:
                option_id = next(
                    (oid for name, oid in fields.status_options.items() if normalise_status(name) is status),
                    None,
                )
            if option_id is None:
                self.coordination.warn(
                    f"project-sync:{number}:{status.value}",
                    f"Project {number} has no status option matching '{target_name}'",
                )
                return False
            item_id = await self._project_item_id(number, num, url)
            project_id = await self._project_node_id(number, fields)
            if not item_id or not project_id:
                self.coordination.warn(f"project-sync:{number}", f"Could not resolve project item for #{num}")
                return False
            await self._call(
                f"project-item-edit:{number}",
                [
                    "project", "item-edit",
                    "--id", item_id,
                    "--project-id", project_id,
                    "--field-id", fields.status_field_id,
                    "--single-select-option-id", option_id,
                ],
                parse_json=False,
            )
        except KanbanError as exc:
            self.coordination.warn(f"project-sync:{number}", f"Failed to sync #{num} to project {number}: {exc}")
            return False
        logger.debug("Synced #{} to project {} status '{}'", num, number, target_name)
        return True

    async def sync_field_to_project(
        self,
        task_id: str,
        field_name: str,
        value: Any,
        number: Optional[str] = None,
    ) -> bool:
        """Set one project field (select, iteration, number, date or text) on the issue's board item.

        Best effort: a missing field, an unusable value or a gh failure is
        warned about and reported as ``False``.
        """
        num = parse_issue_number(task_id)
        number = str(number or self.settings.project_number or "")
        if not number:
            self.coordination.warn("project-field-sync", "No project number configured; skipping field sync")
            return False
        try:
            fields = await self._project_fields(number)
            field_def = fields.find_field(field_name)
            if field_def is None or not field_def.get("id"):
                self.coordination.warn(
                    f"project-field-sync:{number}:{field_name}",
                    f"Project {number} has no field named '{field_name}'",
                )
                return False
            value_args = _project_value_args(field_def, value)
            if value_args is None:
                self.coordination.warn(
                    f"project-field-sync:{number}:{field_name}",
                    f"Value {value!r} does not fit project field '{field_name}'",
                )
                return False
            url = f"https://github.com/{self.slug}/issues/{num}"
            item_id = await self._project_item_id(number, num, url)
            project_id = await self._project_node_id(number, fields)
            if not item_id or not project_id:
                self.coordination.warn(f"project-sync:{number}", f"Could not resolve project item for #{num}")
                return False
            await self._call(
                f"project-item-edit:{number}",
                [
                    "project", "item-edit",
                    "--id", item_id,
                    "--project-id", project_id,
                    "--field-id", str(field_def["id"]),
                    *value_args,
                ],
                parse_json=False,
            )
        except KanbanError as exc:
            self.coordination.warn(
                f"project-field-sync:{number}:{field_name}",
                f"Failed to set '{field_name}' on #{num} in project {number}: {exc}",
            )
            return False
        logger.debug("Set project {} field '{}' on #{}", number, field_name, num)
        return True

    async def sync_iteration_to_project(self, task_id: str, iteration_name: str, number: Optional[str] = None) -> bool:
        return await self.sync_field_to_project(task_id, "Iteration", iteration_name, number)

    # ------------------------------------------------------------------
    # lease persistence
    # ------------------------------------------------------------------

    async def _list_comments(self, num: str) -> list[dict[str, Any]]:
        output = await self._call(
            f"issue-comments:{num}",
            ["api", f"repos/{self.slug}/issues/{num}/comments", "--paginate", "--jq", ".[] | {id, body}"],
            parse_json=False,
        )
        return [c for c in _parse_json_lines(str(output or "")) if isinstance(c, dict)]

    async def _apply_lease_labels(self, num: str, state: SharedState) -> None:
        current = await self._issue_labels(num)
        wanted = _LEASE_LABEL_BY_STATUS.get(state.status)
        remove = [label for label in LEASE_LABELS if label in current and label != wanted]
        add = [wanted] if wanted and wanted not in current else []
        await self._edit_labels(num, add, remove)

    async def _write_state_comment(self, num: str, state: SharedState) -> None:
        body = encode_shared_state(state)
        comments = await self._list_comments(num)
        newest = comments[-1] if comments else None
        if newest is not None and newest.get("id") and has_marker(newest.get("body")):
            await self._call(
                f"issue-comment-edit:{num}",
                ["api", "-X", "PATCH", f"repos/{self.slug}/issues/comments/{newest['id']}", "-f", f"body={body}"],
                parse_json=False,
            )
        else:
            await self._post_comment(num, body)

    async def persist_shared_state(self, task_id: str, state: SharedState) -> bool:
        num = parse_issue_number(task_id)
        try:
            await self._apply_lease_labels(num, state)
            await self._write_state_comment(num, state)
        except NotFoundError as exc:
            self.coordination.remember_missing(f"issue-comments:{num}")
            logger.warning("Cannot persist lease for #{}: {}", num, exc)
            return False
        except KanbanError as exc:
            logger.error("Persisting lease for #{} failed after retries: {}", num, exc)
            return False
        self.coordination.forget_missing(f"issue-comments:{num}")
        logger.debug("Persisted lease for #{} ({} by {})", num, state.status.value, state.owner_id)
        return True

    async def read_shared_state(self, task_id: str) -> Optional[SharedState]:
        num = parse_issue_number(task_id)
        key = f"issue-comments:{num}"
        if self.coordination.is_known_missing(key):
            return None
        try:
            comments = await self._list_comments(num)
        except NotFoundError:
            self.coordination.remember_missing(key)
            return None
        except KanbanError as exc:
            self.coordination.warn(key, f"Failed to read lease for #{num}: {exc}")
            return None
        return latest_shared_state(c.get("body") for c in comments)

    async def mark_task_ignored(self, task_id: str, reason: str) -> bool:
        num = parse_issue_number(task_id)
        previous = await self.read_shared_state(num)
        if not await self.persist_shared_state(num, ignored_state(reason, previous)):
            return False
        note = (
            f"**bosun**: this task has been marked as ignored.\n\n**Reason**: {reason}\n\n"
            f"Remove the `{LEASE_LABEL_IGNORE}` label to let bosun pick it up again."
        )
        return await self.add_comment(num, note)
