"""Jira Cloud (REST v3) as a task backend."""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Awaitable, Callable, Optional

import httpx
from loguru import logger

from ..config import JiraSettings, KanbanSettings
from ..constants import (
    DEFAULT_COMMAND_TIMEOUT_MS,
    DEFAULT_TRANSIENT_RETRY_COUNT,
    DEFAULT_TRANSIENT_RETRY_MS,
    LEASE_LABEL_CLAIMED,
    LEASE_LABEL_IGNORE,
    LEASE_LABEL_STALE,
    LEASE_LABEL_WORKING,
    LEASE_LABELS,
)
from ..coordination import CoordinationState
from ..errors import (
    InvalidIdentifierError,
    KanbanError,
    NotFoundError,
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
    SharedState,
    Task,
    TaskDraft,
    TaskFilter,
    TaskPatch,
    TaskStatus,
    normalise_status,
    extract_branch,
    extract_pr_number,
    normalize_labels,
    normalize_priority,
)
from ..payloads import normalize_list_payload
from ..shared_state import encode_shared_state, has_marker, ignored_state, latest_shared_state, state_from_field
from .base import TaskBackend

API = "/rest/api/3"
ISSUE_KEY_RE = re.compile(r"^[A-Z][A-Z0-9_]*-\d+$")
ISSUE_FIELDS = "summary,description,status,assignee,labels,project,comment,priority"
# Jira's stock priority scheme.
JIRA_PRIORITY_NAMES = {"critical": "Highest", "high": "High", "medium": "Medium", "low": "Low"}
COMMENT_PAGE_SIZE = 100

STATUS_CANDIDATES: dict[TaskStatus, tuple[str, ...]] = {
    TaskStatus.TODO: ("to do", "todo", "selected for development", "open", "backlog"),
    TaskStatus.INPROGRESS: ("in progress", "in development", "doing", "active", "in review"),
    TaskStatus.DONE: ("done", "resolved", "closed", "complete", "completed"),
    TaskStatus.IGNORED: ("won't do", "wont do", "cancelled", "canceled", "declined"),
}
STATUS_CATEGORY: dict[TaskStatus, Optional[str]] = {
    TaskStatus.TODO: "new",
    TaskStatus.INPROGRESS: "indeterminate",
    TaskStatus.DONE: "done",
    TaskStatus.IGNORED: None,
}
JQL_CATEGORY: dict[TaskStatus, str] = {
    TaskStatus.TODO: 'statusCategory = "To Do"',
    TaskStatus.INPROGRESS: 'statusCategory = "In Progress"',
    TaskStatus.DONE: "statusCategory = Done",
    TaskStatus.IGNORED: "statusCategory = Done",
}

_SANITIZE_RE = re.compile(r"[^a-z0-9_.-]+")


def parse_issue_key(task_id: Any) -> str:
    key = str(task_id or "").strip().upper()
    if not ISSUE_KEY_RE.match(key):
        raise InvalidIdentifierError(f"Jira: invalid issue key {task_id!r}, expected e.g. PROJ-123")
    return key


def sanitize_label(label: str) -> str:
    """Jira labels may not contain spaces; ``bosun:claimed`` becomes ``bosun-claimed``."""
    return _SANITIZE_RE.sub("-", str(label or "").strip().lower()).strip("-")


JIRA_LEASE_LABELS = tuple(sanitize_label(label) for label in LEASE_LABELS)
_LEASE_LABEL_BY_STATUS = {
    LeaseStatus.CLAIMED: sanitize_label(LEASE_LABEL_CLAIMED),
    LeaseStatus.WORKING: sanitize_label(LEASE_LABEL_WORKING),
    LeaseStatus.STALE: sanitize_label(LEASE_LABEL_STALE),
    LeaseStatus.IGNORED: sanitize_label(LEASE_LABEL_IGNORE),
}
JIRA_IGNORE_LABEL = sanitize_label(LEASE_LABEL_IGNORE)


def text_to_adf(text: str) -> dict[str, Any]:
    """Wrap plain text into an Atlassian Document, one paragraph per line."""
    lines = str(text or "").splitlines() or [""]
    content = []
    for line in lines:
        paragraph: dict[str, Any] = {"type": "paragraph", "content": []}
        if line:
            paragraph["content"].append({"type": "text", "text": line})
        content.append(paragraph)
    return {"type": "doc", "version": 1, "content": content}


def adf_to_text(node: Any) -> str:
    if node is None:
        return ""
    if isinstance(node, str):
        return node
    if isinstance(node, list):
        return "".join(adf_to_text(entry) for entry in node)
    if not isinstance(node, dict):
        return ""
    kind = node.get("type")
    if kind == "text":
        return str(node.get("text") or "")
    if kind == "hardBreak":
        return "\n"
    inner = adf_to_text(node.get("content") or [])
    if kind in ("paragraph", "heading"):
        return inner + "\n"
    return inner


def body_text(body: Any) -> str:
    if isinstance(body, str):
        return body
    return adf_to_text(body).strip()


def jira_priority_name(priority: str) -> str:
    normalized = normalize_priority(priority)
    return JIRA_PRIORITY_NAMES.get(normalized, str(priority).strip()) if normalized else str(priority).strip()


class JiraBackend(TaskBackend):
    name = BackendName.JIRA.value
    supports_shared_state = True

    def __init__(
        self,
        settings: JiraSettings,
        coordination: CoordinationState,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
        transient_retry_ms: int = DEFAULT_TRANSIENT_RETRY_MS,
        transient_retry_count: int = DEFAULT_TRANSIENT_RETRY_COUNT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.coordination = coordination
        self.transient_retry_ms = transient_retry_ms
        self.transient_retry_count = transient_retry_count
        self._sleep = sleep
        auth = (settings.email, settings.api_token) if settings.email and settings.api_token else None
        self._client = httpx.AsyncClient(
            base_url=settings.base_url or "http://jira.invalid",
            auth=auth,
            headers={"Accept": "application/json"},
            timeout=httpx.Timeout(timeout_ms / 1000, connect=10.0),
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: KanbanSettings,
        coordination: CoordinationState,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "JiraBackend":
        return cls(
            settings.jira,
            coordination,
            transport=transport,
            timeout_ms=settings.command_timeout_ms,
            transient_retry_ms=settings.transient_retry_ms,
            transient_retry_count=settings.transient_retry_count,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    @staticmethod
    def _error_text(payload: Any, response: httpx.Response) -> str:
        if isinstance(payload, dict):
            messages = [str(m) for m in payload.get("errorMessages") or []]
            errors = payload.get("errors")
            if isinstance(errors, dict):
                messages += [f"{k}: {v}" for k, v in errors.items()]
            if messages:
                return "; ".join(messages)
        text = payload if isinstance(payload, str) else ""
        return text.strip()[:500] or response.reason_phrase or "unknown error"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        body: Any = None,
    ) -> Any:
        if not self.settings.configured:
            raise PermanentBackendError("Jira is not configured (JIRA_BASE_URL, JIRA_EMAIL, JIRA_API_TOKEN)")
        try:
            response = await self._client.request(method, path, params=params, json=body)
        except httpx.TimeoutException as exc:
            raise TransientBackendError(f"Jira {method} {path} timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransientBackendError(f"Jira {method} {path} network error: {exc}") from exc

        payload: Any = None
        if response.content:
            if "json" in response.headers.get("content-type", ""):
                try:
                    payload = response.json()
                except ValueError:
                    payload = response.text
            else:
                payload = response.text
        if response.is_success:
            return payload

        status = response.status_code
        message = f"Jira {method} {path} failed ({status}): {self._error_text(payload, response)}"
        if 400 <= status < 500 and status not in (404, 408, 409, 429):
            err: KanbanError = PermanentBackendError(message)
        else:
            err = error_for(classify_failure(message, status), message)
        err.status_code = status
        raise err

    async def _call(self, key: str, method: str, path: str, **kwargs: Any) -> Any:
        return await self.coordination.guarded_call(
            key,
            lambda: self._request(method, path, **kwargs),
            retries=self.transient_retry_count,
            base_ms=self.transient_retry_ms,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # mapping
    # ------------------------------------------------------------------

    def _status_from_fields(self, fields: dict[str, Any], labels: list[str]) -> TaskStatus:
        if JIRA_IGNORE_LABEL in labels:
            return TaskStatus.IGNORED
        status = fields.get("status") if isinstance(fields.get("status"), dict) else {}
        name = str(status.get("name") or "")
        for canonical, configured in self.settings.status_names.items():
            if configured.strip().lower() == name.strip().lower():
                return TaskStatus(canonical)
        by_name = normalise_status(name)
        if by_name is TaskStatus.IGNORED:
            return by_name
        category = str((status.get("statusCategory") or {}).get("key") or "").lower()
        if category == "done":
            return TaskStatus.DONE
        if category == "indeterminate":
            return TaskStatus.INPROGRESS
        return by_name

    @staticmethod
    def _assignee(fields: dict[str, Any]) -> Optional[str]:
        assignee = fields.get("assignee")
        if not isinstance(assignee, dict):
            return None
        return assignee.get("displayName") or assignee.get("emailAddress") or assignee.get("accountId") or None

    def _shared_state_from_issue(self, fields: dict[str, Any]) -> Optional[SharedState]:
        if self.settings.shared_state_field:
            state = state_from_field(fields.get(self.settings.shared_state_field))
            if state is not None:
                return state
        comment = fields.get("comment")
        comments = comment.get("comments") if isinstance(comment, dict) else None
        if isinstance(comments, list):
            return latest_shared_state(body_text(c.get("body")) for c in comments if isinstance(c, dict))
        return None

    def _task_from_issue(self, issue: dict[str, Any]) -> Task:
        fields = issue.get("fields") if isinstance(issue.get("fields"), dict) else {}
        key = str(issue.get("key") or "")
        labels = normalize_labels(fields.get("labels"))
        project = fields.get("project") if isinstance(fields.get("project"), dict) else {}
        description = body_text(fields.get("description"))
        comment = fields.get("comment")
        comments = comment.get("comments") if isinstance(comment, dict) else None
        comment_texts = [body_text(c.get("body")) for c in comments or [] if isinstance(c, dict)]
        priority = fields.get("priority")
        return Task(
            id=key,
            title=str(fields.get("summary") or ""),
            description=description,
            status=self._status_from_fields(fields, labels),
            labels=labels,
            assignee=self._assignee(fields),
            task_url=f"{self.settings.base_url}/browse/{key}" if key else None,
            backend=BackendName.JIRA,
            project_id=project.get("key") or self.settings.project_key or None,
            priority=normalize_priority(priority.get("name") if isinstance(priority, dict) else priority),
            branch_name=extract_branch(description, *comment_texts),
            pr_number=extract_pr_number(description, *comment_texts),
            shared_state=self._shared_state_from_issue(fields),
            meta={"jira_status": (fields.get("status") or {}).get("name") if isinstance(fields.get("status"), dict) else None},
        )

    def _issue_fields(self) -> str:
        if self.settings.shared_state_field:
            return f"{ISSUE_FIELDS},{self.settings.shared_state_field}"
        return ISSUE_FIELDS

    # ------------------------------------------------------------------
    # listing
    # ------------------------------------------------------------------

    def _build_jql(self, project_key: str, filters: TaskFilter) -> str:
        if filters.jql:
            return filters.jql
        clauses = [f'project = "{project_key}"']
        if self.settings.enforce_task_label and self.settings.task_label:
            clauses.append(f'labels = "{sanitize_label(self.settings.task_label)}"')
        if filters.status is not None:
            clauses.append(JQL_CATEGORY[normalise_status(filters.status)])
        else:
            clauses.append("statusCategory != Done")
        if filters.assignee:
            clauses.append(f'assignee = "{filters.assignee}"')
        return " AND ".join(clauses) + " ORDER BY created ASC"

    async def _search(self, key: str, jql: str, limit: int) -> Any:
        params = {"jql": jql, "maxResults": min(max(limit, 1), 1000), "fields": self._issue_fields()}
        try:
            return await self._call(key, "GET", f"{API}/search/jql", params=params)
        except (NotFoundError, PermanentBackendError) as exc:
            if exc.status_code not in (404, 410):
                raise
            logger.debug("Jira /search/jql unavailable ({}); using legacy /search", exc.status_code)
            return await self._call(key, "GET", f"{API}/search", params=params)

    async def list_tasks(self, scope: Optional[str] = None, filters: Optional[TaskFilter] = None) -> list[Task]:
        filters = filters or TaskFilter()
        project_key = str(scope or self.settings.project_key or "").strip().upper()
        if not project_key and not filters.jql:
            raise InvalidIdentifierError("Jira: a project key is required to list tasks (JIRA_PROJECT_KEY)")
        key = f"jira-search:{project_key or 'jql'}"
        limit = filters.limit if filters.limit > 0 else self.settings.list_limit
        try:
            raw = await self._search(key, self._build_jql(project_key, filters), limit)
        except TransientBackendError as exc:
            self.coordination.warn(key, f"Failed to list Jira issues for {project_key}: {exc}")
            return []
        issues = normalize_list_payload(raw, "issues", warn_key=key, throttle=self.coordination.backoff)
        tasks = [self._task_from_issue(issue) for issue in issues]
        if self.settings.enforce_task_label:
            tasks = [t for t in tasks if sanitize_label(self.settings.task_label) in t.labels]
        return filters.apply(tasks)

    async def list_projects(self) -> list[Project]:
        data = await self._call("jira-projects", "GET", f"{API}/project/search", params={"maxResults": 1000, "orderBy": "name"})
        values = normalize_list_payload(data, "values", warn_key="jira-projects", throttle=self.coordination.backoff)
        return [
            Project(
                id=str(p.get("key") or p.get("id") or ""),
                name=str(p.get("name") or p.get("key") or ""),
                backend=BackendName.JIRA,
                meta={"id": p.get("id")},
            )
            for p in values
        ]

    # ------------------------------------------------------------------
    # single issue operations
    # ------------------------------------------------------------------

    async def _fetch_issue(self, key: str, fields: Optional[str] = None) -> dict[str, Any]:
        data = await self._call(f"jira-issue:{key}", "GET", f"{API}/issue/{key}", params={"fields": fields or self._issue_fields()})
        if not isinstance(data, dict):
            raise ShapeError(f"Jira issue {key} returned {type(data).__name__}")
        return data

    async def get_task(self, task_id: str) -> Task:
        key = parse_issue_key(task_id)
        return self._task_from_issue(await self._fetch_issue(key))

    async def create_task(self, scope: Optional[str], draft: TaskDraft) -> Task:
        project_key = str(scope or self.settings.project_key or "").strip().upper()
        if not project_key:
            raise InvalidIdentifierError("Jira: a project key is required to create tasks (JIRA_PROJECT_KEY)")
        title = (draft.title or "").strip()
        if not title:
            raise InvalidIdentifierError("Jira: task summary must not be empty")
        labels = [sanitize_label(label) for label in normalize_labels(list(draft.labels) + [self.settings.task_label])]
        fields: dict[str, Any] = {
            "project": {"key": project_key},
            "summary": title,
            "issuetype": {"name": self.settings.issue_type},
            "labels": [label for label in labels if label],
        }
        if draft.description:
            fields["description"] = text_to_adf(draft.description)
        assignee = draft.assignee or self.settings.default_assignee
        if assignee:
            fields["assignee"] = {"accountId": assignee}
        if draft.priority:
            fields["priority"] = {"name": jira_priority_name(draft.priority)}
        data = await self._call(f"jira-create:{project_key}", "POST", f"{API}/issue", body={"fields": fields})
        key = str((data or {}).get("key") or "") if isinstance(data, dict) else ""
        if not key:
            raise PermanentBackendError(f"Jira create in {project_key} returned no issue key")
        logger.info("Created Jira issue {}", key)
        status = normalise_status(draft.status)
        if status is not TaskStatus.TODO:
            return await self.update_task_status(key, status)
        return await self.get_task(key)

    async def _set_labels(self, key: str, add: list[str], remove: list[str]) -> None:
        ops = [{"remove": label} for label in remove] + [{"add": label} for label in add]
        if not ops:
            return
        await self._call(f"jira-edit:{key}", "PUT", f"{API}/issue/{key}", body={"update": {"labels": ops}})

    async def update_task(self, task_id: str, patch: TaskPatch) -> Task:
        key = parse_issue_key(task_id)
        fields: dict[str, Any] = {}
        if patch.title is not None:
            fields["summary"] = patch.title
        if patch.description is not None:
            fields["description"] = text_to_adf(patch.description)
        if patch.assignee:
            fields["assignee"] = {"accountId": patch.assignee}
        if patch.labels is not None:
            current = normalize_labels((await self._fetch_issue(key, "labels")).get("fields", {}).get("labels"))
            kept = [label for label in current if label in JIRA_LEASE_LABELS]
            wanted = [sanitize_label(label) for label in normalize_labels(patch.labels)]
            fields["labels"] = normalize_labels(wanted + kept)
        if patch.priority:
            fields["priority"] = {"name": jira_priority_name(patch.priority)}
        if fields:
            await self._call(f"jira-edit:{key}", "PUT", f"{API}/issue/{key}", body={"fields": fields})
        if patch.status is not None:
            return await self.update_task_status(key, patch.status)
        return await self.get_task(key)

    def _pick_transition(self, transitions: list[dict[str, Any]], status: TaskStatus) -> Optional[dict[str, Any]]:
        def _to(t: dict[str, Any]) -> tuple[str, str]:
            to = t.get("to") if isinstance(t.get("to"), dict) else {}
            category = (to.get("statusCategory") or {}).get("key") if isinstance(to.get("statusCategory"), dict) else ""
            return str(to.get("name") or t.get("name") or "").strip().lower(), str(category or "").lower()

        configured = self.settings.status_names.get(status.value, "").strip().lower()
        if configured:
            for t in transitions:
                if _to(t)[0] == configured:
                    return t
        candidates = STATUS_CANDIDATES[status]
        for t in transitions:
            if _to(t)[0] in candidates:
                return t
        category = STATUS_CATEGORY[status]
        if category:
            for t in transitions:
                if _to(t)[1] == category:
                    return t
        return None

    async def _transition(self, key: str, status: TaskStatus) -> bool:
        data = await self._call(f"jira-transitions:{key}", "GET", f"{API}/issue/{key}/transitions")
        transitions = normalize_list_payload(data, "transitions", warn_key=f"jira-transitions:{key}", throttle=self.coordination.backoff)
        match = self._pick_transition(transitions, status)
        if match is None or not match.get("id"):
            return False
        await self._call(
            f"jira-transition:{key}",
            "POST",
            f"{API}/issue/{key}/transitions",
            body={"transition": {"id": str(match["id"])}},
        )
        return True

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        shared_state: Optional[SharedState] = None,
    ) -> Task:
        key = parse_issue_key(task_id)
        target = normalise_status(status)
        if not await self._transition(key, target):
            if target is TaskStatus.IGNORED:
                # No "won't do" workflow state; the ignore label keeps it out of scheduling.
                await self._set_labels(key, [JIRA_IGNORE_LABEL], [])
            else:
                self.coordination.warn(
                    f"jira-transition:{key}:{target.value}",
                    f"Jira {key}: no transition to '{self.settings.status_names.get(target.value, target.value)}'",
                )
        if shared_state is not None and not await self.persist_shared_state(key, shared_state):
            logger.warning("Status of {} updated but lease was not persisted", key)
        return await self.get_task(key)

    async def delete_task(self, task_id: str) -> bool:
        await self.update_task_status(task_id, TaskStatus.IGNORED)
        return True

    async def _post_comment(self, key: str, text: str) -> None:
        path = f"{API}/issue/{key}/comment"
        if not self.settings.use_adf_comments:
            await self._call(f"jira-comment:{key}", "POST", path, body={"body": text})
            return
        try:
            await self._call(f"jira-comment:{key}", "POST", path, body={"body": text_to_adf(text)})
        except PermanentBackendError as exc:
            if exc.status_code != 400:
                raise
            logger.debug("Jira rejected ADF comment on {}; retrying as plain text", key)
            await self._call(f"jira-comment:{key}", "POST", path, body={"body": text})

    async def add_comment(self, task_id: str, body: str) -> bool:
        key = parse_issue_key(task_id)
        if not str(body or "").strip():
            raise InvalidIdentifierError(f"Jira: comment body for {key} must not be empty")
        try:
            await self._post_comment(key, body)
        except TransientBackendError as exc:
            self.coordination.warn(f"jira-comment:{key}", f"Failed to comment on {key}: {exc}")
            return False
        return True

    # ------------------------------------------------------------------
    # lease persistence
    # ------------------------------------------------------------------

    async def _list_comments(self, key: str) -> list[dict[str, Any]]:
        comments: list[dict[str, Any]] = []
        start = 0
        while True:
            page = await self._call(
                f"jira-comments:{key}",
                "GET",
                f"{API}/issue/{key}/comment",
                params={"startAt": start, "maxResults": COMMENT_PAGE_SIZE},
            )
            values = normalize_list_payload(page, "comments", warn_key=f"jira-comments:{key}", throttle=self.coordination.backoff)
            comments.extend(values)
            total = page.get("total") if isinstance(page, dict) else None
            if len(values) < COMMENT_PAGE_SIZE or (isinstance(total, int) and len(comments) >= total):
                return comments
            start += len(values)

    async def _write_state_comment(self, key: str, state: SharedState) -> None:
        text = encode_shared_state(state)
        comments = await self._list_comments(key)
        newest = comments[-1] if comments else None
        if newest is not None and newest.get("id") and has_marker(body_text(newest.get("body"))):
            body = text_to_adf(text) if self.settings.use_adf_comments else text
            await self._call(
                f"jira-comment-edit:{key}",
                "PUT",
                f"{API}/issue/{key}/comment/{newest['id']}",
                body={"body": body},
            )
        else:
            await self._post_comment(key, text)

    async def persist_shared_state(self, task_id: str, state: SharedState) -> bool:
        key = parse_issue_key(task_id)
        try:
            current = normalize_labels((await self._fetch_issue(key, "labels")).get("fields", {}).get("labels"))
            wanted = _LEASE_LABEL_BY_STATUS.get(state.status)
            remove = [label for label in JIRA_LEASE_LABELS if label in current and label != wanted]
            add = [wanted] if wanted and wanted not in current else []
            await self._set_labels(key, add, remove)
            if self.settings.shared_state_field:
                await self._call(
                    f"jira-edit:{key}",
                    "PUT",
                    f"{API}/issue/{key}",
                    body={"fields": {self.settings.shared_state_field: json.dumps(state.to_wire(), sort_keys=True)}},
                )
            await self._write_state_comment(key, state)
        except NotFoundError as exc:
            self.coordination.remember_missing(f"jira-comments:{key}")
            logger.warning("Cannot persist lease for {}: {}", key, exc)
            return False
        except KanbanError as exc:
            logger.error("Persisting lease for {} failed after retries: {}", key, exc)
            return False
        self.coordination.forget_missing(f"jira-comments:{key}")
        return True

    async def read_shared_state(self, task_id: str) -> Optional[SharedState]:
        key = parse_issue_key(task_id)
        cache_key = f"jira-comments:{key}"
        if self.coordination.is_known_missing(cache_key):
            return None
        try:
            if self.settings.shared_state_field:
                issue = await self._fetch_issue(key, self.settings.shared_state_field)
                state = state_from_field(issue.get("fields", {}).get(self.settings.shared_state_field))
                if state is not None:
                    return state
            comments = await self._list_comments(key)
        except NotFoundError:
            self.coordination.remember_missing(cache_key)
            return None
        except KanbanError as exc:
            self.coordination.warn(cache_key, f"Failed to read lease for {key}: {exc}")
            return None
        return latest_shared_state(body_text(c.get("body")) for c in comments)

    async def mark_task_ignored(self, task_id: str, reason: str) -> bool:
        key = parse_issue_key(task_id)
        previous = await self.read_shared_state(key)
        if not await self.persist_shared_state(key, ignored_state(reason, previous)):
            return False
        note = (
            f"bosun: this task has been marked as ignored.\n\nReason: {reason}\n\n"
            f"Remove the '{JIRA_IGNORE_LABEL}' label to let bosun pick it up again."
        )
        return await self.add_comment(key, note)
