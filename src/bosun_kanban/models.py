"""Backend-agnostic data model for kanban tasks and their coordination state.

Tasks are plain dataclasses so they serialize to YAML / JSON for the
internal store. The lease record (:class:`SharedState`) is a pydantic model
because it is parsed from untrusted text embedded in issue comments and has
to accept both the camelCase wire keys and older snake_case payloads.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .utils import _parse_iso


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    """Canonical board status shared by every backend."""

    TODO = "todo"
    INPROGRESS = "inprogress"
    DONE = "done"
    IGNORED = "ignored"


class LeaseStatus(str, Enum):
    """Status carried inside a lease record."""

    CLAIMED = "claimed"
    WORKING = "working"
    # Written by older workers that flagged an abandoned attempt; reclaimable.
    STALE = "stale"
    DONE = "done"
    IGNORED = "ignored"


class BackendName(str, Enum):
    INTERNAL = "internal"
    GITHUB = "github"
    JIRA = "jira"


_STATUS_ALIASES: dict[str, TaskStatus] = {
    # todo
    "todo": TaskStatus.TODO,
    "to do": TaskStatus.TODO,
    "backlog": TaskStatus.TODO,
    "open": TaskStatus.TODO,
    "reopened": TaskStatus.TODO,
    "draft": TaskStatus.TODO,
    "blocked": TaskStatus.TODO,
    "new": TaskStatus.TODO,
    "selected for development": TaskStatus.TODO,
    # inprogress
    "inprogress": TaskStatus.INPROGRESS,
    "in-progress": TaskStatus.INPROGRESS,
    "in_progress": TaskStatus.INPROGRESS,
    "in progress": TaskStatus.INPROGRESS,
    "started": TaskStatus.INPROGRESS,
    "doing": TaskStatus.INPROGRESS,
    "inreview": TaskStatus.INPROGRESS,
    "in-review": TaskStatus.INPROGRESS,
    "in_review": TaskStatus.INPROGRESS,
    "in review": TaskStatus.INPROGRESS,
    "review": TaskStatus.INPROGRESS,
    "indeterminate": TaskStatus.INPROGRESS,
    # done
    "done": TaskStatus.DONE,
    "closed": TaskStatus.DONE,
    "resolved": TaskStatus.DONE,
    "complete": TaskStatus.DONE,
    "completed": TaskStatus.DONE,
    "merged": TaskStatus.DONE,
    # ignored
    "ignored": TaskStatus.IGNORED,
    "cancelled": TaskStatus.IGNORED,
    "canceled": TaskStatus.IGNORED,
    "not planned": TaskStatus.IGNORED,
    "not_planned": TaskStatus.IGNORED,
    "won't do": TaskStatus.IGNORED,
    "wont do": TaskStatus.IGNORED,
    "declined": TaskStatus.IGNORED,
}


def normalise_status(raw: Any) -> TaskStatus:
    """Map any backend-native status string onto the canonical set."""
    if isinstance(raw, TaskStatus):
        return raw
    if not raw:
        return TaskStatus.TODO
    key = str(getattr(raw, "value", raw)).strip().lower()
    return _STATUS_ALIASES.get(key, TaskStatus.TODO)


def normalize_labels(raw: Any) -> list[str]:
    """Lower-case, strip and de-duplicate labels, keeping first-seen order.

    Accepts a comma-separated string, a list of strings, or a list of
    ``{"name": ...}`` objects as returned by the GitHub CLI.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        values: list[Any] = [part for part in raw.split(",")]
    elif isinstance(raw, (list, tuple, set)):
        values = list(raw)
    else:
        return []
    seen: set[str] = set()
    labels: list[str] = []
    for value in values:
        if isinstance(value, dict):
            value = value.get("name")
        label = str(value or "").strip().lower()
        if not label or label in seen:
            continue
        seen.add(label)
        labels.append(label)
    return labels


PRIORITIES = ("critical", "high", "medium", "low")

_BRANCH_TABLE_RE = re.compile(r"\|\s*\*\*Branch\*\*\s*\|\s*`?([^`|\s]+)`?\s*\|", re.IGNORECASE)
_BRANCH_INLINE_RE = re.compile(r"branch:\s*`?([^\s`]+)`?", re.IGNORECASE)
_PR_TABLE_RE = re.compile(r"\|\s*\*\*PR\*\*\s*\|\s*#?(\d+)", re.IGNORECASE)
_PR_INLINE_RE = re.compile(r"\bpr:\s*#?(\d+)", re.IGNORECASE)
_PR_URL_RE = re.compile(r"github\.com/[^/\s]+/[^/\s]+/pull/(\d+)", re.IGNORECASE)


def normalize_priority(raw: Any) -> Optional[str]:
    """Map a tracker priority name (``Highest``, ``Normal``, ...) onto :data:`PRIORITIES`."""
    value = str(raw or "").strip().lower()
    if not value:
        return None
    if "highest" in value or "critical" in value or "blocker" in value:
        return "critical"
    if "high" in value:
        return "high"
    if "medium" in value or "normal" in value:
        return "medium"
    if "low" in value:
        return "low"
    return None


def priority_from_labels(labels: list[str]) -> Optional[str]:
    """Highest priority named by a ``critical`` / ``priority:high`` style label."""
    found = set()
    for label in labels:
        name = label.split(":", 1)[1] if label.startswith("priority:") else label
        if name in PRIORITIES:
            found.add(name)
    return next((p for p in PRIORITIES if p in found), None)


def extract_branch(*texts: Optional[str]) -> Optional[str]:
    """First branch name mentioned as ``branch: x`` or in a ``| **Branch** |`` table row."""
    for text in texts:
        if not text:
            continue
        match = _BRANCH_TABLE_RE.search(text) or _BRANCH_INLINE_RE.search(text)
        if match:
            return match.group(1)
    return None


def extract_pr_number(*texts: Optional[str]) -> Optional[str]:
    """First pull request number mentioned as ``PR: #12``, a table row or a pull URL."""
    for text in texts:
        if not text:
            continue
        match = _PR_TABLE_RE.search(text) or _PR_INLINE_RE.search(text) or _PR_URL_RE.search(text)
        if match:
            return match.group(1)
    return None


# ---------------------------------------------------------------------------
# Lease record
# ---------------------------------------------------------------------------

class SharedState(BaseModel):
    """Lease record persisted inside a task (comment marker or dedicated field)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    owner_id: str = Field(
        validation_alias=AliasChoices("ownerId", "owner_id"),
        serialization_alias="ownerId",
        min_length=1,
    )
    attempt_token: str = Field(
        validation_alias=AliasChoices("attemptToken", "attempt_token"),
        serialization_alias="attemptToken",
        min_length=1,
    )
    attempt_started: datetime = Field(
        validation_alias=AliasChoices("attemptStarted", "attempt_started"),
        serialization_alias="attemptStarted",
    )
    heartbeat: datetime = Field(
        validation_alias=AliasChoices("heartbeat", "ownerHeartbeat", "owner_heartbeat"),
        serialization_alias="heartbeat",
    )
    status: LeaseStatus = Field(
        validation_alias=AliasChoices("status", "attemptStatus", "attempt_status"),
        serialization_alias="status",
    )
    retry_count: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("retryCount", "retry_count"),
        serialization_alias="retryCount",
    )
    reason: Optional[str] = Field(default=None, serialization_alias="reason")

    @field_validator("attempt_started", "heartbeat", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> Any:
        parsed = _parse_iso(value)
        if parsed is None:
            raise ValueError(f"invalid timestamp: {value!r}")
        return parsed

    @field_validator("retry_count", mode="before")
    @classmethod
    def _coerce_retry_count(cls, value: Any) -> Any:
        if value is None or value == "":
            return 0
        return int(value)

    @property
    def host(self) -> str:
        return self.owner_id.split("/", 1)[0]

    @property
    def worker(self) -> str:
        parts = self.owner_id.split("/", 1)
        return parts[1] if len(parts) > 1 else ""

    def to_wire(self) -> dict[str, Any]:
        """Serialize with camelCase keys and ISO timestamps."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)

    @classmethod
    def from_wire(cls, data: Any) -> "SharedState":
        return cls.model_validate(data)


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """A work item as seen by the scheduling loop, regardless of its origin."""

    id: str
    title: str = ""
    description: str = ""
    status: TaskStatus = TaskStatus.TODO
    labels: list[str] = field(default_factory=list)
    assignee: Optional[str] = None
    task_url: Optional[str] = None
    backend: BackendName = BackendName.INTERNAL
    project_id: Optional[str] = None
    priority: Optional[str] = None
    branch_name: Optional[str] = None
    pr_number: Optional[str] = None
    shared_state: Optional[SharedState] = None
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def is_ignored(self) -> bool:
        if self.status is TaskStatus.IGNORED:
            return True
        return self.shared_state is not None and self.shared_state.status is LeaseStatus.IGNORED

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for YAML/JSON persistence."""
        data: dict[str, Any] = {}
        for k, v in asdict(self).items():
            if k == "shared_state":
                continue
            data[k] = v.value if isinstance(v, Enum) else v
        data["shared_state"] = self.shared_state.to_wire() if self.shared_state else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Deserialize from a plain dict, coercing enums gracefully."""
        d = dict(data)
        backend_raw = d.pop("backend", None)
        try:
            backend = BackendName(str(backend_raw)) if backend_raw else BackendName.INTERNAL
        except ValueError:
            backend = BackendName.INTERNAL
        raw_state = d.pop("shared_state", None)
        shared_state = None
        if isinstance(raw_state, dict):
            try:
                shared_state = SharedState.from_wire(raw_state)
            except ValueError:
                shared_state = None
        meta = d.get("meta")
        return cls(
            id=str(d.get("id") or ""),
            title=str(d.get("title") or ""),
            description=str(d.get("description") or ""),
            status=normalise_status(d.get("status")),
            labels=normalize_labels(d.get("labels")),
            assignee=d.get("assignee") or None,
            task_url=d.get("task_url") or None,
            backend=backend,
            project_id=d.get("project_id") or None,
            priority=normalize_priority(d.get("priority")),
            branch_name=d.get("branch_name") or None,
            pr_number=str(d["pr_number"]) if d.get("pr_number") else None,
            shared_state=shared_state,
            meta=dict(meta) if isinstance(meta, dict) else {},
        )


@dataclass
class Project:
    id: str
    name: str
    backend: BackendName
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskFilter:
    """Filters accepted by ``list_tasks``. Unset fields do not filter."""

    status: Optional[TaskStatus] = None
    labels: list[str] = field(default_factory=list)
    assignee: Optional[str] = None
    limit: int = 0
    project_field: dict[str, Any] = field(default_factory=dict)
    jql: Optional[str] = None

    def matches(self, task: Task) -> bool:
        if self.status is not None and task.status is not normalise_status(self.status):
            return False
        if self.assignee and (task.assignee or "").lower() != self.assignee.lower():
            return False
        wanted = normalize_labels(self.labels)
        if wanted and not set(wanted).issubset(task.labels):
            return False
        return True

    def apply(self, tasks: list[Task]) -> list[Task]:
        out = [task for task in tasks if self.matches(task)]
        if self.limit > 0:
            out = out[: self.limit]
        return out


@dataclass
class TaskDraft:
    title: str
    description: str = ""
    labels: list[str] = field(default_factory=list)
    assignee: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    priority: Optional[str] = None


@dataclass
class TaskPatch:
    title: Optional[str] = None
    description: Optional[str] = None
    labels: Optional[list[str]] = None
    assignee: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[str] = None
    branch_name: Optional[str] = None
    pr_number: Optional[str] = None


# ---------------------------------------------------------------------------
# Coordination records
# ---------------------------------------------------------------------------

@dataclass
class BackoffEntry:
    key: str
    until_ms: int
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"untilMs": int(self.until_ms), "reason": self.reason}

    @classmethod
    def from_dict(cls, key: str, data: Any) -> Optional["BackoffEntry"]:
        if not isinstance(data, dict):
            return None
        try:
            until_ms = int(data.get("untilMs", data.get("until_ms", 0)))
        except (TypeError, ValueError):
            return None
        return cls(key=key, until_ms=until_ms, reason=str(data.get("reason") or ""))


@dataclass
class InvalidOwnerState:
    invalid_owners: set[str] = field(default_factory=set)
    all_invalid_until: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"owners": sorted(self.invalid_owners), "allInvalidUntil": int(self.all_invalid_until)}

    @classmethod
    def from_dict(cls, data: Any) -> "InvalidOwnerState":
        if not isinstance(data, dict):
            return cls()
        owners_raw = data.get("owners")
        owners = {str(o).strip().lower() for o in owners_raw if str(o).strip()} if isinstance(owners_raw, list) else set()
        try:
            until = int(data.get("allInvalidUntil") or 0)
        except (TypeError, ValueError):
            until = 0
        return cls(invalid_owners=owners, all_invalid_until=until)


@dataclass
class ProjectFieldCache:
    """Field metadata for one GitHub project, resolved lazily."""

    status_field_id: Optional[str]
    status_options: dict[str, str] = field(default_factory=dict)  # lower-case name -> option id
    fields: list[dict[str, Any]] = field(default_factory=list)
    project_node_id: Optional[str] = None
    fetched_at_ms: int = 0

    def option_id(self, name: str) -> Optional[str]:
        return self.status_options.get(str(name or "").strip().lower())

    def find_field(self, name: str) -> Optional[dict[str, Any]]:
        key = str(name or "").strip().lower()
        return next((f for f in self.fields if str(f.get("name") or "").strip().lower() == key), None)
