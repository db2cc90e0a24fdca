"""Load kanban settings from `.bosun/config.yaml` and the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from loguru import logger

from .constants import (
    BACKEND_GITHUB,
    BACKEND_INTERNAL,
    BACKEND_JIRA,
    CACHE_DIR_NAME,
    CONFIG_FILE,
    DEFAULT_BACKEND,
    DEFAULT_COMMAND_BACKOFF_MS,
    DEFAULT_COMMAND_TIMEOUT_MS,
    DEFAULT_ISSUE_LIST_LIMIT,
    DEFAULT_JIRA_LIST_LIMIT,
    DEFAULT_LEASE_TTL_MS,
    DEFAULT_MODE_FALLBACK_MS,
    DEFAULT_OWNER_RETRY_MS,
    DEFAULT_RATE_LIMIT_BACKOFF_MS,
    DEFAULT_RATE_LIMIT_RETRY_MS,
    DEFAULT_TASK_LABEL,
    DEFAULT_TRANSIENT_RETRY_COUNT,
    DEFAULT_TRANSIENT_RETRY_MS,
    DEFAULT_WARNING_THROTTLE_MS,
    JIRA_STATUS_NAMES,
    PROJECT_STATUS_NAMES,
    STATE_DIR_NAME,
)

VALID_BACKENDS = (BACKEND_INTERNAL, BACKEND_GITHUB, BACKEND_JIRA)


@dataclass(frozen=True)
class BackoffWindows:
    """Cooldown windows in milliseconds. Zero or negative input never disables backoff."""

    owner_retry_ms: int = DEFAULT_OWNER_RETRY_MS
    rate_limit_backoff_ms: int = DEFAULT_RATE_LIMIT_BACKOFF_MS
    command_backoff_ms: int = DEFAULT_COMMAND_BACKOFF_MS
    mode_fallback_ms: int = DEFAULT_MODE_FALLBACK_MS
    warning_throttle_ms: int = DEFAULT_WARNING_THROTTLE_MS


@dataclass(frozen=True)
class GitHubSettings:
    repo_slug: Optional[str] = None
    gh_bin: str = "gh"
    project_mode: str = "issues"
    project_number: Optional[str] = None
    project_owner: Optional[str] = None
    task_label: str = DEFAULT_TASK_LABEL
    enforce_task_label: bool = True
    default_assignee: Optional[str] = None
    auto_assign_creator: bool = True
    project_auto_sync: bool = True
    list_limit: int = DEFAULT_ISSUE_LIST_LIMIT
    project_status_names: dict[str, str] = field(default_factory=lambda: dict(PROJECT_STATUS_NAMES))

    @property
    def repo_owner(self) -> Optional[str]:
        if not self.repo_slug or "/" not in self.repo_slug:
            return None
        return self.repo_slug.split("/", 1)[0]

    @property
    def owner_candidates(self) -> list[str]:
        out: list[str] = []
        for owner in (self.project_owner, self.repo_owner):
            if owner and owner not in out:
                out.append(owner)
        return out


@dataclass(frozen=True)
class JiraSettings:
    base_url: str = ""
    email: Optional[str] = None
    api_token: Optional[str] = None
    project_key: str = ""
    issue_type: str = "Task"
    task_label: str = DEFAULT_TASK_LABEL
    enforce_task_label: bool = True
    default_assignee: Optional[str] = None
    shared_state_field: Optional[str] = None
    use_adf_comments: bool = True
    list_limit: int = DEFAULT_JIRA_LIST_LIMIT
    status_names: dict[str, str] = field(default_factory=lambda: dict(JIRA_STATUS_NAMES))

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.email and self.api_token)


@dataclass(frozen=True)
class KanbanSettings:
    """Resolved configuration for one orchestrator process."""

    state_dir: Path
    backend: str = DEFAULT_BACKEND
    lease_ttl_ms: int = DEFAULT_LEASE_TTL_MS
    windows: BackoffWindows = field(default_factory=BackoffWindows)
    rate_limit_retry_ms: int = DEFAULT_RATE_LIMIT_RETRY_MS
    transient_retry_ms: int = DEFAULT_TRANSIENT_RETRY_MS
    transient_retry_count: int = DEFAULT_TRANSIENT_RETRY_COUNT
    command_timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS
    github: GitHubSettings = field(default_factory=GitHubSettings)
    jira: JiraSettings = field(default_factory=JiraSettings)

    @property
    def cache_dir(self) -> Path:
        return self.state_dir / CACHE_DIR_NAME


def load_kanban_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        return {}, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except yaml.YAMLError as exc:
        return {}, f"{path.name}: YAMLError: {exc}"
    if data is None:
        return {}, None
    if not isinstance(data, dict):
        return {}, f"{path.name}: expected mapping, got {type(data).__name__}"
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def parse_bool(value: Any, fallback: bool = False) -> bool:
    if value is None or value == "":
        return fallback
    if isinstance(value, bool):
        return value
    key = str(value).strip().lower()
    if key in {"1", "true", "yes", "on"}:
        return True
    if key in {"0", "false", "no", "off"}:
        return False
    return fallback


def parse_int(value: Any, fallback: int) -> int:
    if value is None or value == "":
        return fallback
    try:
        return int(str(value).strip())
    except ValueError:
        return fallback


def resolve_window_ms(value: Any, default: int, command_backoff_ms: int = DEFAULT_COMMAND_BACKOFF_MS) -> int:
    """Resolve a backoff window.

    Unset keeps *default*; zero, negative or garbage falls back to the
    generic command backoff so a misconfiguration can never turn backoff off.
    """
    if value is None or value == "":
        return default
    parsed = parse_int(value, 0)
    if parsed <= 0:
        return command_backoff_ms if command_backoff_ms > 0 else DEFAULT_COMMAND_BACKOFF_MS
    return parsed


def parse_repo_slug(raw: Any) -> Optional[str]:
    text = str(raw or "").strip()
    for prefix in ("https://github.com/", "http://github.com/", "git@github.com:"):
        if text.lower().startswith(prefix):
            text = text[len(prefix):]
    text = text.strip("/")
    if text.endswith(".git"):
        text = text[:-4]
    parts = [p for p in text.split("/") if p]
    if len(parts) < 2:
        return None
    return f"{parts[0]}/{parts[1]}"


def _pick(env: Mapping[str, str], config: dict[str, Any], env_key: str, *config_path: str) -> Any:
    value = env.get(env_key)
    if value not in (None, ""):
        return value
    return _get_nested(config, *config_path) if config_path else None


def _load_windows(env: Mapping[str, str], config: dict[str, Any]) -> BackoffWindows:
    command_ms = resolve_window_ms(
        _pick(env, config, "GH_COMMAND_BACKOFF_MS", "backoff", "command_ms"),
        DEFAULT_COMMAND_BACKOFF_MS,
    )

    def _window(env_key: str, config_key: str, default: int) -> int:
        return resolve_window_ms(_pick(env, config, env_key, "backoff", config_key), default, command_ms)

    return BackoffWindows(
        owner_retry_ms=_window("GH_OWNER_RETRY_MS", "owner_retry_ms", DEFAULT_OWNER_RETRY_MS),
        rate_limit_backoff_ms=_window("GH_RATE_LIMIT_BACKOFF_MS", "rate_limit_ms", DEFAULT_RATE_LIMIT_BACKOFF_MS),
        command_backoff_ms=command_ms,
        mode_fallback_ms=_window("GH_MODE_FALLBACK_MS", "mode_fallback_ms", DEFAULT_MODE_FALLBACK_MS),
        warning_throttle_ms=_window("GH_WARNING_THROTTLE_MS", "warning_throttle_ms", DEFAULT_WARNING_THROTTLE_MS),
    )


def _load_github(env: Mapping[str, str], config: dict[str, Any]) -> GitHubSettings:
    slug = parse_repo_slug(_pick(env, config, "GITHUB_REPOSITORY", "github", "repo"))
    if not slug and env.get("GITHUB_REPO_OWNER") and env.get("GITHUB_REPO_NAME"):
        slug = f"{env['GITHUB_REPO_OWNER']}/{env['GITHUB_REPO_NAME']}"
    project_number = _pick(env, config, "GITHUB_PROJECT_NUMBER", "github", "project_number")
    status_names = dict(PROJECT_STATUS_NAMES)
    for status in status_names:
        override = env.get(f"GITHUB_PROJECT_STATUS_{status.upper()}")
        if override:
            status_names[status] = override
    return GitHubSettings(
        repo_slug=slug,
        gh_bin=str(_pick(env, config, "GH_BIN", "github", "gh_bin") or "gh"),
        project_mode=str(_pick(env, config, "GITHUB_PROJECT_MODE", "github", "project_mode") or "issues").strip().lower(),
        project_number=str(project_number).strip() if project_number not in (None, "") else None,
        project_owner=_pick(env, config, "GITHUB_PROJECT_OWNER", "github", "project_owner") or None,
        task_label=str(_pick(env, config, "BOSUN_TASK_LABEL", "kanban", "task_label") or DEFAULT_TASK_LABEL).strip().lower(),
        enforce_task_label=parse_bool(_pick(env, config, "BOSUN_ENFORCE_TASK_LABEL", "kanban", "enforce_task_label"), True),
        default_assignee=_pick(env, config, "GITHUB_DEFAULT_ASSIGNEE", "github", "default_assignee") or None,
        auto_assign_creator=parse_bool(_pick(env, config, "GITHUB_AUTO_ASSIGN_CREATOR", "github", "auto_assign_creator"), True),
        project_auto_sync=parse_bool(_pick(env, config, "GITHUB_PROJECT_AUTO_SYNC", "github", "project_auto_sync"), True),
        list_limit=parse_int(_pick(env, config, "GITHUB_ISSUES_LIST_LIMIT", "github", "list_limit"), DEFAULT_ISSUE_LIST_LIMIT),
        project_status_names=status_names,
    )


def _load_jira(env: Mapping[str, str], config: dict[str, Any]) -> JiraSettings:
    status_names = dict(JIRA_STATUS_NAMES)
    for status in status_names:
        override = env.get(f"JIRA_STATUS_{status.upper()}")
        if override:
            status_names[status] = override
    return JiraSettings(
        base_url=str(_pick(env, config, "JIRA_BASE_URL", "jira", "base_url") or "").strip().rstrip("/"),
        email=_pick(env, config, "JIRA_EMAIL", "jira", "email") or None,
        api_token=env.get("JIRA_API_TOKEN") or None,
        project_key=str(_pick(env, config, "JIRA_PROJECT_KEY", "jira", "project_key") or "").strip().upper(),
        issue_type=str(_pick(env, config, "JIRA_ISSUE_TYPE", "jira", "issue_type") or "Task").strip(),
        task_label=str(_pick(env, config, "BOSUN_TASK_LABEL", "kanban", "task_label") or DEFAULT_TASK_LABEL).strip().lower(),
        enforce_task_label=parse_bool(_pick(env, config, "BOSUN_ENFORCE_TASK_LABEL", "kanban", "enforce_task_label"), True),
        default_assignee=_pick(env, config, "JIRA_DEFAULT_ASSIGNEE", "jira", "default_assignee") or None,
        shared_state_field=_pick(env, config, "JIRA_CUSTOM_FIELD_SHARED_STATE", "jira", "shared_state_field") or None,
        use_adf_comments=parse_bool(_pick(env, config, "JIRA_USE_ADF_COMMENTS", "jira", "use_adf_comments"), True),
        list_limit=parse_int(_pick(env, config, "JIRA_ISSUES_LIST_LIMIT", "jira", "list_limit"), DEFAULT_JIRA_LIST_LIMIT),
        status_names=status_names,
    )


def load_settings(
    project_dir: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> KanbanSettings:
    """Resolve settings for this process.

    Environment variables take precedence over `.bosun/config.yaml`; a
    broken config file is logged and ignored rather than failing startup.
    """
    env = os.environ if env is None else env
    project_dir = (project_dir or Path.cwd()).resolve()
    config, err = load_kanban_config(project_dir)
    if err:
        logger.warning("Ignoring unreadable kanban config: {}", err)

    state_dir_raw = env.get("BOSUN_STATE_DIR") or _get_nested(config, "kanban", "state_dir")
    state_dir = Path(state_dir_raw).expanduser() if state_dir_raw else project_dir / STATE_DIR_NAME

    backend = str(_pick(env, config, "KANBAN_BACKEND", "kanban", "backend") or DEFAULT_BACKEND).strip().lower()
    if backend not in VALID_BACKENDS:
        logger.warning("Unknown kanban backend '{}', falling back to {}", backend, DEFAULT_BACKEND)
        backend = DEFAULT_BACKEND

    windows = _load_windows(env, config)
    return KanbanSettings(
        state_dir=state_dir,
        backend=backend,
        lease_ttl_ms=resolve_window_ms(
            _pick(env, config, "BOSUN_LEASE_TTL_MS", "kanban", "lease_ttl_ms"),
            DEFAULT_LEASE_TTL_MS,
            windows.command_backoff_ms,
        ),
        windows=windows,
        rate_limit_retry_ms=max(0, parse_int(_pick(env, config, "GH_RATE_LIMIT_RETRY_MS", "backoff", "rate_limit_retry_ms"), DEFAULT_RATE_LIMIT_RETRY_MS)),
        transient_retry_ms=max(0, parse_int(_pick(env, config, "KANBAN_TRANSIENT_RETRY_MS", "backoff", "transient_retry_ms"), DEFAULT_TRANSIENT_RETRY_MS)),
        transient_retry_count=max(0, parse_int(_pick(env, config, "KANBAN_TRANSIENT_RETRY_COUNT", "backoff", "transient_retry_count"), DEFAULT_TRANSIENT_RETRY_COUNT)),
        command_timeout_ms=max(1, parse_int(_pick(env, config, "GH_COMMAND_TIMEOUT_MS", "github", "command_timeout_ms"), DEFAULT_COMMAND_TIMEOUT_MS)),
        github=_load_github(env, config),
        jira=_load_jira(env, config),
    )
