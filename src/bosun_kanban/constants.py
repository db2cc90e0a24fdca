STATE_DIR_NAME = ".bosun"
CACHE_DIR_NAME = ".cache"
CONFIG_FILE = "config.yaml"
BACKOFF_STATE_FILE = "gh-backoff-state.json"
INVALID_OWNER_STATE_FILE = "gh-invalid-owners.json"
INTERNAL_STORE_FILE = "kanban-tasks.yaml"
INTERNAL_STORE_LOCK = "kanban-tasks.lock"
WINDOWS_LOCK_BYTES = 4096

BACKEND_INTERNAL = "internal"
BACKEND_GITHUB = "github"
BACKEND_JIRA = "jira"
DEFAULT_BACKEND = BACKEND_INTERNAL

# Backoff windows (milliseconds)
DEFAULT_OWNER_RETRY_MS = 5 * 60_000
DEFAULT_RATE_LIMIT_BACKOFF_MS = 5 * 60_000
DEFAULT_COMMAND_BACKOFF_MS = 60_000
DEFAULT_MODE_FALLBACK_MS = 3 * 60_000
DEFAULT_WARNING_THROTTLE_MS = 5 * 60_000
DEFAULT_RATE_LIMIT_RETRY_MS = 60_000
DEFAULT_TRANSIENT_RETRY_MS = 1_000
DEFAULT_TRANSIENT_RETRY_COUNT = 2
DEFAULT_TRANSIENT_RETRY_CAP_MS = 32_000
DEFAULT_COMMAND_TIMEOUT_MS = 30_000

DEFAULT_LEASE_TTL_MS = 15 * 60_000

SHARED_STATE_MARKER = "bosun-state"

DEFAULT_TASK_LABEL = "bosun"
DEFAULT_ISSUE_LIST_LIMIT = 1000
DEFAULT_JIRA_LIST_LIMIT = 250
GH_MAX_COMMENT_CHARS = 65536
PROJECT_FIELDS_CACHE_TTL_MS = 5 * 60_000
DEFAULT_WORKER_NAME = "bosun"

LEASE_LABEL_CLAIMED = "bosun:claimed"
LEASE_LABEL_WORKING = "bosun:working"
LEASE_LABEL_STALE = "bosun:stale"
LEASE_LABEL_IGNORE = "bosun:ignore"
LEASE_LABELS = (LEASE_LABEL_CLAIMED, LEASE_LABEL_WORKING, LEASE_LABEL_STALE, LEASE_LABEL_IGNORE)

INPROGRESS_LABEL = "inprogress"
INPROGRESS_LABEL_ALIASES = ("inprogress", "in-progress", "in_progress", "inreview", "in-review")

PROJECT_STATUS_NAMES = {
    "todo": "Todo",
    "inprogress": "In Progress",
    "done": "Done",
    "ignored": "Cancelled",
}

JIRA_STATUS_NAMES = {
    "todo": "To Do",
    "inprogress": "In Progress",
    "done": "Done",
    "ignored": "Won't Do",
}
