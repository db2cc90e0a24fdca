from .base import TaskBackend
from .gh_cli import GhCli, GhResult
from .github import GitHubIssueBackend
from .internal import InternalStoreBackend
from .jira import JiraBackend

__all__ = [
    "GhCli",
    "GhResult",
    "GitHubIssueBackend",
    "InternalStoreBackend",
    "JiraBackend",
    "TaskBackend",
]
