"""Error taxonomy and deterministic failure classification for backend calls."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class KanbanError(Exception):
    """Base class for every error raised by the kanban layer."""

    status_code: Optional[int] = None


class InvalidIdentifierError(KanbanError, ValueError):
    """Malformed task id or body. Never retried."""


class NotFoundError(KanbanError):
    """The referenced task, comment thread or project does not exist."""


class OwnerTypeError(KanbanError):
    """The configured owner scope was rejected by the backend."""

    def __init__(self, message: str, owner: Optional[str] = None) -> None:
        super().__init__(message)
        self.owner = owner


class TransientBackendError(KanbanError):
    """Network reset, timeout or 5xx. Safe to retry after a short backoff."""


class RateLimitedError(TransientBackendError):
    """The backend asked us to slow down."""


class BackoffActiveError(TransientBackendError):
    """The call was skipped because its key is inside a backoff window."""

    def __init__(self, key: str, remaining_ms: int = 0) -> None:
        super().__init__(f"{key} is backing off for another {remaining_ms}ms")
        self.key = key
        self.remaining_ms = remaining_ms


class PermanentBackendError(KanbanError):
    """Unclassified backend failure. Propagated to the caller unchanged."""


class ShapeError(KanbanError):
    """A payload arrived in an unexpected but non-fatal structure."""


class FailureKind(str, Enum):
    OWNER_TYPE = "owner_type"
    RATE_LIMIT = "rate_limit"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


_OWNER_TYPE_PATTERNS: tuple[str, ...] = (
    "unknown owner type",
    "could not resolve to a user",
    "could not resolve to an organization",
    "could not resolve to a projectv2",
    "owner type",
    "invalid owner",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "api rate limit exceeded",
    "secondary rate limit",
    "rate limit",
    "rate_limit",
    "too many requests",
    "abuse detection",
    "http 429",
)
_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    "could not resolve to an issue",
    "not found",
    "http 404",
    "does not exist",
    "no issue",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "connection reset",
    "econnreset",
    "connection refused",
    "socket hang up",
    "tls handshake",
    "unexpected eof",
    "bad gateway",
    "service unavailable",
    "temporarily unavailable",
    "network",
    "could not resolve host",
    "http 502",
    "http 503",
    "http 504",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: FailureKind
    matched_pattern: Optional[str]
    status_code: Optional[int] = None

    @property
    def retryable(self) -> bool:
        return self.kind in {FailureKind.RATE_LIMIT, FailureKind.TRANSIENT}


def classify_failure(text: str, status_code: Optional[int] = None) -> FailureClassification:
    """Classify a failed backend call from its error text and optional HTTP status."""
    if status_code is not None:
        if status_code == 429:
            return FailureClassification(FailureKind.RATE_LIMIT, None, status_code)
        if status_code == 404:
            return FailureClassification(FailureKind.NOT_FOUND, None, status_code)
        if status_code >= 500 or status_code in {408, 409}:
            return FailureClassification(FailureKind.TRANSIENT, None, status_code)

    haystack = str(text or "").lower()
    for kind, patterns in (
        (FailureKind.OWNER_TYPE, _OWNER_TYPE_PATTERNS),
        (FailureKind.RATE_LIMIT, _RATE_LIMIT_PATTERNS),
        (FailureKind.NOT_FOUND, _NOT_FOUND_PATTERNS),
        (FailureKind.TRANSIENT, _TRANSIENT_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(kind, pattern, status_code)

    # GitHub reports secondary limits as 403 with a rate-limit body; a bare 403 is permanent.
    return FailureClassification(FailureKind.PERMANENT, None, status_code)


def error_for(classification: FailureClassification, message: str, *, owner: Optional[str] = None) -> KanbanError:
    """Build the exception matching a classification."""
    kind = classification.kind
    if kind is FailureKind.OWNER_TYPE:
        return OwnerTypeError(message, owner=owner)
    if kind is FailureKind.RATE_LIMIT:
        return RateLimitedError(message)
    if kind is FailureKind.NOT_FOUND:
        return NotFoundError(message)
    if kind is FailureKind.TRANSIENT:
        return TransientBackendError(message)
    return PermanentBackendError(message)


def failure_kind_of(exc: BaseException) -> FailureKind:
    if isinstance(exc, OwnerTypeError):
        return FailureKind.OWNER_TYPE
    if isinstance(exc, RateLimitedError):
        return FailureKind.RATE_LIMIT
    if isinstance(exc, NotFoundError):
        return FailureKind.NOT_FOUND
    if isinstance(exc, TransientBackendError):
        return FailureKind.TRANSIENT
    return FailureKind.PERMANENT


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
