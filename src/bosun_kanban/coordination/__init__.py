from .backoff import BackoffRegistry, normalize_key
from .dedup import RequestDeduplicator
from .owners import InvalidOwnerTracker
from .retry import retry_delay, retry_transient
from .state import CoordinationState

__all__ = [
    "BackoffRegistry",
    "CoordinationState",
    "InvalidOwnerTracker",
    "RequestDeduplicator",
    "normalize_key",
    "retry_delay",
    "retry_transient",
]
