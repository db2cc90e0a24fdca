"""Per-process bundle of coordination state shared by every backend call."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional, TypeVar, Union

from loguru import logger

from ..config import BackoffWindows, KanbanSettings
from ..constants import BACKOFF_STATE_FILE, CACHE_DIR_NAME, INVALID_OWNER_STATE_FILE
from ..errors import BackoffActiveError, FailureKind, RateLimitedError, TransientBackendError
from ..models import BackoffEntry
from ..utils import _now_ms
from .backoff import BackoffRegistry, normalize_key
from .dedup import RequestDeduplicator
from .owners import InvalidOwnerTracker
from .retry import retry_transient

T = TypeVar("T")


class CoordinationState:
    """Owns the backoff registry, invalid-owner set, dedup map and negative cache.

    Built once per process and handed to each backend. Persistence errors
    from the JSON files are logged here and never raised: the files are
    advisory and a broken cache must not stop the scheduling loop.
    """

    def __init__(
        self,
        state_dir: Optional[Path] = None,
        windows: Optional[BackoffWindows] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.windows = windows or BackoffWindows()
        self.clock = clock
        cache_dir = state_dir / CACHE_DIR_NAME if state_dir is not None else None
        self.backoff = BackoffRegistry(
            cache_dir / BACKOFF_STATE_FILE if cache_dir else None,
            self.windows,
            clock,
        )
        self.owners = InvalidOwnerTracker(
            cache_dir / INVALID_OWNER_STATE_FILE if cache_dir else None,
            self.windows.owner_retry_ms,
            clock,
        )
        self.dedup = RequestDeduplicator()
        self._missing: dict[str, int] = {}

    @classmethod
    def from_settings(cls, settings: KanbanSettings, clock: Callable[[], int] = _now_ms) -> "CoordinationState":
        return cls(settings.state_dir, settings.windows, clock)

    def _log_error(self, action: str, err: str | None) -> None:
        if err:
            self.backoff.warn_throttled(f"coordination:{action}", f"Coordination state {action} failed: {err}")

    def reload(self) -> None:
        """Re-read both coordination files, merging with in-memory state."""
        self._log_error("reload", self.backoff.reload_and_merge())
        self._log_error("reload", self.owners.reload())

    def should_skip(self, key: str) -> bool:
        return self.backoff.should_skip(key)

    def remaining_ms(self, key: str) -> int:
        return self.backoff.remaining_ms(key)

    def record_failure(
        self,
        key: str,
        kind: Union[FailureKind, str],
        reason: str = "",
        window_ms: Optional[int] = None,
    ) -> BackoffEntry:
        entry = self.backoff.record_failure(key, kind, reason, window_ms=window_ms)
        self._log_error("persist", self.backoff.persist())
        return entry

    async def guarded_call(
        self,
        key: str,
        call: Callable[[], Awaitable[T]],
        *,
        retries: int,
        base_ms: int,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        """Run one outbound call for *key* under the backoff registry.

        Skipped with :class:`BackoffActiveError` while the key is cooling
        down. Transient failures are retried; once the budget is spent the
        key is backed off (rate limits get the longer window) and the error
        is re-raised.
        """
        if self.should_skip(key):
            raise BackoffActiveError(key, self.remaining_ms(key))
        try:
            return await retry_transient(call, retries=retries, base_ms=base_ms, label=key, sleep=sleep)
        except BackoffActiveError:
            raise
        except RateLimitedError as exc:
            self.record_failure(key, FailureKind.RATE_LIMIT, str(exc))
            raise
        except TransientBackendError as exc:
            self.record_failure(key, FailureKind.TRANSIENT, str(exc))
            raise

    def mark_owner_invalid(self, owner: str, candidates: Iterable[str] = ()) -> None:
        logger.warning("Owner '{}' rejected by backend; retrying without --owner", owner)
        self.owners.mark_invalid(owner, candidates)
        self._log_error("persist", self.owners.persist())

    def remember_missing(self, key: str) -> None:
        self._missing[normalize_key(key)] = self.clock() + self.windows.command_backoff_ms

    def is_known_missing(self, key: str) -> bool:
        norm = normalize_key(key)
        until = self._missing.get(norm)
        if until is None:
            return False
        if self.clock() >= until:
            del self._missing[norm]
            return False
        return True

    def forget_missing(self, key: str) -> None:
        self._missing.pop(normalize_key(key), None)

    def warn(self, key: str, message: str) -> bool:
        return self.backoff.warn_throttled(key, message)
