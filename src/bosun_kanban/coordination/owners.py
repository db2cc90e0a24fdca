"""Track GitHub owners that the backend has rejected as the wrong owner type."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterable, Optional

from loguru import logger

from ..constants import DEFAULT_OWNER_RETRY_MS
from ..io_utils import FileLock, _load_json_with_error, _write_json_with_error
from ..models import InvalidOwnerState
from ..utils import _now_ms


def _clean(owner: Optional[str]) -> str:
    return str(owner or "").strip().lower()


class InvalidOwnerTracker:
    """Set of owners to stop passing as ``--owner``.

    When every configured candidate is invalid the whole set expires after
    ``owner_retry_ms`` so the owners get another chance.
    """

    def __init__(
        self,
        path: Optional[Path],
        owner_retry_ms: int = DEFAULT_OWNER_RETRY_MS,
        clock: Callable[[], int] = _now_ms,
    ):
        self.path = path
        self.owner_retry_ms = owner_retry_ms
        self._clock = clock
        self.state = InvalidOwnerState()

    @property
    def lock_path(self) -> Optional[Path]:
        if self.path is None:
            return None
        return self.path.with_suffix(self.path.suffix + ".lock")

    def _expire(self) -> None:
        until = self.state.all_invalid_until
        if until and self._clock() >= until:
            logger.info("Owner retry window elapsed; retrying {} owner(s)", len(self.state.invalid_owners))
            self.state = InvalidOwnerState()

    def is_invalid(self, owner: Optional[str]) -> bool:
        self._expire()
        return _clean(owner) in self.state.invalid_owners

    def all_invalid(self, candidates: Iterable[str]) -> bool:
        self._expire()
        cleaned = {_clean(c) for c in candidates if _clean(c)}
        return bool(cleaned) and cleaned.issubset(self.state.invalid_owners)

    def usable(self, candidates: Iterable[str]) -> list[str]:
        return [c for c in candidates if c and not self.is_invalid(c)]

    def mark_invalid(self, owner: Optional[str], candidates: Iterable[str] = ()) -> None:
        key = _clean(owner)
        if not key:
            return
        self._expire()
        self.state.invalid_owners.add(key)
        candidates = list(candidates)
        if self.all_invalid(candidates):
            until = self._clock() + self.owner_retry_ms
            self.state.all_invalid_until = max(self.state.all_invalid_until, until)

    def _merge(self, other: InvalidOwnerState) -> None:
        self.state.invalid_owners |= other.invalid_owners
        self.state.all_invalid_until = max(self.state.all_invalid_until, other.all_invalid_until)

    def _read_disk(self) -> tuple[InvalidOwnerState, str | None]:
        if self.path is None:
            return InvalidOwnerState(), None
        data, err = _load_json_with_error(self.path, {})
        return InvalidOwnerState.from_dict(data), err

    def reload(self) -> str | None:
        other, err = self._read_disk()
        self._merge(other)
        self._expire()
        return err

    def persist(self) -> str | None:
        lock_path = self.lock_path
        if self.path is None or lock_path is None:
            return None
        try:
            with FileLock(lock_path):
                other, read_err = self._read_disk()
                self._merge(other)
                self._expire()
                write_err = _write_json_with_error(self.path, self.state.to_dict())
        except OSError as exc:
            return f"{lock_path.name}: {exc.__class__.__name__}: {exc}"
        return write_err or read_err
