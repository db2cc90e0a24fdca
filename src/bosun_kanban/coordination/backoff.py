"""Cooldown registry for failing backend calls, shared across processes via a JSON file."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Callable, Optional, Union

from loguru import logger

from ..config import BackoffWindows
from ..errors import FailureKind
from ..io_utils import FileLock, _load_json_with_error, _write_json_with_error
from ..models import BackoffEntry
from ..utils import _now_ms

_WHITESPACE = re.compile(r"\s+")


def normalize_key(key: str) -> str:
    """Canonical form of a backoff key: lower-cased, whitespace collapsed."""
    return _WHITESPACE.sub(" ", str(key or "").strip().lower())


class BackoffRegistry:
    """Map of operation key to a timestamp before which the operation is skipped.

    Entries only ever move forward in time. Reload and persist both merge
    with the file on disk taking the later ``untilMs`` per key, so several
    processes converge on the union of their cooldowns.
    """

    def __init__(
        self,
        path: Optional[Path],
        windows: Optional[BackoffWindows] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.path = path
        self.windows = windows or BackoffWindows()
        self._clock = clock
        self._entries: dict[str, BackoffEntry] = {}
        self._last_warned: dict[str, int] = {}

    @property
    def lock_path(self) -> Optional[Path]:
        if self.path is None:
            return None
        return self.path.with_suffix(self.path.suffix + ".lock")

    def window_for(self, kind: Union[FailureKind, str]) -> int:
        try:
            kind = FailureKind(kind)
        except ValueError:
            return self.windows.command_backoff_ms
        if kind is FailureKind.OWNER_TYPE:
            return self.windows.owner_retry_ms
        if kind is FailureKind.RATE_LIMIT:
            return self.windows.rate_limit_backoff_ms
        return self.windows.command_backoff_ms

    def _drop_expired(self, now: int) -> None:
        expired = [k for k, entry in self._entries.items() if entry.until_ms <= now]
        for key in expired:
            del self._entries[key]

    def _merge(self, entry: BackoffEntry) -> BackoffEntry:
        current = self._entries.get(entry.key)
        if current is None or entry.until_ms > current.until_ms:
            self._entries[entry.key] = entry
            return entry
        return current

    def get(self, key: str) -> Optional[BackoffEntry]:
        now = self._clock()
        entry = self._entries.get(normalize_key(key))
        if entry is None or entry.until_ms <= now:
            return None
        return entry

    def should_skip(self, key: str) -> bool:
        return self.get(key) is not None

    def remaining_ms(self, key: str) -> int:
        entry = self.get(key)
        if entry is None:
            return 0
        return max(0, entry.until_ms - self._clock())

    def record_failure(
        self,
        key: str,
        kind: Union[FailureKind, str],
        reason: str = "",
        now: Optional[int] = None,
        window_ms: Optional[int] = None,
    ) -> BackoffEntry:
        """Start (or extend) the cooldown for *key*. Never shortens an entry."""
        now = self._clock() if now is None else now
        window = window_ms if window_ms and window_ms > 0 else self.window_for(kind)
        entry = BackoffEntry(key=normalize_key(key), until_ms=now + window, reason=str(reason or "")[:500])
        merged = self._merge(entry)
        logger.debug("Backoff {} until {} ({})", merged.key, merged.until_ms, merged.reason or kind)
        return merged

    def active(self) -> list[BackoffEntry]:
        now = self._clock()
        self._drop_expired(now)
        return sorted(self._entries.values(), key=lambda e: e.key)

    def _read_disk(self) -> tuple[list[BackoffEntry], str | None]:
        if self.path is None:
            return [], None
        data, err = _load_json_with_error(self.path, {})
        entries = []
        for raw_key, raw in data.items():
            entry = BackoffEntry.from_dict(normalize_key(raw_key), raw)
            if entry is not None:
                entries.append(entry)
        return entries, err

    def reload_and_merge(self) -> str | None:
        """Merge the on-disk registry into memory. Returns an error message, if any."""
        entries, err = self._read_disk()
        for entry in entries:
            self._merge(entry)
        self._drop_expired(self._clock())
        return err

    def persist(self) -> str | None:
        """Write the registry to disk, merged with whatever is there now."""
        lock_path = self.lock_path
        if self.path is None or lock_path is None:
            return None
        try:
            with FileLock(lock_path):
                entries, read_err = self._read_disk()
                for entry in entries:
                    self._merge(entry)
                self._drop_expired(self._clock())
                payload = {key: entry.to_dict() for key, entry in sorted(self._entries.items())}
                write_err = _write_json_with_error(self.path, payload)
        except OSError as exc:
            return f"{lock_path.name}: {exc.__class__.__name__}: {exc}"
        return write_err or read_err

    def warn_throttled(self, key: str, message: str) -> bool:
        """Log *message* unless the same key warned within the throttle window."""
        now = self._clock()
        norm = normalize_key(key)
        last = self._last_warned.get(norm)
        if last is not None and now - last < self.windows.warning_throttle_ms:
            return False
        self._last_warned[norm] = now
        logger.warning(message)
        return True
