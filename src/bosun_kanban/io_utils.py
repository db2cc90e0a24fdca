from __future__ import annotations

import json
import os
from pathlib import Path
from typing import IO, Any, Optional

from .constants import WINDOWS_LOCK_BYTES

try:
    import fcntl
except ImportError:  # Windows
    fcntl = None  # type: ignore[assignment]

try:
    import msvcrt
except ImportError:
    msvcrt = None  # type: ignore[assignment]


class FileLock:
    """Exclusive lock guarding one shared file under ``.bosun``.

    Every process touching the backoff registry, the invalid-owner file or
    the internal task store takes this lock around its read-modify-write.
    POSIX hosts use ``flock``; Windows locks a fixed byte region with
    ``msvcrt``. Elsewhere the lock degrades to a no-op. Instances are not
    reentrant and hold one handle, so create one per critical section.
    """

    def __init__(self, lock_path: Path):
        self.lock_path = lock_path
        self._fh: Optional[IO[str]] = None
        self._region_bytes = WINDOWS_LOCK_BYTES

    @property
    def held(self) -> bool:
        return self._fh is not None

    def _acquire(self, fh: IO[str]) -> None:
        if fcntl is not None:
            fcntl.flock(fh, fcntl.LOCK_EX)
        elif msvcrt is not None:
            fh.seek(0)
            fh.truncate(self._region_bytes)
            fh.flush()
            msvcrt.locking(fh.fileno(), msvcrt.LK_LOCK, self._region_bytes)

    def _release(self, fh: IO[str]) -> None:
        if fcntl is not None:
            fcntl.flock(fh, fcntl.LOCK_UN)
        elif msvcrt is not None:
            fh.seek(0)
            msvcrt.locking(fh.fileno(), msvcrt.LK_UNLCK, self._region_bytes)

    def __enter__(self) -> "FileLock":
        if self._fh is not None:
            raise RuntimeError(f"{self.lock_path.name} is already locked by this FileLock")
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.lock_path, "a+", encoding="utf-8")
        try:
            self._acquire(fh)
        except OSError:
            fh.close()
            raise
        self._fh = fh
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        fh, self._fh = self._fh, None
        if fh is None:
            return
        try:
            self._release(fh)
        finally:
            fh.close()


def _atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + f".{os.getpid()}.tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2, sort_keys=True)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _load_json_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """
    Load a JSON object and return (data, error_message).

    A missing file is not an error. Parse/IO failures are reported so the
    caller can log them and fall back to empty advisory state.
    """
    if not path.exists():
        return default, None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            return default, f"{path.name}: expected object, got {type(data).__name__}"
        return data, None
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except json.JSONDecodeError as exc:
        return default, f"{path.name}: JSONDecodeError: {exc}"


def _write_json_with_error(path: Path, data: dict[str, Any]) -> str | None:
    """Atomically write *data*; return an error message instead of raising."""
    try:
        _atomic_write_json(path, data)
    except (OSError, TypeError, ValueError) as exc:
        return f"{path.name}: {exc.__class__.__name__}: {exc}"
    return None
