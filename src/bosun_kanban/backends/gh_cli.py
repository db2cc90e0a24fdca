"""Run the GitHub CLI as a subprocess."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence

from loguru import logger

from ..constants import DEFAULT_COMMAND_TIMEOUT_MS
from ..errors import ShapeError


@dataclass(frozen=True)
class GhResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def error_text(self) -> str:
        return (self.stderr or self.stdout or f"exit code {self.returncode}").strip()

    def json(self) -> Any:
        text = self.stdout.strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError as exc:
            raise ShapeError(f"gh returned non-JSON output: {text[:200]}") from exc


GhRunner = Callable[[Sequence[str]], Awaitable[GhResult]]

TIMEOUT_RETURNCODE = 124


class GhCli:
    """Async ``gh`` invoker with a hard per-call timeout.

    Arguments are passed as an explicit vector; nothing goes through a shell.
    A call that exceeds the timeout is killed and reported with exit code
    124 and a ``timed out`` message, which classifies as transient.
    """

    def __init__(self, gh_bin: str = "gh", timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS, env: Optional[dict[str, str]] = None):
        self.gh_bin = gh_bin
        self.timeout_ms = timeout_ms
        self.env = env

    async def __call__(self, args: Sequence[str]) -> GhResult:
        logger.debug("gh {}", " ".join(args))
        try:
            proc = await asyncio.create_subprocess_exec(
                self.gh_bin,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
            )
        except (FileNotFoundError, PermissionError) as exc:
            return GhResult(127, "", f"gh CLI unavailable: {exc}")
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_ms / 1000)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return GhResult(TIMEOUT_RETURNCODE, "", f"gh {args[0] if args else ''} timed out after {self.timeout_ms}ms")
        return GhResult(
            proc.returncode if proc.returncode is not None else 1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )
