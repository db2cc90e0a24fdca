"""Retry delays: exponential backoff with jitter, capped."""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger

from ..constants import DEFAULT_TRANSIENT_RETRY_CAP_MS
from ..errors import BackoffActiveError, RateLimitedError, TransientBackendError

T = TypeVar("T")

MAX_JITTER_MS = 1000


def retry_delay(
    attempt: int,
    base_ms: int,
    cap_ms: int = DEFAULT_TRANSIENT_RETRY_CAP_MS,
    jitter_ms: int = MAX_JITTER_MS,
    rng: Optional[random.Random] = None,
) -> int:
    """Return the delay in milliseconds before retry number *attempt* (0-based)."""
    if base_ms <= 0:
        return 0
    exp = min(cap_ms, base_ms * (2 ** max(0, attempt)))
    jitter_cap = min(jitter_ms, base_ms)
    jitter = (rng or random).randint(0, jitter_cap) if jitter_cap > 0 else 0
    return int(min(cap_ms, exp + jitter))


async def retry_transient(
    call: Callable[[], Awaitable[T]],
    *,
    retries: int,
    base_ms: int,
    label: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run *call*, retrying transient failures up to *retries* extra times.

    Anything that is not a :class:`TransientBackendError` propagates at once,
    as do rate limits and calls skipped by an active backoff.
    The last transient error is re-raised once the budget is spent.
    """
    attempt = 0
    while True:
        try:
            return await call()
        except (BackoffActiveError, RateLimitedError):
            raise
        except TransientBackendError as exc:
            if attempt >= retries:
                raise
            delay_ms = retry_delay(attempt, base_ms)
            logger.debug("{} failed ({}); retry {}/{} in {}ms", label, exc, attempt + 1, retries, delay_ms)
            attempt += 1
            await sleep(delay_ms / 1000)
