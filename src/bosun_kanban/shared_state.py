"""Encode lease records into comment text and read them back.

A lease lives in a comment as an HTML comment block, invisible in the
rendered issue, followed by a one-line human summary::

    <!-- bosun-state
    {"attemptStarted": "...", "attemptToken": "...", ...}
    -->
    **bosun lease** `working` by `host-a/w1` ...
"""

from __future__ import annotations

import json
import re
import socket
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Union

from .constants import DEFAULT_WORKER_NAME, SHARED_STATE_MARKER
from .models import LeaseStatus, SharedState
from .utils import _datetime_to_ms

_MARKER_RE = re.compile(
    r"<!--\s*" + re.escape(SHARED_STATE_MARKER) + r"\s*\n?(?P<body>.*?)\n?\s*-->",
    re.DOTALL,
)


def has_marker(text: Optional[str]) -> bool:
    return bool(text) and _MARKER_RE.search(str(text)) is not None


def encode_shared_state(state: SharedState) -> str:
    # "-->" inside a reason or owner id must not end the comment early.
    payload = json.dumps(state.to_wire(), sort_keys=True).replace("<", "\\u003c").replace(">", "\\u003e")
    summary = (
        f"**bosun lease** `{state.status.value}` by `{state.owner_id}` "
        f"(attempt `{state.attempt_token[:8]}`, retry {state.retry_count}, "
        f"heartbeat {state.heartbeat.isoformat()})"
    )
    if state.reason:
        summary += f"\n\nReason: {state.reason}"
    return f"<!-- {SHARED_STATE_MARKER}\n{payload}\n-->\n{summary}"


def decode_shared_state(text: Optional[str]) -> Optional[SharedState]:
    """Return the last well-formed lease in *text*, or ``None``."""
    if not text:
        return None
    for match in reversed(list(_MARKER_RE.finditer(str(text)))):
        state = _parse_payload(match.group("body"))
        if state is not None:
            return state
    return None


def _parse_payload(body: str) -> Optional[SharedState]:
    try:
        data = json.loads(body.strip())
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    try:
        return SharedState.from_wire(data)
    except ValueError:
        return None


def latest_shared_state(bodies: Iterable[Optional[str]]) -> Optional[SharedState]:
    """Scan comment bodies (oldest first) from newest to oldest for a valid lease."""
    for body in reversed(list(bodies)):
        state = decode_shared_state(body)
        if state is not None:
            return state
    return None


def state_from_field(value: Any) -> Optional[SharedState]:
    """Parse a lease stored as a JSON string or object in a dedicated field."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        if has_marker(value):
            return decode_shared_state(value)
        try:
            value = json.loads(value)
        except ValueError:
            return None
    if not isinstance(value, dict):
        return None
    try:
        return SharedState.from_wire(value)
    except ValueError:
        return None


def default_owner_id(worker: str = DEFAULT_WORKER_NAME) -> str:
    return f"{socket.gethostname() or 'localhost'}/{worker}"


def ignored_state(
    reason: str,
    previous: Optional[SharedState] = None,
    owner_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SharedState:
    """Build the terminal lease written by ``mark_task_ignored``."""
    now = now or datetime.now(timezone.utc)
    return SharedState(
        owner_id=owner_id or (previous.owner_id if previous else default_owner_id()),
        attempt_token=previous.attempt_token if previous else uuid.uuid4().hex,
        attempt_started=previous.attempt_started if previous else now,
        heartbeat=now,
        status=LeaseStatus.IGNORED,
        retry_count=previous.retry_count if previous else 0,
        reason=reason or None,
    )


def is_stale(state: SharedState, now: Union[datetime, int], ttl_ms: int) -> bool:
    """True once the heartbeat is older than the lease TTL.

    Terminal leases (``done`` / ``ignored``) are never stale; they are not
    held by anyone. A lease already marked ``stale`` always is.
    """
    if state.status in (LeaseStatus.DONE, LeaseStatus.IGNORED):
        return False
    if state.status is LeaseStatus.STALE:
        return True
    now_ms = now if isinstance(now, int) else _datetime_to_ms(now)
    return now_ms - _datetime_to_ms(state.heartbeat) > ttl_ms
