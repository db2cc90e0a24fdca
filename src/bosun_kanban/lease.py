"""Claim, heartbeat and release task leases on top of any lease-capable store.

There is no lock service: a claim writes a fresh attempt token and then
reads the lease back. Whoever's token is visible after the write owns the
task; the other writer sees a lost race and moves on.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from loguru import logger

from .constants import DEFAULT_LEASE_TTL_MS
from .models import LeaseStatus, SharedState, Task, TaskFilter, TaskStatus
from .shared_state import default_owner_id
from .shared_state import is_stale as _lease_is_stale
from .utils import _ms_to_datetime, _now_ms

ACTIVE_LEASE_STATUSES = (LeaseStatus.CLAIMED, LeaseStatus.WORKING)
RECLAIMED_LEASE_STATUSES = ACTIVE_LEASE_STATUSES + (LeaseStatus.STALE,)


class LeaseStore(Protocol):
    """Anything exposing the lease hooks: a backend or the adapter facade."""

    async def list_tasks(self, scope: Optional[str] = None, filters: Optional[TaskFilter] = None) -> list[Task]: ...

    async def persist_shared_state(self, task_id: str, state: SharedState) -> bool: ...

    async def read_shared_state(self, task_id: str) -> Optional[SharedState]: ...


@dataclass
class ClaimResult:
    acquired: bool
    lease: Optional[SharedState]
    reason: str

    def __bool__(self) -> bool:
        return self.acquired


class LeaseManager:
    def __init__(
        self,
        store: LeaseStore,
        owner_id: Optional[str] = None,
        *,
        lease_ttl_ms: Optional[int] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.store = store
        self.owner_id = owner_id or default_owner_id()
        # An adapter carries the resolved settings and the shared clock.
        settings = getattr(store, "settings", None)
        coordination = getattr(store, "coordination", None)
        if lease_ttl_ms is None:
            lease_ttl_ms = getattr(settings, "lease_ttl_ms", None) or DEFAULT_LEASE_TTL_MS
        self.lease_ttl_ms = lease_ttl_ms
        self.clock = clock or getattr(coordination, "clock", None) or _now_ms

    def _now_ms(self, now: Optional[int] = None) -> int:
        return self.clock() if now is None else now

    def is_stale(self, state: SharedState, now: Optional[int] = None) -> bool:
        return _lease_is_stale(state, self._now_ms(now), self.lease_ttl_ms)

    def is_claimable(self, task: Optional[Task], state: Optional[SharedState], now: Optional[int] = None) -> bool:
        """Decide whether this worker may claim *task* given its current lease.

        Finished and ignored tasks never qualify. Otherwise a task is
        claimable when it has no lease, a finished lease, a stale lease, or a
        live lease that this worker already holds.
        """
        if task is not None and (task.is_ignored or task.status in (TaskStatus.DONE, TaskStatus.IGNORED)):
            return False
        if state is None:
            return True
        if state.status is LeaseStatus.IGNORED:
            return False
        if state.status is LeaseStatus.DONE:
            return True
        if state.owner_id == self.owner_id:
            return True
        return self.is_stale(state, now)

    async def claim(self, task_id: str, task: Optional[Task] = None) -> ClaimResult:
        now_ms = self._now_ms()
        current = await self.store.read_shared_state(task_id)
        if current is not None:
            if current.status is LeaseStatus.IGNORED:
                return ClaimResult(False, current, "ignored")
            if current.status in ACTIVE_LEASE_STATUSES and not self.is_stale(current, now_ms):
                if current.owner_id == self.owner_id:
                    return ClaimResult(True, current, "held")
                return ClaimResult(False, current, "held-by-other")
        if not self.is_claimable(task, current, now_ms):
            return ClaimResult(False, current, "not-claimable")

        retry_count = 0
        if current is not None and current.status in RECLAIMED_LEASE_STATUSES:
            retry_count = current.retry_count + 1
            logger.info(
                "Reclaiming stale lease on {} from {} (retry {})",
                task_id,
                current.owner_id,
                retry_count,
            )
        started = _ms_to_datetime(now_ms)
        lease = SharedState(
            owner_id=self.owner_id,
            attempt_token=uuid.uuid4().hex,
            attempt_started=started,
            heartbeat=started,
            status=LeaseStatus.CLAIMED,
            retry_count=retry_count,
        )
        if not await self.store.persist_shared_state(task_id, lease):
            return ClaimResult(False, None, "persist-failed")

        observed = await self.store.read_shared_state(task_id)
        if observed is None or observed.attempt_token != lease.attempt_token:
            logger.info(
                "Lost claim race on {} to {}",
                task_id,
                observed.owner_id if observed else "an unreadable lease",
            )
            return ClaimResult(False, observed, "lost-race")
        logger.debug("Claimed {} as {}", task_id, self.owner_id)
        return ClaimResult(True, lease, "claimed")

    async def _still_held(self, task_id: str, lease: SharedState) -> bool:
        current = await self.store.read_shared_state(task_id)
        if current is None:
            logger.warning("Lease on {} is gone; not writing for {}", task_id, lease.owner_id)
            return False
        if current.status is LeaseStatus.IGNORED:
            logger.warning("Task {} was marked ignored; dropping lease of {}", task_id, lease.owner_id)
            return False
        if current.owner_id != lease.owner_id or current.attempt_token != lease.attempt_token:
            logger.warning(
                "Lease on {} now belongs to {} (attempt {}); {} lost it",
                task_id,
                current.owner_id,
                current.attempt_token[:8],
                lease.owner_id,
            )
            return False
        return True

    async def heartbeat(
        self,
        task_id: str,
        lease: SharedState,
        status: LeaseStatus = LeaseStatus.WORKING,
    ) -> Optional[SharedState]:
        """Refresh the heartbeat of a lease we hold.

        Returns ``None`` without writing when the lease has since been taken
        over (or ignored), and ``None`` when the write failed.
        """
        if not await self._still_held(task_id, lease):
            return None
        refreshed = lease.model_copy(update={"heartbeat": _ms_to_datetime(self._now_ms()), "status": status})
        if not await self.store.persist_shared_state(task_id, refreshed):
            logger.warning("Heartbeat for {} was not persisted", task_id)
            return None
        return refreshed

    async def release(self, task_id: str, lease: SharedState, status: LeaseStatus = LeaseStatus.DONE) -> bool:
        if status is LeaseStatus.IGNORED:
            raise ValueError("Use mark_task_ignored to ignore a task")
        if not await self._still_held(task_id, lease):
            return False
        final = lease.model_copy(update={"heartbeat": _ms_to_datetime(self._now_ms()), "status": status})
        return await self.store.persist_shared_state(task_id, final)

    async def select_claimable(
        self,
        scope: Optional[str] = None,
        filters: Optional[TaskFilter] = None,
    ) -> list[Task]:
        """List tasks and keep the ones this worker could claim right now."""
        now_ms = self._now_ms()
        selected: list[Task] = []
        for task in await self.store.list_tasks(scope, filters):
            if task.is_ignored or task.status in (TaskStatus.DONE, TaskStatus.IGNORED):
                continue
            state = task.shared_state
            if state is None:
                state = await self.store.read_shared_state(task.id)
                task.shared_state = state
            if self.is_claimable(task, state, now_ms):
                selected.append(task)
        return selected
