"""Claim manager - lease acquisition, renewal and release."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from leasegate.config import Settings
from leasegate.errors import BackendUnavailable, CorruptRecord, InvalidStateTransition
from leasegate.models import ClaimOutcome, Lease, TaskRecord, TaskState
from leasegate.store import LEASE_PREFIX, LeaseStore, lease_key, task_record_key

logger = logging.getLogger(__name__)


@dataclass
class ClaimResult:
    """Outcome of a claim manager operation.

    Contention is reported here rather than raised: ``ALREADY_CLAIMED`` carries
    the current holder in ``owner_id``.
    """

    outcome: ClaimOutcome
    task_id: str
    owner_id: Optional[str] = None
    lease: Optional[Lease] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (
            ClaimOutcome.CLAIMED,
            ClaimOutcome.RENEWED,
            ClaimOutcome.RELEASED,
            ClaimOutcome.TRANSITIONED,
        )


class HeldTaskIndex:
    """In-process view of the tasks each local agent holds."""

    def __init__(self):
        self._tasks: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()

    async def add(self, agent_id: str, task_id: str) -> None:
        async with self._lock:
            self._tasks.setdefault(agent_id, set()).add(task_id)

    async def discard(self, agent_id: str, task_id: str) -> None:
        async with self._lock:
            held = self._tasks.get(agent_id)
            if held is not None:
                held.discard(task_id)
                if not held:
                    del self._tasks[agent_id]

    async def snapshot(self, agent_id: str) -> set[str]:
        async with self._lock:
            return set(self._tasks.get(agent_id, ()))

    async def clear(self, agent_id: str) -> set[str]:
        async with self._lock:
            return self._tasks.pop(agent_id, set())


class ClaimManager:
    """Acquires, renews and releases leases on behalf of agents."""

    def __init__(self, store: LeaseStore, settings: Settings):
        self.store = store
        self.settings = settings
        self.clock = store.clock
        self.held = HeldTaskIndex()

    async def acquire(self, task_id: str, agent_id: str, ttl: Optional[int] = None) -> ClaimResult:
        """
        Claim exclusive ownership of a task.

        Returns CLAIMED with the new lease, or ALREADY_CLAIMED with the
        current holder when another agent got there first.
        """
        ttl = ttl or self.settings.claim_ttl
        lease = Lease(task_id=task_id, owner_id=agent_id, claimed_at=self.clock.now(), ttl=ttl)

        if not await self.store.create_if_absent(lease_key(task_id), lease.to_record(), ttl):
            holder = await self._current_owner(task_id)
            logger.debug(f"Task {task_id} already claimed by {holder}")
            return ClaimResult(ClaimOutcome.ALREADY_CLAIMED, task_id, owner_id=holder)

        await self.held.add(agent_id, task_id)
        await self._index_update(agent_id, task_id, add=True)
        await self._mark_claimed(task_id, agent_id)
        logger.info(f"Task {task_id} claimed by {agent_id} (ttl={ttl}s)")
        return ClaimResult(ClaimOutcome.CLAIMED, task_id, owner_id=agent_id, lease=lease)

    async def release(self, task_id: str, agent_id: str) -> ClaimResult:
        """Release a lease held by ``agent_id``. Releasing twice yields NOT_OWNED."""
        if not await self.store.compare_and_delete(lease_key(task_id), agent_id):
            logger.debug(f"Release of {task_id} by {agent_id}: not owned")
            await self.forget(agent_id, task_id)
            return ClaimResult(ClaimOutcome.NOT_OWNED, task_id, owner_id=agent_id)

        await self.forget(agent_id, task_id)
        logger.info(f"Task {task_id} released by {agent_id}")
        return ClaimResult(ClaimOutcome.RELEASED, task_id, owner_id=agent_id)

    async def renew(self, task_id: str, agent_id: str, ttl: Optional[int] = None) -> ClaimResult:
        """Extend a lease. NOT_FOUND if it expired or was reclaimed."""
        ttl = ttl or self.settings.claim_ttl
        if await self.store.refresh(lease_key(task_id), agent_id, ttl):
            return ClaimResult(ClaimOutcome.RENEWED, task_id, owner_id=agent_id)

        holder = await self._current_owner(task_id)
        if holder is None:
            return ClaimResult(ClaimOutcome.NOT_FOUND, task_id)
        return ClaimResult(ClaimOutcome.NOT_OWNED, task_id, owner_id=holder)

    async def list(self, agent_id: str) -> list[Lease]:
        """List live leases held by ``agent_id``, read from the store."""
        leases = []
        for stored in await self.store.list_prefix(LEASE_PREFIX):
            try:
                lease = Lease.from_record(stored.ident, stored.value)
            except CorruptRecord as e:
                logger.warning(f"Skipping corrupt lease: {e.message}")
                continue
            if lease.owner_id == agent_id:
                leases.append(lease)
        return leases

    async def start(self, task_id: str, agent_id: str) -> ClaimResult:
        """Move a claimed task to in_progress."""
        return await self._owned_transition(task_id, agent_id, TaskState.IN_PROGRESS)

    async def complete(self, task_id: str, agent_id: str) -> ClaimResult:
        """Mark a task completed and release its lease."""
        result = await self._owned_transition(task_id, agent_id, TaskState.COMPLETED)
        if result.outcome != ClaimOutcome.TRANSITIONED:
            return result
        return await self.release(task_id, agent_id)

    async def fail(self, task_id: str, agent_id: str) -> ClaimResult:
        """Mark a task failed and release its lease.

        Failed tasks are picked up by the orphan detector's early-failure
        step while ``failed_at`` is still inside the window.
        """
        result = await self._owned_transition(
            task_id, agent_id, TaskState.FAILED, failed_at=self.clock.now()
        )
        if result.outcome != ClaimOutcome.TRANSITIONED:
            return result
        return await self.release(task_id, agent_id)

    async def _owned_transition(
        self,
        task_id: str,
        agent_id: str,
        new_state: TaskState,
        **changes: Any,
    ) -> ClaimResult:
        holder = await self._current_owner(task_id)
        if holder is None:
            return ClaimResult(ClaimOutcome.NOT_FOUND, task_id)
        if holder != agent_id:
            return ClaimResult(ClaimOutcome.NOT_OWNED, task_id, owner_id=holder)

        key = task_record_key(task_id)
        now = self.clock.now()
        raw = await self.store.get(key)
        if raw is None:
            record = TaskRecord(
                task_id=task_id,
                state=new_state,
                owner_id=agent_id,
                updated_at=now,
                **changes,
            )
            await self.store.put(key, record.to_record())
        else:
            current = TaskRecord.from_record(key, raw)
            if not current.can_transition_to(new_state):
                raise InvalidStateTransition(task_id, current.state.value, new_state.value)
            record = current.model_copy(
                update={"state": new_state, "owner_id": agent_id, "updated_at": now, **changes}
            )
            if not await self.store.replace_if(key, "state", {current.state.value}, record.to_record()):
                raise InvalidStateTransition(task_id, current.state.value, new_state.value)

        logger.info(f"Task {task_id} -> {new_state.value} by {agent_id}")
        return ClaimResult(ClaimOutcome.TRANSITIONED, task_id, owner_id=agent_id)

    async def _mark_claimed(self, task_id: str, agent_id: str) -> None:
        """Move an existing task record to claimed. Tasks without a record are fine."""
        key = task_record_key(task_id)
        try:
            raw = await self.store.get(key)
            if raw is None:
                return
            current = TaskRecord.from_record(key, raw)
            if not current.can_transition_to(TaskState.CLAIMED):
                logger.warning(
                    f"Task {task_id} claimed while in state {current.state.value}, "
                    "leaving task record unchanged"
                )
                return
            record = current.model_copy(
                update={
                    "state": TaskState.CLAIMED,
                    "owner_id": agent_id,
                    "updated_at": self.clock.now(),
                }
            )
            await self.store.replace_if(
                key,
                "state",
                {s.value for s in TaskState.claimable_states()},
                record.to_record(),
            )
        except CorruptRecord as e:
            logger.warning(f"Task record for {task_id} is corrupt: {e.message}")
        except BackendUnavailable as e:
            # The lease is held; the record catches up on the next transition
            logger.warning(f"Could not mark {task_id} claimed: {e}")

    async def _current_owner(self, task_id: str) -> Optional[str]:
        try:
            raw = await self.store.get(lease_key(task_id))
        except CorruptRecord as e:
            logger.warning(f"Lease for {task_id} is corrupt: {e.message}")
            return None
        if raw is None:
            return None
        return raw.get("owner_id")

    async def forget(self, agent_id: str, task_id: str) -> None:
        """Drop a task from the local and persisted held-task indexes."""
        await self.held.discard(agent_id, task_id)
        await self._index_update(agent_id, task_id, add=False)

    async def _index_update(self, agent_id: str, task_id: str, add: bool) -> None:
        # The persisted index only widens the stale-agent scan; leases stay authoritative.
        try:
            if add:
                await self.store.index_add(agent_id, task_id)
            else:
                await self.store.index_remove(agent_id, task_id)
        except BackendUnavailable as e:
            logger.warning(f"Held-task index update for {agent_id} failed: {e}")
