"""Orphan detector - returns abandoned work to circulation."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional

from leasegate.config import Settings
from leasegate.engine.queue import RecoveryQueue
from leasegate.errors import CorruptRecord
from leasegate.models import (
    AgentHeartbeat,
    Lease,
    Priority,
    RecoveryReason,
    RecoveryRecord,
    RecoveryStep,
    TaskRecord,
    TaskState,
)
from leasegate.store import (
    HEARTBEAT_PREFIX,
    LEASE_PREFIX,
    TASK_RECORD_PREFIX,
    LeaseStore,
    format_timestamp,
    heartbeat_key,
    lease_key,
    task_record_key,
)

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """Summary of one detector cycle."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    orphaned: list[str] = field(default_factory=list)
    stale_agents: list[str] = field(default_factory=list)
    stale_reclaimed: list[str] = field(default_factory=list)
    resurrected: list[str] = field(default_factory=list)
    duplicates: int = 0
    corrupt: int = 0

    @property
    def recovered(self) -> int:
        return len(self.orphaned) + len(self.stale_reclaimed) + len(self.resurrected)


class OrphanDetector:
    """
    Periodic scan that reclaims work from crashed or stalled agents.

    A cycle runs three steps in order:

    1. Leases held longer than ``orphan_threshold`` (measured from
       ``claimed_at``, renewals do not reset it) are deleted and requeued
       as ``orphaned_claim``.
    2. Agents whose liveness record is older than ``stale_agent_threshold``
       lose every lease they own (``stale_agent``); their liveness record
       and held-task index are then deleted.
    3. Tasks that failed less than ``early_failure_window`` ago go back to
       ``retry_available`` (``early_failure``), up to
       ``early_failure_max_retries`` times.

    Deletes are owner-checked, so a concurrent detector that got there
    first makes ours a silent no-op. Corrupt records are counted and
    skipped.
    """

    def __init__(self, store: LeaseStore, settings: Settings, queue: RecoveryQueue):
        self.store = store
        self.settings = settings
        self.queue = queue
        self.clock = store.clock

    async def run_cycle(self, steps: Optional[Iterable[RecoveryStep]] = None) -> CycleReport:
        """Run ``steps`` (default: all three) in their fixed order."""
        selected = set(steps) if steps is not None else set(RecoveryStep)
        now = self.clock.now()
        report = CycleReport(started_at=now)

        leases: list[Lease] = []
        if selected & {RecoveryStep.ORPHANS, RecoveryStep.STALE}:
            leases = await self._scan_leases(report)
        if RecoveryStep.ORPHANS in selected:
            await self._reclaim_orphans(leases, now, report)
        if RecoveryStep.STALE in selected:
            await self._reclaim_stale_agents(leases, now, report)
        if RecoveryStep.EARLY_FAILURE in selected:
            await self._resurrect_early_failures(now, report)

        report.finished_at = self.clock.now()
        if report.recovered or report.corrupt:
            logger.info(
                f"Recovery cycle: {len(report.orphaned)} orphaned, "
                f"{len(report.stale_reclaimed)} from {len(report.stale_agents)} stale agents, "
                f"{len(report.resurrected)} early failures, {report.corrupt} corrupt records"
            )
        else:
            logger.debug("Recovery cycle: nothing to recover")
        return report

    async def _scan_leases(self, report: CycleReport) -> list[Lease]:
        leases = []
        for stored in await self.store.list_prefix(LEASE_PREFIX):
            try:
                leases.append(Lease.from_record(stored.ident, stored.value))
            except CorruptRecord as e:
                logger.warning(f"Skipping corrupt lease: {e.message}")
                report.corrupt += 1
        return leases

    # ------------------------------------------------------------------
    # Step 1: per-task age
    # ------------------------------------------------------------------

    async def _reclaim_orphans(self, leases: list[Lease], now: datetime, report: CycleReport) -> None:
        for lease in leases:
            if lease.age(now) <= self.settings.orphan_threshold:
                continue
            if not await self.store.compare_and_delete(lease_key(lease.task_id), lease.owner_id):
                continue

            logger.warning(
                f"Orphaned claim on {lease.task_id} by {lease.owner_id} "
                f"(held {lease.age(now):.0f}s)"
            )
            report.orphaned.append(lease.task_id)
            await self._requeue(
                lease.task_id,
                RecoveryReason.ORPHANED_CLAIM,
                lease.owner_id,
                fingerprint=format_timestamp(lease.claimed_at),
                now=now,
                report=report,
            )
            await self.store.index_remove(lease.owner_id, lease.task_id)

    # ------------------------------------------------------------------
    # Step 2: per-agent liveness
    # ------------------------------------------------------------------

    async def _reclaim_stale_agents(
        self,
        leases: list[Lease],
        now: datetime,
        report: CycleReport,
    ) -> None:
        threshold = self.settings.stale_agent_threshold
        for stored in await self.store.list_prefix(HEARTBEAT_PREFIX):
            try:
                heartbeat = AgentHeartbeat.from_record(stored.key, stored.value)
            except CorruptRecord as e:
                logger.warning(f"Skipping corrupt liveness record: {e.message}")
                report.corrupt += 1
                continue
            if not heartbeat.is_stale(now, threshold):
                continue

            agent_id = heartbeat.agent_id
            logger.warning(
                f"Agent {agent_id} is stale (last heartbeat {heartbeat.age(now):.0f}s ago)"
            )
            report.stale_agents.append(agent_id)

            owned = {lease.task_id for lease in leases if lease.owner_id == agent_id}
            owned |= await self.store.index_members(agent_id)
            owned -= set(report.orphaned)

            for task_id in sorted(owned):
                try:
                    if not await self._take_from_stale(task_id, agent_id):
                        continue
                except CorruptRecord as e:
                    logger.warning(f"Skipping {task_id} of stale agent {agent_id}: {e.message}")
                    report.corrupt += 1
                    continue
                report.stale_reclaimed.append(task_id)
                await self._requeue(
                    task_id,
                    RecoveryReason.STALE_AGENT,
                    agent_id,
                    fingerprint=format_timestamp(heartbeat.last_heartbeat),
                    now=now,
                    report=report,
                )

            await self.store.delete_if_stale(
                heartbeat_key(agent_id), now - timedelta(seconds=threshold)
            )
            await self.store.index_clear(agent_id)

    async def _take_from_stale(self, task_id: str, agent_id: str) -> bool:
        """Remove a stale agent's claim. True if the task should be requeued."""
        if await self.store.compare_and_delete(lease_key(task_id), agent_id):
            return True

        current = await self.store.get(lease_key(task_id))
        if current is not None:
            # Held by someone else now
            return False

        raw = await self.store.get(task_record_key(task_id))
        if raw is not None:
            task = TaskRecord.from_record(task_record_key(task_id), raw)
            if task.state == TaskState.COMPLETED:
                return False
        return True

    # ------------------------------------------------------------------
    # Step 3: early-failure resurrection
    # ------------------------------------------------------------------

    async def _resurrect_early_failures(self, now: datetime, report: CycleReport) -> None:
        window = timedelta(seconds=self.settings.early_failure_window)
        max_retries = self.settings.early_failure_max_retries

        for stored in await self.store.list_prefix(TASK_RECORD_PREFIX):
            try:
                task = TaskRecord.from_record(stored.key, stored.value)
            except CorruptRecord as e:
                logger.warning(f"Skipping corrupt task record: {e.message}")
                report.corrupt += 1
                continue

            if task.state != TaskState.FAILED or task.failed_at is None:
                continue
            if now - task.failed_at >= window:
                continue
            if task.retry_count >= max_retries:
                logger.info(
                    f"Task {task.task_id} failed early but reached {max_retries} retries, "
                    "leaving it failed"
                )
                continue

            resurrected = task.model_copy(
                update={
                    "state": TaskState.RETRY_AVAILABLE,
                    "retry_count": task.retry_count + 1,
                    "priority": Priority.HIGH,
                    "resurrected_at": now,
                    "updated_at": now,
                }
            )
            if not await self.store.replace_if(
                stored.key, "state", {TaskState.FAILED.value}, resurrected.to_record()
            ):
                continue

            logger.info(
                f"Early failure on {task.task_id} resurrected "
                f"(retry {resurrected.retry_count}/{max_retries})"
            )
            report.resurrected.append(task.task_id)
            await self._enqueue(
                RecoveryRecord(
                    task_id=task.task_id,
                    reason=RecoveryReason.EARLY_FAILURE,
                    original_agent=task.owner_id,
                    recovered_at=now,
                    retry_count=resurrected.retry_count,
                ),
                fingerprint=format_timestamp(task.failed_at),
                report=report,
            )

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------

    async def _requeue(
        self,
        task_id: str,
        reason: RecoveryReason,
        original_agent: str,
        fingerprint: str,
        now: datetime,
        report: CycleReport,
    ) -> None:
        await self._return_to_pool(task_id, now)
        await self._enqueue(
            RecoveryRecord(
                task_id=task_id,
                reason=reason,
                original_agent=original_agent,
                recovered_at=now,
            ),
            fingerprint=fingerprint,
            report=report,
        )

    async def _enqueue(self, record: RecoveryRecord, fingerprint: str, report: CycleReport) -> None:
        if not await self.queue.push(record, fingerprint):
            report.duplicates += 1

    async def _return_to_pool(self, task_id: str, now: datetime) -> None:
        """Move a reclaimed task's record back to available, if it has one."""
        key = task_record_key(task_id)
        try:
            raw = await self.store.get(key)
            if raw is None:
                return
            task = TaskRecord.from_record(key, raw)
        except CorruptRecord as e:
            logger.warning(f"Task record for {task_id} is corrupt: {e.message}")
            return
        if not task.can_transition_to(TaskState.AVAILABLE):
            return

        released = task.model_copy(
            update={
                "state": TaskState.AVAILABLE,
                "owner_id": None,
                "priority": Priority.HIGH,
                "updated_at": now,
            }
        )
        await self.store.replace_if(
            key,
            "state",
            {s.value for s in TaskState.held_states()},
            released.to_record(),
        )
