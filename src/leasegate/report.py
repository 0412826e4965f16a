"""Recovery report - point-in-time summary of claims and recoveries."""

import logging
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from leasegate.config import BackendKind, Settings
from leasegate.errors import CorruptRecord
from leasegate.models import AgentHeartbeat, Lease, TaskRecord
from leasegate.store import (
    HEARTBEAT_PREFIX,
    LEASE_PREFIX,
    TASK_RECORD_PREFIX,
    LeaseStore,
)

logger = logging.getLogger(__name__)


class SystemStatus(BaseModel):
    backend: BackendKind
    backend_available: bool
    state_dir: str


class WorkStatistics(BaseModel):
    active_claims: int = 0
    orphaned_claims: int = 0
    live_agents: int = 0
    stale_agents: int = 0
    pending_recoveries: int = 0
    recoveries_by_reason: dict[str, int] = Field(default_factory=dict)
    tasks_by_state: dict[str, int] = Field(default_factory=dict)
    corrupt_records: int = 0


class Thresholds(BaseModel):
    claim_ttl_seconds: int
    stale_threshold_seconds: int
    orphan_threshold_seconds: int
    early_failure_window_seconds: int
    recovery_interval_seconds: int


class RecoveryReport(BaseModel):
    report_time: datetime
    system_status: SystemStatus
    work_statistics: WorkStatistics
    thresholds: Thresholds


async def build_report(
    store: LeaseStore,
    settings: Settings,
    mode: BackendKind,
    log_limit: Optional[int] = None,
) -> RecoveryReport:
    """Collect claim, agent, task and recovery counts from ``store``."""
    now = store.clock.now()
    stats = WorkStatistics()

    for stored in await store.list_prefix(LEASE_PREFIX):
        try:
            lease = Lease.from_record(stored.ident, stored.value)
        except CorruptRecord:
            stats.corrupt_records += 1
            continue
        stats.active_claims += 1
        if lease.age(now) > settings.orphan_threshold:
            stats.orphaned_claims += 1

    for stored in await store.list_prefix(HEARTBEAT_PREFIX):
        try:
            heartbeat = AgentHeartbeat.from_record(stored.key, stored.value)
        except CorruptRecord:
            stats.corrupt_records += 1
            continue
        if heartbeat.is_stale(now, settings.stale_agent_threshold):
            stats.stale_agents += 1
        else:
            stats.live_agents += 1

    states: Counter[str] = Counter()
    for stored in await store.list_prefix(TASK_RECORD_PREFIX):
        try:
            states[TaskRecord.from_record(stored.key, stored.value).state.value] += 1
        except CorruptRecord:
            stats.corrupt_records += 1
    stats.tasks_by_state = dict(states)

    limit = log_limit or settings.recovery_log_size
    stats.pending_recoveries = len(await store.pending_recovery(limit))
    reasons: Counter[str] = Counter(
        str(entry.get("reason", "unknown")) for entry in await store.recovery_log(limit)
    )
    stats.recoveries_by_reason = dict(reasons)

    return RecoveryReport(
        report_time=now,
        system_status=SystemStatus(
            backend=mode,
            backend_available=await store.ping(),
            state_dir=str(settings.state_dir),
        ),
        work_statistics=stats,
        thresholds=Thresholds(
            claim_ttl_seconds=settings.claim_ttl,
            stale_threshold_seconds=settings.stale_agent_threshold,
            orphan_threshold_seconds=settings.orphan_threshold,
            early_failure_window_seconds=settings.early_failure_window,
            recovery_interval_seconds=settings.recovery_interval,
        ),
    )


def write_report(report: RecoveryReport, output: Path) -> None:
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(report.model_dump_json(indent=2) + "\n", encoding="utf-8")
    logger.info(f"Recovery report written: {output}")
