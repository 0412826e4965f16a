"""Recovery queue - high-priority list of tasks returned to circulation."""

import logging
from typing import Any, Optional

from leasegate.config import Settings
from leasegate.errors import CorruptRecord
from leasegate.models import RecoveryRecord
from leasegate.store import LeaseStore

logger = logging.getLogger(__name__)


class RecoveryQueue:
    """
    Deduplicated recovery queue on top of a lease store.

    Every push carries a fingerprint of the claim being recovered. The
    store guards ``task:reason:fingerprint`` with a conditional create that
    lives for ``orphan_threshold`` seconds, so two coordinators scanning the
    same store enqueue a given recovery once.
    """

    def __init__(self, store: LeaseStore, settings: Settings, owner_id: str):
        self.store = store
        self.settings = settings
        self.owner_id = owner_id

    async def push(self, record: RecoveryRecord, fingerprint: str) -> bool:
        """Enqueue ``record``. Returns False if it was already enqueued."""
        enqueued = await self.store.enqueue_recovery(
            record.to_record(),
            dedup_key=record.dedup_key(fingerprint),
            guard_owner=self.owner_id,
            guard_ttl=self.settings.orphan_threshold,
        )
        if enqueued:
            logger.info(
                f"Recovery queued: task={record.task_id} reason={record.reason.value} "
                f"original_agent={record.original_agent}"
            )
        return enqueued

    async def pop(self) -> Optional[RecoveryRecord]:
        """Take the oldest entry off the queue."""
        while True:
            raw = await self.store.dequeue_recovery()
            if raw is None:
                return None
            try:
                return RecoveryRecord.from_record("recovery", raw)
            except CorruptRecord as e:
                logger.warning(f"Dropping corrupt recovery entry: {e.message}")

    async def pending(self, limit: int = 100) -> list[RecoveryRecord]:
        return self._parse(await self.store.pending_recovery(limit))

    async def log(self, limit: int = 100) -> list[RecoveryRecord]:
        """Most recent recoveries, newest first."""
        return self._parse(await self.store.recovery_log(limit))

    def _parse(self, entries: list[Any]) -> list[RecoveryRecord]:
        records = []
        for entry in entries:
            try:
                records.append(RecoveryRecord.from_record("recovery", entry))
            except CorruptRecord as e:
                logger.warning(f"Skipping corrupt recovery entry: {e.message}")
        return records
