"""Lease store backends."""

import logging
from typing import Optional

from leasegate.config import BackendKind, Settings
from leasegate.store.base import (
    AGENT_TASKS_PREFIX,
    HEARTBEAT_PREFIX,
    LEASE_PREFIX,
    RECOVERY_GUARD_PREFIX,
    TASK_RECORD_PREFIX,
    LeaseStore,
    StoredRecord,
    format_timestamp,
    heartbeat_key,
    lease_key,
    parse_timestamp,
    task_record_key,
)
from leasegate.store.file_store import FileLeaseStore
from leasegate.store.redis_store import RedisLeaseStore
from leasegate.utils.time import Clock, system_clock

logger = logging.getLogger(__name__)


def open_store(
    settings: Settings,
    backend: Optional[BackendKind] = None,
    clock: Clock = system_clock,
) -> LeaseStore:
    """Build the lease store for ``backend`` (defaults to the configured one)."""
    kind = backend or settings.backend
    if kind == BackendKind.FILE:
        logger.info(f"Using local file lease store at {settings.state_dir}")
        return FileLeaseStore(settings.state_dir, settings, clock)
    return RedisLeaseStore.from_url(settings, clock)


__all__ = [
    "AGENT_TASKS_PREFIX",
    "FileLeaseStore",
    "HEARTBEAT_PREFIX",
    "LEASE_PREFIX",
    "LeaseStore",
    "RECOVERY_GUARD_PREFIX",
    "RedisLeaseStore",
    "StoredRecord",
    "TASK_RECORD_PREFIX",
    "format_timestamp",
    "heartbeat_key",
    "lease_key",
    "open_store",
    "parse_timestamp",
    "task_record_key",
]
