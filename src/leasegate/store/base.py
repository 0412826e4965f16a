"""Lease store contract shared by the networked and local backends."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from leasegate.errors import CorruptRecord, InvalidKey
from leasegate.utils.time import Clock, ensure_utc, system_clock

logger = logging.getLogger(__name__)

LEASE_PREFIX = "task:claim:"
HEARTBEAT_PREFIX = "agent:heartbeat:"
AGENT_TASKS_PREFIX = "agent:tasks:"
TASK_RECORD_PREFIX = "task:record:"
RECOVERY_GUARD_PREFIX = "recovery:guard:"
RECOVERY_QUEUE_KEY = "work:available:high"
RECOVERY_LOG_KEY = "recovery:log"

NAMESPACES = (
    LEASE_PREFIX,
    HEARTBEAT_PREFIX,
    AGENT_TASKS_PREFIX,
    TASK_RECORD_PREFIX,
    RECOVERY_GUARD_PREFIX,
)

# Record fields that carry the time of the latest write, most recent first.
_WRITE_TIME_FIELDS = ("renewed_at", "last_heartbeat", "claimed_at", "created_at")


def lease_key(task_id: str) -> str:
    return f"{LEASE_PREFIX}{task_id}"


def heartbeat_key(agent_id: str) -> str:
    return f"{HEARTBEAT_PREFIX}{agent_id}"


def agent_tasks_key(agent_id: str) -> str:
    return f"{AGENT_TASKS_PREFIX}{agent_id}"


def task_record_key(task_id: str) -> str:
    return f"{TASK_RECORD_PREFIX}{task_id}"


def recovery_guard_key(dedup_key: str) -> str:
    return f"{RECOVERY_GUARD_PREFIX}{dedup_key}"


def split_key(key: str) -> tuple[str, str]:
    """Split a store key into its namespace prefix and identifier."""
    for prefix in NAMESPACES:
        if key.startswith(prefix) and len(key) > len(prefix):
            return prefix, key[len(prefix):]
    raise InvalidKey(key)


def parse_timestamp(value: Any) -> datetime:
    """Parse an RFC3339 timestamp into an aware UTC datetime."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        raise ValueError(f"expected RFC3339 string, got {value!r}")
    return ensure_utc(datetime.fromisoformat(value))


def format_timestamp(value: datetime) -> str:
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def written_at(key: str, record: dict[str, Any]) -> Optional[datetime]:
    """Time of the latest write recorded in ``record``."""
    for field in _WRITE_TIME_FIELDS:
        raw = record.get(field)
        if raw:
            try:
                return parse_timestamp(raw)
            except ValueError as e:
                raise CorruptRecord(key, f"bad {field}: {e}") from e
    return None


@dataclass
class StoredRecord:
    """A record returned by a prefix scan."""

    key: str
    value: dict[str, Any]
    age: Optional[float]  # seconds since the latest write

    @property
    def ident(self) -> str:
        return split_key(self.key)[1]


class LeaseStore(ABC):
    """
    Storage contract for leases, liveness records and recovery entries.

    Both backends must behave identically:
    - ``create_if_absent`` is atomic and side-effect free when it fails
    - conditional mutations compare ``owner_id`` before acting and return
      False on mismatch instead of raising
    - records carrying ``ttl`` disappear once ``latest write + ttl`` passes
    - every call is bounded by the configured timeout and raises
      ``BackendTimeout``/``BackendUnavailable`` instead of hanging
    """

    name: str = "store"

    def __init__(self, clock: Clock = system_clock):
        self.clock = clock

    # ------------------------------------------------------------------
    # Conditional primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_if_absent(self, key: str, value: dict[str, Any], ttl: int) -> bool:
        """Create ``key`` only if no live record exists. Returns acquired."""

    @abstractmethod
    async def get(self, key: str) -> Optional[dict[str, Any]]:
        """Return the live record at ``key`` or None.

        Raises:
            CorruptRecord: If the stored value cannot be decoded
        """

    @abstractmethod
    async def compare_and_delete(self, key: str, expected_owner: str) -> bool:
        """Delete ``key`` only if its ``owner_id`` matches."""

    @abstractmethod
    async def refresh(self, key: str, expected_owner: str, ttl: int) -> bool:
        """Extend the TTL of ``key`` only if its ``owner_id`` matches."""

    @abstractmethod
    async def list_prefix(self, prefix: str) -> list[StoredRecord]:
        """Return live records whose key starts with ``prefix``.

        Undecodable records are logged and skipped.
        """

    # ------------------------------------------------------------------
    # Liveness records
    # ------------------------------------------------------------------

    @abstractmethod
    async def write_heartbeat(self, key: str, value: dict[str, Any], ttl: int) -> bool:
        """Write a liveness record unless the stored one is newer."""

    @abstractmethod
    async def delete_if_stale(self, key: str, cutoff: datetime) -> bool:
        """Delete a liveness record only if ``last_heartbeat <= cutoff``."""

    # ------------------------------------------------------------------
    # Held-task index (secondary, not authoritative)
    # ------------------------------------------------------------------

    @abstractmethod
    async def index_add(self, agent_id: str, task_id: str) -> None:
        pass

    @abstractmethod
    async def index_remove(self, agent_id: str, task_id: str) -> None:
        pass

    @abstractmethod
    async def index_members(self, agent_id: str) -> set[str]:
        pass

    @abstractmethod
    async def index_clear(self, agent_id: str) -> None:
        pass

    # ------------------------------------------------------------------
    # Plain records (task state)
    # ------------------------------------------------------------------

    @abstractmethod
    async def put(self, key: str, value: dict[str, Any]) -> None:
        """Unconditionally write a record without TTL."""

    @abstractmethod
    async def replace_if(
        self,
        key: str,
        field: str,
        allowed: set[str],
        value: dict[str, Any],
    ) -> bool:
        """Replace ``key`` with ``value`` only if ``record[field]`` is in ``allowed``."""

    # ------------------------------------------------------------------
    # Recovery queue
    # ------------------------------------------------------------------

    async def enqueue_recovery(
        self,
        value: dict[str, Any],
        dedup_key: str,
        guard_owner: str,
        guard_ttl: int,
    ) -> bool:
        """Push a recovery entry once per ``dedup_key``.

        The guard is a conditional create, so concurrent detectors that
        recover the same claim enqueue it exactly once.
        """
        guard = recovery_guard_key(dedup_key)
        guard_value = {
            "owner_id": guard_owner,
            "created_at": format_timestamp(self.clock.now()),
            "task_id": value.get("task_id"),
        }
        if not await self.create_if_absent(guard, guard_value, guard_ttl):
            logger.debug(f"Recovery entry {dedup_key} already enqueued, skipping")
            return False
        try:
            await self._push_recovery(value)
        except Exception:
            await self.compare_and_delete(guard, guard_owner)
            raise
        return True

    @abstractmethod
    async def _push_recovery(self, value: dict[str, Any]) -> None:
        """Append to the recovery queue and the recovery log."""

    @abstractmethod
    async def dequeue_recovery(self) -> Optional[dict[str, Any]]:
        """Pop the oldest recovery entry."""

    @abstractmethod
    async def pending_recovery(self, limit: int = 100) -> list[dict[str, Any]]:
        """Peek at queued recovery entries, oldest first."""

    @abstractmethod
    async def recovery_log(self, limit: int = 100) -> list[dict[str, Any]]:
        """Most recent recovery log entries, newest first."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the backend answers within its timeout."""

    async def close(self) -> None:
        """Release connections."""

    def _is_expired(self, key: str, record: dict[str, Any], now: datetime) -> bool:
        ttl = record.get("ttl")
        written = written_at(key, record)
        if ttl is None or written is None:
            return False
        try:
            ttl_seconds = float(ttl)
        except (TypeError, ValueError) as e:
            raise CorruptRecord(key, f"bad ttl: {ttl!r}") from e
        return now >= written + timedelta(seconds=ttl_seconds)

    def _age(self, key: str, record: dict[str, Any], now: datetime) -> Optional[float]:
        written = written_at(key, record)
        if written is None:
            return None
        return (now - written).total_seconds()
