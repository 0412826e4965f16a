"""Lease model - an agent's exclusive claim on a task."""

from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, ValidationError, field_validator

from leasegate.errors import CorruptRecord
from leasegate.utils.time import ensure_utc


class Lease(BaseModel):
    """Represents an agent's exclusive claim on a task.

    Stored as a flat record keyed by task id::

        {"owner_id": "agent-1", "claimed_at": "2026-01-01T00:00:00Z", "ttl": 300}

    ``renewed_at`` is added by the first renewal. ``claimed_at`` never moves,
    so the orphan check measures total time held, while expiry is measured
    from the latest write.
    """

    task_id: str
    owner_id: str
    claimed_at: datetime
    ttl: int
    renewed_at: Optional[datetime] = None

    @field_validator("claimed_at", "renewed_at")
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    @property
    def last_written_at(self) -> datetime:
        return self.renewed_at or self.claimed_at

    @property
    def expires_at(self) -> datetime:
        return self.last_written_at + timedelta(seconds=self.ttl)

    def is_expired(self, now: datetime) -> bool:
        """Check if lease has expired."""
        return now >= self.expires_at

    def age(self, now: datetime) -> float:
        """Seconds since the lease was first claimed."""
        return (now - self.claimed_at).total_seconds()

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"task_id"}, exclude_none=True)

    @classmethod
    def from_record(cls, task_id: str, record: Any) -> "Lease":
        if not isinstance(record, dict):
            raise CorruptRecord(task_id, f"expected object, got {type(record).__name__}")
        try:
            return cls.model_validate({**record, "task_id": task_id})
        except ValidationError as e:
            raise CorruptRecord(task_id, str(e)) from e
