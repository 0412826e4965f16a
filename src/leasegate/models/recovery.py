"""Recovery record model."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ValidationError, field_validator

from leasegate.errors import CorruptRecord
from leasegate.models.enums import Priority, RecoveryReason
from leasegate.utils.time import ensure_utc


class RecoveryRecord(BaseModel):
    """A task returned to circulation, annotated with provenance."""

    task_id: str
    reason: RecoveryReason
    original_agent: Optional[str] = None
    recovered_at: datetime
    priority: Priority = Priority.HIGH
    retry_count: Optional[int] = None

    @field_validator("recovered_at")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def dedup_key(self, fingerprint: str) -> str:
        """Key shared by every detector that recovers the same claim."""
        return f"{self.task_id}:{self.reason.value}:{fingerprint}"

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_record(cls, key: str, record: Any) -> "RecoveryRecord":
        if not isinstance(record, dict):
            raise CorruptRecord(key, f"expected object, got {type(record).__name__}")
        try:
            return cls.model_validate(record)
        except ValidationError as e:
            raise CorruptRecord(key, str(e)) from e
