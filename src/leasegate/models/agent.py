"""Agent liveness model."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ValidationError, field_validator

from leasegate.errors import CorruptRecord
from leasegate.utils.time import ensure_utc


class AgentHeartbeat(BaseModel):
    """Liveness record written by an agent's heartbeat renewer."""

    owner_id: str
    last_heartbeat: datetime
    ttl: int

    @field_validator("last_heartbeat")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def agent_id(self) -> str:
        return self.owner_id

    def age(self, now: datetime) -> float:
        return (now - self.last_heartbeat).total_seconds()

    def is_stale(self, now: datetime, threshold_seconds: int) -> bool:
        return self.age(now) > threshold_seconds

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, key: str, record: Any) -> "AgentHeartbeat":
        if not isinstance(record, dict):
            raise CorruptRecord(key, f"expected object, got {type(record).__name__}")
        try:
            return cls.model_validate(record)
        except ValidationError as e:
            raise CorruptRecord(key, str(e)) from e
