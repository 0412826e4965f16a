"""Task model - core work unit."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ValidationError, field_validator

from leasegate.errors import CorruptRecord
from leasegate.models.enums import Priority, TaskState
from leasegate.utils.time import ensure_utc


class TaskRecord(BaseModel):
    """Persisted task state.

    Tasks are created by an external producer; the claim manager and the
    orphan detector drive their state transitions.
    """

    task_id: str
    description: str = ""
    state: TaskState = TaskState.AVAILABLE
    retry_count: int = 0
    priority: Priority = Priority.NORMAL
    updated_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    resurrected_at: Optional[datetime] = None
    owner_id: Optional[str] = None

    @field_validator("updated_at", "failed_at", "resurrected_at")
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    def can_transition_to(self, new_state: TaskState) -> bool:
        """Check if transition to new state is valid per state machine."""
        valid_transitions: dict[TaskState, set[TaskState]] = {
            TaskState.AVAILABLE: {TaskState.CLAIMED},
            TaskState.RETRY_AVAILABLE: {TaskState.CLAIMED},
            TaskState.CLAIMED: {
                TaskState.IN_PROGRESS,
                TaskState.COMPLETED,
                TaskState.FAILED,
                TaskState.AVAILABLE,  # On reclaim (system-driven)
            },
            TaskState.IN_PROGRESS: {
                TaskState.COMPLETED,
                TaskState.FAILED,
                TaskState.AVAILABLE,  # On reclaim (system-driven)
            },
            TaskState.FAILED: {TaskState.RETRY_AVAILABLE},
            TaskState.COMPLETED: set(),
        }
        return new_state in valid_transitions.get(self.state, set())

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_record(cls, key: str, record: Any) -> "TaskRecord":
        if not isinstance(record, dict):
            raise CorruptRecord(key, f"expected object, got {type(record).__name__}")
        try:
            return cls.model_validate(record)
        except ValidationError as e:
            raise CorruptRecord(key, str(e)) from e
