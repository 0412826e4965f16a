"""LeaseGate data models."""

from leasegate.models.enums import (
    BackendState,
    ClaimOutcome,
    Priority,
    RecoveryReason,
    RecoveryStep,
    TaskState,
)
from leasegate.models.agent import AgentHeartbeat
from leasegate.models.lease import Lease
from leasegate.models.recovery import RecoveryRecord
from leasegate.models.task import TaskRecord

__all__ = [
    "AgentHeartbeat",
    "BackendState",
    "ClaimOutcome",
    "Lease",
    "Priority",
    "RecoveryReason",
    "RecoveryRecord",
    "RecoveryStep",
    "TaskRecord",
    "TaskState",
]
