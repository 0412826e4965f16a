"""LeaseGate enumerations."""

from enum import Enum


class TaskState(str, Enum):
    """Task lifecycle state."""

    AVAILABLE = "available"
    CLAIMED = "claimed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY_AVAILABLE = "retry_available"

    @classmethod
    def held_states(cls) -> set["TaskState"]:
        """States in which an agent is expected to hold a lease."""
        return {cls.CLAIMED, cls.IN_PROGRESS}

    @classmethod
    def claimable_states(cls) -> set["TaskState"]:
        return {cls.AVAILABLE, cls.RETRY_AVAILABLE}


class ClaimOutcome(str, Enum):
    """Result of a claim manager operation."""

    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"
    RELEASED = "released"
    RENEWED = "renewed"
    NOT_OWNED = "not_owned"
    NOT_FOUND = "not_found"
    TRANSITIONED = "transitioned"


class RecoveryReason(str, Enum):
    """Why a task was returned to circulation."""

    ORPHANED_CLAIM = "orphaned_claim"
    STALE_AGENT = "stale_agent"
    EARLY_FAILURE = "early_failure"


class RecoveryStep(str, Enum):
    """One pass of the orphan detector's cycle."""

    ORPHANS = "orphans"
    STALE = "stale"
    EARLY_FAILURE = "early-failure"


class Priority(str, Enum):
    """Recovery queue priority."""

    HIGH = "high"
    NORMAL = "normal"


class BackendState(str, Enum):
    """Availability monitor state machine."""

    UNKNOWN = "unknown"
    PROBING = "probing"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    DEGRADED = "degraded"
