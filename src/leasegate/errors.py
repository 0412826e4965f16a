"""LeaseGate errors."""

from typing import Optional


class LeaseGateError(Exception):
    """Base error for LeaseGate operations."""

    def __init__(self, message: str, code: str = "LEASEGATE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class LockConflict(LeaseGateError):
    """Task is already claimed by another agent."""

    def __init__(self, task_id: str, owner_id: str | None = None):
        super().__init__(
            f"Task {task_id} already claimed by {owner_id or 'another agent'}",
            "LOCK_CONFLICT",
        )
        self.task_id = task_id
        self.owner_id = owner_id


class LockNotOwned(LeaseGateError):
    """Release or renew attempted by an agent that does not hold the lease."""

    def __init__(self, task_id: str, agent_id: str):
        super().__init__(
            f"Lease for task {task_id} is not held by {agent_id}",
            "LOCK_NOT_OWNED",
        )
        self.task_id = task_id
        self.agent_id = agent_id


class BackendUnavailable(LeaseGateError):
    """Lease store cannot be reached."""

    def __init__(self, backend: str, detail: str = "", code: str = "BACKEND_UNAVAILABLE"):
        message = f"{backend} backend unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, code)
        self.backend = backend
        self.detail = detail


class BackendTimeout(BackendUnavailable):
    """A store call exceeded its time bound."""

    def __init__(self, backend: str, operation: str, timeout_seconds: float):
        super().__init__(
            backend,
            f"{operation} timed out after {timeout_seconds}s",
            "BACKEND_TIMEOUT",
        )
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class CorruptRecord(LeaseGateError):
    """A stored record could not be parsed."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"Corrupt record at {key}: {reason}", "CORRUPT_RECORD")
        self.key = key
        self.reason = reason


class InvalidKey(LeaseGateError):
    """Key cannot be mapped onto the store namespace."""

    def __init__(self, key: str):
        super().__init__(f"Invalid store key: {key!r}", "INVALID_KEY")
        self.key = key


class AlreadyRunning(LeaseGateError):
    """Another coordinator instance holds the liveness marker."""

    def __init__(self, pid: Optional[int], pid_file: str):
        super().__init__(
            f"Coordinator already running (PID: {pid or 'unknown'}, marker: {pid_file})",
            "ALREADY_RUNNING",
        )
        self.pid = pid
        self.pid_file = pid_file


class InvalidStateTransition(LeaseGateError):
    """Task state transition not allowed by the task lifecycle."""

    def __init__(self, task_id: str, from_state: str, to_state: str):
        super().__init__(
            f"Invalid transition for task {task_id}: {from_state} -> {to_state}",
            "INVALID_STATE_TRANSITION",
        )
        self.task_id = task_id
        self.from_state = from_state
        self.to_state = to_state
