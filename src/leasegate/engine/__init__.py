"""LeaseGate engine - claims, renewal and recovery."""

from leasegate.engine.agent import AgentSession
from leasegate.engine.claims import ClaimManager, ClaimResult, HeldTaskIndex
from leasegate.engine.heartbeat import HeartbeatRenewer, HeartbeatTick
from leasegate.engine.queue import RecoveryQueue
from leasegate.engine.recovery import CycleReport, OrphanDetector

__all__ = [
    "AgentSession",
    "ClaimManager",
    "ClaimResult",
    "CycleReport",
    "HeartbeatRenewer",
    "HeartbeatTick",
    "HeldTaskIndex",
    "OrphanDetector",
    "RecoveryQueue",
]
