"""LeaseGate background tasks."""

from leasegate.tasks.periodic import PeriodicTask

__all__ = ["PeriodicTask"]
