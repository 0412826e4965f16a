"""Heartbeat renewer - keeps an agent's liveness record and leases fresh."""

import logging
from dataclasses import dataclass, field

from leasegate.engine.claims import ClaimManager
from leasegate.errors import BackendUnavailable
from leasegate.models import AgentHeartbeat, ClaimOutcome
from leasegate.store import heartbeat_key
from leasegate.tasks import PeriodicTask

logger = logging.getLogger(__name__)


@dataclass
class HeartbeatTick:
    """What a single renewal pass did."""

    heartbeat_written: bool = False
    renewed: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    errors: int = 0


class HeartbeatRenewer:
    """
    Periodically proves an agent is alive.

    Each tick writes the agent's liveness record, then renews every lease in
    the local held-task index. A lease that comes back NOT_FOUND or
    NOT_OWNED was reclaimed while we were away; it is dropped from the
    local and persisted indexes and never re-acquired here. Backend errors
    are logged and the next tick tries again.
    """

    def __init__(self, claims: ClaimManager, agent_id: str):
        self.claims = claims
        self.agent_id = agent_id
        self.settings = claims.settings
        self._ticker = PeriodicTask(
            f"heartbeat[{agent_id}]",
            self.tick,
            interval=self.settings.heartbeat_interval,
            run_immediately=True,
        )

    @property
    def is_alive(self) -> bool:
        return self._ticker.is_alive

    async def beat(self) -> bool:
        """Write the liveness record. False if a newer one is already stored."""
        record = AgentHeartbeat(
            owner_id=self.agent_id,
            last_heartbeat=self.claims.clock.now(),
            ttl=self.settings.heartbeat_ttl,
        )
        written = await self.claims.store.write_heartbeat(
            heartbeat_key(self.agent_id), record.to_record(), self.settings.heartbeat_ttl
        )
        if not written:
            logger.warning(f"Heartbeat for {self.agent_id} rejected: stored record is newer")
        return written

    async def tick(self) -> HeartbeatTick:
        result = HeartbeatTick()

        try:
            result.heartbeat_written = await self.beat()
        except BackendUnavailable as e:
            logger.error(f"Heartbeat write for {self.agent_id} failed: {e}")
            result.errors += 1

        for task_id in sorted(await self.claims.held.snapshot(self.agent_id)):
            try:
                renewal = await self.claims.renew(task_id, self.agent_id)
            except BackendUnavailable as e:
                logger.error(f"Renewal of {task_id} for {self.agent_id} failed: {e}")
                result.errors += 1
                continue

            if renewal.outcome == ClaimOutcome.RENEWED:
                result.renewed.append(task_id)
                continue

            logger.warning(
                f"Lease on {task_id} lost by {self.agent_id} ({renewal.outcome.value}), "
                "dropping from held tasks"
            )
            await self.claims.forget(self.agent_id, task_id)
            result.dropped.append(task_id)

        if result.renewed or result.dropped:
            logger.debug(
                f"Heartbeat {self.agent_id}: renewed {len(result.renewed)}, "
                f"dropped {len(result.dropped)}"
            )
        return result

    def start(self) -> None:
        self._ticker.start()

    async def stop(self) -> None:
        await self._ticker.stop()
