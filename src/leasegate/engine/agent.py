"""Agent session - scoped lease ownership for worker processes."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from leasegate.config import Settings
from leasegate.engine.claims import ClaimManager, ClaimResult
from leasegate.engine.heartbeat import HeartbeatRenewer
from leasegate.errors import BackendUnavailable, LockConflict, LockNotOwned
from leasegate.instance import detect_agent_id
from leasegate.models import ClaimOutcome, Lease
from leasegate.store import LeaseStore

logger = logging.getLogger(__name__)


class AgentSession:
    """
    Runs one agent against a lease store.

    Usage:
        async with AgentSession(store, settings) as agent:
            async with agent.claim("task-A") as lease:
                ...  # exclusive until the block exits

    Entering starts the heartbeat renewer. Leaving, on any path including
    cancellation, stops it and releases every lease the agent still holds.
    """

    def __init__(
        self,
        store: LeaseStore,
        settings: Settings,
        agent_id: Optional[str] = None,
        claims: Optional[ClaimManager] = None,
    ):
        self.store = store
        self.settings = settings
        self.agent_id = agent_id or settings.agent_id or detect_agent_id()
        self.claims = claims or ClaimManager(store, settings)
        self.renewer = HeartbeatRenewer(self.claims, self.agent_id)

    async def __aenter__(self) -> "AgentSession":
        await self.renewer.beat()
        self.renewer.start()
        logger.info(f"Agent session started: {self.agent_id}")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.renewer.stop()
        released = await self.release_all()
        logger.info(f"Agent session closed: {self.agent_id} (released {released} leases)")

    async def release_all(self) -> int:
        """Release every held lease, best-effort. Returns how many were released."""
        released = 0
        for task_id in sorted(await self.claims.held.snapshot(self.agent_id)):
            try:
                result = await self.claims.release(task_id, self.agent_id)
            except BackendUnavailable as e:
                logger.error(f"Could not release {task_id} for {self.agent_id}: {e}")
                continue
            if result.outcome == ClaimOutcome.RELEASED:
                released += 1
        await self.claims.held.clear(self.agent_id)
        try:
            await self.store.index_clear(self.agent_id)
        except BackendUnavailable as e:
            logger.warning(f"Could not clear held-task index for {self.agent_id}: {e}")
        return released

    async def try_claim(self, task_id: str, ttl: Optional[int] = None) -> Optional[Lease]:
        """Acquire ``task_id`` or return None if another agent holds it."""
        result = await self.claims.acquire(task_id, self.agent_id, ttl)
        return result.lease

    @asynccontextmanager
    async def claim(self, task_id: str, ttl: Optional[int] = None) -> AsyncIterator[Lease]:
        """
        Hold ``task_id`` for the duration of the block.

        Raises:
            LockConflict: If another agent holds the task
        """
        result = await self.claims.acquire(task_id, self.agent_id, ttl)
        if result.outcome != ClaimOutcome.CLAIMED or result.lease is None:
            raise LockConflict(task_id, result.owner_id)
        try:
            yield result.lease
        finally:
            try:
                await self.claims.release(task_id, self.agent_id)
            except BackendUnavailable as e:
                logger.error(f"Could not release {task_id} for {self.agent_id}: {e}")

    def _owned(self, task_id: str, result: ClaimResult) -> ClaimResult:
        if result.outcome in (ClaimOutcome.NOT_OWNED, ClaimOutcome.NOT_FOUND):
            raise LockNotOwned(task_id, self.agent_id)
        return result

    async def renew(self, task_id: str, ttl: Optional[int] = None) -> ClaimResult:
        """
        Extend the lease on ``task_id``.

        Raises:
            LockNotOwned: If the lease expired or another agent holds it
        """
        return self._owned(task_id, await self.claims.renew(task_id, self.agent_id, ttl))

    async def start(self, task_id: str) -> ClaimResult:
        return self._owned(task_id, await self.claims.start(task_id, self.agent_id))

    async def complete(self, task_id: str) -> ClaimResult:
        return self._owned(task_id, await self.claims.complete(task_id, self.agent_id))

    async def fail(self, task_id: str) -> ClaimResult:
        return self._owned(task_id, await self.claims.fail(task_id, self.agent_id))
