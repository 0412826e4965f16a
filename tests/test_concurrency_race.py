"""
Concurrency and race condition tests.
"""

import asyncio

import pytest

from leasegate.engine import ClaimManager, HeartbeatRenewer, OrphanDetector, RecoveryQueue
from leasegate.models import ClaimOutcome, RecoveryReason
from leasegate.store import lease_key


@pytest.mark.asyncio
async def test_concurrent_acquire_only_one_agent(make_store, backend, settings):
    """N agents, each with its own store connection, race for one task."""
    managers = [ClaimManager(make_store(backend), settings) for _ in range(8)]

    results = await asyncio.gather(
        *(m.acquire("task-A", f"agent-{i}") for i, m in enumerate(managers))
    )

    winners = [r for r in results if r.outcome == ClaimOutcome.CLAIMED]
    losers = [r for r in results if r.outcome == ClaimOutcome.ALREADY_CLAIMED]
    assert len(winners) == 1
    assert len(losers) == 7
    assert {r.owner_id for r in losers} == {winners[0].owner_id}

    for m in managers:
        await m.store.close()


@pytest.mark.asyncio
async def test_concurrent_release_and_renew(make_store, backend, settings):
    """A release racing a renewal never leaves a lease owned by the releaser."""
    owner = ClaimManager(make_store(backend), settings)
    await owner.acquire("task-A", "agent-1")

    release, renew = await asyncio.gather(
        owner.release("task-A", "agent-1"),
        owner.renew("task-A", "agent-1"),
    )

    assert release.outcome == ClaimOutcome.RELEASED
    assert renew.outcome in (ClaimOutcome.RENEWED, ClaimOutcome.NOT_FOUND)
    assert await owner.store.get(lease_key("task-A")) is None
    await owner.store.close()


@pytest.mark.asyncio
async def test_concurrent_detectors_enqueue_once(make_store, backend, settings, clock):
    """Two coordinators scanning the same store recover each task exactly once."""
    store = make_store(backend)
    claims = ClaimManager(store, settings)

    await HeartbeatRenewer(claims, "agent-1").beat()
    for task_id in ("task-A", "task-B", "task-C"):
        await claims.acquire(task_id, "agent-1")
    clock.advance(8.5)

    detectors = []
    for name in ("coordinator-1", "coordinator-2"):
        other = make_store(backend)
        detectors.append(OrphanDetector(other, settings, RecoveryQueue(other, settings, name)))

    await asyncio.gather(*(d.run_cycle() for d in detectors))

    log = await RecoveryQueue(store, settings, "reader").log()
    assert sorted(r.task_id for r in log) == ["task-A", "task-B", "task-C"]
    assert {r.reason for r in log} == {RecoveryReason.STALE_AGENT}

    await store.close()
    for d in detectors:
        await d.store.close()
