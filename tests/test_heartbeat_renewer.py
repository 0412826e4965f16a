"""
Heartbeat renewer tests.
"""

import asyncio

import pytest

from leasegate.engine import HeartbeatRenewer
from leasegate.errors import BackendUnavailable
from leasegate.store import format_timestamp, heartbeat_key, lease_key

from conftest import T0


@pytest.mark.asyncio
async def test_tick_writes_liveness_and_renews(claims, store, clock):
    renewer = HeartbeatRenewer(claims, "agent-1")
    await claims.acquire("task-A", "agent-1")
    clock.advance(3)

    tick = await renewer.tick()

    assert tick.heartbeat_written
    assert tick.renewed == ["task-A"]
    heartbeat = await store.get(heartbeat_key("agent-1"))
    assert heartbeat["owner_id"] == "agent-1"
    assert heartbeat["last_heartbeat"] == format_timestamp(clock.now())

    lease = await store.get(lease_key("task-A"))
    assert lease["claimed_at"] == format_timestamp(T0)
    assert lease["renewed_at"] == format_timestamp(clock.now())


@pytest.mark.asyncio
async def test_lost_lease_is_dropped_not_reacquired(claims, store):
    renewer = HeartbeatRenewer(claims, "agent-1")
    await claims.acquire("task-A", "agent-1")
    await claims.acquire("task-B", "agent-1")

    # Reclaimed behind the agent's back
    await store.compare_and_delete(lease_key("task-B"), "agent-1")

    tick = await renewer.tick()

    assert tick.renewed == ["task-A"]
    assert tick.dropped == ["task-B"]
    assert await claims.held.snapshot("agent-1") == {"task-A"}
    assert await store.get(lease_key("task-B")) is None
    assert await store.index_members("agent-1") == {"task-A"}


@pytest.mark.asyncio
async def test_lease_taken_by_other_agent_is_dropped(claims, store):
    renewer = HeartbeatRenewer(claims, "agent-1")
    await claims.acquire("task-A", "agent-1")
    await store.compare_and_delete(lease_key("task-A"), "agent-1")
    await claims.acquire("task-A", "agent-2")

    tick = await renewer.tick()

    assert tick.dropped == ["task-A"]
    assert (await store.get(lease_key("task-A")))["owner_id"] == "agent-2"
    assert await store.index_members("agent-1") == set()
    assert await store.index_members("agent-2") == {"task-A"}


@pytest.mark.asyncio
async def test_backend_errors_do_not_stop_the_tick(claims, store, monkeypatch):
    renewer = HeartbeatRenewer(claims, "agent-1")
    await claims.acquire("task-A", "agent-1")

    async def down(*args, **kwargs):
        raise BackendUnavailable(store.name, "down")

    monkeypatch.setattr(store, "write_heartbeat", down)

    tick = await renewer.tick()

    assert tick.errors == 1
    assert not tick.heartbeat_written
    assert tick.renewed == ["task-A"]


@pytest.mark.asyncio
async def test_start_and_stop(claims, store):
    renewer = HeartbeatRenewer(claims, "agent-1")

    renewer.start()
    await asyncio.sleep(0.05)
    assert renewer.is_alive
    assert await store.get(heartbeat_key("agent-1")) is not None

    await renewer.stop()
    assert not renewer.is_alive
