"""
Local file backend: layout, emulated TTL and lock timeouts.
"""

import fcntl
import json

import pytest

from leasegate.errors import BackendTimeout
from leasegate.store import LEASE_PREFIX, FileLeaseStore, format_timestamp, lease_key
from leasegate.store.file_store import INDEX_COMPACT_MIN_LINES

from conftest import T0


def lease_value(owner: str) -> dict:
    return {"owner_id": owner, "claimed_at": format_timestamp(T0)}


@pytest.mark.asyncio
async def test_one_json_file_per_lease(file_store, settings):
    await file_store.create_if_absent(lease_key("task-A"), lease_value("agent-1"), 5)

    path = settings.state_dir / "task-claim" / "task-A.json"
    assert path.exists()
    assert json.loads(path.read_text()) == {
        "owner_id": "agent-1",
        "claimed_at": "2026-01-01T12:00:00Z",
        "ttl": 5,
    }


@pytest.mark.asyncio
async def test_identifiers_are_escaped(file_store, settings):
    await file_store.create_if_absent(lease_key("team/task:1"), lease_value("agent-1"), 5)

    files = list((settings.state_dir / "task-claim").iterdir())
    assert [f.name for f in files] == ["team%2Ftask%3A1.json"]
    assert [r.ident for r in await file_store.list_prefix(LEASE_PREFIX)] == ["team/task:1"]


@pytest.mark.asyncio
async def test_expired_lease_is_absent_and_purged(file_store, clock, settings):
    key = lease_key("task-A")
    await file_store.create_if_absent(key, lease_value("agent-1"), 5)

    clock.advance(4.9)
    assert await file_store.get(key) is not None

    clock.advance(0.1)
    assert await file_store.get(key) is None
    assert not (settings.state_dir / "task-claim" / "task-A.json").exists()


@pytest.mark.asyncio
async def test_expired_lease_can_be_taken_over(file_store, clock):
    key = lease_key("task-A")
    await file_store.create_if_absent(key, lease_value("agent-1"), 5)
    clock.advance(6)

    assert await file_store.create_if_absent(key, lease_value("agent-2"), 5) is True
    assert (await file_store.get(key))["owner_id"] == "agent-2"


@pytest.mark.asyncio
async def test_renewal_extends_emulated_ttl(file_store, clock):
    key = lease_key("task-A")
    await file_store.create_if_absent(key, lease_value("agent-1"), 5)
    clock.advance(4)
    assert await file_store.refresh(key, "agent-1", 5) is True

    clock.advance(4)
    assert await file_store.get(key) is not None


@pytest.mark.asyncio
async def test_corrupt_lease_is_not_overwritten(file_store, write_raw, settings):
    key = lease_key("task-A")
    await write_raw(file_store, key, "garbage")

    assert await file_store.create_if_absent(key, lease_value("agent-1"), 5) is False
    assert (settings.state_dir / "task-claim" / "task-A.json").read_text() == "garbage"


@pytest.mark.asyncio
async def test_held_task_index_is_append_only_log(file_store, settings):
    await file_store.index_add("agent-1", "task-A")
    await file_store.index_add("agent-1", "task-B")
    await file_store.index_remove("agent-1", "task-A")

    log = settings.state_dir / "agent-tasks" / "agent-1.log"
    lines = [json.loads(line) for line in log.read_text().splitlines()]
    assert lines == [
        {"op": "add", "task_id": "task-A"},
        {"op": "add", "task_id": "task-B"},
        {"op": "remove", "task_id": "task-A"},
    ]
    assert await file_store.index_members("agent-1") == {"task-B"}


@pytest.mark.asyncio
async def test_recovery_log_is_trimmed(file_store, settings):
    for i in range(2 * settings.recovery_log_size + 1):
        await file_store._push_recovery({"task_id": f"task-{i}", "reason": "orphaned_claim"})

    lines = (settings.state_dir / "recovery.log").read_text().splitlines()
    assert len(lines) == settings.recovery_log_size
    newest = await file_store.recovery_log(limit=1)
    assert newest == [{"task_id": f"task-{2 * settings.recovery_log_size}", "reason": "orphaned_claim"}]


@pytest.mark.asyncio
async def test_lock_held_elsewhere_times_out(settings, clock):
    fast = settings.model_copy(update={"backend_timeout_seconds": 0.2})
    store = FileLeaseStore(settings.state_dir, fast, clock)

    with open(settings.state_dir / ".lock", "a+") as held:
        fcntl.flock(held.fileno(), fcntl.LOCK_EX)
        try:
            with pytest.raises(BackendTimeout):
                await store.get(lease_key("task-A"))
        finally:
            fcntl.flock(held.fileno(), fcntl.LOCK_UN)

    assert await store.get(lease_key("task-A")) is None


@pytest.mark.asyncio
async def test_ping_creates_state_dir(tmp_path, settings, clock):
    store = FileLeaseStore(tmp_path / "fresh", settings, clock)
    assert await store.ping() is True
    assert (tmp_path / "fresh").is_dir()


@pytest.mark.asyncio
async def test_dot_prefixed_identifiers_are_not_hidden(file_store, settings):
    for task_id in (".build", ".."):
        await file_store.create_if_absent(lease_key(task_id), lease_value("agent-1"), 5)

    names = sorted(f.name for f in (settings.state_dir / "task-claim").iterdir())
    assert names == ["%2E..json", "%2Ebuild.json"]
    listed = sorted(r.ident for r in await file_store.list_prefix(LEASE_PREFIX))
    assert listed == ["..", ".build"]


@pytest.mark.asyncio
async def test_held_task_index_log_is_compacted(file_store, settings):
    await file_store.index_add("agent-1", "task-keep")
    for i in range(200):
        await file_store.index_add("agent-1", f"task-{i}")
        await file_store.index_remove("agent-1", f"task-{i}")

    log = settings.state_dir / "agent-tasks" / "agent-1.log"
    assert len(log.read_text().splitlines()) <= INDEX_COMPACT_MIN_LINES
    assert await file_store.index_members("agent-1") == {"task-keep"}
    assert not [p for p in log.parent.iterdir() if p.name.endswith(".tmp")]
