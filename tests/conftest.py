"""
Pytest fixtures for LeaseGate tests.
"""

from datetime import datetime, timedelta, timezone

import fakeredis
import fakeredis.aioredis
import pytest

from leasegate.config import BackendKind, Settings
from leasegate.engine import ClaimManager, OrphanDetector, RecoveryQueue
from leasegate.store import FileLeaseStore, LeaseStore, RedisLeaseStore
from leasegate.utils.time import Clock

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Small thresholds: ttl 5s < stale 8s < orphan 9s."""
    return Settings(
        _env_file=None,
        state_dir=tmp_path / "state",
        claim_ttl=5,
        stale_agent_threshold=8,
        orphan_threshold=9,
        early_failure_window=120,
        early_failure_max_retries=3,
        heartbeat_interval=1,
        heartbeat_ttl=60,
        recovery_interval=1,
        recovery_jitter=0.0,
        health_check_interval=1,
        backend_timeout_seconds=2.0,
        backend_retry_attempts=2,
        backend_retry_backoff_seconds=0.01,
        service_probe_interval=0.01,
        service_startup_timeout=1,
        service_retry_delay=0.0,
        recovery_log_size=50,
    )


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
def make_store(settings, clock, redis_server):
    """Build stores on one shared backend, as separate processes would."""

    def factory(kind: BackendKind) -> LeaseStore:
        if kind == BackendKind.REDIS:
            client = fakeredis.aioredis.FakeRedis(server=redis_server, decode_responses=True)
            store: LeaseStore = RedisLeaseStore(client, settings, clock)
        else:
            store = FileLeaseStore(settings.state_dir, settings, clock)
        return store

    return factory


@pytest.fixture(params=[BackendKind.REDIS, BackendKind.FILE], ids=["redis", "file"])
def backend(request) -> BackendKind:
    return request.param


@pytest.fixture
async def store(make_store, backend):
    store = make_store(backend)
    yield store
    await store.close()


@pytest.fixture
async def redis_store(make_store):
    store = make_store(BackendKind.REDIS)
    yield store
    await store.close()


@pytest.fixture
def file_store(make_store) -> FileLeaseStore:
    return make_store(BackendKind.FILE)


@pytest.fixture
def claims(store, settings) -> ClaimManager:
    return ClaimManager(store, settings)


@pytest.fixture
def queue(store, settings) -> RecoveryQueue:
    return RecoveryQueue(store, settings, owner_id="coordinator-1")


@pytest.fixture
def detector(store, settings, queue) -> OrphanDetector:
    return OrphanDetector(store, settings, queue)


@pytest.fixture
def write_raw():
    """Write an arbitrary string under a store key, bypassing validation."""

    async def write(store: LeaseStore, key: str, text: str) -> None:
        if isinstance(store, RedisLeaseStore):
            await store._redis.set(key, text)
        else:
            path = store._path(key)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")

    return write
