"""
Coordinator daemon lifecycle: startup, backend selection, exit codes and cleanup.
"""

import asyncio
import os
import signal
import threading

import pytest

from leasegate.config import BackendKind
from leasegate.daemon import EXIT_DEGRADED, EXIT_FAILURE, EXIT_OK, CoordinatorDaemon, read_mode
from leasegate.engine import ClaimManager, HeartbeatRenewer, OrphanDetector
from leasegate.models import RecoveryReason
from leasegate.store import FileLeaseStore, lease_key


class UnreachableRedis(FileLeaseStore):
    """Stands in for a Redis store whose server never answers."""

    name = "redis"

    async def ping(self) -> bool:
        return False


class FailingStarter:
    def __init__(self):
        self.attempts = 0

    async def start(self) -> bool:
        self.attempts += 1
        return False


async def no_sleep(seconds):
    pass


def file_factory(settings, kind, clock):
    if kind == BackendKind.REDIS:
        return UnreachableRedis(settings.state_dir, settings, clock)
    return FileLeaseStore(settings.state_dir, settings, clock)


@pytest.fixture
def daemon_settings(settings):
    return settings.model_copy(update={"agent_id": "coordinator-1"})


def make_daemon(
    settings, clock, answer=False, starter=None, confirm=None, sleep=no_sleep, factory=file_factory
):
    return CoordinatorDaemon(
        settings,
        store_factory=factory,
        starter=starter or FailingStarter(),
        confirm=confirm or (lambda prompt: answer),
        sleep=sleep,
        clock=clock,
    )


async def run_until_ready(daemon, allow_fallback=False):
    task = asyncio.create_task(daemon.run(allow_fallback=allow_fallback))
    ready = asyncio.create_task(daemon.ready.wait())
    done, _ = await asyncio.wait({task, ready}, timeout=5, return_when=asyncio.FIRST_COMPLETED)
    if ready not in done:
        ready.cancel()
    return task


@pytest.mark.asyncio
async def test_file_backend_start_and_stop(daemon_settings, clock):
    settings = daemon_settings.model_copy(update={"backend": BackendKind.FILE})
    daemon = make_daemon(settings, clock)

    task = await run_until_ready(daemon)
    assert daemon.ready.is_set()
    assert settings.pid_file.read_text().strip() == str(os.getpid())
    assert read_mode(settings) == BackendKind.FILE
    assert daemon.context.ticker.is_alive

    daemon.request_stop()
    assert await asyncio.wait_for(task, timeout=5) == EXIT_OK
    assert not settings.pid_file.exists()
    assert not settings.mode_file.exists()


@pytest.mark.asyncio
async def test_second_instance_exits(daemon_settings, clock):
    daemon_settings.state_dir.mkdir(parents=True)
    daemon_settings.pid_file.write_text(f"{os.getppid()}\n")
    daemon = make_daemon(daemon_settings, clock)

    assert await daemon.run() == EXIT_FAILURE
    assert daemon_settings.pid_file.read_text().strip() == str(os.getppid())


@pytest.mark.asyncio
async def test_unreachable_redis_without_fallback_exits(daemon_settings, clock):
    starter = FailingStarter()
    daemon = make_daemon(daemon_settings, clock, answer=True, starter=starter)

    assert await daemon.run(allow_fallback=False) == EXIT_FAILURE
    assert starter.attempts == daemon_settings.service_start_attempts
    assert not daemon_settings.pid_file.exists()


@pytest.mark.asyncio
async def test_declined_fallback_exits(daemon_settings, clock):
    daemon = make_daemon(daemon_settings, clock, answer=False)

    assert await daemon.run(allow_fallback=True) == EXIT_FAILURE
    assert read_mode(daemon_settings) is None


@pytest.mark.asyncio
async def test_confirmed_fallback_runs_degraded(daemon_settings, clock):
    daemon = make_daemon(daemon_settings, clock, answer=True)

    task = await run_until_ready(daemon, allow_fallback=True)
    assert daemon.ready.is_set()
    assert read_mode(daemon_settings) == BackendKind.FILE
    assert daemon.context.degraded

    daemon.request_stop()
    assert await asyncio.wait_for(task, timeout=5) == EXIT_DEGRADED


@pytest.mark.asyncio
async def test_startup_cycle_reclaims_stale_agent(daemon_settings, clock):
    settings = daemon_settings.model_copy(update={"backend": BackendKind.FILE})
    store = FileLeaseStore(settings.state_dir, settings, clock)
    claims = ClaimManager(store, settings)
    await HeartbeatRenewer(claims, "agent-crashed").beat()
    await claims.acquire("task-A", "agent-crashed")
    clock.advance(8.5)

    daemon = make_daemon(settings, clock)
    task = await run_until_ready(daemon)
    try:
        pending = await daemon.context.queue.pending()
        assert [(r.task_id, r.reason) for r in pending] == [("task-A", RecoveryReason.STALE_AGENT)]
    finally:
        daemon.request_stop()
        assert await asyncio.wait_for(task, timeout=5) == EXIT_OK


@pytest.mark.asyncio
async def test_health_check_reports_missing_marker(daemon_settings, clock):
    settings = daemon_settings.model_copy(update={"backend": BackendKind.FILE})
    daemon = make_daemon(settings, clock)
    task = await run_until_ready(daemon)
    try:
        assert (await daemon.health_check()).ok
        settings.pid_file.unlink()
        status = await daemon.health_check()
        assert not status.ok
        assert not status.marker_present
    finally:
        daemon.request_stop()
        await asyncio.wait_for(task, timeout=5)


@pytest.mark.asyncio
async def test_sigterm_releases_leases_and_markers(daemon_settings, clock):
    settings = daemon_settings.model_copy(update={"backend": BackendKind.FILE})
    daemon = make_daemon(settings, clock)
    task = await run_until_ready(daemon)
    assert await daemon.context.session.try_claim("task-A") is not None

    os.kill(os.getpid(), signal.SIGTERM)

    assert await asyncio.wait_for(task, timeout=5) == EXIT_OK
    assert not settings.pid_file.exists()
    assert not settings.mode_file.exists()
    assert daemon.context is None
    store = FileLeaseStore(settings.state_dir, settings, clock)
    assert await store.get(lease_key("task-A")) is None
    assert await store.index_members("coordinator-1") == set()


@pytest.mark.asyncio
async def test_unhealthy_ticker_is_restarted(daemon_settings, clock):
    settings = daemon_settings.model_copy(
        update={"backend": BackendKind.FILE, "health_check_interval": 60}
    )
    daemon = make_daemon(settings, clock)
    task = await run_until_ready(daemon)
    try:
        await daemon.context.ticker.stop()
        status = await daemon.health_check()
        assert status.problems == ["recovery ticker not running"]

        await daemon._on_unhealthy(status)
        assert daemon.context.ticker.is_alive
    finally:
        daemon.request_stop()
        await asyncio.wait_for(task, timeout=5)


@pytest.mark.asyncio
async def test_lost_backend_gets_one_restart_attempt(daemon_settings, clock):
    # Health checks are driven by hand below
    daemon_settings = daemon_settings.model_copy(update={"health_check_interval": 60})
    backend = {"up": True}

    class SwitchableRedis(FileLeaseStore):
        name = "redis"

        async def ping(self) -> bool:
            return backend["up"]

    def factory(settings, kind, clock):
        cls = SwitchableRedis if kind == BackendKind.REDIS else FileLeaseStore
        return cls(settings.state_dir, settings, clock)

    prompts = []
    starter = FailingStarter()
    daemon = make_daemon(
        daemon_settings, clock, starter=starter, confirm=prompts.append, factory=factory
    )
    task = await run_until_ready(daemon)
    try:
        assert daemon.context.mode == BackendKind.REDIS
        assert starter.attempts == 0

        backend["up"] = False
        status = await daemon.health_check()
        assert not status.backend_ok
        await daemon._on_unhealthy(status)

        assert starter.attempts == 1
        assert prompts == []
        assert daemon.context.mode == BackendKind.REDIS
    finally:
        daemon.request_stop()
        assert await asyncio.wait_for(task, timeout=5) == EXIT_OK


class SucceedingStarter:
    def __init__(self):
        self.attempts = 0

    async def start(self) -> bool:
        self.attempts += 1
        return True


@pytest.mark.asyncio
async def test_stop_while_waiting_for_backend(daemon_settings, clock):
    settings = daemon_settings.model_copy(update={"service_startup_timeout": 3})
    starter = SucceedingStarter()
    daemon = make_daemon(settings, clock, starter=starter, sleep=asyncio.sleep)

    task = asyncio.create_task(daemon.run())
    for _ in range(100):
        if starter.attempts:
            break
        await asyncio.sleep(0.01)
    assert starter.attempts == 1

    daemon.request_stop()
    assert await asyncio.wait_for(task, timeout=1) == EXIT_OK
    assert not daemon.ready.is_set()
    assert not settings.pid_file.exists()
    assert read_mode(settings) is None


@pytest.mark.asyncio
async def test_stop_while_asking_for_fallback(daemon_settings, clock):
    asked = threading.Event()
    release = threading.Event()

    def confirm(prompt):
        asked.set()
        release.wait(10)
        return True

    daemon = make_daemon(daemon_settings, clock, confirm=confirm)
    try:
        task = asyncio.create_task(daemon.run(allow_fallback=True))
        assert await asyncio.to_thread(asked.wait, 5)

        daemon.request_stop()
        assert await asyncio.wait_for(task, timeout=1) == EXIT_OK
        assert not daemon_settings.pid_file.exists()
    finally:
        release.set()


@pytest.mark.asyncio
async def test_stop_during_initial_recovery_cycle(daemon_settings, clock, monkeypatch):
    settings = daemon_settings.model_copy(update={"backend": BackendKind.FILE})
    entered = asyncio.Event()

    async def hanging_cycle(self, steps=None):
        entered.set()
        await asyncio.Event().wait()

    monkeypatch.setattr(OrphanDetector, "run_cycle", hanging_cycle)
    daemon = make_daemon(settings, clock)

    task = asyncio.create_task(daemon.run())
    await asyncio.wait_for(entered.wait(), timeout=5)

    daemon.request_stop()
    assert await asyncio.wait_for(task, timeout=1) == EXIT_OK
    assert daemon.context is None
    assert not settings.pid_file.exists()
    assert not settings.mode_file.exists()
