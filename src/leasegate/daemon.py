"""Coordinator daemon - owns the recovery schedule and backend lifecycle."""

import asyncio
import logging
import signal
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from leasegate.config import BackendKind, Settings
from leasegate.engine import AgentSession, ClaimManager, OrphanDetector, RecoveryQueue
from leasegate.errors import AlreadyRunning, BackendUnavailable
from leasegate.instance import SingleInstanceGuard, detect_agent_id
from leasegate.models import BackendState
from leasegate.monitor import (
    BackendAvailabilityMonitor,
    Confirm,
    DockerComposeStarter,
    Sleep,
    interactive_confirm,
)
from leasegate.store import LeaseStore, open_store
from leasegate.tasks import PeriodicTask
from leasegate.utils.time import Clock, system_clock

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_DEGRADED = 2

T = TypeVar("T")

StoreFactory = Callable[[Settings, Optional[BackendKind], Clock], LeaseStore]


def read_mode(settings: Settings) -> Optional[BackendKind]:
    """Backend the running coordinator selected, if any."""
    try:
        raw = settings.mode_file.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    try:
        return BackendKind(raw)
    except ValueError:
        logger.warning(f"Ignoring unknown mode {raw!r} in {settings.mode_file}")
        return None


def write_mode(settings: Settings, mode: BackendKind) -> None:
    settings.mode_file.parent.mkdir(parents=True, exist_ok=True)
    settings.mode_file.write_text(mode.value + "\n", encoding="utf-8")


@dataclass
class RuntimeContext:
    """Everything a running coordinator owns, passed explicitly to its parts."""

    settings: Settings
    mode: BackendKind
    store: LeaseStore
    agent_id: str
    claims: ClaimManager
    queue: RecoveryQueue
    detector: OrphanDetector
    session: AgentSession
    ticker: PeriodicTask
    degraded: bool = False


@dataclass
class HealthStatus:
    """Composite health of a running coordinator."""

    backend_ok: bool
    ticker_alive: bool
    marker_present: bool
    problems: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.backend_ok and self.ticker_alive and self.marker_present


class CoordinatorDaemon:
    """
    Long-running coordinator.

    Startup:
    1. Create the state directory
    2. Take the single-instance marker
    3. Select a backend through the availability monitor
    4. Run one recovery cycle eagerly
    5. Start the coordinator's heartbeat and the recovery ticker
    6. Health-check every ``health_check_interval`` until signalled

    A stop request is honoured at every step, including backend selection
    and the first recovery cycle. Each resource is pushed onto an exit
    stack as it is acquired and unwound in reverse order on the way out.
    """

    def __init__(
        self,
        settings: Settings,
        store_factory: StoreFactory = open_store,
        starter: Optional[DockerComposeStarter] = None,
        confirm: Confirm = interactive_confirm,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = system_clock,
    ):
        self.settings = settings
        self.store_factory = store_factory
        self.starter = starter or DockerComposeStarter(
            settings.compose_file, timeout=settings.service_startup_timeout
        )
        self.confirm = confirm
        self.sleep = sleep
        self.clock = clock
        self.guard = SingleInstanceGuard(settings.pid_file)
        self.context: Optional[RuntimeContext] = None
        self.monitor: Optional[BackendAvailabilityMonitor] = None
        self.ready = asyncio.Event()
        self._stop = asyncio.Event()

    def request_stop(self) -> None:
        self._stop.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Cannot install handler for {sig.name}")

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, shutting down")
        self.request_stop()

    async def _until_stopped(self, step: Awaitable[T]) -> tuple[bool, Optional[T]]:
        """
        Await ``step`` unless a stop is requested first.

        Returns ``(True, result)`` when the step finished, ``(False, None)``
        when the stop won and the step was cancelled.
        """
        work = asyncio.ensure_future(step)
        stopped = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({work, stopped}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            stopped.cancel()

        if work.done():
            return True, work.result()
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            if asyncio.current_task().cancelling():
                raise
        return False, None

    async def select_backend(self, allow_fallback: bool) -> tuple[Optional[LeaseStore], BackendKind]:
        """Open the store the coordinator should run on. None if there is none."""
        if self.settings.backend == BackendKind.FILE:
            logger.info("Local file backend configured")
            return self.store_factory(self.settings, BackendKind.FILE, self.clock), BackendKind.FILE

        store = self.store_factory(self.settings, BackendKind.REDIS, self.clock)
        self.monitor = BackendAvailabilityMonitor(
            store.ping,
            self.settings,
            starter=self.starter,
            confirm=self.confirm,
            sleep=self.sleep,
        )
        try:
            state = await self.monitor.ensure_available(allow_fallback=allow_fallback)
        except asyncio.CancelledError:
            await store.close()
            raise
        if state == BackendState.AVAILABLE:
            return store, BackendKind.REDIS

        await store.close()
        if state == BackendState.DEGRADED:
            return self.store_factory(self.settings, BackendKind.FILE, self.clock), BackendKind.FILE
        return None, BackendKind.REDIS

    async def health_check(self) -> HealthStatus:
        assert self.context is not None
        backend_ok = await self.context.store.ping()
        status = HealthStatus(
            backend_ok=backend_ok,
            ticker_alive=self.context.ticker.is_alive,
            marker_present=self.guard.owns_marker(),
        )
        if not status.backend_ok:
            status.problems.append(f"{self.context.mode.value} backend not responding")
        if not status.ticker_alive:
            status.problems.append("recovery ticker not running")
        if not status.marker_present:
            status.problems.append(f"instance marker {self.settings.pid_file} missing")
        return status

    async def _on_unhealthy(self, status: HealthStatus) -> None:
        logger.error(f"Health check failed: {'; '.join(status.problems)}")
        assert self.context is not None
        if not status.ticker_alive:
            self.context.ticker.start()
        if not status.backend_ok and self.monitor is not None and not self.context.degraded:
            if await self.monitor.attempt_recovery():
                logger.info("Backend recovered")
            else:
                logger.error("Backend recovery attempt failed")

    async def run(self, allow_fallback: bool = False) -> int:
        """Run until signalled. Returns the process exit code."""
        self._install_signal_handlers()
        try:
            async with AsyncExitStack() as stack:
                return await self._run(stack, allow_fallback)
        finally:
            self._remove_signal_handlers()
            logger.info("Coordinator stopped")

    async def _run(self, stack: AsyncExitStack, allow_fallback: bool) -> int:
        # Every resource is registered on ``stack`` as soon as it is owned
        self.settings.state_dir.mkdir(parents=True, exist_ok=True)

        try:
            self.guard.acquire()
        except AlreadyRunning as e:
            logger.error(e.message)
            return EXIT_FAILURE
        stack.callback(self._release_marker)

        finished, selected = await self._until_stopped(self.select_backend(allow_fallback))
        if not finished:
            logger.info("Stop requested during backend selection")
            return EXIT_OK
        store, mode = selected
        if store is None:
            logger.error("No coordination backend available")
            return EXIT_FAILURE
        stack.push_async_callback(store.close)
        degraded = mode == BackendKind.FILE and self.settings.backend != BackendKind.FILE
        write_mode(self.settings, mode)

        agent_id = self.settings.agent_id or detect_agent_id(self.settings.state_dir)
        claims = ClaimManager(store, self.settings)
        queue = RecoveryQueue(store, self.settings, owner_id=agent_id)
        detector = OrphanDetector(store, self.settings, queue)
        self.context = context = RuntimeContext(
            settings=self.settings,
            mode=mode,
            store=store,
            agent_id=agent_id,
            claims=claims,
            queue=queue,
            detector=detector,
            session=AgentSession(store, self.settings, agent_id=agent_id, claims=claims),
            ticker=PeriodicTask(
                "recovery",
                detector.run_cycle,
                interval=self.settings.recovery_interval,
                jitter=self.settings.recovery_jitter,
            ),
            degraded=degraded,
        )
        stack.callback(self._clear_context)

        try:
            finished, _ = await self._until_stopped(detector.run_cycle())
        except BackendUnavailable as e:
            logger.error(f"Initial recovery cycle failed: {e}")
            return EXIT_FAILURE
        if not finished:
            logger.info("Stop requested during the initial recovery cycle")
            return EXIT_OK

        await stack.enter_async_context(context.session)
        stack.push_async_callback(context.ticker.stop)
        context.ticker.start()
        logger.info(
            f"Coordinator running (agent={agent_id}, backend={mode.value}"
            f"{', degraded' if degraded else ''})"
        )
        self.ready.set()

        while not self._stop.is_set():
            try:
                await asyncio.wait_for(
                    self._stop.wait(), timeout=self.settings.health_check_interval
                )
            except asyncio.TimeoutError:
                status = await self.health_check()
                if not status.ok:
                    await self._on_unhealthy(status)

        return EXIT_DEGRADED if degraded else EXIT_OK

    def _clear_context(self) -> None:
        self.context = None

    def _release_marker(self) -> None:
        if self.guard.owns_marker():
            self.settings.mode_file.unlink(missing_ok=True)
        self.guard.release()
