"""Cancellable periodic background task."""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("leasegate.tasks")


class PeriodicTask:
    """
    Runs an async callable on a fixed cadence until stopped.

    - Jittered interval (±``jitter`` fraction) keeps coordinators on
      different hosts from scanning in lockstep
    - The wait between runs is a stop event, so ``stop()`` returns promptly
    - Errors in a run are logged and the loop continues
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[object]],
        interval: float,
        jitter: float = 0.0,
        run_immediately: bool = False,
    ):
        self.name = name
        self.func = func
        self.interval = interval
        self.jitter = jitter
        self.run_immediately = run_immediately
        self.runs = 0
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def is_alive(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_interval(self) -> float:
        if not self.jitter:
            return self.interval
        return self.interval * random.uniform(1 - self.jitter, 1 + self.jitter)

    async def _loop(self) -> None:
        logger.info(
            f"{self.name} loop started (interval: {self.interval}s with ±{self.jitter:.0%} jitter)"
        )
        assert self._stop_event is not None
        skip_wait = self.run_immediately

        while not self._stop_event.is_set():
            if not skip_wait:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.next_interval())
                    break
                except asyncio.TimeoutError:
                    pass
            skip_wait = False

            try:
                await self.func()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{self.name} error: {e}", exc_info=True)
            self.runs += 1

        logger.info(f"{self.name} loop stopped")

    def start(self) -> None:
        if self.is_alive:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=self.name)

    async def stop(self, timeout: float = 10.0) -> None:
        """Signal the loop to stop, cancelling it if it does not exit in time."""
        if self._stop_event:
            self._stop_event.set()

        if self._task:
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"{self.name} did not stop gracefully, cancelling")
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass

        self._task = None
        self._stop_event = None
