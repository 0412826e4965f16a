"""Backend availability monitor - probing, service startup and explicit degradation."""

import asyncio
import logging
import math
import sys
import threading
from pathlib import Path
from typing import Awaitable, Callable, Optional, TextIO

from leasegate.config import Settings
from leasegate.models import BackendState

logger = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[bool]]
Confirm = Callable[[str], bool]
Sleep = Callable[[float], Awaitable[None]]

FALLBACK_PROMPT = "Continue with file-based coordination? (y/N): "


def interactive_confirm(prompt: str, stdin: Optional[TextIO] = None) -> bool:
    """Ask the operator on a terminal. Non-interactive stdin never confirms."""
    stream = stdin or sys.stdin
    if stream is None or not stream.isatty():
        logger.warning("Fallback requires confirmation but stdin is not a terminal")
        return False
    try:
        answer = input(prompt)
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


class DockerComposeStarter:
    """Starts and stops the networked backend with docker compose."""

    COMMANDS = (
        ("docker", "compose"),
        ("docker-compose",),
    )

    def __init__(self, compose_file: Path, timeout: float = 120.0):
        self.compose_file = Path(compose_file)
        self.timeout = timeout

    async def start(self) -> bool:
        if await self._compose("up", "-d"):
            logger.info(f"Started services from {self.compose_file}")
            return True
        return False

    async def stop(self) -> bool:
        if await self._compose("down"):
            logger.info(f"Stopped services from {self.compose_file}")
            return True
        return False

    async def _compose(self, *action: str) -> bool:
        """Run ``<compose> -f <file> <action>`` with the first installed compose command."""
        if not self.compose_file.exists():
            logger.error(f"Compose file not found: {self.compose_file}")
            return False

        for command in self.COMMANDS:
            args = [*command, "-f", str(self.compose_file), *action]
            try:
                process = await asyncio.create_subprocess_exec(
                    *args,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError:
                logger.debug(f"{command[0]} not installed, trying next")
                continue

            try:
                _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
            except asyncio.TimeoutError:
                await _kill(process)
                logger.error(f"{' '.join(args)} timed out after {self.timeout}s")
                return False
            except asyncio.CancelledError:
                await _kill(process)
                raise

            if process.returncode == 0:
                return True
            logger.warning(
                f"{' '.join(args)} exited {process.returncode}: "
                f"{stderr.decode(errors='replace').strip()}"
            )
        return False


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        process.kill()
    await process.wait()


def _settle(answer: asyncio.Future, result: bool) -> None:
    if not answer.done():
        answer.set_result(result)


class BackendAvailabilityMonitor:
    """
    Decides which backend the coordinator runs on.

    State transitions:
    - UNKNOWN → PROBING → AVAILABLE when the probe answers
    - PROBING → UNAVAILABLE after ``service_start_attempts`` failed starts
    - UNAVAILABLE → DEGRADED only when fallback was requested AND the
      operator confirmed it

    Degradation is never automatic.
    """

    def __init__(
        self,
        probe: Probe,
        settings: Settings,
        starter: Optional[DockerComposeStarter] = None,
        confirm: Confirm = interactive_confirm,
        sleep: Sleep = asyncio.sleep,
    ):
        self.probe = probe
        self.settings = settings
        self.starter = starter
        self.confirm = confirm
        self.sleep = sleep
        self._state = BackendState.UNKNOWN
        self.transitions: list[BackendState] = [self._state]

    @property
    def state(self) -> BackendState:
        return self._state

    def _set_state(self, state: BackendState) -> None:
        if state != self._state:
            logger.info(f"Backend state: {self._state.value} -> {state.value}")
            self._state = state
            self.transitions.append(state)

    async def probe_once(self) -> bool:
        try:
            return bool(await self.probe())
        except Exception as e:
            logger.debug(f"Backend probe failed: {e}")
            return False

    async def wait_until_available(self) -> bool:
        """Re-probe every ``service_probe_interval`` up to ``service_startup_timeout``."""
        interval = self.settings.service_probe_interval
        probes = max(1, math.ceil(self.settings.service_startup_timeout / interval))
        for _ in range(probes):
            if await self.probe_once():
                return True
            await self.sleep(interval)
        logger.error(
            f"Backend did not become ready within {self.settings.service_startup_timeout}s"
        )
        return False

    async def attempt_recovery(self) -> bool:
        """One start-and-wait attempt, without fallback."""
        if self.starter is None or not self.settings.auto_start:
            logger.error("Auto-start disabled, start the backend manually")
            return False
        if not await self.starter.start():
            return False
        return await self.wait_until_available()

    async def ask(self, prompt: str) -> bool:
        """
        Run ``confirm`` on a daemon thread.

        Cancelling the caller abandons the question; the thread stays parked
        on stdin without holding up interpreter exit.
        """
        loop = asyncio.get_running_loop()
        answer: asyncio.Future = loop.create_future()

        def worker() -> None:
            try:
                result = bool(self.confirm(prompt))
            except Exception as e:
                logger.error(f"Fallback confirmation failed: {e}")
                result = False
            try:
                loop.call_soon_threadsafe(_settle, answer, result)
            except RuntimeError:
                # Event loop already closed
                pass

        threading.Thread(target=worker, name="fallback-confirm", daemon=True).start()
        return await answer

    async def ensure_available(self, allow_fallback: bool = False) -> BackendState:
        """
        Probe the backend, try to start it, and as a last resort ask the
        operator to accept degraded mode.

        Returns:
            AVAILABLE, DEGRADED (operator confirmed fallback) or UNAVAILABLE
        """
        self._set_state(BackendState.PROBING)
        if await self.probe_once():
            self._set_state(BackendState.AVAILABLE)
            return self._state

        logger.warning("Coordination backend not accessible")
        attempts = self.settings.service_start_attempts
        if self.starter is not None and self.settings.auto_start:
            for attempt in range(1, attempts + 1):
                logger.info(f"Attempting to start services (attempt {attempt}/{attempts})")
                if await self.attempt_recovery():
                    self._set_state(BackendState.AVAILABLE)
                    return self._state
                if attempt < attempts:
                    logger.warning(
                        f"Startup attempt failed, retrying in {self.settings.service_retry_delay}s"
                    )
                    await self.sleep(self.settings.service_retry_delay)
            logger.error(f"Failed to start services after {attempts} attempts")
        else:
            logger.error(
                f"Auto-start disabled. Start services manually: "
                f"docker compose -f {self.settings.compose_file} up -d"
            )

        self._set_state(BackendState.UNAVAILABLE)
        if allow_fallback:
            logger.warning(
                "Redis coordination is unavailable. File-based coordination is slower "
                "and only safe for agents on this host."
            )
            if await self.ask(FALLBACK_PROMPT):
                logger.warning("Proceeding with file-based coordination")
                self._set_state(BackendState.DEGRADED)
            else:
                logger.error("Fallback declined")
        return self._state
