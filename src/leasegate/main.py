"""LeaseGate command line entry point."""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from leasegate.config import BackendKind, Settings
from leasegate.daemon import (
    EXIT_DEGRADED,
    EXIT_FAILURE,
    EXIT_OK,
    CoordinatorDaemon,
    read_mode,
)
from leasegate.engine import OrphanDetector, RecoveryQueue
from leasegate.errors import BackendUnavailable, LeaseGateError
from leasegate.instance import SingleInstanceGuard, detect_agent_id, pid_alive
from leasegate.models import RecoveryStep
from leasegate.monitor import DockerComposeStarter
from leasegate.report import build_report, write_report
from leasegate.store import LeaseStore, open_store

logger = logging.getLogger("leasegate")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
STOP_TIMEOUT_SECONDS = 10.0


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    if settings.log_file:
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(settings.log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="leasegate",
        description="LeaseGate work-claim coordinator",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        help="Directory for the local backend, PID and mode files (default: .leasegate)",
    )
    parser.add_argument(
        "--backend",
        choices=[kind.value for kind in BackendKind],
        help="Backend to use (default: redis)",
    )
    parser.add_argument(
        "--redis-url",
        help="Redis URL (default: redis://localhost:6379)",
    )
    parser.add_argument(
        "--log-level",
        help="Log level (default: INFO)",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("start", aliases=["daemon"], help="Run the coordinator")
    commands.add_parser(
        "start-with-fallback",
        aliases=["daemon-with-fallback"],
        help="Run the coordinator, offering local fallback if Redis is unavailable",
    )
    commands.add_parser("stop", help="Stop the running coordinator")
    commands.add_parser("restart", help="Stop the running coordinator and start a new one")
    commands.add_parser(
        "restart-with-fallback",
        help="Restart, offering local fallback if Redis is unavailable",
    )
    commands.add_parser("start-services", help="Start the backend services with docker compose")
    commands.add_parser("stop-services", help="Stop the backend services with docker compose")
    commands.add_parser("status", help="Show coordinator and claim status")
    commands.add_parser("health", help="Check coordinator and backend health")
    recover = commands.add_parser("recover", help="Run one recovery cycle now")
    recover.add_argument(
        "--only",
        action="append",
        choices=[step.value for step in RecoveryStep],
        metavar="STEP",
        help="Run only this step (orphans, stale, early-failure); repeatable",
    )
    report = commands.add_parser("report", help="Write a recovery report")
    report.add_argument("--output", type=Path, help="Write the JSON report to FILE")
    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {}
    if args.state_dir is not None:
        overrides["state_dir"] = args.state_dir
    if args.backend is not None:
        overrides["backend"] = BackendKind(args.backend)
    if args.redis_url is not None:
        overrides["redis_url"] = args.redis_url
    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    return Settings(**overrides)


def _active_mode(settings: Settings) -> BackendKind:
    return read_mode(settings) or settings.backend


async def _with_store(settings: Settings, func) -> Any:
    store: LeaseStore = open_store(settings, _active_mode(settings))
    try:
        return await func(store)
    finally:
        await store.close()


def cmd_start(settings: Settings, allow_fallback: bool) -> int:
    daemon = CoordinatorDaemon(settings)
    return asyncio.run(daemon.run(allow_fallback=allow_fallback))


def cmd_stop(settings: Settings) -> int:
    guard = SingleInstanceGuard(settings.pid_file)
    pid = guard.read_pid()
    if pid is None or not pid_alive(pid):
        print("Coordinator is not running")
        return EXIT_OK

    os.kill(pid, signal.SIGTERM)
    deadline = time.monotonic() + STOP_TIMEOUT_SECONDS
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            print(f"Coordinator stopped (PID: {pid})")
            return EXIT_OK
        time.sleep(0.2)

    print(f"Coordinator did not stop within {STOP_TIMEOUT_SECONDS:.0f}s (PID: {pid})")
    return EXIT_FAILURE


def cmd_restart(settings: Settings, allow_fallback: bool) -> int:
    stopped = cmd_stop(settings)
    if stopped != EXIT_OK:
        return stopped
    return cmd_start(settings, allow_fallback=allow_fallback)


def cmd_services(settings: Settings, action: str) -> int:
    starter = DockerComposeStarter(settings.compose_file, timeout=settings.service_startup_timeout)
    run, done = (starter.start, "started") if action == "start" else (starter.stop, "stopped")
    if asyncio.run(run()):
        print(f"Services {done} ({settings.compose_file})")
        return EXIT_OK
    print(f"Could not {action} services from {settings.compose_file}")
    return EXIT_FAILURE


def cmd_status(settings: Settings) -> int:
    guard = SingleInstanceGuard(settings.pid_file)
    running = guard.is_running()
    mode = _active_mode(settings)

    async def collect(store: LeaseStore):
        return await build_report(store, settings, mode, log_limit=100)

    if running:
        print(f"Coordinator: running (PID: {guard.read_pid()})")
    else:
        print("Coordinator: stopped")
    print(f"Backend: {mode.value}")
    try:
        report = asyncio.run(_with_store(settings, collect))
    except BackendUnavailable as e:
        print(f"Backend unavailable: {e}")
        return EXIT_FAILURE

    stats = report.work_statistics
    print(f"Active claims: {stats.active_claims} ({stats.orphaned_claims} past orphan threshold)")
    print(f"Agents: {stats.live_agents} live, {stats.stale_agents} stale")
    print(f"Pending recoveries: {stats.pending_recoveries}")
    return EXIT_OK if running else EXIT_FAILURE


def cmd_health(settings: Settings) -> int:
    guard = SingleInstanceGuard(settings.pid_file)
    mode = _active_mode(settings)

    async def ping(store: LeaseStore) -> bool:
        return await store.ping()

    backend_ok = asyncio.run(_with_store(settings, ping))
    running = guard.is_running()
    print(f"Backend ({mode.value}): {'ok' if backend_ok else 'not responding'}")
    print(f"Coordinator: {'running' if running else 'not running'}")

    if not backend_ok or not running:
        return EXIT_FAILURE
    if mode != settings.backend:
        print("Running in degraded mode")
        return EXIT_DEGRADED
    return EXIT_OK


def cmd_recover(settings: Settings, only: Optional[list[str]] = None) -> int:
    steps = [RecoveryStep(step) for step in only] if only else None

    async def cycle(store: LeaseStore):
        owner = settings.agent_id or detect_agent_id(settings.state_dir)
        detector = OrphanDetector(store, settings, RecoveryQueue(store, settings, owner))
        return await detector.run_cycle(steps)

    try:
        report = asyncio.run(_with_store(settings, cycle))
    except BackendUnavailable as e:
        print(f"Recovery failed: {e}")
        return EXIT_FAILURE

    print(
        json.dumps(
            {
                "orphaned": report.orphaned,
                "stale_agents": report.stale_agents,
                "stale_reclaimed": report.stale_reclaimed,
                "resurrected": report.resurrected,
                "duplicates": report.duplicates,
                "corrupt": report.corrupt,
            },
            indent=2,
        )
    )
    return EXIT_OK


def cmd_report(settings: Settings, output: Optional[Path]) -> int:
    mode = _active_mode(settings)

    async def collect(store: LeaseStore):
        return await build_report(store, settings, mode)

    try:
        report = asyncio.run(_with_store(settings, collect))
    except BackendUnavailable as e:
        print(f"Report failed: {e}")
        return EXIT_FAILURE

    if output:
        write_report(report, output)
    print(report.model_dump_json(indent=2))
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args)
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return EXIT_FAILURE

    configure_logging(settings)

    try:
        if args.command in ("start", "daemon"):
            return cmd_start(settings, allow_fallback=False)
        if args.command in ("start-with-fallback", "daemon-with-fallback"):
            return cmd_start(settings, allow_fallback=True)
        if args.command == "stop":
            return cmd_stop(settings)
        if args.command in ("restart", "restart-with-fallback"):
            return cmd_restart(settings, allow_fallback=args.command == "restart-with-fallback")
        if args.command == "start-services":
            return cmd_services(settings, "start")
        if args.command == "stop-services":
            return cmd_services(settings, "stop")
        if args.command == "status":
            return cmd_status(settings)
        if args.command == "health":
            return cmd_health(settings)
        if args.command == "recover":
            return cmd_recover(settings, args.only)
        if args.command == "report":
            return cmd_report(settings, args.output)
    except LeaseGateError as e:
        logger.error(f"{e.code}: {e.message}")
        return EXIT_FAILURE

    parser.error(f"unknown command: {args.command}")
    return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
