"""Filesystem-backed lease store (local backend, degraded mode)."""

import asyncio
import errno
import fcntl
import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, TypeVar
from urllib.parse import quote, unquote
from uuid import uuid4

from leasegate.config import Settings
from leasegate.errors import BackendTimeout, BackendUnavailable, CorruptRecord, LeaseGateError
from leasegate.store.base import (
    AGENT_TASKS_PREFIX,
    NAMESPACES,
    LeaseStore,
    StoredRecord,
    format_timestamp,
    parse_timestamp,
    split_key,
)
from leasegate.utils.time import Clock, system_clock

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCK_POLL_SECONDS = 0.01
INDEX_COMPACT_MIN_LINES = 64


def _namespace_dir(prefix: str) -> str:
    return prefix.rstrip(":").replace(":", "-")


def _filename(ident: str, suffix: str) -> str:
    # Dot-prefixed names are reserved for temp files
    name = quote(ident, safe="")
    if name.startswith("."):
        name = "%2E" + name[1:]
    return name + suffix


def _split_prefix(prefix: str) -> tuple[str, str]:
    if prefix in NAMESPACES:
        return prefix, ""
    return split_key(prefix)


class FileLeaseStore(LeaseStore):
    """
    Lease store on a single machine's filesystem.

    Layout under ``root``::

        task-claim/<task_id>.json        one lease per task
        agent-heartbeat/<agent_id>.json  liveness records
        agent-tasks/<agent_id>.log       append-only held-task index
        task-record/<task_id>.json       task state
        recovery-guard/<key>.json        recovery dedup guards
        recovery/<seq>.json              recovery queue entries
        recovery.log                     recovery log (JSON lines)

    Creation relies on ``O_CREAT | O_EXCL``. TTLs are emulated: a record is
    dead once ``latest write + ttl`` has passed and is purged the next time
    it is read. Read-check-write sequences are serialized across processes
    with an ``fcntl`` lock on ``root/.lock``.
    """

    name = "file"

    def __init__(self, root: Path, settings: Settings, clock: Clock = system_clock):
        super().__init__(clock)
        self.root = Path(root)
        self._settings = settings
        self._timeout = settings.backend_timeout_seconds
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Call plumbing
    # ------------------------------------------------------------------

    async def _execute(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise BackendTimeout(self.name, operation, self._timeout) from e
        except LeaseGateError:
            raise
        except OSError as e:
            raise BackendUnavailable(self.name, f"{operation}: {e}") from e

    @contextmanager
    def _locked(self) -> Iterator[None]:
        deadline = time.monotonic() + self._timeout
        with open(self.root / ".lock", "a+") as lock_file:
            while True:
                try:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except OSError as e:
                    if e.errno not in (errno.EAGAIN, errno.EACCES):
                        raise
                    if time.monotonic() >= deadline:
                        raise BackendTimeout(self.name, "lock", self._timeout) from e
                    time.sleep(LOCK_POLL_SECONDS)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _path(self, key: str) -> Path:
        prefix, ident = split_key(key)
        return self.root / _namespace_dir(prefix) / _filename(ident, ".json")

    def _index_path(self, agent_id: str) -> Path:
        return self.root / _namespace_dir(AGENT_TASKS_PREFIX) / _filename(agent_id, ".log")

    def _read(self, key: str, path: Path) -> Optional[dict[str, Any]]:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CorruptRecord(key, f"invalid JSON: {e}") from e
        if not isinstance(value, dict):
            raise CorruptRecord(key, f"expected object, got {type(value).__name__}")
        return value

    def _read_live(self, key: str, path: Path) -> Optional[dict[str, Any]]:
        """Read a record, purging it if its emulated TTL has passed."""
        value = self._read(key, path)
        if value is not None and self._is_expired(key, value, self.clock.now()):
            path.unlink(missing_ok=True)
            return None
        return value

    def _write_atomic(self, path: Path, value: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{uuid4().hex[:8]}.tmp")
        tmp.write_text(json.dumps(value), encoding="utf-8")
        os.replace(tmp, path)

    def _create_exclusive(self, path: Path, value: dict[str, Any]) -> bool:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(value))
            f.flush()
            os.fsync(f.fileno())
        return True

    # ------------------------------------------------------------------
    # Conditional primitives
    # ------------------------------------------------------------------

    def _create_if_absent(self, key: str, value: dict[str, Any], ttl: int) -> bool:
        path = self._path(key)
        with self._locked():
            try:
                if self._read_live(key, path) is not None:
                    return False
            except CorruptRecord as e:
                logger.warning(f"Refusing to overwrite corrupt record: {e.message}")
                return False
            return self._create_exclusive(path, {**value, "ttl": ttl})

    async def create_if_absent(self, key: str, value: dict[str, Any], ttl: int) -> bool:
        return await self._execute("create_if_absent", self._create_if_absent, key, value, ttl)

    def _get(self, key: str) -> Optional[dict[str, Any]]:
        with self._locked():
            return self._read_live(key, self._path(key))

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        return await self._execute("get", self._get, key)

    def _compare_and_delete(self, key: str, expected_owner: str) -> bool:
        path = self._path(key)
        with self._locked():
            current = self._read_live(key, path)
            if current is None or current.get("owner_id") != expected_owner:
                return False
            path.unlink(missing_ok=True)
            return True

    async def compare_and_delete(self, key: str, expected_owner: str) -> bool:
        return await self._execute("compare_and_delete", self._compare_and_delete, key, expected_owner)

    def _refresh(self, key: str, expected_owner: str, ttl: int) -> bool:
        path = self._path(key)
        with self._locked():
            current = self._read_live(key, path)
            if current is None or current.get("owner_id") != expected_owner:
                return False
            self._write_atomic(
                path,
                {**current, "renewed_at": format_timestamp(self.clock.now()), "ttl": ttl},
            )
            return True

    async def refresh(self, key: str, expected_owner: str, ttl: int) -> bool:
        return await self._execute("refresh", self._refresh, key, expected_owner, ttl)

    def _list_prefix(self, prefix: str) -> list[StoredRecord]:
        namespace, ident_prefix = _split_prefix(prefix)
        directory = self.root / _namespace_dir(namespace)
        if not directory.is_dir():
            return []

        now = self.clock.now()
        records: list[StoredRecord] = []
        with self._locked():
            for path in sorted(directory.glob("*.json")):
                ident = unquote(path.stem)
                if not ident.startswith(ident_prefix):
                    continue
                key = f"{namespace}{ident}"
                try:
                    value = self._read_live(key, path)
                    if value is None:
                        continue
                    records.append(StoredRecord(key=key, value=value, age=self._age(key, value, now)))
                except CorruptRecord as e:
                    logger.warning(f"Skipping corrupt record: {e.message}")
        return records

    async def list_prefix(self, prefix: str) -> list[StoredRecord]:
        return await self._execute("list_prefix", self._list_prefix, prefix)

    # ------------------------------------------------------------------
    # Liveness records
    # ------------------------------------------------------------------

    def _write_heartbeat(self, key: str, value: dict[str, Any], ttl: int) -> bool:
        path = self._path(key)
        new_at = parse_timestamp(value["last_heartbeat"])
        with self._locked():
            try:
                current = self._read_live(key, path)
            except CorruptRecord as e:
                logger.warning(f"Overwriting corrupt liveness record: {e.message}")
                current = None
            if current is not None:
                try:
                    stored_at = parse_timestamp(current.get("last_heartbeat"))
                except ValueError:
                    stored_at = None
                if stored_at is not None and stored_at > new_at:
                    return False
            self._write_atomic(path, {**value, "ttl": ttl})
            return True

    async def write_heartbeat(self, key: str, value: dict[str, Any], ttl: int) -> bool:
        return await self._execute("write_heartbeat", self._write_heartbeat, key, value, ttl)

    def _delete_if_stale(self, key: str, cutoff: datetime) -> bool:
        path = self._path(key)
        with self._locked():
            current = self._read_live(key, path)
            if current is None:
                return False
            try:
                last = parse_timestamp(current.get("last_heartbeat"))
            except ValueError:
                last = None
            if last is not None and last > cutoff:
                return False
            path.unlink(missing_ok=True)
            return True

    async def delete_if_stale(self, key: str, cutoff: datetime) -> bool:
        return await self._execute("delete_if_stale", self._delete_if_stale, key, cutoff)

    # ------------------------------------------------------------------
    # Held-task index (append-only log per agent)
    # ------------------------------------------------------------------

    def _index_append(self, agent_id: str, op: str, task_id: str) -> None:
        path = self._index_path(agent_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._locked():
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps({"op": op, "task_id": task_id}) + "\n")
            self._compact_index(agent_id, path)

    def _compact_index(self, agent_id: str, path: Path) -> None:
        """Rewrite the log as one ``add`` per live member once it is mostly history."""
        lines = path.read_text(encoding="utf-8").splitlines()
        if len(lines) <= INDEX_COMPACT_MIN_LINES:
            return
        members = self._replay_index(agent_id, lines)
        if len(lines) <= 2 * len(members):
            return
        tmp = path.with_name(f".{path.name}.{uuid4().hex[:8]}.tmp")
        tmp.write_text(
            "".join(json.dumps({"op": "add", "task_id": t}) + "\n" for t in sorted(members)),
            encoding="utf-8",
        )
        os.replace(tmp, path)

    def _replay_index(self, agent_id: str, lines: list[str]) -> set[str]:
        members: set[str] = set()
        for line in lines:
            try:
                entry = json.loads(line)
                task_id = entry["task_id"]
                if entry["op"] == "add":
                    members.add(task_id)
                else:
                    members.discard(task_id)
            except (json.JSONDecodeError, KeyError, TypeError):
                logger.warning(f"Skipping corrupt index line for agent {agent_id}: {line!r}")
        return members

    async def index_add(self, agent_id: str, task_id: str) -> None:
        await self._execute("index_add", self._index_append, agent_id, "add", task_id)

    async def index_remove(self, agent_id: str, task_id: str) -> None:
        await self._execute("index_remove", self._index_append, agent_id, "remove", task_id)

    def _index_members(self, agent_id: str) -> set[str]:
        path = self._index_path(agent_id)
        with self._locked():
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except FileNotFoundError:
                return set()
        return self._replay_index(agent_id, lines)

    async def index_members(self, agent_id: str) -> set[str]:
        return await self._execute("index_members", self._index_members, agent_id)

    def _index_clear(self, agent_id: str) -> None:
        with self._locked():
            self._index_path(agent_id).unlink(missing_ok=True)

    async def index_clear(self, agent_id: str) -> None:
        await self._execute("index_clear", self._index_clear, agent_id)

    # ------------------------------------------------------------------
    # Plain records
    # ------------------------------------------------------------------

    def _put(self, key: str, value: dict[str, Any]) -> None:
        path = self._path(key)
        with self._locked():
            self._write_atomic(path, value)

    async def put(self, key: str, value: dict[str, Any]) -> None:
        await self._execute("put", self._put, key, value)

    def _replace_if(self, key: str, field: str, allowed: set[str], value: dict[str, Any]) -> bool:
        path = self._path(key)
        with self._locked():
            current = self._read_live(key, path)
            if current is None or current.get(field) not in allowed:
                return False
            self._write_atomic(path, value)
            return True

    async def replace_if(
        self,
        key: str,
        field: str,
        allowed: set[str],
        value: dict[str, Any],
    ) -> bool:
        return await self._execute("replace_if", self._replace_if, key, field, allowed, value)

    # ------------------------------------------------------------------
    # Recovery queue
    # ------------------------------------------------------------------

    @property
    def _queue_dir(self) -> Path:
        return self.root / "recovery"

    @property
    def _log_path(self) -> Path:
        return self.root / "recovery.log"

    def _next_sequence(self) -> int:
        # Entry names sort in push order even when two pushes share a timestamp
        seq = time.time_ns()
        entries = self._queue_entries()
        if entries:
            seq = max(seq, int(entries[-1].name.split("-", 1)[0]) + 1)
        return seq

    def _push(self, value: dict[str, Any]) -> None:
        with self._locked():
            entry = self._queue_dir / f"{self._next_sequence():020d}-{uuid4().hex[:8]}.json"
            if not self._create_exclusive(entry, value):
                raise BackendUnavailable(self.name, f"recovery entry collision: {entry.name}")
            with open(self._log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(value) + "\n")
            self._trim_log()

    def _trim_log(self) -> None:
        size = self._settings.recovery_log_size
        lines = self._log_path.read_text(encoding="utf-8").splitlines()
        if len(lines) > 2 * size:
            tmp = self._log_path.with_name(f".recovery.log.{uuid4().hex[:8]}.tmp")
            tmp.write_text("\n".join(lines[-size:]) + "\n", encoding="utf-8")
            os.replace(tmp, self._log_path)

    async def _push_recovery(self, value: dict[str, Any]) -> None:
        await self._execute("enqueue_recovery", self._push, value)

    def _queue_entries(self) -> list[Path]:
        if not self._queue_dir.is_dir():
            return []
        return sorted(p for p in self._queue_dir.glob("*.json") if not p.name.startswith("."))

    def _dequeue(self) -> Optional[dict[str, Any]]:
        with self._locked():
            for path in self._queue_entries():
                try:
                    value = self._read(path.name, path)
                except CorruptRecord as e:
                    logger.warning(f"Dropping corrupt recovery entry: {e.message}")
                    value = None
                path.unlink(missing_ok=True)
                if value is not None:
                    return value
        return None

    async def dequeue_recovery(self) -> Optional[dict[str, Any]]:
        return await self._execute("dequeue_recovery", self._dequeue)

    def _pending(self, limit: int) -> list[dict[str, Any]]:
        entries = []
        with self._locked():
            for path in self._queue_entries()[:limit]:
                try:
                    value = self._read(path.name, path)
                except CorruptRecord as e:
                    logger.warning(f"Skipping corrupt recovery entry: {e.message}")
                    continue
                if value is not None:
                    entries.append(value)
        return entries

    async def pending_recovery(self, limit: int = 100) -> list[dict[str, Any]]:
        return await self._execute("pending_recovery", self._pending, limit)

    def _log_tail(self, limit: int) -> list[dict[str, Any]]:
        with self._locked():
            try:
                lines = self._log_path.read_text(encoding="utf-8").splitlines()
            except FileNotFoundError:
                return []
        entries = []
        for line in reversed(lines):
            if len(entries) >= limit:
                break
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning(f"Skipping corrupt recovery log line: {line!r}")
        return entries

    async def recovery_log(self, limit: int = 100) -> list[dict[str, Any]]:
        return await self._execute("recovery_log", self._log_tail, limit)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _ping(self) -> bool:
        self.root.mkdir(parents=True, exist_ok=True)
        return os.access(self.root, os.W_OK)

    async def ping(self) -> bool:
        try:
            return await self._execute("ping", self._ping)
        except BackendUnavailable as e:
            logger.debug(f"File store ping failed: {e}")
            return False

