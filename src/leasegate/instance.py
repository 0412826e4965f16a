"""Agent identity and single-instance guard."""

import errno
import logging
import os
import socket
import time
from pathlib import Path
from typing import Optional
from uuid import uuid4

from leasegate.errors import AlreadyRunning

logger = logging.getLogger(__name__)

AGENT_ID_FILE = "agent_id"
MARKER_GRACE_SECONDS = 5.0


def detect_agent_id(state_dir: Optional[Path] = None) -> str:
    """
    Auto-detect a stable agent identifier.

    Checks in priority order:
    1. Explicit: LEASEGATE_AGENT_ID
    2. Persisted: ``<state_dir>/agent_id`` from an earlier run
    3. Kubernetes: HOSTNAME (pod name)
    4. Fly.io: FLY_ALLOC_ID
    5. Fallback: hostname + pid + random suffix

    When ``state_dir`` is given, a freshly generated id is persisted there so
    a restarted agent keeps its identity.

    Returns:
        Agent identifier string
    """
    explicit_id = os.environ.get("LEASEGATE_AGENT_ID")
    if explicit_id:
        logger.info(f"Using explicit agent ID: {explicit_id}")
        return explicit_id

    id_file = state_dir / AGENT_ID_FILE if state_dir else None
    if id_file and id_file.exists():
        persisted = id_file.read_text(encoding="utf-8").strip()
        if persisted:
            logger.info(f"Using persisted agent ID: {persisted}")
            return persisted

    k8s_hostname = os.environ.get("HOSTNAME")
    fly_alloc_id = os.environ.get("FLY_ALLOC_ID")
    if k8s_hostname and "-" in k8s_hostname:  # Likely K8s naming
        agent_id = k8s_hostname
        logger.info(f"Detected Kubernetes agent: {agent_id}")
    elif fly_alloc_id:
        agent_id = fly_alloc_id
        logger.info(f"Detected Fly.io agent: {agent_id}")
    else:
        agent_id = f"{socket.gethostname()}-{os.getpid()}-{str(uuid4())[:8]}"
        logger.info(f"Generated agent ID: {agent_id}")

    if id_file:
        id_file.parent.mkdir(parents=True, exist_ok=True)
        id_file.write_text(agent_id + "\n", encoding="utf-8")
    return agent_id


def pid_alive(pid: int) -> bool:
    """Check whether a process with ``pid`` exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    return True


class SingleInstanceGuard:
    """
    One coordinator per host, enforced through a PID file.

    ``acquire`` writes the PID to a private temp file and hard-links it into
    place, so the marker never exists without its contents. A marker naming
    a dead process is removed and the link retried once; a marker naming a
    live process raises ``AlreadyRunning``. An unreadable marker younger
    than ``grace`` seconds is treated as held.
    """

    def __init__(self, pid_file: Path, grace: float = MARKER_GRACE_SECONDS):
        self.pid_file = Path(pid_file)
        self.grace = grace
        self._owned = False

    def read_pid(self) -> Optional[int]:
        try:
            raw = self.pid_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            return int(raw)
        except ValueError:
            logger.warning(f"PID file {self.pid_file} is corrupt: {raw!r}")
            return None

    def marker_age(self) -> Optional[float]:
        try:
            return time.time() - self.pid_file.stat().st_mtime
        except FileNotFoundError:
            return None

    def is_running(self) -> bool:
        pid = self.read_pid()
        return pid is not None and pid_alive(pid)

    def acquire(self) -> None:
        """
        Raises:
            AlreadyRunning: If another live process holds the marker
        """
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.pid_file.with_name(f".{self.pid_file.name}.{os.getpid()}.tmp")
        tmp.write_text(f"{os.getpid()}\n", encoding="utf-8")
        try:
            for _ in range(2):
                try:
                    os.link(tmp, self.pid_file)
                except FileExistsError:
                    self._clear_stale()
                    continue
                self._owned = True
                logger.info(f"Acquired instance marker {self.pid_file} (PID: {os.getpid()})")
                return
        finally:
            tmp.unlink(missing_ok=True)
        raise OSError(errno.EEXIST, f"Could not create PID file {self.pid_file}")

    def _clear_stale(self) -> None:
        pid = self.read_pid()
        if pid is None:
            age = self.marker_age()
            if age is not None and age < self.grace:
                raise AlreadyRunning(None, str(self.pid_file))
        elif pid_alive(pid) and pid != os.getpid():
            raise AlreadyRunning(pid, str(self.pid_file))
        logger.warning(f"Removing stale PID file {self.pid_file} (PID: {pid})")
        self.pid_file.unlink(missing_ok=True)

    def owns_marker(self) -> bool:
        """True while the marker exists and still names this process."""
        return self._owned and self.read_pid() == os.getpid()

    def release(self) -> None:
        if not self._owned:
            return
        if self.read_pid() == os.getpid():
            self.pid_file.unlink(missing_ok=True)
            logger.info(f"Released instance marker {self.pid_file}")
        self._owned = False
