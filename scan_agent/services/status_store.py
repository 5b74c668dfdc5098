"""
Persisted, observable agent status

The status is a single JSON document guarded by a file lock so an operator
CLI running in another process can read a consistent snapshot while the
agent is working. Every mutation is applied to the document on disk while
the lock is held, so writers in different processes never revert each
other's fields. Subscribers receive a fresh snapshot after every mutation.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

from filelock import FileLock, Timeout

from ..models.agent_status import AgentStatus
from ..models.job import Job

MAX_ERROR_LENGTH = 500
LEASE_FILE_NAME = "agent.lock"

IDLE_SESSION = {
    "processing_job_id": None,
    "processing_job_name": None,
    "current_phase": "idle",
}


def truncate_message(message: str, limit: int = MAX_ERROR_LENGTH) -> str:
    """Bound an error message for log and status surfaces"""
    message = message or ""
    if len(message) <= limit:
        return message
    return message[:limit - 3] + "..."


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AgentLease:
    """
    Exclusive lease of the process that runs sessions for a data directory

    Backed by an OS-level file lock, so the lease of a crashed process is
    released with it.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = FileLock(str(self.path))

    @property
    def is_held(self) -> bool:
        return self._lock.is_locked

    def acquire(self) -> bool:
        """Take the lease without waiting; False if another process holds it"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire(timeout=0)
        except Timeout:
            return False
        return True

    def release(self):
        if self._lock.is_locked:
            self._lock.release()

    def held_elsewhere(self) -> bool:
        if self.is_held:
            return False
        if not self.acquire():
            return True
        self.release()
        return False


class AgentStatusStore:
    """Store for the agent's observable status"""

    def __init__(self, path: Optional[Path] = None):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.path = Path(path) if path else None
        self._subscribers: List[Callable[[AgentStatus], None]] = []
        self._status = self._load()

    def recover_stale_session(self) -> Optional[str]:
        """
        Clear a session left behind by a crashed agent process

        Sessions never survive a restart. Only a process holding the agent
        lease may call this at startup; operator tooling must not.

        Returns:
            The stale job id, if there was one
        """
        stale_job_id = self.reload().processing_job_id
        if stale_job_id is None:
            return None

        self.logger.warning(f"Discarding stale session for job {stale_job_id}")
        self._update(**IDLE_SESSION)
        return stale_job_id

    def snapshot(self) -> AgentStatus:
        return AgentStatus.from_dict(self._status.to_dict())

    def subscribe(self, callback: Callable[[AgentStatus], None]):
        self._subscribers.append(callback)

    def reload(self) -> AgentStatus:
        """Re-read the persisted status (written by this or another process)"""
        if self.path:
            self._status = self._load()
        return self.snapshot()

    def sync_operator_fields(self) -> bool:
        """Pick up enable/disable and run requests written by operator tooling; returns enabled"""
        return self.reload().enabled

    # Mutations
    def set_enabled(self, enabled: bool):
        self._update(enabled=enabled)

    def request_run(self):
        """Ask the running agent to process the next job (operator tooling)"""
        self._update(run_requested_at=utc_now_iso())

    def take_run_request(self) -> bool:
        """Consume a pending run request; True if there was one"""
        taken = []

        def take(status: AgentStatus):
            if status.run_requested_at:
                taken.append(status.run_requested_at)
                status.run_requested_at = None

        self._update(take)
        return bool(taken)

    def session_started(self, job: Job):
        """A new session successfully claimed a job; the only place last_error clears"""
        self._update(
            processing_job_id=job.id,
            processing_job_name=job.display_name,
            current_phase="claimed",
            last_error=None,
            last_error_at=None,
        )

    def phase_changed(self, phase: str):
        self._update(current_phase=phase)

    def session_completed(self):
        now = utc_now_iso()

        def count(status: AgentStatus):
            status.processed_count += 1

        self._update(count, last_processed_at=now, last_completed_at=now, **IDLE_SESSION)

    def session_failed(self, message: str):
        self._update(last_error=truncate_message(message), last_error_at=utc_now_iso(), **IDLE_SESSION)

    def session_released(self):
        """Session ended without a terminal outcome (job claimed elsewhere)"""
        self._update(**IDLE_SESSION)

    def record_error(self, message: str):
        """Configuration or polling error outside any session"""
        self._update(last_error=truncate_message(message), last_error_at=utc_now_iso())

    def clear_completion_latch(self):
        self._update(last_completed_at=None)

    def _update(self, mutate: Optional[Callable[[AgentStatus], None]] = None, **changes):
        """Apply a change to the current document and notify subscribers"""
        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with FileLock(self._lock_path):
                status = self._read() or self.snapshot()
                self._apply(status, mutate, changes)
                self.path.write_text(json.dumps(status.to_dict(), indent=2), encoding="utf-8")
        else:
            status = self._status
            self._apply(status, mutate, changes)

        self._status = status
        self._notify()

    @staticmethod
    def _apply(status: AgentStatus, mutate, changes: dict):
        for name, value in changes.items():
            setattr(status, name, value)
        if mutate:
            mutate(status)

    def _notify(self):
        snapshot = self.snapshot()
        for callback in self._subscribers:
            try:
                callback(snapshot)
            except Exception as e:
                self.logger.warning(f"Status subscriber failed: {e}")

    @property
    def _lock_path(self) -> str:
        return str(self.path) + ".lock"

    def _load(self) -> AgentStatus:
        if not self.path or not self.path.exists():
            return AgentStatus()

        with FileLock(self._lock_path):
            return self._read() or AgentStatus()

    def _read(self) -> Optional[AgentStatus]:
        # Caller holds the file lock
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8")) or {}
        except (OSError, json.JSONDecodeError) as e:
            self.logger.warning(f"Could not read status file, using defaults: {e}")
            return None
        return AgentStatus.from_dict(data)
