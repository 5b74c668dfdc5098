"""
Scheduler loop

Polls the work queue on a fixed interval and hands the oldest pending job to
the automation service. Manual triggers go through the same preconditions
and report why nothing was started.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from ..config import AgentSettings
from ..exceptions import AutomationError
from .automation.automation_service import AutomationService
from .credential_store import CredentialStore
from .status_store import AgentStatusStore
from .work_queue import WorkQueueClient

ALREADY_PROCESSING = "Already processing"
AGENT_DISABLED = "Agent is disabled"
TOKEN_NOT_CONFIGURED = "Work queue token not configured"
AUTH_NOT_CONFIGURED = "Authentication not configured"
NO_PENDING_JOBS = "No pending documents found"
AWAITING_MANUAL_TRIGGER = "Waiting for manual trigger"


@dataclass
class TriggerResult:
    """Outcome of a tick or manual trigger"""
    started: bool
    message: str


class SchedulerLoop:
    """Periodic poller that starts at most one session at a time"""

    def __init__(self, service: AutomationService, queue: WorkQueueClient,
                 credential_store: CredentialStore, status_store: AgentStatusStore,
                 settings: AgentSettings):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.service = service
        self.queue = queue
        self.credential_store = credential_store
        self.status_store = status_store
        self.settings = settings

        self._polling = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def interval(self) -> float:
        return max(1.0, float(self.settings.poll_interval_seconds))

    def _precondition_error(self) -> Optional[str]:
        """Reason a session cannot start right now, or None"""
        if self.service.is_processing or self._polling:
            return ALREADY_PROCESSING
        if not self.status_store.snapshot().enabled:
            return AGENT_DISABLED
        if not self.queue.has_token:
            return TOKEN_NOT_CONFIGURED
        if not self.credential_store.has_credentials():
            return AUTH_NOT_CONFIGURED
        return None

    def _awaiting_manual_trigger(self) -> bool:
        return not self.settings.auto_process_next and self.status_store.snapshot().last_completed_at is not None

    async def tick(self) -> TriggerResult:
        """One scheduled poll; a run request from operator tooling counts as a manual trigger"""
        self.status_store.sync_operator_fields()
        if self.status_store.snapshot().run_requested_at and self.status_store.take_run_request():
            result = await self.run_now()
            self.logger.info(f"Run requested by operator: {result.message}")
            return result
        if self._awaiting_manual_trigger() and not self.service.is_processing:
            return TriggerResult(False, AWAITING_MANUAL_TRIGGER)
        return await self._poll_and_start()

    async def run_now(self) -> TriggerResult:
        """Manual trigger; also reopens the single-file latch"""
        self.status_store.sync_operator_fields()
        reason = self._precondition_error()
        if reason:
            return TriggerResult(False, reason)

        if self.status_store.snapshot().last_completed_at is not None:
            self.status_store.clear_completion_latch()
        return await self._poll_and_start()

    async def _poll_and_start(self) -> TriggerResult:
        reason = self._precondition_error()
        if reason:
            self.logger.debug(f"Not polling: {reason}")
            return TriggerResult(False, reason)

        # No await between the check above and taking the guard
        self._polling = True
        try:
            jobs = await self.queue.list_claimable()
        except AutomationError as e:
            message = f"Failed to poll work queue: {e}"
            self.logger.warning(message)
            self.status_store.record_error(message)
            return TriggerResult(False, message)
        finally:
            self._polling = False

        if not jobs:
            self.logger.debug(NO_PENDING_JOBS)
            return TriggerResult(False, NO_PENDING_JOBS)

        job = jobs[0]
        if not self.service.start_session(job):
            return TriggerResult(False, ALREADY_PROCESSING)

        self.logger.info(f"Started processing {job.display_name} ({len(jobs)} pending)")
        return TriggerResult(True, f"Started processing {job.display_name}")

    # Loop control
    def start(self):
        """Start periodic polling on the running event loop"""
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        self.logger.info(f"Scheduler started, polling every {self.interval:g}s")

    async def stop(self):
        """Stop polling; an in-flight session keeps running"""
        if not self.is_running:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.logger.info("Scheduler stopped")

    async def _run(self):
        while not self._stop_event.is_set():
            try:
                result = await self.tick()
                self.logger.debug(f"Tick: {result.message}")
            except Exception as e:
                # A broken tick must not kill the loop
                self.logger.error(f"Scheduler tick failed: {e}", exc_info=True)
                self.status_store.record_error(f"Scheduler error: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), self.interval)
            except asyncio.TimeoutError:
                pass
