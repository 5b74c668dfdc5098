"""
Automation service coordinator

Owns the single session slot of the agent process. Sessions are created, run
and destroyed only through this service, so at most one ScanStateMachine is
alive at any time.
"""

import asyncio
import logging
from typing import Callable, Optional

from ...config import AgentSettings
from ...models.job import Job
from ..credential_store import CredentialStore
from ..persistence_service import ProcessingLedger
from ..status_store import AgentStatusStore
from ..work_queue import WorkQueueClient
from .page_driver import PageDriver
from .reporter import ResultReporter
from .scan_state_machine import AutomationSession, ScanStateMachine

DriverFactory = Callable[[], PageDriver]


class CallbackManager:
    """Manages callbacks for operator surfaces"""

    def __init__(self):
        self.on_session_start: Optional[Callable[[Job], None]] = None
        self.on_session_complete: Optional[Callable[[AutomationSession], None]] = None
        self.on_log_message: Optional[Callable[[str], None]] = None

    def set_callbacks(self,
                      on_session_start: Callable[[Job], None] = None,
                      on_session_complete: Callable[[AutomationSession], None] = None,
                      on_log_message: Callable[[str], None] = None):
        """Set callback functions for operator surfaces"""
        self.on_session_start = on_session_start
        self.on_session_complete = on_session_complete
        self.on_log_message = on_log_message


class AutomationService:
    """
    Session supervisor

    Builds a fresh page driver and state machine for each job and runs it as
    an asyncio task. ``try_begin`` is synchronous, so checking and taking the
    slot cannot interleave with another coroutine.
    """

    def __init__(self, settings: AgentSettings, queue: WorkQueueClient,
                 credential_store: CredentialStore, status_store: AgentStatusStore,
                 driver_factory: DriverFactory, ledger: Optional[ProcessingLedger] = None):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.settings = settings
        self.queue = queue
        self.credential_store = credential_store
        self.status_store = status_store
        self.ledger = ledger
        self._driver_factory = driver_factory

        # One reporter for the process lifetime so a job is never completed twice
        self.reporter = ResultReporter(
            queue,
            settings.timeouts.reporting_max_attempts,
            settings.timeouts.reporting_backoff_seconds,
        )

        self._machine: Optional[ScanStateMachine] = None
        self._task: Optional[asyncio.Task] = None
        self._callbacks = CallbackManager()
        self.last_session: Optional[AutomationSession] = None

    def set_callbacks(self,
                      on_session_start: Callable[[Job], None] = None,
                      on_session_complete: Callable[[AutomationSession], None] = None,
                      on_log_message: Callable[[str], None] = None):
        self._callbacks.set_callbacks(on_session_start, on_session_complete, on_log_message)

    def _log_message(self, message: str):
        if self._callbacks.on_log_message:
            self._callbacks.on_log_message(message)

    @property
    def is_processing(self) -> bool:
        return self._machine is not None

    @property
    def current_session(self) -> Optional[AutomationSession]:
        return self._machine.session if self._machine else None

    def try_begin(self, job: Job) -> Optional[ScanStateMachine]:
        """Take the session slot for a job; None if a session is already active"""
        if self._machine is not None:
            return None

        machine = ScanStateMachine(
            job=job,
            queue=self.queue,
            driver=self._driver_factory(),
            credential_store=self.credential_store,
            status_store=self.status_store,
            settings=self.settings,
            reporter=self.reporter,
            ledger=self.ledger,
        )
        machine.on_log = self._log_message
        self._machine = machine
        return machine

    def start_session(self, job: Job) -> bool:
        """
        Start processing a job in the background

        Returns:
            False if another session is active
        """
        machine = self.try_begin(job)
        if machine is None:
            return False

        if self._callbacks.on_session_start:
            self._callbacks.on_session_start(job)
        self._task = asyncio.create_task(self._run_session(machine))
        return True

    async def _run_session(self, machine: ScanStateMachine) -> AutomationSession:
        try:
            session = await machine.run()
            self.last_session = session
            if self._callbacks.on_session_complete:
                self._callbacks.on_session_complete(session)
            return session
        except Exception as e:
            # step() converts phase errors into FAILED; reaching here is a bug in a callback
            self.logger.error(f"Session for job {machine.job.id} crashed: {e}", exc_info=True)
            self.status_store.session_failed(f"Session crashed: {e}")
            raise
        finally:
            self._machine = None
            self._task = None

    async def wait_idle(self) -> Optional[AutomationSession]:
        """Wait for the active session, if any, to finish"""
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.last_session

    async def shutdown(self, cancel: bool = False):
        """Stop the supervisor; by default the active session runs to a terminal phase"""
        task = self._task
        if task is None:
            return
        if cancel:
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)
