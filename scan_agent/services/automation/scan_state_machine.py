"""
Scan session state machine using the transitions framework

One ScanStateMachine drives one claimed job through the host system's
workflow. Phases are the states of an AsyncMachine; the work of each phase is
done by a handler that ``step()`` dispatches on the current phase, and every
handler ends by firing the trigger for the next phase (or raising
SessionFailure, which ``step()`` turns into the FAILED transition).

    IDLE -> CLAIMED -> DOWNLOADING -> [AUTHENTICATING] -> NAVIGATING
         -> [UPLOADING] -> WAITING_FOR_RESULT -> DOWNLOADING_RESULTS
         -> REPORTING -> COMPLETED

Any non-terminal phase may move to FAILED. CLAIMED returns to IDLE when the
job turns out to be held by another agent.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from transitions.extensions.asyncio import AsyncMachine

from ...config import AgentSettings
from ...exceptions import (
    AlreadyClaimedError, AutomationError, FailureReason, ReportingError, SessionFailure
)
from ...models.credentials import AuthMode, CookieJar, CredentialSet, PasswordCredentials
from ...models.job import ArtifactKind, Job, ResultScores, ResultSummary, ScanKind, SourceFile
from ..credential_store import CredentialStore
from ..persistence_service import ProcessingLedger
from ..status_store import AgentStatusStore, truncate_message
from ..work_queue import WorkQueueClient
from .page_driver import PageDriver, PageKind
from .reporter import ResultReporter


class Phase(Enum):
    IDLE = "idle"
    CLAIMED = "claimed"
    DOWNLOADING = "downloading"
    AUTHENTICATING = "authenticating"
    NAVIGATING = "navigating"
    UPLOADING = "uploading"
    WAITING_FOR_RESULT = "waiting_for_result"
    DOWNLOADING_RESULTS = "downloading_results"
    REPORTING = "reporting"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_PHASES = (Phase.COMPLETED, Phase.FAILED)
ACTIVE_PHASES = [
    Phase.CLAIMED,
    Phase.DOWNLOADING,
    Phase.AUTHENTICATING,
    Phase.NAVIGATING,
    Phase.UPLOADING,
    Phase.WAITING_FOR_RESULT,
    Phase.DOWNLOADING_RESULTS,
    Phase.REPORTING,
]

# Recent transient errors appended to a deadline failure message
MAX_REPORTED_ERRORS = 3


@dataclass
class AutomationSession:
    """Mutable record of one job's trip through the workflow"""
    job: Job
    phase: Phase = Phase.IDLE
    phase_entered_at: float = 0.0
    started_at: float = 0.0
    source_file: Optional[SourceFile] = None
    credentials: Optional[CredentialSet] = None
    auth_mode: Optional[AuthMode] = None
    credentials_revision: int = 0
    scores: ResultScores = field(default_factory=ResultScores)
    artifacts: Dict[ArtifactKind, bytes] = field(default_factory=dict)
    summary: Optional[ResultSummary] = None
    poll_count: int = 0
    last_error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    failure: Optional[SessionFailure] = None
    history: List[Phase] = field(default_factory=list)

    def record_error(self, message: str):
        self.errors.append(message)
        self.last_error = message


class ScanStateMachine:
    """
    State machine for processing one job

    Attributes:
        session: The session being driven
        state: Current Phase (maintained by the AsyncMachine)
    """

    phase_transitions = [
        {'trigger': 'begin', 'source': Phase.IDLE, 'dest': Phase.CLAIMED},
        {'trigger': 'release', 'source': Phase.CLAIMED, 'dest': Phase.IDLE},
        {'trigger': 'start_download', 'source': Phase.CLAIMED, 'dest': Phase.DOWNLOADING},
        {'trigger': 'authenticate', 'source': Phase.DOWNLOADING, 'dest': Phase.AUTHENTICATING},
        {'trigger': 'navigate', 'source': [Phase.DOWNLOADING, Phase.AUTHENTICATING], 'dest': Phase.NAVIGATING},
        {'trigger': 'upload', 'source': Phase.NAVIGATING, 'dest': Phase.UPLOADING},
        {'trigger': 'await_result', 'source': [Phase.NAVIGATING, Phase.UPLOADING], 'dest': Phase.WAITING_FOR_RESULT},
        {'trigger': 'fetch_results', 'source': Phase.WAITING_FOR_RESULT, 'dest': Phase.DOWNLOADING_RESULTS},
        {'trigger': 'report', 'source': Phase.DOWNLOADING_RESULTS, 'dest': Phase.REPORTING},
        {'trigger': 'finish', 'source': Phase.REPORTING, 'dest': Phase.COMPLETED},
        {'trigger': 'fail', 'source': ACTIVE_PHASES, 'dest': Phase.FAILED},
    ]

    def __init__(self, job: Job, queue: WorkQueueClient, driver: PageDriver,
                 credential_store: CredentialStore, status_store: AgentStatusStore,
                 settings: AgentSettings, reporter: Optional[ResultReporter] = None,
                 ledger: Optional[ProcessingLedger] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the state machine

        Args:
            job: Job to process
            queue: Work queue client
            driver: Page driver owned by this session; closed on any terminal phase
            credential_store: Source of the active credential set
            status_store: Observable agent status
            settings: Agent settings (target folder, timeouts)
            reporter: Result reporter; shared across sessions for idempotency
            ledger: Optional processing history
            clock: Monotonic clock used for phase deadlines
        """
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.session = AutomationSession(job=job)
        self.queue = queue
        self.driver = driver
        self.credential_store = credential_store
        self.status_store = status_store
        self.settings = settings
        self.timeouts = settings.timeouts
        self.reporter = reporter or ResultReporter(
            queue, self.timeouts.reporting_max_attempts, self.timeouts.reporting_backoff_seconds
        )
        self.ledger = ledger
        self._clock = clock

        # Callbacks
        self.on_log: Optional[Callable[[str], None]] = None
        self.on_phase_changed: Optional[Callable[[Phase], None]] = None

        self._handlers = {
            Phase.CLAIMED: self._handle_claimed,
            Phase.DOWNLOADING: self._handle_downloading,
            Phase.AUTHENTICATING: self._handle_authenticating,
            Phase.NAVIGATING: self._handle_navigating,
            Phase.UPLOADING: self._handle_uploading,
            Phase.WAITING_FOR_RESULT: self._handle_waiting_for_result,
            Phase.DOWNLOADING_RESULTS: self._handle_downloading_results,
            Phase.REPORTING: self._handle_reporting,
        }

        self.machine = AsyncMachine(
            model=self,
            states=Phase,
            transitions=ScanStateMachine.phase_transitions,
            initial=Phase.IDLE,
            auto_transitions=False,
            after_state_change='_after_phase_change',
        )

    @property
    def job(self) -> Job:
        return self.session.job

    @property
    def is_finished(self) -> bool:
        """Terminal, or released back to idle after a lost claim"""
        return self.state in TERMINAL_PHASES or (self.state == Phase.IDLE and bool(self.session.history))

    def _log(self, message: str):
        """Unified logging method"""
        self.logger.info(message)
        if self.on_log:
            self.on_log(message)

    def _after_phase_change(self):
        self.session.phase = self.state
        self.session.phase_entered_at = self._clock()
        self.session.history.append(self.state)
        self.logger.debug(f"Job {self.job.id} entered phase {self.state.value}")

        # CLAIMED, COMPLETED, FAILED and IDLE are published by their own status mutations
        if self.state not in (Phase.IDLE, Phase.CLAIMED) + TERMINAL_PHASES:
            self.status_store.phase_changed(self.state.value)
        if self.on_phase_changed:
            self.on_phase_changed(self.state)

    async def run(self) -> AutomationSession:
        """
        Drive the session until it completes, fails or is released

        Returns:
            The finished session
        """
        self.session.started_at = self._clock()
        if self.state == Phase.IDLE:
            await self.begin()

        try:
            while not self.is_finished:
                await self.step()
        except asyncio.CancelledError:
            self.logger.warning(f"Session for job {self.job.id} cancelled in phase {self.state.value}")
            await self._close_driver()
            raise

        return self.session

    async def step(self) -> Phase:
        """
        Execute the current phase's handler once

        Returns:
            The phase after the step
        """
        handler = self._handlers.get(self.state)
        if handler is None:
            return self.state

        try:
            await handler()
        except SessionFailure as failure:
            await self._fail(failure)
        except Exception as e:
            self.logger.error(f"Unexpected error in phase {self.state.value}: {e}", exc_info=True)
            await self._fail(SessionFailure(
                FailureReason.UNEXPECTED_ERROR, f"Unexpected error during {self.state.value}: {e}"
            ))
        return self.state

    # =================== Phase handlers ===================

    async def _handle_claimed(self):
        job = self.job
        try:
            await self.queue.claim(job.id)
        except AlreadyClaimedError as e:
            self._log(f"Job {job.id} skipped: {e}")
            await self._release()
            return
        except AutomationError as e:
            # The lease was never ours, so there is nothing to mark failed
            self.logger.warning(f"Could not claim job {job.id}: {e}")
            self.status_store.record_error(f"Failed to claim {job.display_name}: {e}")
            await self._release()
            return

        job.mark_claimed()
        self.session.auth_mode = self.credential_store.mode
        self.session.credentials_revision = self.credential_store.revision
        self.session.credentials = self.credential_store.get_active()
        self.status_store.session_started(job)
        self._log(f"Claimed job {job.id} ({job.display_name}), attempt {job.attempts}")

        await self.queue.increment_attempt(job.id)
        await self.queue.append_log(job.id, "processing_started", f"Started processing {job.display_name}")

        if self.session.credentials is None:
            raise SessionFailure(FailureReason.AUTH_INJECTION_ERROR, "Authentication not configured")

        await self.start_download()

    async def _handle_downloading(self):
        timeout = self.timeouts.download
        try:
            source_file = await asyncio.wait_for(self.queue.fetch_source(self.job), timeout)
        except asyncio.TimeoutError:
            raise SessionFailure(
                FailureReason.DOWNLOAD_TIMEOUT, f"Source download did not finish within {timeout:g}s"
            )
        except Exception as e:
            raise SessionFailure(FailureReason.DOWNLOAD_ERROR, f"Failed to download source file: {e}")

        self.session.source_file = source_file
        self._log(f"Downloaded {source_file.name} ({source_file.size} bytes)")

        if self.session.auth_mode == AuthMode.COOKIES:
            await self.authenticate()
        else:
            await self.navigate()

    async def _handle_authenticating(self):
        self._check_credentials_current()
        jar = self.session.credentials
        if not isinstance(jar, CookieJar):
            raise SessionFailure(FailureReason.AUTH_INJECTION_ERROR, "Cookie mode is active but no cookies are stored")

        timeout = self.timeouts.authenticate
        try:
            await asyncio.wait_for(self.driver.inject_cookies(jar.entries), timeout)
        except asyncio.TimeoutError:
            raise SessionFailure(
                FailureReason.AUTH_INJECTION_ERROR, f"Cookie injection did not finish within {timeout:g}s"
            )
        except Exception as e:
            raise SessionFailure(FailureReason.AUTH_INJECTION_ERROR, f"Cookie injection failed: {e}")

        expired = jar.expired_count()
        if expired:
            self.logger.warning(f"{expired} of {len(jar)} injected cookies are already expired")
        self._log(f"Injected {len(jar)} cookies")
        await self.navigate()

    async def _handle_navigating(self):
        timeout = self.timeouts.navigation
        deadline = self.session.phase_entered_at + timeout
        cookie_mode = self.session.auth_mode == AuthMode.COOKIES
        start_url = self.settings.home_url if cookie_mode else self.settings.host_url

        needs_open = True
        while True:
            self._check_credentials_current()
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise self._deadline_failure(
                    FailureReason.NAVIGATION_TIMEOUT,
                    f"Could not reach folder '{self.settings.target_folder}' within {timeout:g}s"
                )

            try:
                if needs_open:
                    await asyncio.wait_for(self.driver.open(start_url), remaining)
                    needs_open = False
                next_trigger = await asyncio.wait_for(
                    self._act_on_page(self.settings.home_url), deadline - self._clock()
                )
            except asyncio.TimeoutError:
                continue
            except SessionFailure:
                raise
            except Exception as e:
                self.session.record_error(f"navigation: {e}")
                self.logger.debug(f"Transient navigation error: {e}")
                next_trigger = None

            if next_trigger is not None:
                await next_trigger()
                return

            await asyncio.sleep(self.timeouts.navigation_check_interval)

    async def _act_on_page(self, home_url: str):
        """React to the current page; returns the next trigger once the folder is reached"""
        kind = await self.driver.detect_page_kind()
        self.logger.debug(f"Detected page: {kind.value}")

        if kind == PageKind.LOGIN:
            credentials = self.session.credentials
            if isinstance(credentials, PasswordCredentials):
                self._log("Login page detected, submitting credentials")
                await self.driver.submit_login(credentials)
            else:
                self.session.record_error("navigation: login page shown despite injected cookies")
                await self.driver.open(home_url)

        elif kind == PageKind.LAUNCH_PROMPT:
            if self.settings.auto_launch:
                self._log("Launch prompt detected, launching")
                await self.driver.click_launch()
            else:
                await self.driver.open(home_url)

        elif kind == PageKind.FOLDER_LISTING:
            folder = self.settings.target_folder
            if not await self.driver.navigate_to_folder(folder):
                self.session.record_error(f"navigation: folder '{folder}' not found")
                return None
            self._log(f"Opened folder '{folder}'")

            if await self.driver.is_already_uploaded(self.job.display_name):
                self._log(f"{self.job.display_name} is already uploaded, waiting for results")
                return self.await_result
            return self.upload

        elif kind == PageKind.UPLOAD_MODAL:
            return self.upload

        else:
            await self.driver.open(home_url)

        return None

    async def _handle_uploading(self):
        timeout = self.timeouts.upload
        try:
            await asyncio.wait_for(
                self.driver.attach_and_submit(self.session.source_file, self.job.title), timeout
            )
        except asyncio.TimeoutError:
            raise SessionFailure(FailureReason.UPLOAD_ERROR, f"Upload did not finish within {timeout:g}s")
        except Exception as e:
            raise SessionFailure(FailureReason.UPLOAD_ERROR, f"Upload failed: {e}")

        self._log(f"Uploaded {self.job.display_name}")
        await self.queue.append_log(self.job.id, "upload_complete", f"Uploaded {self.job.display_name}")
        await self.await_result()

    async def _handle_waiting_for_result(self):
        timeout = self.timeouts.result
        deadline = self.session.phase_entered_at + timeout

        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise self._deadline_failure(
                    FailureReason.RESULT_TIMEOUT, f"Results not ready within {timeout:g}s"
                )

            self.session.poll_count += 1
            row = None
            try:
                row = await asyncio.wait_for(self.driver.find_result_row(self.job.display_name), remaining)
            except asyncio.TimeoutError:
                continue
            except Exception as e:
                self.session.record_error(f"result poll: {e}")

            if row is not None and row.ready:
                self.session.scores = row.scores
                self._log(
                    f"Results ready after {self.session.poll_count} polls: "
                    f"similarity={row.scores.similarity}%, ai={row.scores.ai}%"
                )
                await self.fetch_results()
                return

            if self.session.poll_count % self.timeouts.refresh_every_polls == 0:
                try:
                    await self.driver.refresh()
                except Exception as e:
                    self.session.record_error(f"refresh: {e}")

            await asyncio.sleep(min(self.timeouts.result_poll_interval, max(deadline - self._clock(), 0)))

    async def _handle_downloading_results(self):
        kinds = [ArtifactKind.SIMILARITY_REPORT]
        if self.job.scan_kind == ScanKind.FULL and self.settings.require_secondary_report:
            kinds.append(ArtifactKind.AI_REPORT)

        try:
            await asyncio.wait_for(self._collect_artifacts(kinds), self.timeouts.artifacts)
        except asyncio.TimeoutError:
            self.logger.warning(f"Artifact download did not finish within {self.timeouts.artifacts:g}s")
        except Exception as e:
            self.logger.warning(f"Could not open result viewer: {e}")
            self.session.record_error(f"artifacts: {e}")

        missing = [kind.value for kind in kinds if kind not in self.session.artifacts]
        if missing:
            self.logger.warning(f"Missing artifacts {missing} for job {self.job.id}, reporting available results")
        await self.report()

    async def _collect_artifacts(self, kinds: List[ArtifactKind]):
        if not await self.driver.open_result_viewer(self.job.display_name):
            self.logger.warning(f"Result viewer for {self.job.display_name} could not be opened")
            return

        for kind in kinds:
            try:
                data = await self.driver.download_artifact(kind)
            except Exception as e:
                self.logger.warning(f"Failed to download {kind.value} report: {e}")
                self.session.record_error(f"artifacts: {kind.value}: {e}")
                continue

            if data:
                self.session.artifacts[kind] = data
                self._log(f"Downloaded {kind.value} report ({len(data)} bytes)")
            else:
                self.logger.warning(f"No {kind.value} report available")

    async def _handle_reporting(self):
        try:
            summary = await self.reporter.report(self.job, self.session.scores, self.session.artifacts)
        except ReportingError as e:
            raise SessionFailure(FailureReason.REPORTING_ERROR, str(e))

        self.session.summary = summary
        self.job.mark_completed()

        message = f"Similarity: {summary.similarity_percentage}%"
        if summary.ai_percentage is not None:
            message += f", AI: {summary.ai_percentage}%"
        if summary.score_only:
            message += " (scores only)"
        await self.queue.append_log(self.job.id, "processing_complete", message)

        # The job is completed remotely; local bookkeeping must not turn it into a failure
        self._record_locally("completion", self.status_store.session_completed)
        if self.ledger:
            self._record_locally(
                "history row", self.ledger.record, self.job, "completed", self._elapsed(), summary=summary
            )
        await self._close_driver()
        await self.finish()
        self._log(f"Completed job {self.job.id}: {message}")

    # =================== Terminal handling ===================

    async def _fail(self, failure: SessionFailure):
        """Enter FAILED and run its side effects exactly once"""
        if self.state in TERMINAL_PHASES:
            return

        session = self.session
        session.failure = failure
        session.record_error(str(failure))
        self.job.mark_failed()

        message = truncate_message(str(failure))
        self.logger.error(f"Job {self.job.id} failed in phase {self.state.value}: {message}")
        await self.fail()

        await self.queue.set_status(self.job.id, self.job.status, message)
        await self.queue.append_log(self.job.id, "processing_failed", message)
        await self._close_driver()
        self._record_locally("failure", self.status_store.session_failed, message)
        if self.ledger:
            self._record_locally("history row", self.ledger.record, self.job, "failed", self._elapsed(), message=message)
        if self.on_log:
            self.on_log(f"Failed: {message}")

    async def _release(self):
        await self._close_driver()
        await self.release()
        self.status_store.session_released()

    async def _close_driver(self):
        try:
            await self.driver.close()
        except Exception as e:
            self.logger.warning(f"Error closing page driver: {e}")

    # =================== Helpers ===================

    def _check_credentials_current(self):
        store = self.credential_store
        if store.mode != self.session.auth_mode or store.revision != self.session.credentials_revision:
            raise SessionFailure(
                FailureReason.AUTH_INJECTION_ERROR, "Authentication settings changed during the session"
            )

    def _deadline_failure(self, reason: FailureReason, message: str) -> SessionFailure:
        errors = self.session.errors
        if errors:
            recent = "; ".join(errors[-MAX_REPORTED_ERRORS:])
            message = f"{message} (errors: {recent})"
        return SessionFailure(reason, message)

    def _elapsed(self) -> float:
        return self._clock() - self.session.started_at

    def _record_locally(self, what: str, func, *args, **kwargs):
        try:
            func(*args, **kwargs)
        except Exception as e:
            self.logger.error(f"Could not record {what} of job {self.job.id} locally: {e}")
