"""
Result reporting

Uploads a session's artifacts to the work queue's report storage and marks the
job completed. Transport failures are retried with exponential backoff; any
other failure escalates immediately as ReportingError.
"""

import logging
from collections import OrderedDict
from typing import Dict, Optional

from ...exceptions import AutomationError, NetworkError, ReportingError
from ...models.job import ArtifactKind, Job, ResultScores, ResultSummary
from ..work_queue import WorkQueueClient
from .form_helpers import RetryHelper

# Completed jobs remembered for duplicate suppression; older ones rely on the
# work queue ignoring repeated completions
REPORTED_CACHE_SIZE = 256


def artifact_path(job_id: str, kind: ArtifactKind) -> str:
    """Storage path of one result artifact, e.g. ``<job_id>/ai_report.pdf``"""
    return f"{job_id}/{kind.file_name}"


class ResultReporter:
    """Reports completed sessions to the work queue exactly once per job"""

    def __init__(self, queue: WorkQueueClient, max_attempts: int = 3, backoff_seconds: float = 1.0,
                 cache_size: int = REPORTED_CACHE_SIZE):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.queue = queue
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.cache_size = cache_size
        self._reported: "OrderedDict[str, ResultSummary]" = OrderedDict()

    def already_reported(self, job_id: str) -> bool:
        return job_id in self._reported

    async def report(self, job: Job, scores: ResultScores,
                     artifacts: Optional[Dict[ArtifactKind, bytes]] = None) -> ResultSummary:
        """
        Upload artifacts and complete the job

        Args:
            job: Job being completed
            scores: Scores read from the result listing
            artifacts: Downloaded artifacts keyed by kind

        Returns:
            The summary sent to the work queue

        Raises:
            ReportingError: If an upload or the completion call fails
        """
        if job.id in self._reported:
            self.logger.info(f"Job {job.id} already reported, skipping")
            return self._reported[job.id]

        artifacts = artifacts or {}
        paths = {}
        for kind, data in artifacts.items():
            path = artifact_path(job.id, kind)
            await self._with_retry(job, self.queue.upload_report, path, data, kind.file_name)
            paths[kind] = path
            self.logger.debug(f"Uploaded {kind.value} report for job {job.id} to {path}")

        summary = ResultSummary.build(job, scores, paths)
        await self._with_retry(job, self.queue.complete_job, job.id, summary)

        self._reported[job.id] = summary
        while len(self._reported) > self.cache_size:
            self._reported.popitem(last=False)
        self.logger.info(
            f"Reported job {job.id}: similarity={summary.similarity_percentage}, "
            f"ai={summary.ai_percentage}, artifacts={len(paths)}"
        )
        return summary

    async def _with_retry(self, job: Job, func, *args):
        try:
            return await RetryHelper.retry_async(
                func, self.max_attempts, self.backoff_seconds, (NetworkError,), *args
            )
        except NetworkError as e:
            raise ReportingError(job.id, self.max_attempts, str(e)) from e
        except AutomationError as e:
            raise ReportingError(job.id, 1, str(e)) from e
