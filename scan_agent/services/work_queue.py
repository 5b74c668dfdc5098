"""
Work queue API client

All calls go to a single endpoint as action-style JSON POSTs authenticated by
a bearer token. The client applies no retry policy of its own: callers decide
whether a failure is transient. Informational calls (attempt counter, status
updates, automation log) never raise; a failure there is logged locally so
that observability never blocks progress.

Error mapping:
- no token configured     -> AuthError, without a network round trip
- HTTP 401 / 403          -> AuthError
- HTTP 409 on claim       -> AlreadyClaimedError
- other non-2xx           -> QueueApiError
- transport error/timeout -> NetworkError
"""

import base64
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..exceptions import (
    AlreadyClaimedError, AuthError, AutomationError, NetworkError, QueueApiError
)
from ..models.job import Job, JobStatus, ResultSummary, SourceFile

REQUEST_TIMEOUT = 30.0
SOURCE_BUCKET = "documents"
REPORT_BUCKET = "reports"


class WorkQueueClient:
    """Authenticated client for the remote job API"""

    def __init__(self, api_url: str, token: Optional[str] = None,
                 timeout: float = REQUEST_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize the client

        Args:
            api_url: Work queue endpoint
            token: Bearer token; every call fails fast with AuthError when unset
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.api_url = api_url
        self.token = token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def has_token(self) -> bool:
        return bool(self.token)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, action: str, **payload: Any) -> Dict[str, Any]:
        """POST an action to the work queue and return the decoded JSON body"""
        if not self.token:
            raise AuthError()

        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        body = {"action": action}
        body.update({key: value for key, value in payload.items() if value is not None})

        try:
            resp = await self._get_client().post(self.api_url, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Work queue timeout on '{action}': {e}", url=self.api_url)
        except httpx.HTTPError as e:
            raise NetworkError(f"Work queue transport error on '{action}': {e}", url=self.api_url)

        if resp.status_code in (401, 403):
            raise AuthError(self._error_text(resp) or "Work queue rejected token", resp.status_code)
        if resp.status_code == 409 and action == "claim_document":
            data = self._json_or_empty(resp)
            raise AlreadyClaimedError(payload.get("documentId", ""), data.get("holder"))
        if resp.status_code >= 400:
            raise QueueApiError(action, resp.status_code, self._error_text(resp))

        return self._json_or_empty(resp)

    @staticmethod
    def _json_or_empty(resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _error_text(self, resp: httpx.Response) -> Optional[str]:
        data = self._json_or_empty(resp)
        return data.get("error") or (resp.text[:200] if resp.text else None)

    # Queue operations
    async def list_claimable(self) -> List[Job]:
        """Pending jobs, oldest first; an empty queue is not an error"""
        result = await self._request("get_pending_documents")
        jobs = []
        for payload in result.get("documents") or []:
            try:
                jobs.append(Job.from_payload(payload))
            except ValueError as e:
                self.logger.warning(f"Skipping malformed job payload: {e}")
        # ISO-8601 timestamps; jobs without one go last
        jobs.sort(key=lambda job: (job.queued_at is None, job.queued_at or ""))
        return jobs

    async def claim(self, job_id: str):
        """
        Conditionally claim a pending job

        Idempotent for the same agent; raises AlreadyClaimedError when another
        actor holds the lease.
        """
        await self._request("claim_document", documentId=job_id)

    async def complete_job(self, job_id: str, summary: ResultSummary):
        """Mark a job completed; the remote side de-duplicates by job id"""
        await self._request("complete_document", documentId=job_id, **summary.to_payload())

    async def get_signed_url(self, path: str, bucket: str = SOURCE_BUCKET) -> str:
        result = await self._request("get_signed_url", bucketName=bucket, filePath=path)
        signed_url = result.get("signedUrl")
        if not signed_url:
            raise QueueApiError("get_signed_url", 200, "Failed to get signed URL")
        return signed_url

    async def fetch_source(self, job: Job) -> SourceFile:
        """Download the job's input artifact into memory"""
        signed_url = await self.get_signed_url(job.source_path)
        try:
            resp = await self._get_client().get(signed_url)
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to download file: {e}", url=signed_url)

        if resp.status_code >= 400:
            raise NetworkError("Failed to download file", url=signed_url, status_code=resp.status_code)

        mime_type = resp.headers.get("content-type", "application/octet-stream").split(";")[0]
        return SourceFile(name=job.display_name, content=resp.content, mime_type=mime_type)

    async def upload_report(self, path: str, data: bytes, file_name: str):
        """Store a result artifact; uploads to the same path overwrite"""
        await self._request(
            "upload_report",
            fileData=base64.b64encode(data).decode("ascii"),
            fileName=file_name,
            bucketName=REPORT_BUCKET,
            filePath=path,
        )

    async def heartbeat(self) -> bool:
        """Verify the token against the work queue"""
        result = await self._request("heartbeat")
        return bool(result.get("success", True))

    # Informational calls
    async def increment_attempt(self, job_id: str) -> bool:
        return await self._inform("increment_attempt_count", documentId=job_id)

    async def set_status(self, job_id: str, status: JobStatus, error_message: Optional[str] = None) -> bool:
        return await self._inform(
            "update_document_status",
            documentId=job_id,
            automationStatus=status.value,
            errorMessage=error_message,
        )

    async def append_log(self, job_id: str, action: str, message: str) -> bool:
        return await self._inform("log_automation", documentId=job_id, logAction=action, message=message)

    async def _inform(self, action: str, **payload: Any) -> bool:
        try:
            await self._request(action, **payload)
            return True
        except AutomationError as e:
            self.logger.warning(f"Informational call '{action}' failed: {e}")
            return False
