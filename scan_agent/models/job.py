"""
Job data model for the scan agent
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import Optional


class JobStatus(Enum):
    """Job status as cached by the agent; the remote queue is authoritative"""
    PENDING = "pending"
    CLAIMED = "claimed"
    FAILED = "failed"
    COMPLETED = "completed"


class ScanKind(Enum):
    """Determines which result artifacts a job requires"""
    FULL = "full"
    SIMILARITY_ONLY = "similarity_only"

    @classmethod
    def from_wire(cls, value: Optional[str]) -> "ScanKind":
        if value == cls.SIMILARITY_ONLY.value:
            return cls.SIMILARITY_ONLY
        return cls.FULL


class ArtifactKind(Enum):
    """Downloadable result files produced by the host system"""
    SIMILARITY_REPORT = "similarity"
    AI_REPORT = "ai"

    @property
    def file_name(self) -> str:
        return f"{self.value}_report.pdf"


@dataclass
class Job:
    """One unit of work claimed from the queue"""
    id: str
    source_path: str
    display_name: str
    scan_kind: ScanKind = ScanKind.FULL
    attempts: int = 0
    status: JobStatus = JobStatus.PENDING
    queued_at: Optional[str] = None

    def __post_init__(self):
        """Post initialization validation"""
        if not self.id:
            raise ValueError("Job id is required")
        if not self.source_path:
            raise ValueError("Job source path is required")
        if not self.display_name:
            self.display_name = PurePosixPath(self.source_path).name

    @classmethod
    def from_payload(cls, payload: dict) -> "Job":
        """Build a job from a work queue document payload"""
        status_value = payload.get("automation_status") or payload.get("status") or "pending"
        try:
            status = JobStatus(status_value)
        except ValueError:
            status = JobStatus.PENDING

        return cls(
            id=str(payload.get("id") or ""),
            source_path=payload.get("file_path") or "",
            display_name=payload.get("file_name") or "",
            scan_kind=ScanKind.from_wire(payload.get("scan_type")),
            attempts=int(payload.get("attempt_count") or 0),
            status=status,
            queued_at=payload.get("uploaded_at"),
        )

    @property
    def title(self) -> str:
        """Display name without its extension"""
        return PurePosixPath(self.display_name).stem or self.display_name

    def mark_claimed(self):
        """Mark job as claimed by this agent"""
        self.status = JobStatus.CLAIMED
        self.attempts += 1

    def mark_completed(self):
        """Mark job as completed"""
        self.status = JobStatus.COMPLETED

    def mark_failed(self):
        """Mark job as failed"""
        self.status = JobStatus.FAILED


@dataclass
class SourceFile:
    """Input artifact held in memory for upload"""
    name: str
    content: bytes
    mime_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class ResultScores:
    """Percentages extracted from the host's result listing"""
    similarity: Optional[int] = None
    ai: Optional[int] = None
    ready: bool = False


@dataclass
class ResultSummary:
    """Completion payload sent to the work queue"""
    similarity_percentage: Optional[int] = None
    ai_percentage: Optional[int] = None
    similarity_report_path: Optional[str] = None
    ai_report_path: Optional[str] = None
    score_only: bool = False

    @classmethod
    def build(cls, job: Job, scores: ResultScores, artifact_paths: dict) -> "ResultSummary":
        """Gate optional fields on the job's scan kind"""
        ai_percentage = scores.ai if job.scan_kind == ScanKind.FULL else None
        return cls(
            similarity_percentage=scores.similarity,
            ai_percentage=ai_percentage,
            similarity_report_path=artifact_paths.get(ArtifactKind.SIMILARITY_REPORT),
            ai_report_path=artifact_paths.get(ArtifactKind.AI_REPORT),
            score_only=not artifact_paths,
        )

    def to_payload(self) -> dict:
        return {
            "similarityPercentage": self.similarity_percentage,
            "aiPercentage": self.ai_percentage,
            "similarityReportPath": self.similarity_report_path,
            "aiReportPath": self.ai_report_path,
        }
