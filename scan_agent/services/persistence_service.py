"""
Persistence service for recording terminal session outcomes to a CSV ledger.

Provides safe, reliable CSV persistence with:
- Pandas DataFrame for efficient CSV operations
- File locking to prevent concurrent access issues
- Append-only operations to prevent data loss
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import pandas as pd
from filelock import FileLock

from ..models.job import Job, ResultSummary

LEDGER_COLUMNS = [
    "timestamp",
    "job_id",
    "file_name",
    "scan_kind",
    "attempts",
    "outcome",
    "similarity_percentage",
    "ai_percentage",
    "score_only",
    "message",
    "duration_seconds",
]


class ProcessingLedger:
    """Append-only history of processed jobs"""

    def __init__(self, csv_file: Path):
        """
        Initialize the ledger

        Args:
            csv_file: CSV file to append to (created on first write)
        """
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.csv_file = Path(csv_file)
        self.file_lock = FileLock(str(self.csv_file) + ".lock")

    def record(self, job: Job, outcome: str, duration: float,
               summary: Optional[ResultSummary] = None, message: str = ""):
        """Append one terminal session outcome"""
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "job_id": job.id,
            "file_name": job.display_name,
            "scan_kind": job.scan_kind.value,
            "attempts": job.attempts,
            "outcome": outcome,
            "similarity_percentage": summary.similarity_percentage if summary else None,
            "ai_percentage": summary.ai_percentage if summary else None,
            "score_only": summary.score_only if summary else None,
            "message": message,
            "duration_seconds": round(duration, 2),
        }

        try:
            self.csv_file.parent.mkdir(parents=True, exist_ok=True)
            with self.file_lock:
                pd.DataFrame([record], columns=LEDGER_COLUMNS).to_csv(
                    self.csv_file,
                    mode="a",
                    header=not self.csv_file.exists(),
                    index=False,
                    encoding="utf-8"
                )
        except OSError as e:
            # History is informational; a full disk must not fail the session
            self.logger.warning(f"Failed to write ledger row for job {job.id}: {e}")

    def load(self) -> pd.DataFrame:
        if not self.csv_file.exists():
            return pd.DataFrame(columns=LEDGER_COLUMNS)
        with self.file_lock:
            return pd.read_csv(self.csv_file, dtype={"job_id": str})

    def summary(self) -> Dict[str, Any]:
        """Outcome counts across the whole history"""
        df = self.load()
        counts = df["outcome"].value_counts().to_dict() if not df.empty else {}
        return {
            "file_path": str(self.csv_file),
            "total": len(df),
            "completed": int(counts.get("completed", 0)),
            "failed": int(counts.get("failed", 0)),
        }

    def recent(self, limit: int = 10) -> pd.DataFrame:
        return self.load().tail(limit)
