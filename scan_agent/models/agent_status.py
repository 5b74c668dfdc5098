"""
Agent status data model consumed by operator tooling
"""

from dataclasses import asdict, dataclass, fields
from typing import Optional


@dataclass
class AgentStatus:
    """Process-wide observable agent state"""
    enabled: bool = True
    processing_job_id: Optional[str] = None
    processing_job_name: Optional[str] = None
    current_phase: str = "idle"
    processed_count: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[str] = None
    last_processed_at: Optional[str] = None
    last_completed_at: Optional[str] = None
    run_requested_at: Optional[str] = None

    @property
    def is_processing(self) -> bool:
        return self.processing_job_id is not None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AgentStatus":
        """Ignore unknown keys so older status files still load"""
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})
