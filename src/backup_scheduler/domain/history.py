import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .job import ensure_utc, utcnow


class HistoryStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class HistoryRecord(BaseModel):
    """
    One execution attempt of a backup job.
    """
    id: str = Field(default_factory=lambda: f"run_{uuid.uuid4().hex[:12]}", description="Unique history record identifier")
    job_id: str = Field(..., description="The job this attempt belongs to")
    status: HistoryStatus = HistoryStatus.RUNNING
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    size_bytes: Optional[int] = None
    message: Optional[str] = None

    @field_validator("start_time", "end_time")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def is_terminal(self) -> bool:
        return self.status != HistoryStatus.RUNNING

    def finish(self, status: HistoryStatus, message: str, size_bytes: Optional[int] = None,
               end_time: Optional[datetime] = None) -> "HistoryUpdate":
        """
        Move the record to a terminal state and return the matching partial update.
        """
        if status == HistoryStatus.RUNNING:
            raise ValueError("A finished record must be SUCCESS or FAILED")
        self.status = status
        self.end_time = end_time or utcnow()
        self.duration_seconds = max((self.end_time - self.start_time).total_seconds(), 0.0)
        self.message = message
        fields = {
            "status": status,
            "end_time": self.end_time,
            "duration_seconds": self.duration_seconds,
            "message": message,
        }
        if size_bytes is not None:
            self.size_bytes = size_bytes
            fields["size_bytes"] = size_bytes
        return HistoryUpdate(**fields)


class HistoryUpdate(BaseModel):
    status: HistoryStatus
    end_time: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    size_bytes: Optional[int] = None
    message: Optional[str] = None

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)
