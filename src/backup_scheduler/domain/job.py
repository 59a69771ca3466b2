import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes. SQLite drops timezone information on the way
    back out, so everything read from storage passes through here.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class JobStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"


class BackupJob(BaseModel):
    """
    A scheduled backup definition: copy `source_path` to `remote_path` on a storage provider
    whenever `schedule` fires.
    """
    id: str = Field(default_factory=lambda: f"job_{uuid.uuid4().hex[:8]}", description="Unique job identifier")
    name: str = Field(..., description="Display label")
    source_path: str = Field(..., description="Local path to back up")
    remote_path: str = Field(..., description="Path inside the provider bucket")
    storage_provider_id: str = Field(..., description="Storage provider holding the credentials")
    schedule: str = Field("", description="5-field cron expression")
    status: JobStatus = JobStatus.ACTIVE
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    retention_period_days: Optional[int] = Field(None, ge=1)
    compression_enabled: bool = False
    compression_level: Optional[int] = Field(None, ge=0, le=9)
    transfer_concurrency: Optional[int] = Field(None, ge=1)
    delete_extraneous: bool = Field(True, description="Mirror deletions on the destination")
    notifications: bool = Field(True, description="Send outcome notifications for this job")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("next_run", "last_run", "created_at", "updated_at")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def has_schedule(self) -> bool:
        return bool(self.schedule and self.schedule.strip())

    @property
    def is_paused(self) -> bool:
        return self.status == JobStatus.PAUSED


class JobUpdate(BaseModel):
    """
    Partial update of a job row. Only fields that were explicitly set are written,
    so `JobUpdate(next_run=None)` clears `next_run` while `JobUpdate()` leaves it alone.
    """
    status: Optional[JobStatus] = None
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


class JobFilter(BaseModel):
    """
    Predicate for listing jobs, expressed as plain filters rather than a query language.
    """
    statuses: Optional[List[JobStatus]] = None
    has_schedule: Optional[bool] = None
    due_before: Optional[datetime] = Field(None, description="Only jobs with next_run at or before this time")
    updated_before: Optional[datetime] = Field(None, description="Only jobs last updated before this time")

    def matches(self, job: BackupJob) -> bool:
        if self.statuses is not None and job.status not in self.statuses:
            return False
        if self.has_schedule is not None and job.has_schedule != self.has_schedule:
            return False
        if self.due_before is not None and (job.next_run is None or job.next_run > ensure_utc(self.due_before)):
            return False
        if self.updated_before is not None and job.updated_at >= ensure_utc(self.updated_before):
            return False
        return True
