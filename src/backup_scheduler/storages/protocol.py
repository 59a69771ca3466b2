from typing import List, Optional, Protocol

from backup_scheduler.domain.job import BackupJob, JobFilter, JobStatus, JobUpdate
from backup_scheduler.domain.history import HistoryRecord, HistoryUpdate
from backup_scheduler.domain.notification import NotificationSettings
from backup_scheduler.domain.provider import StorageProvider


class JobRepository(Protocol):
    """
    Durable store for jobs, their execution history and the records the engine needs around them.
    Every call is its own short transaction; implementations must be safe under concurrent callers.
    """

    async def create_job(self, job: BackupJob) -> str:
        """Create a new job and return its ID."""
        ...

    async def get_job(self, job_id: str) -> Optional[BackupJob]:
        """Retrieve a job by its ID."""
        ...

    async def list_jobs(self, job_filter: Optional[JobFilter] = None) -> List[BackupJob]:
        """List jobs matching the filter, oldest first."""
        ...

    async def update_job_status(
        self, job_id: str, update: JobUpdate, unless_status: Optional[JobStatus] = None
    ) -> bool:
        """
        Apply the explicitly set fields of `update` and touch `updated_at`, atomically skipping the
        write when the job currently has `unless_status`. Return False if nothing was written.
        """
        ...

    async def delete_job(self, job_id: str) -> bool:
        """Delete a job and its history. Return True if successful, False otherwise."""
        ...

    async def append_history(self, record: HistoryRecord) -> str:
        """Store a new history record and return its ID."""
        ...

    async def update_history(self, record_id: str, update: HistoryUpdate) -> bool:
        """Apply a partial update to a history record. Return False if it does not exist."""
        ...

    async def list_history(self, job_id: str, limit: int = 20) -> List[HistoryRecord]:
        """List history records for a job ordered by start_time descending."""
        ...

    async def get_latest_history(self, job_id: str) -> Optional[HistoryRecord]:
        """Get the most recent history record for a job."""
        ...

    async def fail_running_history(self, job_id: str, message: str) -> int:
        """Close every RUNNING record of a job as FAILED with `message`. Return how many were closed."""
        ...

    async def create_storage_provider(self, provider: StorageProvider) -> str:
        """Create a storage provider and return its ID."""
        ...

    async def get_storage_provider(self, provider_id: str) -> Optional[StorageProvider]:
        """Retrieve a storage provider by its ID."""
        ...

    async def save_notification_settings(self, settings: NotificationSettings) -> str:
        """Create or replace a notification recipient."""
        ...

    async def list_notification_settings(self) -> List[NotificationSettings]:
        """List every configured notification recipient."""
        ...
