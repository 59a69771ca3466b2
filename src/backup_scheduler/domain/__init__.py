from .job import BackupJob, JobStatus, JobUpdate, JobFilter
from .history import HistoryRecord, HistoryStatus, HistoryUpdate
from .provider import (
    StorageProvider,
    S3Credentials,
    B2Credentials,
    StorjCredentials,
    StorageCredentials,
    ResolvedProvider,
)
from .notification import NotificationSettings, NotificationMessage, NotificationBody

__all__ = [
    "BackupJob", "JobStatus", "JobUpdate", "JobFilter",
    "HistoryRecord", "HistoryStatus", "HistoryUpdate",
    "StorageProvider", "S3Credentials", "B2Credentials", "StorjCredentials", "StorageCredentials",
    "ResolvedProvider",
    "NotificationSettings", "NotificationMessage", "NotificationBody",
]
