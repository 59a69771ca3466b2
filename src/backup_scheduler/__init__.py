"""
Backup Scheduling System

This package runs scheduled backup jobs that copy local paths to remote object storage.

Core Concepts:

BackupJob:
    A BackupJob is a persisted backup definition: what to copy, where to copy it, and a cron
    schedule saying when. It carries the scheduling state (status, next run, last run) but
    does not represent an actual execution.

HistoryRecord:
    A HistoryRecord represents a single execution of a BackupJob, from the moment it is
    admitted until it succeeds or fails.

Components:
    - ExecutionGate admits executions, at most one per job at any instant.
    - JobRunner performs one execution and records its outcome.
    - Reconciler repairs scheduling metadata and resets stuck jobs.
    - BackupScheduler owns the timers and the gate and exposes run/pause/resume/stop.

Relationships:
    - A BackupJob can have multiple HistoryRecord instances, each representing a single execution.
    - A BackupJob references one StorageProvider holding the credentials for its destination.
"""

from .config import SchedulerSettings, SmtpSettings, configure_logging
from .errors import BackupSchedulerError, ConfigurationError, ExecutionError, NotFoundError, ScheduleError
from .gate import ExecutionGate
from .reconciler import ReconcileReport, Reconciler
from .runner import JobRunner
from .schedule import next_occurrence
from .scheduler import BackupScheduler

__all__ = [
    "SchedulerSettings", "SmtpSettings", "configure_logging",
    "BackupSchedulerError", "ConfigurationError", "ExecutionError", "NotFoundError", "ScheduleError",
    "ExecutionGate", "ReconcileReport", "Reconciler", "JobRunner", "next_occurrence", "BackupScheduler",
]
