import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel

from backup_scheduler.config import SchedulerSettings
from backup_scheduler.domain.history import HistoryRecord, HistoryStatus
from backup_scheduler.domain.job import BackupJob, JobFilter, JobStatus, JobUpdate, ensure_utc, utcnow
from backup_scheduler.errors import ScheduleError
from backup_scheduler.schedule import next_occurrence
from backup_scheduler.storages.protocol import JobRepository

logger = logging.getLogger(__name__)

STUCK_MESSAGE = "Job was stuck in progress for too long and was automatically reset"
ABANDONED_MESSAGE = "Backup did not finish, the run was abandoned"


class ReconcileReport(BaseModel):
    rescheduled: int = 0
    cleared: int = 0
    reset: int = 0
    invalid_schedules: int = 0
    errors: int = 0

    @property
    def changed(self) -> int:
        return self.rescheduled + self.cleared + self.reset + self.invalid_schedules


class Reconciler:
    """
    Repairs scheduling metadata from the repository alone.

    A pass resets jobs stuck in progress, recomputes `next_run` for schedulable jobs and clears
    it for paused ones. Jobs registered in the execution gate belong to a live execution and
    are left alone. Each job is handled on its own so one bad row cannot abort the pass.
    """

    def __init__(
        self,
        repository: JobRepository,
        is_registered: Optional[Callable[[str], bool]] = None,
        settings: Optional[SchedulerSettings] = None,
    ):
        self.repository = repository
        self.is_registered = is_registered or (lambda job_id: False)
        self.settings = settings or SchedulerSettings()

    async def reconcile(self, now: Optional[datetime] = None) -> ReconcileReport:
        now = ensure_utc(now) if now else utcnow()
        report = ReconcileReport()

        stale_before = now - timedelta(seconds=self.settings.stale_after_seconds)
        stuck = await self.repository.list_jobs(
            JobFilter(statuses=[JobStatus.IN_PROGRESS], updated_before=stale_before)
        )
        for job in stuck:
            if self.is_registered(job.id):
                continue
            await self._guard(job, report, self._reset_stuck(job, now, report))

        schedulable = await self.repository.list_jobs(
            JobFilter(statuses=[JobStatus.ACTIVE, JobStatus.FAILED], has_schedule=True)
        )
        for job in schedulable:
            if self.is_registered(job.id):
                continue
            await self._guard(job, report, self._reschedule(job, now, report))

        paused = await self.repository.list_jobs(JobFilter(statuses=[JobStatus.PAUSED]))
        for job in paused:
            if job.next_run is None:
                continue
            await self._guard(job, report, self._clear_next_run(job, report))

        if report.changed or report.errors:
            logger.info(
                "Reconciliation finished: %d rescheduled, %d cleared, %d reset, %d invalid schedules, %d errors",
                report.rescheduled, report.cleared, report.reset, report.invalid_schedules, report.errors,
            )
        return report

    @staticmethod
    async def _guard(job: BackupJob, report: ReconcileReport, step) -> None:
        try:
            await step
        except Exception:
            report.errors += 1
            logger.exception("Failed to reconcile backup job %s (%s)", job.id, job.name)

    async def _reset_stuck(self, job: BackupJob, now: datetime, report: ReconcileReport) -> None:
        logger.warning(
            "Backup job %s (%s) has been in progress since %s, resetting it",
            job.id, job.name, job.updated_at.isoformat(),
        )
        closed = await self.repository.fail_running_history(job.id, ABANDONED_MESSAGE)
        if closed:
            logger.info("Closed %d dangling run(s) of backup job %s", closed, job.id)

        record = HistoryRecord(job_id=job.id, start_time=now)
        record.finish(HistoryStatus.FAILED, STUCK_MESSAGE, end_time=now)
        await self.repository.append_history(record)

        next_run = None
        if job.has_schedule:
            try:
                next_run = next_occurrence(job.schedule, now)
            except ScheduleError as e:
                logger.error("Backup job %s has an invalid schedule: %s", job.id, e)
        await self.repository.update_job_status(job.id, JobUpdate(status=JobStatus.FAILED, next_run=next_run))
        report.reset += 1

    async def _reschedule(self, job: BackupJob, now: datetime, report: ReconcileReport) -> None:
        if job.status == JobStatus.FAILED and job.next_run is not None and job.next_run > now:
            return
        try:
            next_run = next_occurrence(job.schedule, now)
        except ScheduleError as e:
            if job.status == JobStatus.FAILED and job.next_run is None:
                return
            logger.error("Backup job %s (%s) has an invalid schedule, marking it failed: %s", job.id, job.name, e)
            await self.repository.update_job_status(job.id, JobUpdate(status=JobStatus.FAILED, next_run=None))
            report.invalid_schedules += 1
            return

        if job.next_run == next_run:
            return
        logger.debug("Rescheduling backup job %s from %s to %s", job.id, job.next_run, next_run)
        await self.repository.update_job_status(job.id, JobUpdate(next_run=next_run))
        report.rescheduled += 1

    async def _clear_next_run(self, job: BackupJob, report: ReconcileReport) -> None:
        logger.debug("Clearing next run of paused backup job %s", job.id)
        await self.repository.update_job_status(job.id, JobUpdate(next_run=None))
        report.cleared += 1
