import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from backup_scheduler.config import SchedulerSettings
from backup_scheduler.domain.history import HistoryRecord, HistoryStatus
from backup_scheduler.domain.job import BackupJob, JobFilter, JobStatus, JobUpdate, ensure_utc, utcnow
from backup_scheduler.errors import ScheduleError
from backup_scheduler.gate import ExecutionGate
from backup_scheduler.reconciler import ReconcileReport, Reconciler
from backup_scheduler.runner import STOPPED_MESSAGE, JobRunner
from backup_scheduler.schedule import next_occurrence
from backup_scheduler.storages.protocol import JobRepository

logger = logging.getLogger(__name__)


class BackupScheduler:
    """
    Owns the timers and the execution gate of one engine instance.

    A tick loop admits jobs whose `next_run` has passed and a reconciliation loop repairs
    scheduling metadata. Construct one per process and pass it to whatever needs it.
    """

    def __init__(
        self,
        repository: JobRepository,
        runner: JobRunner,
        settings: Optional[SchedulerSettings] = None,
        gate: Optional[ExecutionGate] = None,
        reconciler: Optional[Reconciler] = None,
    ):
        self.repository = repository
        self.runner = runner
        self.settings = settings or runner.settings
        self.gate = gate or ExecutionGate(runner.execute, workers=self.settings.workers)
        self.reconciler = reconciler or Reconciler(repository, self.gate.is_registered, self.settings)
        self.is_running: bool = False
        self._tick_task: Optional[asyncio.Task] = None
        self._reconcile_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """
        Start the gate, run one reconciliation pass, then start the periodic loops.
        """
        if self.is_running:
            return
        self.is_running = True
        self.gate.start()
        try:
            await self.reconcile_now()
        except Exception:
            logger.exception("Initial reconciliation failed")
        self._tick_task = asyncio.create_task(self._tick_loop(), name="backup-scheduler-tick")
        self._reconcile_task = asyncio.create_task(self._reconcile_loop(), name="backup-scheduler-reconcile")
        logger.info("Backup scheduler started")

    async def shutdown(self) -> None:
        """
        Stop the timers and close the gate. In-flight executions get `shutdown_timeout_seconds`
        to finish before they are cancelled.
        """
        if not self.is_running:
            return
        self.is_running = False
        loops = [task for task in (self._tick_task, self._reconcile_task) if task is not None]
        for task in loops:
            task.cancel()
        await asyncio.gather(*loops, return_exceptions=True)
        self._tick_task = None
        self._reconcile_task = None
        await self.gate.close(timeout=self.settings.shutdown_timeout_seconds)
        logger.info("Backup scheduler stopped")

    async def run_now(self, job_id: str) -> bool:
        """
        Queue a job for immediate execution. Returns False when the job does not exist, is
        paused, or is already queued or running.
        """
        job = await self.repository.get_job(job_id)
        if job is None:
            logger.error("Backup job with ID %s not found", job_id)
            return False
        if job.is_paused:
            logger.info("Backup job %s is paused, not running it", job_id)
            return False
        if job.status == JobStatus.IN_PROGRESS and not self.gate.is_registered(job_id):
            logger.warning("Backup job %s is marked in progress by a run this scheduler does not own", job_id)
            return False
        return self.gate.enqueue(job_id)

    async def pause(self, job_id: str) -> bool:
        """
        Pause a job and clear its next run. A queued execution is dropped; a running one is
        left to finish and the job stays paused afterwards.
        """
        job = await self.repository.get_job(job_id)
        if job is None:
            logger.error("Backup job with ID %s not found", job_id)
            return False
        self.gate.discard(job_id)
        if not await self.repository.update_job_status(job_id, JobUpdate(status=JobStatus.PAUSED, next_run=None)):
            return False
        logger.info("Paused backup job %s (%s)", job.id, job.name)
        return True

    async def resume(self, job_id: str) -> bool:
        job = await self.repository.get_job(job_id)
        if job is None:
            logger.error("Backup job with ID %s not found", job_id)
            return False
        if not job.is_paused:
            logger.info("Backup job %s is not paused (status: %s)", job_id, job.status.value)
            return False

        status, next_run = JobStatus.ACTIVE, None
        if job.has_schedule:
            try:
                next_run = next_occurrence(job.schedule, utcnow())
            except ScheduleError as e:
                logger.error("Cannot schedule resumed backup job %s: %s", job_id, e)
                status = JobStatus.FAILED
        if not await self.repository.update_job_status(job_id, JobUpdate(status=status, next_run=next_run)):
            return False
        logger.info("Resumed backup job %s (%s), next run at %s", job.id, job.name, next_run)
        return True

    async def stop(self, job_id: str) -> bool:
        """
        Abandon a job's current run. A running execution has its transfer killed and is
        recorded as "Job stopped manually". A queued one is dropped. A job left in progress by
        a run that no longer exists is marked failed directly.

        Returns False when the job does not exist or has nothing to stop.
        """
        if self.runner.is_executing(job_id):
            await self.runner.cancel(job_id)
            if not await self.gate.wait_for(job_id, timeout=self.settings.shutdown_timeout_seconds):
                logger.warning("Backup job %s did not stop within %s seconds",
                               job_id, self.settings.shutdown_timeout_seconds)
            return True
        if self.gate.discard(job_id):
            return True

        job = await self.repository.get_job(job_id)
        if job is None:
            logger.error("Backup job with ID %s not found", job_id)
            return False
        if job.status != JobStatus.IN_PROGRESS:
            logger.info("Backup job %s is not running (status: %s)", job_id, job.status.value)
            return False

        now = utcnow()
        if not await self.repository.fail_running_history(job_id, STOPPED_MESSAGE):
            record = HistoryRecord(job_id=job_id, start_time=now)
            record.finish(HistoryStatus.FAILED, STOPPED_MESSAGE, end_time=now)
            await self.repository.append_history(record)
        await self.repository.update_job_status(
            job_id, JobUpdate(status=JobStatus.FAILED, next_run=self._next_run_or_none(job, now))
        )
        logger.info("Stopped backup job %s (%s)", job.id, job.name)
        return True

    async def sweep(self, now: Optional[datetime] = None) -> List[str]:
        """
        Admit every schedulable job whose next run is due. Returns the admitted job ids.
        """
        now = ensure_utc(now) if now else utcnow()
        due = await self.repository.list_jobs(
            JobFilter(statuses=[JobStatus.ACTIVE, JobStatus.FAILED], has_schedule=True, due_before=now)
        )
        admitted = []
        for job in due:
            if self.gate.is_registered(job.id):
                continue
            if self.gate.enqueue(job.id):
                logger.info("Backup job %s (%s) is due, queued for execution", job.id, job.name)
                admitted.append(job.id)
        return admitted

    async def reconcile_now(self, now: Optional[datetime] = None) -> ReconcileReport:
        """
        Admit due jobs, then run one reconciliation pass.
        """
        await self.sweep(now)
        return await self.reconciler.reconcile(now)

    @staticmethod
    def _next_run_or_none(job: BackupJob, now: datetime) -> Optional[datetime]:
        if not job.has_schedule:
            return None
        try:
            return next_occurrence(job.schedule, now)
        except ScheduleError as e:
            logger.error("Backup job %s has an invalid schedule: %s", job.id, e)
            return None

    async def _tick_loop(self) -> None:
        while self.is_running:
            await asyncio.sleep(self.settings.tick_interval_seconds)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Error while admitting due backup jobs")

    async def _reconcile_loop(self) -> None:
        while self.is_running:
            await asyncio.sleep(self.settings.reconcile_interval_seconds)
            try:
                await self.reconcile_now()
            except Exception:
                logger.exception("Error while reconciling backup jobs")
