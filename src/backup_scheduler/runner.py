import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional, Set, Tuple

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_fixed

from backup_scheduler.config import SchedulerSettings
from backup_scheduler.credentials import CredentialResolver
from backup_scheduler.domain.history import HistoryRecord, HistoryStatus
from backup_scheduler.domain.job import BackupJob, JobStatus, JobUpdate, utcnow
from backup_scheduler.domain.provider import ResolvedProvider
from backup_scheduler.errors import ConfigurationError, ExecutionError, NotFoundError, ScheduleError
from backup_scheduler.notifications.dispatcher import dispatch_job_notification
from backup_scheduler.notifications.protocol import NotificationGateway
from backup_scheduler.schedule import next_occurrence
from backup_scheduler.storages.protocol import JobRepository
from backup_scheduler.transfer.protocol import TransferOptions, TransferRequest, TransferResult, TransferTool
from backup_scheduler.transfer.rclone import build_destination
from backup_scheduler.transfer.stats import parse_transfer_stats

logger = logging.getLogger(__name__)

STOPPED_MESSAGE = "Job stopped manually"
SHUTDOWN_MESSAGE = "Backup interrupted because the scheduler shut down"


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ExecutionError) and error.retryable


class JobRunner:
    """
    Executes one backup job: resolves credentials, runs the transfer tool with a bounded
    retry budget, and records the outcome on the job and in its history.

    `execute` never raises for job-level problems. Every failure is turned into persisted
    state so one bad job cannot stop the scheduler.
    """

    def __init__(
        self,
        repository: JobRepository,
        transfer_tool: TransferTool,
        credentials: Optional[CredentialResolver] = None,
        notifier: Optional[NotificationGateway] = None,
        settings: Optional[SchedulerSettings] = None,
    ):
        self.repository = repository
        self.transfer_tool = transfer_tool
        self.credentials = credentials or CredentialResolver(repository)
        self.notifier = notifier
        self.settings = settings or SchedulerSettings()
        self._executing: Set[str] = set()
        self._transfers: Dict[str, asyncio.Task] = {}
        self._stop_requested: Set[str] = set()

    def is_executing(self, job_id: str) -> bool:
        return job_id in self._executing

    async def cancel(self, job_id: str) -> bool:
        """
        Ask a running execution to stop. The transfer subprocess is killed and the execution
        is recorded as failed with "Job stopped manually". Returns False if the job is not
        executing in this runner.
        """
        if job_id not in self._executing:
            return False
        self._stop_requested.add(job_id)
        transfer = self._transfers.get(job_id)
        if transfer is not None and not transfer.done():
            transfer.cancel()
        logger.info("Stop requested for running job %s", job_id)
        return True

    async def execute(self, job_id: str) -> Optional[HistoryRecord]:
        """
        Run a job once. Returns the terminal history record, or None when nothing was
        recorded (the job does not exist or is paused).
        """
        self._executing.add(job_id)
        try:
            return await self._execute(job_id)
        finally:
            self._executing.discard(job_id)
            self._transfers.pop(job_id, None)
            self._stop_requested.discard(job_id)

    async def _execute(self, job_id: str) -> Optional[HistoryRecord]:
        job = await self.repository.get_job(job_id)
        if job is None:
            logger.error("Cannot run backup job %s: %s", job_id, NotFoundError(f"Backup job with ID {job_id} not found"))
            return None
        if job.is_paused:
            logger.info("Backup job %s (%s) is paused, skipping execution", job.id, job.name)
            return None

        logger.info("Starting backup job %s (%s)", job.id, job.name)
        try:
            provider = await self.credentials.resolve(job.storage_provider_id)
        except ConfigurationError as e:
            return await self._record_configuration_error(job, e)

        if not await self.repository.update_job_status(job.id, JobUpdate(status=JobStatus.IN_PROGRESS)):
            logger.error("Backup job %s vanished before it could start", job.id)
            return None
        record = HistoryRecord(job_id=job.id, message="Job started")
        await self.repository.append_history(record)

        if job.id in self._stop_requested:
            logger.warning("Backup job %s stopped manually before the transfer started", job.id)
            return await self._finish(job, record, success=False, message=STOPPED_MESSAGE)

        transfer = asyncio.create_task(self._run_transfer(job, self._build_request(job, provider)))
        self._transfers[job.id] = transfer
        try:
            result = await transfer
        except asyncio.CancelledError:
            if job.id in self._stop_requested and not self._is_cancelling():
                logger.warning("Backup job %s stopped manually", job.id)
                return await self._finish(job, record, success=False, message=STOPPED_MESSAGE)
            await asyncio.shield(self._finish(job, record, success=False, message=SHUTDOWN_MESSAGE))
            raise
        except ExecutionError as e:
            logger.error("Backup job %s failed: %s", job.id, e)
            return await self._finish(job, record, success=False, message=self._describe_failure(e), completed=True)
        except Exception as e:
            logger.exception("Unexpected error while running backup job %s", job.id)
            return await self._finish(job, record, success=False, message=f"Error: {e}")

        stats = parse_transfer_stats(result.stdout)
        if stats.is_empty:
            # rclone logs its stats to stderr unless --progress is used
            stats = parse_transfer_stats(result.stderr)
        logger.info(
            "Backup job %s completed successfully. Size: %d bytes, Files transferred: %d, Files deleted: %d",
            job.id, stats.bytes_transferred, stats.files_transferred, stats.files_deleted,
        )
        return await self._finish(
            job, record, success=True, message=stats.summary, size_bytes=stats.bytes_transferred, completed=True
        )

    def _build_request(self, job: BackupJob, provider: ResolvedProvider) -> TransferRequest:
        return TransferRequest(
            source_path=job.source_path,
            destination=build_destination(provider.alias, provider.bucket, job.remote_path),
            provider=provider,
            options=TransferOptions.for_job(job, self.settings.default_compression_level),
            timeout=self.settings.transfer_timeout_seconds,
        )

    async def _run_transfer(self, job: BackupJob, request: TransferRequest) -> TransferResult:
        """
        Invoke the transfer tool, retrying spawn failures and non-zero exits up to the
        configured attempt budget. The last failure is re-raised as ExecutionError.
        """
        max_attempts = self.settings.max_attempts

        def log_attempt(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "Failed to run job %s (attempt %d/%d): %s",
                job.id, retry_state.attempt_number, max_attempts, error,
            )

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_fixed(self.settings.retry_wait_seconds),
            retry=retry_if_exception(_is_retryable),
            before_sleep=log_attempt,
            reraise=True,
        ):
            with attempt:
                result = await self.transfer_tool.invoke(request)
                if not result.succeeded:
                    raise ExecutionError(
                        f"Transfer exited with code {result.exit_code}",
                        exit_code=result.exit_code,
                        stderr=result.stderr,
                    )
        return result

    @staticmethod
    def _is_cancelling() -> bool:
        task = asyncio.current_task()
        return task is not None and task.cancelling() > 0

    @staticmethod
    def _describe_failure(error: ExecutionError) -> str:
        message = f"Error: {error}"
        detail = error.stderr.strip()
        if detail:
            message += f": {detail[-500:]}"
        return message

    async def _record_configuration_error(self, job: BackupJob, error: ConfigurationError) -> HistoryRecord:
        logger.error("Backup job %s has a configuration error: %s", job.id, error)
        record = HistoryRecord(job_id=job.id)
        record.finish(HistoryStatus.FAILED, f"Configuration error: {error}")
        await self.repository.append_history(record)
        await self._update_job_after_run(job, success=False, completed=False)
        await self._notify(job, False, record.message)
        return record

    async def _finish(
        self,
        job: BackupJob,
        record: HistoryRecord,
        success: bool,
        message: str,
        size_bytes: Optional[int] = None,
        completed: bool = False,
    ) -> HistoryRecord:
        status = HistoryStatus.SUCCESS if success else HistoryStatus.FAILED
        update = record.finish(status, message, size_bytes=size_bytes if success else None)
        if not await self.repository.update_history(record.id, update):
            logger.error("History record %s for job %s disappeared", record.id, job.id)

        await self._update_job_after_run(job, success=success, completed=completed)
        await self._notify(job, success, message)
        return record

    async def _update_job_after_run(self, job: BackupJob, success: bool, completed: bool) -> None:
        """
        Write the outcome to the job row. A pause or delete that lands during the run, or
        during this write, wins over the outcome of the run.
        """
        now = utcnow()
        current = await self.repository.get_job(job.id)
        if current is None:
            logger.warning("Backup job %s was deleted while running, not updating it", job.id)
            return

        if not current.is_paused:
            fields = {}
            if completed:
                fields["last_run"] = now
            fields["status"], fields["next_run"] = self._next_state(current, success, now)
            if await self.repository.update_job_status(job.id, JobUpdate(**fields), unless_status=JobStatus.PAUSED):
                return
            if await self.repository.get_job(job.id) is None:
                logger.warning("Backup job %s was deleted before its outcome could be saved", job.id)
                return

        # pausing already cleared next_run
        logger.info("Backup job %s was paused while running, keeping it paused", job.id)
        if completed:
            await self.repository.update_job_status(job.id, JobUpdate(last_run=now))

    @staticmethod
    def _next_state(job: BackupJob, success: bool, now: datetime) -> Tuple[JobStatus, Optional[datetime]]:
        status = JobStatus.ACTIVE if success else JobStatus.FAILED
        if not job.has_schedule:
            return status, None
        try:
            return status, next_occurrence(job.schedule, now)
        except ScheduleError as e:
            logger.error("Backup job %s has an invalid schedule: %s", job.id, e)
            return JobStatus.FAILED, None

    async def _notify(self, job: BackupJob, success: bool, message: str) -> None:
        if self.notifier is None or not job.notifications:
            return
        try:
            recipients = await self.repository.list_notification_settings()
            await dispatch_job_notification(self.notifier, recipients, job.name, success, message)
        except Exception as e:
            logger.error("Failed to send notifications for job %s: %s", job.id, e)
