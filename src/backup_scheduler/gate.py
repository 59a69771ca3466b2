import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

JobHandler = Callable[[str], Awaitable[object]]


class ExecutionGate:
    """
    Admission control for job executions.

    Job ids are queued FIFO and drained by `workers` loops. A job id that is already queued or
    running is never admitted a second time, so at most one execution per job exists at any
    instant. With the default single worker executions are fully serialized.
    """

    def __init__(self, handler: JobHandler, workers: int = 1):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.handler = handler
        self.workers = workers
        self._queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._pending: Set[str] = set()
        self._running: Dict[str, asyncio.Event] = {}
        self._drain_tasks: List[asyncio.Task] = []
        self._accepting = False

    @property
    def is_started(self) -> bool:
        return bool(self._drain_tasks)

    @property
    def running_jobs(self) -> List[str]:
        return list(self._running)

    @property
    def pending_jobs(self) -> List[str]:
        return list(self._pending)

    def is_running(self, job_id: str) -> bool:
        return job_id in self._running

    def is_pending(self, job_id: str) -> bool:
        return job_id in self._pending

    def is_registered(self, job_id: str) -> bool:
        return job_id in self._running or job_id in self._pending

    def start(self) -> None:
        if self._drain_tasks:
            return
        self._accepting = True
        self._drain_tasks = [
            asyncio.create_task(self._drain(), name=f"execution-gate-{index}")
            for index in range(self.workers)
        ]
        logger.info("Execution gate started with %d worker(s)", self.workers)

    def enqueue(self, job_id: str) -> bool:
        """
        Queue a job for execution. Returns False, without queuing, when the job is already
        queued or running or when the gate no longer accepts work.
        """
        if not self._accepting:
            logger.warning("Execution gate is closed, not accepting job %s", job_id)
            return False
        if job_id in self._running:
            logger.info("Job %s is already running, ignoring trigger", job_id)
            return False
        if job_id in self._pending:
            logger.info("Job %s is already queued, ignoring trigger", job_id)
            return False
        self._pending.add(job_id)
        self._queue.put_nowait(job_id)
        logger.debug("Queued job %s (%d pending)", job_id, len(self._pending))
        return True

    def discard(self, job_id: str) -> bool:
        """
        Drop a queued job before it starts. Running jobs are not affected.
        """
        if job_id in self._pending:
            self._pending.discard(job_id)
            logger.info("Removed queued job %s", job_id)
            return True
        return False

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """
        Wait until the job is no longer running. Returns False on timeout.
        """
        event = self._running.get(job_id)
        if event is None:
            return True
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until nothing is queued or running. Returns False on timeout.
        """
        # every admitted id, discarded or not, is marked done by a drain loop
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def close(self, timeout: Optional[float] = None) -> None:
        """
        Stop accepting work, give running executions up to `timeout` seconds to finish, then
        cancel whatever is still in flight. Queued jobs that never started are dropped.
        """
        self._accepting = False
        dropped = len(self._pending)
        self._pending.clear()
        if dropped:
            logger.info("Dropped %d queued job(s) on shutdown", dropped)

        if self._running:
            running = list(self._running.values())
            try:
                await asyncio.wait_for(asyncio.gather(*(event.wait() for event in running)), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Shutdown timeout reached with %d job(s) still running, cancelling",
                               len(self._running))

        for task in self._drain_tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._drain_tasks, return_exceptions=True)
        self._drain_tasks = []
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        logger.info("Execution gate stopped")

    async def _drain(self) -> None:
        while True:
            job_id = await self._queue.get()
            try:
                if job_id not in self._pending:
                    # discarded while queued
                    continue
                self._pending.discard(job_id)
                if job_id in self._running:
                    continue
                done = asyncio.Event()
                self._running[job_id] = done
                try:
                    await self.handler(job_id)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Unhandled error while executing job %s", job_id)
                finally:
                    del self._running[job_id]
                    done.set()
            finally:
                self._queue.task_done()
