import asyncio
import json
from typing import List, Optional

import pytest
import pytest_asyncio

from backup_scheduler.config import SchedulerSettings
from backup_scheduler.domain.job import BackupJob
from backup_scheduler.domain.notification import NotificationMessage
from backup_scheduler.domain.provider import StorageProvider
from backup_scheduler.storages.sqlalchemy import SqlAlchemyJobRepository
from backup_scheduler.transfer.protocol import TransferRequest, TransferResult

RCLONE_OUTPUT = """\
Transferred:   	    2.500 MiB / 2.500 MiB, 100%, 1.2 MiB/s, ETA 0s
Checks:                 4 / 4, 100%
Deleted:                1 (files), 0 (dirs)
Transferred:            3 / 3, 100%
Elapsed time:         2.1s
"""


class FakeTransferTool:
    """
    Stands in for rclone. `outcomes` are consumed one per invocation; an exception is raised,
    a TransferResult is returned. Once exhausted every invocation succeeds.
    """

    def __init__(self, outcomes: Optional[list] = None, delay: float = 0.0):
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.requests: List[TransferRequest] = []
        self.started = asyncio.Event()
        self.cancelled = False

    async def invoke(self, request: TransferRequest) -> TransferResult:
        self.requests.append(request)
        self.started.set()
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        outcome = self.outcomes.pop(0) if self.outcomes else TransferResult(exit_code=0, stdout=RCLONE_OUTPUT)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class RecordingGateway:
    def __init__(self, failing: tuple = ()):
        self.failing = set(failing)
        self.sent: List[NotificationMessage] = []

    async def send(self, message: NotificationMessage) -> None:
        if message.recipient in self.failing:
            raise RuntimeError("mailbox unavailable")
        self.sent.append(message)


@pytest.fixture
def settings():
    return SchedulerSettings(
        _env_file=None,
        retry_wait_seconds=0,
        max_attempts=3,
        shutdown_timeout_seconds=5,
        stale_after_seconds=3600,
    )


@pytest_asyncio.fixture
async def repository(tmp_path):
    # a file database gives every session its own connection
    repo = SqlAlchemyJobRepository(f"sqlite+aiosqlite:///{tmp_path / 'backups.db'}")
    await repo.create_tables()
    yield repo
    await repo.close()


@pytest_asyncio.fixture
async def provider(repository):
    provider = StorageProvider(
        id="sp_primary",
        name="primary",
        type="s3",
        config=json.dumps({
            "accessKeyId": "AKIAEXAMPLE",
            "secretAccessKey": "secret",
            "bucket": "backups",
            "region": "eu-west-1",
        }),
    )
    await repository.create_storage_provider(provider)
    return provider


@pytest.fixture
def make_job(repository, provider):
    async def _make(**overrides) -> BackupJob:
        fields = dict(
            name="Documents",
            source_path="/data/documents",
            remote_path="/documents",
            storage_provider_id=provider.id,
            schedule="0 0 * * *",
        )
        fields.update(overrides)
        job = BackupJob(**fields)
        await repository.create_job(job)
        return job

    return _make
