from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from backup_scheduler.domain.history import HistoryRecord, HistoryStatus
from backup_scheduler.domain.job import BackupJob, JobFilter, JobStatus, JobUpdate
from backup_scheduler.domain.notification import NotificationSettings
from backup_scheduler.domain.provider import StorageProvider
from backup_scheduler.storages.sqlalchemy import InMemoryJobRepository, SqlAlchemyJobRepository


@pytest_asyncio.fixture
async def sqlite_storage():
    storage = InMemoryJobRepository()
    await storage.create_tables()
    yield storage
    await storage.close()


def _job(**overrides) -> BackupJob:
    fields = dict(
        name="Test Job",
        source_path="/data",
        remote_path="/data",
        storage_provider_id="sp_test",
        schedule="0 0 * * *",
    )
    fields.update(overrides)
    return BackupJob(**fields)


@pytest.mark.asyncio
async def test_create_and_get_job(sqlite_storage: SqlAlchemyJobRepository):
    job = _job(
        id="job_test_1",
        compression_enabled=True,
        compression_level=4,
        transfer_concurrency=8,
        delete_extraneous=False,
        next_run=datetime(2024, 1, 2, tzinfo=timezone.utc),
    )

    # Create job
    job_id = await sqlite_storage.create_job(job)
    assert job_id == "job_test_1"

    # Get job
    retrieved_job = await sqlite_storage.get_job(job_id)
    assert retrieved_job is not None
    assert retrieved_job.name == job.name
    assert retrieved_job.schedule == job.schedule
    assert retrieved_job.status == JobStatus.ACTIVE
    assert retrieved_job.compression_enabled is True
    assert retrieved_job.compression_level == 4
    assert retrieved_job.transfer_concurrency == 8
    assert retrieved_job.delete_extraneous is False
    assert retrieved_job.next_run == job.next_run
    assert retrieved_job.next_run.tzinfo is not None


@pytest.mark.asyncio
async def test_get_missing_job(sqlite_storage: SqlAlchemyJobRepository):
    assert await sqlite_storage.get_job("job_missing") is None


@pytest.mark.asyncio
async def test_update_job_status_applies_only_set_fields(sqlite_storage: SqlAlchemyJobRepository):
    next_run = datetime(2024, 1, 2, tzinfo=timezone.utc)
    job = _job(next_run=next_run)
    await sqlite_storage.create_job(job)

    assert await sqlite_storage.update_job_status(job.id, JobUpdate(status=JobStatus.IN_PROGRESS))
    updated = await sqlite_storage.get_job(job.id)
    assert updated.status == JobStatus.IN_PROGRESS
    assert updated.next_run == next_run
    assert updated.updated_at >= job.updated_at

    last_run = datetime(2024, 1, 1, 23, 0, tzinfo=timezone.utc)
    assert await sqlite_storage.update_job_status(job.id, JobUpdate(next_run=None, last_run=last_run))
    updated = await sqlite_storage.get_job(job.id)
    assert updated.status == JobStatus.IN_PROGRESS
    assert updated.next_run is None
    assert updated.last_run == last_run


@pytest.mark.asyncio
async def test_update_job_status_skips_guarded_status(sqlite_storage: SqlAlchemyJobRepository):
    job = _job(status=JobStatus.PAUSED)
    await sqlite_storage.create_job(job)
    next_run = datetime(2024, 1, 2, tzinfo=timezone.utc)

    written = await sqlite_storage.update_job_status(
        job.id, JobUpdate(status=JobStatus.ACTIVE, next_run=next_run), unless_status=JobStatus.PAUSED
    )
    assert not written
    stored = await sqlite_storage.get_job(job.id)
    assert stored.status == JobStatus.PAUSED
    assert stored.next_run is None

    assert await sqlite_storage.update_job_status(
        job.id, JobUpdate(status=JobStatus.ACTIVE, next_run=next_run), unless_status=JobStatus.FAILED
    )
    assert (await sqlite_storage.get_job(job.id)).status == JobStatus.ACTIVE


@pytest.mark.asyncio
async def test_update_missing_job_returns_false(sqlite_storage: SqlAlchemyJobRepository):
    assert not await sqlite_storage.update_job_status("job_missing", JobUpdate(status=JobStatus.FAILED))


@pytest.mark.asyncio
async def test_list_jobs_with_filter(sqlite_storage: SqlAlchemyJobRepository):
    now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    due = _job(name="due", created_at=now - timedelta(hours=4), next_run=now - timedelta(minutes=5))
    later = _job(name="later", created_at=now - timedelta(hours=3), next_run=now + timedelta(hours=1))
    unscheduled = _job(name="unscheduled", created_at=now - timedelta(hours=2), schedule="")
    paused = _job(name="paused", created_at=now - timedelta(hours=1), status=JobStatus.PAUSED)
    for job in (due, later, unscheduled, paused):
        await sqlite_storage.create_job(job)

    all_jobs = await sqlite_storage.list_jobs()
    assert [job.name for job in all_jobs] == ["due", "later", "unscheduled", "paused"]

    scheduled = await sqlite_storage.list_jobs(JobFilter(statuses=[JobStatus.ACTIVE], has_schedule=True))
    assert {job.name for job in scheduled} == {"due", "later"}

    due_jobs = await sqlite_storage.list_jobs(JobFilter(due_before=now))
    assert [job.name for job in due_jobs] == ["due"]

    without_schedule = await sqlite_storage.list_jobs(JobFilter(has_schedule=False))
    assert [job.name for job in without_schedule] == ["unscheduled"]


@pytest.mark.asyncio
async def test_list_jobs_updated_before(sqlite_storage: SqlAlchemyJobRepository):
    old = _job(name="old", updated_at=datetime(2020, 1, 1, tzinfo=timezone.utc))
    fresh = _job(name="fresh")
    await sqlite_storage.create_job(old)
    await sqlite_storage.create_job(fresh)

    stale = await sqlite_storage.list_jobs(JobFilter(updated_before=datetime(2021, 1, 1, tzinfo=timezone.utc)))
    assert [job.name for job in stale] == ["old"]


@pytest.mark.asyncio
async def test_history_lifecycle(sqlite_storage: SqlAlchemyJobRepository):
    job = _job()
    await sqlite_storage.create_job(job)

    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    first = HistoryRecord(job_id=job.id, start_time=start)
    second = HistoryRecord(job_id=job.id, start_time=start + timedelta(hours=1))
    await sqlite_storage.append_history(first)
    await sqlite_storage.append_history(second)

    update = second.finish(HistoryStatus.SUCCESS, "done", size_bytes=1024, end_time=start + timedelta(hours=2))
    assert await sqlite_storage.update_history(second.id, update)

    records = await sqlite_storage.list_history(job.id)
    assert [record.id for record in records] == [second.id, first.id]
    assert records[0].status == HistoryStatus.SUCCESS
    assert records[0].size_bytes == 1024
    assert records[0].duration_seconds == 3600
    assert records[1].status == HistoryStatus.RUNNING

    latest = await sqlite_storage.get_latest_history(job.id)
    assert latest.id == second.id
    assert await sqlite_storage.get_latest_history("job_missing") is None


@pytest.mark.asyncio
async def test_fail_running_history(sqlite_storage: SqlAlchemyJobRepository):
    job = _job()
    await sqlite_storage.create_job(job)
    running = HistoryRecord(job_id=job.id)
    done = HistoryRecord(job_id=job.id)
    await sqlite_storage.append_history(running)
    await sqlite_storage.append_history(done)
    await sqlite_storage.update_history(done.id, done.finish(HistoryStatus.SUCCESS, "done"))

    assert await sqlite_storage.fail_running_history(job.id, "abandoned") == 1
    assert await sqlite_storage.fail_running_history(job.id, "abandoned") == 0

    records = {record.id: record for record in await sqlite_storage.list_history(job.id)}
    assert records[running.id].status == HistoryStatus.FAILED
    assert records[running.id].message == "abandoned"
    assert records[running.id].end_time is not None
    assert records[done.id].message == "done"


@pytest.mark.asyncio
async def test_delete_job_removes_history(sqlite_storage: SqlAlchemyJobRepository):
    job = _job()
    await sqlite_storage.create_job(job)
    await sqlite_storage.append_history(HistoryRecord(job_id=job.id))

    assert await sqlite_storage.delete_job(job.id)
    assert await sqlite_storage.get_job(job.id) is None
    assert await sqlite_storage.list_history(job.id) == []
    assert not await sqlite_storage.delete_job(job.id)


@pytest.mark.asyncio
async def test_storage_provider_round_trip(sqlite_storage: SqlAlchemyJobRepository):
    provider = StorageProvider(name="offsite", type="b2", config='{"bucket": "b"}')
    await sqlite_storage.create_storage_provider(provider)

    retrieved = await sqlite_storage.get_storage_provider(provider.id)
    assert retrieved.name == "offsite"
    assert retrieved.type == "b2"
    assert retrieved.config == '{"bucket": "b"}'
    assert await sqlite_storage.get_storage_provider("sp_missing") is None


@pytest.mark.asyncio
async def test_notification_settings_are_replaced_by_id(sqlite_storage: SqlAlchemyJobRepository):
    settings = NotificationSettings(id="ns_ops", email="ops@example.com")
    await sqlite_storage.save_notification_settings(settings)
    await sqlite_storage.save_notification_settings(
        NotificationSettings(id="ns_ops", email="ops@example.com", on_success=False)
    )
    await sqlite_storage.save_notification_settings(NotificationSettings(id="ns_dev", email="dev@example.com"))

    stored = await sqlite_storage.list_notification_settings()
    assert [item.id for item in stored] == ["ns_dev", "ns_ops"]
    assert stored[1].on_success is False
