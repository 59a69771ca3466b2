from typing import List, Optional

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text, and_, func
from sqlalchemy import update as sql_update
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.future import select
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from backup_scheduler.domain.history import HistoryRecord, HistoryStatus, HistoryUpdate
from backup_scheduler.domain.job import BackupJob, JobFilter, JobStatus, JobUpdate, ensure_utc, utcnow
from backup_scheduler.domain.notification import NotificationSettings
from backup_scheduler.domain.provider import StorageProvider
from backup_scheduler.storages.protocol import JobRepository

Base = declarative_base()


class StorageProviderModel(Base):
    __tablename__ = 'storage_providers'

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False)
    config = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)


class BackupJobModel(Base):
    __tablename__ = 'backup_jobs'

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    source_path = Column(String, nullable=False)
    remote_path = Column(String, nullable=False)
    storage_provider_id = Column(String, ForeignKey('storage_providers.id'), nullable=False)
    schedule = Column(String, nullable=False, default="")
    status = Column(String, nullable=False)
    next_run = Column(DateTime(timezone=True))
    last_run = Column(DateTime(timezone=True))
    retention_period_days = Column(Integer)
    compression_enabled = Column(Boolean, default=False)
    compression_level = Column(Integer)
    transfer_concurrency = Column(Integer)
    delete_extraneous = Column(Boolean, default=True)
    notifications = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class BackupHistoryModel(Base):
    __tablename__ = 'backup_history'

    id = Column(String, primary_key=True)
    job_id = Column(String, ForeignKey('backup_jobs.id'), nullable=False, index=True)
    status = Column(String, nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True))
    duration_seconds = Column(Float)
    size_bytes = Column(Integer)
    message = Column(Text)


class NotificationSettingsModel(Base):
    __tablename__ = 'notification_settings'

    id = Column(String, primary_key=True)
    email = Column(String)
    on_success = Column(Boolean, default=True)
    on_failure = Column(Boolean, default=True)


class SqlAlchemyJobRepository(JobRepository):
    def __init__(self, db_url: str):
        if ":memory:" in db_url:
            # every connection to an in-memory SQLite database would otherwise see an empty one
            self.engine = create_async_engine(db_url, poolclass=StaticPool)
        else:
            self.engine = create_async_engine(db_url)
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        await self.engine.dispose()

    async def create_job(self, job: BackupJob) -> str:
        async with self.async_session() as session:
            db_job = BackupJobModel(
                id=job.id,
                name=job.name,
                source_path=job.source_path,
                remote_path=job.remote_path,
                storage_provider_id=job.storage_provider_id,
                schedule=job.schedule,
                status=job.status.value,
                next_run=job.next_run,
                last_run=job.last_run,
                retention_period_days=job.retention_period_days,
                compression_enabled=job.compression_enabled,
                compression_level=job.compression_level,
                transfer_concurrency=job.transfer_concurrency,
                delete_extraneous=job.delete_extraneous,
                notifications=job.notifications,
                created_at=job.created_at,
                updated_at=job.updated_at
            )
            session.add(db_job)
            await session.commit()
            return job.id

    async def get_job(self, job_id: str) -> Optional[BackupJob]:
        async with self.async_session() as session:
            result = await session.execute(select(BackupJobModel).filter_by(id=job_id))
            db_job = result.scalar_one_or_none()
            if db_job:
                return self._db_to_job(db_job)
            return None

    async def list_jobs(self, job_filter: Optional[JobFilter] = None) -> List[BackupJob]:
        query = select(BackupJobModel)
        if job_filter is not None:
            conditions = []
            if job_filter.statuses is not None:
                conditions.append(BackupJobModel.status.in_([status.value for status in job_filter.statuses]))
            if job_filter.has_schedule is True:
                conditions.append(func.trim(func.coalesce(BackupJobModel.schedule, "")) != "")
            elif job_filter.has_schedule is False:
                conditions.append(func.trim(func.coalesce(BackupJobModel.schedule, "")) == "")
            if job_filter.due_before is not None:
                conditions.append(BackupJobModel.next_run.isnot(None))
                conditions.append(BackupJobModel.next_run <= ensure_utc(job_filter.due_before))
            if job_filter.updated_before is not None:
                conditions.append(BackupJobModel.updated_at < ensure_utc(job_filter.updated_before))
            if conditions:
                query = query.where(and_(*conditions))

        async with self.async_session() as session:
            result = await session.execute(query.order_by(BackupJobModel.created_at))
            return [self._db_to_job(db_job) for db_job in result.scalars()]

    async def update_job_status(
        self, job_id: str, update: JobUpdate, unless_status: Optional[JobStatus] = None
    ) -> bool:
        changes = update.changes()
        values = {"updated_at": utcnow()}
        if changes.get("status") is not None:
            values["status"] = JobStatus(changes["status"]).value
        if "next_run" in changes:
            values["next_run"] = ensure_utc(changes["next_run"])
        if "last_run" in changes:
            values["last_run"] = ensure_utc(changes["last_run"])

        # guard and write in one statement
        statement = sql_update(BackupJobModel).where(BackupJobModel.id == job_id)
        if unless_status is not None:
            statement = statement.where(BackupJobModel.status != JobStatus(unless_status).value)
        async with self.async_session() as session:
            result = await session.execute(statement.values(**values))
            await session.commit()
            return result.rowcount > 0

    async def delete_job(self, job_id: str) -> bool:
        async with self.async_session() as session:
            result = await session.execute(select(BackupJobModel).filter_by(id=job_id))
            db_job = result.scalar_one_or_none()
            if db_job:
                history = await session.execute(select(BackupHistoryModel).filter_by(job_id=job_id))
                for db_record in history.scalars():
                    await session.delete(db_record)
                await session.delete(db_job)
                await session.commit()
                return True
            return False

    async def append_history(self, record: HistoryRecord) -> str:
        async with self.async_session() as session:
            db_record = BackupHistoryModel(
                id=record.id,
                job_id=record.job_id,
                status=record.status.value,
                start_time=record.start_time,
                end_time=record.end_time,
                duration_seconds=record.duration_seconds,
                size_bytes=record.size_bytes,
                message=record.message
            )
            session.add(db_record)
            await session.commit()
            return record.id

    async def update_history(self, record_id: str, update: HistoryUpdate) -> bool:
        changes = update.changes()
        async with self.async_session() as session:
            result = await session.execute(select(BackupHistoryModel).filter_by(id=record_id))
            db_record = result.scalar_one_or_none()
            if db_record:
                db_record.status = HistoryStatus(changes["status"]).value
                for field in ("end_time", "duration_seconds", "size_bytes", "message"):
                    if field in changes:
                        setattr(db_record, field, changes[field])
                await session.commit()
                return True
            return False

    async def list_history(self, job_id: str, limit: int = 20) -> List[HistoryRecord]:
        async with self.async_session() as session:
            result = await session.execute(
                select(BackupHistoryModel)
                .filter_by(job_id=job_id)
                .order_by(BackupHistoryModel.start_time.desc())
                .limit(limit)
            )
            return [self._db_to_history(db_record) for db_record in result.scalars()]

    async def get_latest_history(self, job_id: str) -> Optional[HistoryRecord]:
        records = await self.list_history(job_id, limit=1)
        return records[0] if records else None

    async def fail_running_history(self, job_id: str, message: str) -> int:
        now = utcnow()
        async with self.async_session() as session:
            result = await session.execute(
                select(BackupHistoryModel)
                .filter_by(job_id=job_id, status=HistoryStatus.RUNNING.value)
            )
            closed = 0
            for db_record in result.scalars():
                db_record.status = HistoryStatus.FAILED.value
                db_record.end_time = now
                db_record.duration_seconds = max((now - ensure_utc(db_record.start_time)).total_seconds(), 0.0)
                db_record.message = message
                closed += 1
            await session.commit()
            return closed

    async def create_storage_provider(self, provider: StorageProvider) -> str:
        async with self.async_session() as session:
            db_provider = StorageProviderModel(
                id=provider.id,
                name=provider.name,
                type=provider.type,
                config=provider.config,
                created_at=provider.created_at
            )
            session.add(db_provider)
            await session.commit()
            return provider.id

    async def get_storage_provider(self, provider_id: str) -> Optional[StorageProvider]:
        async with self.async_session() as session:
            result = await session.execute(select(StorageProviderModel).filter_by(id=provider_id))
            db_provider = result.scalar_one_or_none()
            if db_provider:
                return StorageProvider(
                    id=db_provider.id,
                    name=db_provider.name,
                    type=db_provider.type,
                    config=db_provider.config,
                    created_at=ensure_utc(db_provider.created_at)
                )
            return None

    async def save_notification_settings(self, settings: NotificationSettings) -> str:
        async with self.async_session() as session:
            await session.merge(NotificationSettingsModel(
                id=settings.id,
                email=settings.email,
                on_success=settings.on_success,
                on_failure=settings.on_failure
            ))
            await session.commit()
            return settings.id

    async def list_notification_settings(self) -> List[NotificationSettings]:
        async with self.async_session() as session:
            result = await session.execute(select(NotificationSettingsModel).order_by(NotificationSettingsModel.id))
            return [
                NotificationSettings(
                    id=db_settings.id,
                    email=db_settings.email,
                    on_success=bool(db_settings.on_success),
                    on_failure=bool(db_settings.on_failure)
                )
                for db_settings in result.scalars()
            ]

    def _db_to_job(self, db_job: BackupJobModel) -> BackupJob:
        return BackupJob(
            id=db_job.id,
            name=db_job.name,
            source_path=db_job.source_path,
            remote_path=db_job.remote_path,
            storage_provider_id=db_job.storage_provider_id,
            schedule=db_job.schedule or "",
            status=JobStatus(db_job.status),
            next_run=db_job.next_run,
            last_run=db_job.last_run,
            retention_period_days=db_job.retention_period_days,
            compression_enabled=bool(db_job.compression_enabled),
            compression_level=db_job.compression_level,
            transfer_concurrency=db_job.transfer_concurrency,
            delete_extraneous=bool(db_job.delete_extraneous),
            notifications=bool(db_job.notifications),
            created_at=db_job.created_at,
            updated_at=db_job.updated_at
        )

    def _db_to_history(self, db_record: BackupHistoryModel) -> HistoryRecord:
        return HistoryRecord(
            id=db_record.id,
            job_id=db_record.job_id,
            status=HistoryStatus(db_record.status),
            start_time=db_record.start_time,
            end_time=db_record.end_time,
            duration_seconds=db_record.duration_seconds,
            size_bytes=db_record.size_bytes,
            message=db_record.message
        )


class InMemoryJobRepository(SqlAlchemyJobRepository):
    def __init__(self):
        super().__init__("sqlite+aiosqlite:///:memory:")
