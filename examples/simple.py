import asyncio
import json
import os

from backup_scheduler import BackupScheduler, JobRunner, SchedulerSettings, configure_logging
from backup_scheduler.domain import BackupJob, NotificationSettings, StorageProvider
from backup_scheduler.notifications.smtp import SmtpNotificationGateway
from backup_scheduler.config import SmtpSettings
from backup_scheduler.storages.sqlalchemy import SqlAlchemyJobRepository
from backup_scheduler.transfer.rclone import RcloneTransferTool

settings = SchedulerSettings()
configure_logging(settings)

repository = SqlAlchemyJobRepository(settings.database_url)
runner = JobRunner(
    repository,
    RcloneTransferTool(settings.rclone_binary, settings.rclone_config_dir),
    notifier=SmtpNotificationGateway(SmtpSettings()),
    settings=settings,
)
scheduler = BackupScheduler(repository, runner, settings)


async def seed():
    provider = StorageProvider(
        name="s3-backups",
        type="s3",
        config=json.dumps({
            "accessKeyId": os.environ.get("AWS_ACCESS_KEY_ID", ""),
            "secretAccessKey": os.environ.get("AWS_SECRET_ACCESS_KEY", ""),
            "bucket": os.environ.get("BACKUP_BUCKET", "my-backups"),
            "region": "us-east-1",
        }),
    )
    await repository.create_storage_provider(provider)
    await repository.save_notification_settings(NotificationSettings(email="ops@example.com", on_success=False))

    job = BackupJob(
        name="Home directory",
        source_path=os.path.expanduser("~/Documents"),
        remote_path="/documents",
        storage_provider_id=provider.id,
        schedule="*/5 * * * *",
        compression_enabled=True,
    )
    await repository.create_job(job)
    return job


async def main():
    await repository.create_tables()
    job = await seed()

    await scheduler.start()
    print(f"Backup job created: {job.name} ({job.schedule})")
    await scheduler.run_now(job.id)
    try:
        await asyncio.sleep(600)
    finally:
        await scheduler.shutdown()
        for record in await repository.list_history(job.id):
            print(f"{record.start_time:%Y-%m-%d %H:%M} {record.status.value}: {record.message}")
        await repository.close()

if __name__ == "__main__":
    asyncio.run(main())
