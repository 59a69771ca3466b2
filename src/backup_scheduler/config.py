import logging
import sys
from datetime import date
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class SchedulerSettings(BaseSettings):
    """
    Engine settings. Loaded from `BACKUP_SCHEDULER_*` environment variables or a `.env` file.
    """
    model_config = SettingsConfigDict(env_prefix="BACKUP_SCHEDULER_", env_file=".env", extra="ignore")

    database_url: str = "sqlite+aiosqlite:///backups.db"
    tick_interval_seconds: float = Field(30.0, gt=0, description="How often due jobs are swept")
    reconcile_interval_seconds: float = Field(300.0, gt=0, description="Reconciliation loop period")
    stale_after_seconds: float = Field(3600.0, gt=0, description="How long a job may stay in progress")
    max_attempts: int = Field(3, ge=1, description="Total transfer attempts per execution")
    retry_wait_seconds: float = Field(5.0, ge=0)
    transfer_timeout_seconds: Optional[float] = Field(None, gt=0)
    shutdown_timeout_seconds: float = Field(30.0, ge=0)
    workers: int = Field(1, ge=1, description="Concurrent executions across different jobs")
    rclone_binary: str = "rclone"
    rclone_config_dir: Optional[Path] = None
    default_compression_level: int = Field(6, ge=0, le=9)
    log_level: str = "INFO"
    logs_dir: Optional[Path] = None


class SmtpSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BACKUP_SMTP_", env_file=".env", extra="ignore")

    host: str = "localhost"
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    sender: Optional[str] = None
    use_tls: bool = False
    start_tls: bool = True
    timeout: float = 30.0


def configure_logging(settings: SchedulerSettings) -> None:
    """
    Route the package loggers to stderr and, when `logs_dir` is set, to a dated log file.
    """
    formatter = logging.Formatter(LOG_FORMAT)
    root = logging.getLogger("backup_scheduler")
    root.setLevel(settings.log_level.upper())
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    root.addHandler(console)

    if settings.logs_dir is not None:
        settings.logs_dir.mkdir(parents=True, exist_ok=True)
        log_file = settings.logs_dir / f"scheduler-{date.today().isoformat()}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
