from typing import Optional


class BackupSchedulerError(Exception):
    """Base class for errors raised by the scheduling engine."""


class NotFoundError(BackupSchedulerError):
    """A job or storage provider does not exist (or vanished between read and write)."""


class ConfigurationError(BackupSchedulerError):
    """Storage-provider credentials are missing or malformed."""


class ScheduleError(BackupSchedulerError):
    """A cron expression could not be parsed."""

    def __init__(self, expression: str, reason: str):
        super().__init__(f"Invalid schedule '{expression}': {reason}")
        self.expression = expression
        self.reason = reason


class ExecutionError(BackupSchedulerError):
    """
    The transfer tool could not be spawned or exited unsuccessfully.
    `retryable` is False for failures that another attempt would not fix, such as a timeout.
    """

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = "", retryable: bool = True):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr
        self.retryable = retryable
