from typing import List, Optional, Protocol

from pydantic import BaseModel, Field

from backup_scheduler.domain.job import BackupJob
from backup_scheduler.domain.provider import ResolvedProvider


class TransferOptions(BaseModel):
    compress: bool = False
    compression_level: int = Field(6, ge=0, le=9)
    transfer_concurrency: Optional[int] = Field(None, ge=1)
    delete_extraneous: bool = True

    @classmethod
    def for_job(cls, job: BackupJob, default_level: int = 6) -> "TransferOptions":
        return cls(
            compress=job.compression_enabled,
            compression_level=job.compression_level if job.compression_level is not None else default_level,
            transfer_concurrency=job.transfer_concurrency,
            delete_extraneous=job.delete_extraneous,
        )

    def to_flags(self) -> List[str]:
        flags: List[str] = []
        if self.compress:
            flags.append(f"--compress-level={self.compression_level}")
        if self.transfer_concurrency:
            flags.append(f"--transfers={self.transfer_concurrency}")
        return flags


class TransferRequest(BaseModel):
    source_path: str
    destination: str = Field(..., description="<alias>:<bucket><remote path>")
    provider: ResolvedProvider
    options: TransferOptions = Field(default_factory=TransferOptions)
    timeout: Optional[float] = Field(None, gt=0, description="Seconds before the attempt is killed")

    @property
    def flags(self) -> List[str]:
        return self.options.to_flags()


class TransferResult(BaseModel):
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class TransferTool(Protocol):
    """
    Protocol class for the external tool that moves data to remote storage.
    """

    async def invoke(self, request: TransferRequest) -> TransferResult:
        """
        Run one transfer attempt and capture its output.

        Args:
            request (TransferRequest): Source, destination, provider credentials and flags.

        Returns:
            TransferResult: Exit code and captured output, whatever the exit code.

        Raises:
            ExecutionError: If the tool cannot be spawned or the attempt times out.
        """
        ...
