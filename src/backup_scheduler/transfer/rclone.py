import asyncio
import configparser
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Union

from backup_scheduler.domain.provider import B2Credentials, ResolvedProvider, S3Credentials, StorjCredentials
from backup_scheduler.errors import ExecutionError
from backup_scheduler.transfer.protocol import TransferRequest, TransferResult, TransferTool

logger = logging.getLogger(__name__)

COMMON_FLAGS = ["--stats=1s", "--log-level=INFO"]


def build_destination(alias: str, bucket: str, remote_path: str) -> str:
    """
    Compose `<alias>:<bucket><remote path>` with the remote path always starting with a single
    slash. Composing an already composed destination yields the same result.
    """
    prefix = f"{alias}:"
    path = (remote_path or "").strip()
    if path.startswith(prefix):
        return path

    bucket = bucket.strip().strip("/")
    path = "/" + path.lstrip("/")
    return f"{prefix}{bucket}{path}"


def render_config(provider: ResolvedProvider) -> configparser.ConfigParser:
    """
    Build the rclone remote section for a provider's credentials.
    """
    credentials = provider.credentials
    section: Dict[str, str]
    if isinstance(credentials, S3Credentials):
        section = {
            "type": "s3",
            "provider": "Other" if credentials.endpoint else "AWS",
            "access_key_id": credentials.access_key_id,
            "secret_access_key": credentials.secret_access_key,
        }
        if credentials.region:
            section["region"] = credentials.region
        if credentials.endpoint:
            section["endpoint"] = credentials.endpoint
    elif isinstance(credentials, B2Credentials):
        section = {
            "type": "b2",
            "account": credentials.application_key_id,
            "key": credentials.application_key,
        }
    elif isinstance(credentials, StorjCredentials):
        section = {
            "type": "s3",
            "provider": "Storj",
            "access_key_id": credentials.access_key,
            "secret_access_key": credentials.secret_key,
            "endpoint": credentials.endpoint,
            "acl": credentials.acl,
        }
    else:
        raise TypeError(f"Unsupported credentials type: {type(credentials).__name__}")

    config = configparser.ConfigParser(interpolation=None)
    config[provider.alias] = section
    return config


class RcloneTransferTool(TransferTool):
    """
    Runs `rclone sync` (or `rclone copy` when deletions should not be mirrored) with a
    throwaway config file holding only the job's remote.
    """

    def __init__(self, binary: str = "rclone", config_dir: Optional[Union[str, Path]] = None):
        self.binary = binary
        self.config_dir = Path(config_dir) if config_dir else None

    def build_command(self, request: TransferRequest, config_file: str) -> List[str]:
        subcommand = "sync" if request.options.delete_extraneous else "copy"
        return [
            self.binary,
            subcommand,
            request.source_path,
            request.destination,
            f"--config={config_file}",
            *request.flags,
            *COMMON_FLAGS,
        ]

    def _write_config(self, provider: ResolvedProvider) -> str:
        if self.config_dir is not None:
            self.config_dir.mkdir(parents=True, exist_ok=True)
        fd, path = tempfile.mkstemp(prefix="rclone-", suffix=".conf", dir=self.config_dir)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            render_config(provider).write(handle)
        logger.debug("Created rclone config file at %s", path)
        return path

    async def invoke(self, request: TransferRequest) -> TransferResult:
        config_file = self._write_config(request.provider)
        try:
            command = self.build_command(request, config_file)
            logger.info("Running %s %s %s -> %s", self.binary, command[1], request.source_path, request.destination)
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                raise ExecutionError(f"Failed to start {self.binary}: {e}") from e

            try:
                stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=request.timeout)
            except asyncio.TimeoutError:
                await self._terminate(process)
                raise ExecutionError(
                    f"{self.binary} timed out after {request.timeout} seconds",
                    exit_code=process.returncode,
                    retryable=False,
                )
            except asyncio.CancelledError:
                await self._terminate(process)
                raise

            return TransferResult(
                exit_code=process.returncode,
                stdout=stdout.decode("utf-8", errors="replace"),
                stderr=stderr.decode("utf-8", errors="replace"),
            )
        finally:
            try:
                os.unlink(config_file)
                logger.debug("Removed temporary config file: %s", config_file)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error("Failed to remove temp config file %s: %s", config_file, e)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        logger.warning("Killing %s (pid %s)", self.binary, process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
