import re
from typing import Optional

from pydantic import BaseModel

_SIZE_UNIT = r"(?:[kKMGTPE]i?B|[kKMGTPE]?Bytes|B)"
_SIZE_RE = re.compile(
    rf"Transferred:\s+([\d.]+)\s*({_SIZE_UNIT})\s*/\s*[\d.]+\s*{_SIZE_UNIT}"
)
_FILES_RE = re.compile(r"Transferred:\s+(\d+)\s*/\s*(\d+),")
_DELETED_RE = re.compile(r"Deleted:\s+(\d+)")

_PREFIXES = "KMGTPE"


class TransferStats(BaseModel):
    bytes_transferred: int = 0
    files_transferred: int = 0
    files_deleted: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.bytes_transferred or self.files_transferred or self.files_deleted)

    @property
    def summary(self) -> str:
        return (
            f"Backup completed successfully. Files transferred: {self.files_transferred}, "
            f"Files deleted: {self.files_deleted}"
        )


def size_to_bytes(amount: str, unit: str) -> int:
    """
    Convert an rclone size such as ("1.5", "MiB") to bytes. Binary units and rclone's legacy
    "kBytes"/"MBytes" spellings are powers of 1024, SI units ("kB", "MB") powers of 1000.
    """
    value = float(amount)
    if unit in ("B", "Bytes"):
        return int(value)
    prefix = unit[0].upper()
    power = _PREFIXES.index(prefix) + 1
    base = 1000 if unit.endswith("B") and not unit.endswith("iB") and len(unit) == 2 else 1024
    return int(round(value * base ** power))


def _last(pattern: re.Pattern, text: str) -> Optional[re.Match]:
    match = None
    for match in pattern.finditer(text):
        pass
    return match


def parse_transfer_stats(text: str) -> TransferStats:
    """
    Best-effort extraction of the final stats block printed by rclone. Anything that cannot be
    found is reported as zero.
    """
    stats = TransferStats()
    if not text:
        return stats

    size = _last(_SIZE_RE, text)
    if size:
        try:
            stats.bytes_transferred = size_to_bytes(size.group(1), size.group(2))
        except ValueError:
            pass

    files = _last(_FILES_RE, text)
    if files:
        stats.files_transferred = int(files.group(1))

    deleted = _last(_DELETED_RE, text)
    if deleted:
        stats.files_deleted = int(deleted.group(1))

    return stats
