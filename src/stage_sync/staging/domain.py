from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path


class FileFormat(str, Enum):
    CSV = "CSV"
    JSON = "JSON"
    PARQUET = "PARQUET"


# Longest suffix first so ".snappy.parquet" wins over ".parquet" when both are listed.
EXTENSION_FORMATS: dict[str, FileFormat] = {
    ".snappy.parquet": FileFormat.PARQUET,
    ".parquet": FileFormat.PARQUET,
    ".json": FileFormat.JSON,
    ".csv": FileFormat.CSV,
}


PartitionKey = tuple[tuple[str, str], ...]


@dataclass(frozen=True)
class FileRecord:
    """
    A local file discovered by a scan.

    content_fingerprint:
      sha256 of the bytes by default. In "metadata" mode it is the cheap
      name_size_mtime proxy instead.
    """
    local_path: Path
    format: FileFormat
    partition_key: PartitionKey
    size_bytes: int
    content_fingerprint: str

    @property
    def filename(self) -> str:
        return self.local_path.name

    def render_partition(self) -> str:
        return "/".join(f"{dimension}={value}" for dimension, value in self.partition_key)


class UploadStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass(frozen=True)
class UploadRecord:
    """Ledger row for one upload fingerprint. Mutated only through UploadLedger."""
    fingerprint: str
    remote_location: str
    status: UploadStatus
    last_attempt_time: datetime | None  # naive UTC
    attempt_count: int
    updated_at: datetime  # naive UTC
    failure_reason: str | None = None


@dataclass(frozen=True)
class RunContext:
    """Per-run context."""
    run_id: str


class SyncAction(str, Enum):
    SKIP = "SKIP"
    UPLOAD = "UPLOAD"
    RETRY = "RETRY"


@dataclass(frozen=True)
class PlannedFile:
    record: FileRecord
    fingerprint: str
    remote_location: str
    action: SyncAction
    reason: str | None = None


class OutcomeStatus(str, Enum):
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class UploadOutcome:
    """Result returned by the uploader for one file."""
    status: OutcomeStatus
    remote_location: str
    attempts: int
    reason: str | None = None


class SyncStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


@dataclass
class SyncReport:
    """
    The only success/failure surface of a run.

    A non-empty failures list with at least one upload is a partial success;
    failures with nothing uploaded is a total failure.
    """
    run_id: str
    uploaded: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: int = 0
    unrecognized: int = 0
    failures: list[tuple[FileRecord, str]] = field(default_factory=list)

    @property
    def status(self) -> SyncStatus:
        if not self.failures:
            return SyncStatus.SUCCESS
        if self.uploaded > 0:
            return SyncStatus.PARTIAL
        return SyncStatus.FAILED

    def add_failure(self, record: FileRecord, reason: str) -> None:
        self.failed += 1
        self.failures.append((record, reason))
