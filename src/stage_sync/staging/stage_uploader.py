from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

from stage_sync.staging.domain import FileRecord, OutcomeStatus, UploadOutcome
from stage_sync.staging.errors import PermanentUploadError, TransientUploadError
from stage_sync.staging.staging_area import StagingArea
from stage_sync.staging.utils import default_worker_count

logger = logging.getLogger(__name__)

PERMANENT_OS_ERRORS = (PermissionError, FileNotFoundError, IsADirectoryError, NotADirectoryError)


@dataclass(frozen=True)
class UploadPolicy:
    max_workers: int = field(default_factory=default_worker_count)
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 30.0
    attempt_timeout_seconds: float | None = 300.0

    def __post_init__(self) -> None:
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the zero-based `attempt` failed: base * 2**attempt, capped."""
        return min(self.base_delay_seconds * (2 ** attempt), self.max_delay_seconds)


def is_transient(error: BaseException) -> bool:
    if isinstance(error, PermanentUploadError):
        return False
    if isinstance(error, (TransientUploadError, TimeoutError, ConnectionError)):
        return True
    if isinstance(error, PERMANENT_OS_ERRORS):
        return False
    # Network filesystems surface I/O failures as bare OSError.
    return isinstance(error, OSError)


def describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


class StageUploader:
    """
    Uploads one classified file to its partition-scoped remote location.

    Always overwrites: the location is already partition and filename scoped,
    so a second put republishes the file's current content.
    """

    def __init__(self, stage: StagingArea, policy: UploadPolicy | None = None):
        self.stage = stage
        self.policy = policy or UploadPolicy()

    @staticmethod
    def remote_location_for(record: FileRecord, target_prefix: str) -> str:
        segments = [target_prefix.rstrip("/")]
        partition = record.render_partition()
        if partition:
            segments.append(partition)
        segments.append(record.filename)
        return "/".join(segments)

    def upload(
        self,
        record: FileRecord,
        target_prefix: str,
        *,
        on_attempt: Callable[[int], None] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> UploadOutcome:
        remote_location = self.remote_location_for(record, target_prefix)
        cancel_event = cancel_event or threading.Event()
        last_reason: str | None = None

        for attempt in range(self.policy.max_attempts):
            if cancel_event.is_set():
                return UploadOutcome(OutcomeStatus.CANCELLED, remote_location, attempt, "cancelled")

            if on_attempt is not None:
                on_attempt(attempt + 1)

            try:
                self.stage.put(
                    record.local_path,
                    remote_location,
                    overwrite=True,
                    timeout=self.policy.attempt_timeout_seconds,
                )
            except Exception as e:
                last_reason = describe(e)
                if not is_transient(e):
                    logger.error("Upload of %s failed permanently: %s", record.local_path, last_reason)
                    return UploadOutcome(OutcomeStatus.FAILED, remote_location, attempt + 1, last_reason)

                if attempt + 1 >= self.policy.max_attempts:
                    break

                delay = self.policy.backoff_delay(attempt)
                logger.warning(
                    "Upload of %s failed (attempt %s/%s): %s. Retrying in %.2fs",
                    record.local_path,
                    attempt + 1,
                    self.policy.max_attempts,
                    last_reason,
                    delay,
                )
                if cancel_event.wait(delay):
                    return UploadOutcome(OutcomeStatus.CANCELLED, remote_location, attempt + 1, "cancelled")
                continue

            logger.info("Uploaded %s -> %s", record.local_path, remote_location)
            return UploadOutcome(OutcomeStatus.DONE, remote_location, attempt + 1)

        reason = f"gave up after {self.policy.max_attempts} attempt(s): {last_reason}"
        logger.error("Upload of %s failed: %s", record.local_path, reason)
        return UploadOutcome(OutcomeStatus.FAILED, remote_location, self.policy.max_attempts, reason)
