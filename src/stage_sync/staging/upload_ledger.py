from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Protocol

from stage_sync.staging.domain import UploadRecord, UploadStatus
from stage_sync.staging.errors import ConflictError, StateError
from stage_sync.staging.utils import KeyedLocks, utc_now_naive

logger = logging.getLogger(__name__)


class LedgerStore(Protocol):
    def get(self, fingerprint: str) -> UploadRecord | None:
        ...

    def compare_and_swap(
        self, fingerprint: str, expected_status: UploadStatus | None, new_record: UploadRecord
    ) -> bool:
        ...

    def delete_if(self, fingerprint: str, expected_status: UploadStatus) -> bool:
        ...

    def records_with_status(self, status: UploadStatus) -> list[UploadRecord]:
        ...

    def start_run(self, *, run_id: str, root_directory: str, target_prefix: str) -> None:
        ...

    def finalize_run(
        self,
        *,
        run_id: str,
        status: str,
        number_of_files_uploaded: int,
        number_of_files_skipped: int,
        number_of_files_failed: int,
        error_message: str | None = None,
    ) -> None:
        ...


class UploadLedger:
    """
    State machine over the ledger store.

        (none) -> PENDING -> IN_PROGRESS -> DONE | FAILED
        FAILED -> (none)            evict_failed
        IN_PROGRESS -> FAILED       release_stale

    DONE has no outgoing transition. Transitions for one fingerprint are
    serialized by a per-fingerprint lock in this process and by
    compare-and-swap in the store across processes.
    """

    def __init__(self, store: LedgerStore, *, clock: Callable[[], datetime] = utc_now_naive):
        self.store = store
        self._clock = clock
        self._locks = KeyedLocks()

    def lookup(self, fingerprint: str) -> UploadRecord | None:
        return self.store.get(fingerprint)

    def mark_pending(self, fingerprint: str, remote_location: str) -> UploadRecord:
        with self._locks.hold(fingerprint):
            current = self.store.get(fingerprint)
            if current is not None:
                return current

            record = UploadRecord(
                fingerprint=fingerprint,
                remote_location=remote_location,
                status=UploadStatus.PENDING,
                last_attempt_time=None,
                attempt_count=0,
                updated_at=self._clock(),
            )
            if not self.store.compare_and_swap(fingerprint, None, record):
                # Lost to another process; report whatever it wrote.
                existing = self.store.get(fingerprint)
                return existing if existing is not None else record
            return record

    def mark_in_progress(self, fingerprint: str, remote_location: str) -> UploadRecord:
        with self._locks.hold(fingerprint):
            current = self.store.get(fingerprint)

            if current is not None and current.status == UploadStatus.IN_PROGRESS:
                raise ConflictError(f"Upload already in progress for {fingerprint}")
            if current is not None and current.status != UploadStatus.PENDING:
                raise StateError(f"Cannot start upload for {fingerprint}: record is {current.status.value}")

            now = self._clock()
            if current is None:
                record = UploadRecord(
                    fingerprint=fingerprint,
                    remote_location=remote_location,
                    status=UploadStatus.IN_PROGRESS,
                    last_attempt_time=None,
                    attempt_count=0,
                    updated_at=now,
                )
            else:
                record = replace(
                    current,
                    remote_location=remote_location,
                    status=UploadStatus.IN_PROGRESS,
                    updated_at=now,
                )

            expected = current.status if current is not None else None
            if not self.store.compare_and_swap(fingerprint, expected, record):
                raise ConflictError(f"Upload for {fingerprint} was claimed concurrently")
            return record

    def record_attempt(self, fingerprint: str) -> UploadRecord:
        with self._locks.hold(fingerprint):
            current = self._require_in_progress(fingerprint, "record an attempt")
            now = self._clock()
            record = replace(current, attempt_count=current.attempt_count + 1, last_attempt_time=now, updated_at=now)
            self._swap_from_in_progress(record)
            return record

    def mark_done(self, fingerprint: str) -> UploadRecord:
        with self._locks.hold(fingerprint):
            current = self._require_in_progress(fingerprint, "mark done")
            record = replace(current, status=UploadStatus.DONE, failure_reason=None, updated_at=self._clock())
            self._swap_from_in_progress(record)
            logger.debug("Ledger DONE %s -> %s", fingerprint, record.remote_location)
            return record

    def mark_failed(self, fingerprint: str, reason: str) -> UploadRecord:
        with self._locks.hold(fingerprint):
            current = self._require_in_progress(fingerprint, "mark failed")
            record = replace(current, status=UploadStatus.FAILED, failure_reason=reason, updated_at=self._clock())
            self._swap_from_in_progress(record)
            logger.debug("Ledger FAILED %s: %s", fingerprint, reason)
            return record

    def evict_failed(self, older_than: timedelta) -> int:
        """Drop FAILED records whose last attempt is at least `older_than` old so the next scan retries them."""
        cutoff = self._clock() - older_than
        evicted = 0
        for record in self.store.records_with_status(UploadStatus.FAILED):
            attempted_at = record.last_attempt_time or record.updated_at
            if attempted_at > cutoff:
                continue
            with self._locks.hold(record.fingerprint):
                if self.store.delete_if(record.fingerprint, UploadStatus.FAILED):
                    evicted += 1

        if evicted:
            logger.info("Evicted %s failed ledger record(s) older than %s", evicted, older_than)
        return evicted

    def release_stale(self, older_than: timedelta) -> int:
        """
        Explicit reconciliation for transfers abandoned by a crashed or
        cancelled run: IN_PROGRESS older than `older_than` becomes FAILED.
        """
        cutoff = self._clock() - older_than
        released = 0
        for record in self.store.records_with_status(UploadStatus.IN_PROGRESS):
            if record.updated_at > cutoff:
                continue
            with self._locks.hold(record.fingerprint):
                current = self.store.get(record.fingerprint)
                if current is None or current.status != UploadStatus.IN_PROGRESS or current.updated_at > cutoff:
                    continue
                failed = replace(
                    current,
                    status=UploadStatus.FAILED,
                    failure_reason="abandoned",
                    updated_at=self._clock(),
                )
                if self.store.compare_and_swap(record.fingerprint, UploadStatus.IN_PROGRESS, failed):
                    released += 1

        if released:
            logger.warning("Released %s stale in-progress ledger record(s)", released)
        return released

    def _require_in_progress(self, fingerprint: str, action: str) -> UploadRecord:
        current = self.store.get(fingerprint)
        if current is None:
            raise StateError(f"Cannot {action} for {fingerprint}: no ledger record")
        if current.status != UploadStatus.IN_PROGRESS:
            raise StateError(f"Cannot {action} for {fingerprint}: record is {current.status.value}")
        return current

    def _swap_from_in_progress(self, record: UploadRecord) -> None:
        if not self.store.compare_and_swap(record.fingerprint, UploadStatus.IN_PROGRESS, record):
            raise StateError(f"Record {record.fingerprint} left IN_PROGRESS concurrently")
