from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Iterable

from stage_sync.staging.domain import (
    FileRecord,
    OutcomeStatus,
    PlannedFile,
    RunContext,
    SyncAction,
    SyncReport,
    UploadStatus,
)
from stage_sync.staging.errors import ConflictError, StateError
from stage_sync.staging.path_classifier import PathClassifier
from stage_sync.staging.stage_uploader import StageUploader
from stage_sync.staging.upload_ledger import UploadLedger
from stage_sync.staging.utils import upload_fingerprint

logger = logging.getLogger(__name__)

COLLISION_REASON = "remote location collision"


@dataclass(frozen=True)
class OrchestrationConfig:
    failed_retry_after: timedelta = timedelta(hours=1)
    stale_in_progress_after: timedelta | None = None
    idle_wait_seconds: float = 0.1


@dataclass(frozen=True)
class _FileResult:
    planned: PlannedFile
    status: str  # "uploaded" | "failed" | "skipped" | "cancelled"
    reason: str | None = None


class SyncOrchestrator:
    """
    Coordinates: classify -> consult ledger -> upload -> update ledger.

    The ledger is the only state that outlives a run. The scan and the plan
    are rebuilt every run and thrown away afterwards.
    """

    def __init__(
        self,
        *,
        classifier: PathClassifier,
        ledger: UploadLedger,
        uploader: StageUploader,
        config: OrchestrationConfig | None = None,
    ):
        self.classifier = classifier
        self.ledger = ledger
        self.uploader = uploader
        self.config = config or OrchestrationConfig()

    def run(
        self,
        root_directory: Path | str,
        target_prefix: str,
        *,
        ctx: RunContext | None = None,
        cancel_event: threading.Event | None = None,
    ) -> SyncReport:
        ctx = ctx or RunContext(run_id=uuid.uuid4().hex)
        cancel_event = cancel_event or threading.Event()
        report = SyncReport(run_id=ctx.run_id)

        self.ledger.store.start_run(run_id=ctx.run_id, root_directory=str(root_directory), target_prefix=target_prefix)
        try:
            self._housekeeping()

            scan = self.classifier.scan(root_directory)
            records = list(scan)
            report.unrecognized = scan.unrecognized_count

            plan = self.plan(records, target_prefix)
            to_upload = [p for p in plan if p.action != SyncAction.SKIP]
            logger.info(
                "Discovery found %s files (%s passed over). %s require upload.",
                len(records),
                scan.skipped_count,
                len(to_upload),
            )

            for planned in plan:
                if planned.action == SyncAction.SKIP:
                    if planned.reason == COLLISION_REASON:
                        report.add_failure(planned.record, f"remote location collision: {planned.remote_location}")
                    else:
                        report.skipped += 1
                elif planned.action == SyncAction.UPLOAD:
                    self.ledger.mark_pending(planned.fingerprint, planned.remote_location)

            self._dispatch(to_upload, target_prefix, report, cancel_event)
        except Exception as e:
            self.ledger.store.finalize_run(
                run_id=ctx.run_id,
                status="ERROR",
                number_of_files_uploaded=report.uploaded,
                number_of_files_skipped=report.skipped,
                number_of_files_failed=report.failed,
                error_message=str(e),
            )
            raise

        final_status = "CANCELLED" if cancel_event.is_set() else report.status.value
        self.ledger.store.finalize_run(
            run_id=ctx.run_id,
            status=final_status,
            number_of_files_uploaded=report.uploaded,
            number_of_files_skipped=report.skipped,
            number_of_files_failed=report.failed,
        )
        logger.info(
            "Sync run %s complete: uploaded=%s skipped=%s failed=%s cancelled=%s",
            ctx.run_id,
            report.uploaded,
            report.skipped,
            report.failed,
            report.cancelled,
        )
        return report

    def plan(self, records: Iterable[FileRecord], target_prefix: str) -> list[PlannedFile]:
        """Join scanned files against the ledger. Pure lookups; writes nothing."""
        plan: list[PlannedFile] = []
        claimed_locations: dict[str, Path] = {}

        for record in records:
            remote_location = self.uploader.remote_location_for(record, target_prefix)
            fingerprint = upload_fingerprint(record.content_fingerprint, remote_location)

            if remote_location in claimed_locations:
                logger.error(
                    "%s and %s both map to %s; skipping the latter",
                    claimed_locations[remote_location],
                    record.local_path,
                    remote_location,
                )
                plan.append(
                    PlannedFile(record, fingerprint, remote_location, SyncAction.SKIP, COLLISION_REASON)
                )
                continue
            claimed_locations[remote_location] = record.local_path

            existing = self.ledger.lookup(fingerprint)
            if existing is None:
                action, reason = SyncAction.UPLOAD, None
            elif existing.status == UploadStatus.PENDING:
                action, reason = SyncAction.RETRY, "pending from an earlier run"
            elif existing.status == UploadStatus.DONE:
                action, reason = SyncAction.SKIP, "already staged"
            elif existing.status == UploadStatus.FAILED:
                action, reason = SyncAction.SKIP, "failed; waiting for eviction"
            else:
                action, reason = SyncAction.SKIP, "in progress elsewhere"

            plan.append(PlannedFile(record, fingerprint, remote_location, action, reason))

        return plan

    def _housekeeping(self) -> None:
        if self.config.stale_in_progress_after is not None:
            self.ledger.release_stale(self.config.stale_in_progress_after)
        self.ledger.evict_failed(self.config.failed_retry_after)

    def _dispatch(
        self,
        to_upload: list[PlannedFile],
        target_prefix: str,
        report: SyncReport,
        cancel_event: threading.Event,
    ) -> None:
        if not to_upload:
            return

        max_workers = self.uploader.policy.max_workers
        pending = deque(to_upload)
        in_flight: dict[Future[_FileResult], PlannedFile] = {}

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="stage-upload") as executor:
            try:
                while pending or in_flight:
                    if cancel_event.is_set() and pending:
                        logger.warning("Cancellation requested; dropping %s queued upload(s)", len(pending))
                        report.cancelled += len(pending)
                        pending.clear()

                    # Dispatch
                    while len(in_flight) < max_workers and pending:
                        planned = pending.popleft()
                        fut = executor.submit(self._process, planned, target_prefix, cancel_event)
                        in_flight[fut] = planned

                    # Collect
                    if in_flight:
                        done, _ = wait(in_flight.keys(), timeout=self.config.idle_wait_seconds, return_when=FIRST_COMPLETED)
                        for fut in done:
                            in_flight.pop(fut)
                            self._apply(report, fut.result())
            except BaseException:
                # Run-fatal (ledger) error: stop feeding the pool and let in-flight work wind down.
                cancel_event.set()
                pending.clear()
                raise

    def _process(self, planned: PlannedFile, target_prefix: str, cancel_event: threading.Event) -> _FileResult:
        fingerprint = planned.fingerprint

        try:
            self.ledger.mark_in_progress(fingerprint, planned.remote_location)
        except ConflictError as e:
            logger.info("Skipping %s: %s", planned.record.local_path, e)
            return _FileResult(planned, "skipped", str(e))
        except StateError as e:
            logger.error("Ledger refused upload of %s: %s", planned.record.local_path, e)
            return _FileResult(planned, "failed", str(e))

        try:
            outcome = self.uploader.upload(
                planned.record,
                target_prefix,
                on_attempt=lambda _attempt: self.ledger.record_attempt(fingerprint),
                cancel_event=cancel_event,
            )
            if outcome.status == OutcomeStatus.DONE:
                self.ledger.mark_done(fingerprint)
                return _FileResult(planned, "uploaded")
            if outcome.status == OutcomeStatus.FAILED:
                self.ledger.mark_failed(fingerprint, outcome.reason or "unknown failure")
                return _FileResult(planned, "failed", outcome.reason)
        except StateError as e:
            logger.error("Ledger refused transition for %s: %s", planned.record.local_path, e)
            return _FileResult(planned, "failed", str(e))

        # Cancelled: the record stays IN_PROGRESS for a later reconciliation.
        logger.warning("Upload of %s aborted by cancellation", planned.record.local_path)
        return _FileResult(planned, "cancelled", outcome.reason)

    @staticmethod
    def _apply(report: SyncReport, result: _FileResult) -> None:
        if result.status == "uploaded":
            report.uploaded += 1
        elif result.status == "skipped":
            report.skipped += 1
        elif result.status == "cancelled":
            report.cancelled += 1
        else:
            report.add_failure(result.planned.record, result.reason or "unknown failure")
