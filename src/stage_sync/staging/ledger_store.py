import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

import duckdb

from stage_sync.core.settings import LEDGER_SCHEMA, TABLE_SYNC_RUNS, TABLE_UPLOAD_LEDGER
from stage_sync.staging.domain import UploadRecord, UploadStatus
from stage_sync.staging.errors import LedgerError
from stage_sync.staging.utils import utc_now_naive

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = (
    "fingerprint, remote_location, status, last_attempt_at_utc, attempt_count, updated_at_utc, failure_reason"
)


class UploadLedgerStore:
    """
    Upload ledger persistence backed by DuckDB.

    A key-value surface keyed by upload fingerprint:
      - get / put / delete_if
      - compare_and_swap on status, one transaction per call

    Tables:
      ops.upload_ledger
      ops.sync_runs

    A DuckDB connection is not safe to share between threads, so every
    statement runs under a connection mutex held for that statement only.
    """

    def __init__(self, *, duckdb_path: str, auto_bootstrap: bool = True):
        self._duckdb_path = duckdb_path
        self._auto_bootstrap = auto_bootstrap

        self._connection: duckdb.DuckDBPyConnection | None = None
        self._connection_lock = threading.Lock()

    def __enter__(self) -> "UploadLedgerStore":
        if self._connection is not None:
            raise RuntimeError("Store connection already open")

        try:
            self._connection = duckdb.connect(self._duckdb_path)
        except duckdb.Error as e:
            raise LedgerError(f"Cannot open ledger at {self._duckdb_path}: {e}") from e

        if self._auto_bootstrap:
            self._bootstrap()

        logger.debug("Ledger connected. duckdb=%s", self._duckdb_path)
        return self

    def __exit__(self, exc_type, exc_value, tb) -> None:
        if self._connection is None:
            return
        try:
            self._connection.close()
        finally:
            self._connection = None

    # ----------------------------
    # Key-value API
    # ----------------------------
    def get(self, fingerprint: str) -> UploadRecord | None:
        with self._locked() as conn:
            row = conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM {self._ops(TABLE_UPLOAD_LEDGER)} WHERE fingerprint = ?",
                [fingerprint],
            ).fetchone()
        return self._to_record(row) if row else None

    def put(self, record: UploadRecord) -> None:
        with self._locked() as conn:
            self._upsert(conn, record)

    def compare_and_swap(
        self,
        fingerprint: str,
        expected_status: UploadStatus | None,
        new_record: UploadRecord,
    ) -> bool:
        """
        Write new_record only if the stored status equals expected_status.
        expected_status=None means "no record exists yet".
        """
        if new_record.fingerprint != fingerprint:
            raise ValueError("compare_and_swap key does not match the new record's fingerprint")

        with self._locked() as conn, self.transaction(conn) as tx:
            row = tx.execute(
                f"SELECT status FROM {self._ops(TABLE_UPLOAD_LEDGER)} WHERE fingerprint = ?",
                [fingerprint],
            ).fetchone()
            current = UploadStatus(row[0]) if row else None
            if current != expected_status:
                return False
            self._upsert(tx, new_record)
            return True

    def delete_if(self, fingerprint: str, expected_status: UploadStatus) -> bool:
        with self._locked() as conn, self.transaction(conn) as tx:
            row = tx.execute(
                f"SELECT status FROM {self._ops(TABLE_UPLOAD_LEDGER)} WHERE fingerprint = ?",
                [fingerprint],
            ).fetchone()
            if not row or UploadStatus(row[0]) != expected_status:
                return False
            tx.execute(f"DELETE FROM {self._ops(TABLE_UPLOAD_LEDGER)} WHERE fingerprint = ?", [fingerprint])
            return True

    def records_with_status(self, status: UploadStatus) -> list[UploadRecord]:
        with self._locked() as conn:
            rows = conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM {self._ops(TABLE_UPLOAD_LEDGER)} WHERE status = ? ORDER BY fingerprint",
                [status.value],
            ).fetchall()
        return [self._to_record(r) for r in rows]

    # ----------------------------
    # Run bookkeeping
    # ----------------------------
    def start_run(self, *, run_id: str, root_directory: str, target_prefix: str) -> None:
        with self._locked() as conn:
            conn.execute(
                f"""
                INSERT INTO {self._ops(TABLE_SYNC_RUNS)}
                (run_id, started_at_utc, status, root_directory, target_prefix)
                VALUES (?, ?, ?, ?, ?)
                """,
                [run_id, utc_now_naive(), "RUNNING", root_directory, target_prefix],
            )

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
        with self._locked() as conn:
            conn.execute(
                f"""
                UPDATE {self._ops(TABLE_SYNC_RUNS)}
                SET finished_at_utc = ?, status = ?, error_message = ?,
                    number_of_files_uploaded = ?, number_of_files_skipped = ?, number_of_files_failed = ?
                WHERE run_id = ?
                """,
                [
                    utc_now_naive(),
                    status,
                    error_message,
                    number_of_files_uploaded,
                    number_of_files_skipped,
                    number_of_files_failed,
                    run_id,
                ],
            )

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        with self._locked() as conn:
            cursor = conn.execute(f"SELECT * FROM {self._ops(TABLE_SYNC_RUNS)} WHERE run_id = ?", [run_id])
            row = cursor.fetchone()
            if row is None:
                return None
            columns = [d[0] for d in cursor.description]
        return dict(zip(columns, row))

    # ----------------------------
    # Bootstrap / helpers
    # ----------------------------
    def _bootstrap(self) -> None:
        with self._locked() as conn:
            conn.execute(f"CREATE SCHEMA IF NOT EXISTS {LEDGER_SCHEMA}")

            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._ops(TABLE_UPLOAD_LEDGER)} (
                  fingerprint          VARCHAR PRIMARY KEY,
                  remote_location      VARCHAR NOT NULL,
                  status               VARCHAR NOT NULL,
                  last_attempt_at_utc  TIMESTAMP,
                  attempt_count        INT NOT NULL DEFAULT 0,
                  updated_at_utc       TIMESTAMP NOT NULL,
                  failure_reason       VARCHAR
                );
                """
            )

            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._ops(TABLE_SYNC_RUNS)} (
                  run_id                    VARCHAR PRIMARY KEY,
                  started_at_utc            TIMESTAMP NOT NULL,
                  finished_at_utc           TIMESTAMP,
                  status                    VARCHAR NOT NULL,
                  root_directory            VARCHAR NOT NULL,
                  target_prefix             VARCHAR NOT NULL,
                  number_of_files_uploaded  INT NOT NULL DEFAULT 0,
                  number_of_files_skipped   INT NOT NULL DEFAULT 0,
                  number_of_files_failed    INT NOT NULL DEFAULT 0,
                  error_message             VARCHAR
                );
                """
            )

    @staticmethod
    def _ops(table: str) -> str:
        return f"{LEDGER_SCHEMA}.{table}"

    @contextmanager
    def _locked(self) -> Iterator[duckdb.DuckDBPyConnection]:
        if self._connection is None:
            raise RuntimeError("Store is not connected; use it as a context manager")
        with self._connection_lock:
            try:
                yield self._connection
            except duckdb.Error as e:
                raise LedgerError(f"Ledger operation failed: {e}") from e

    @contextmanager
    def transaction(self, conn: duckdb.DuckDBPyConnection):
        conn.execute("BEGIN TRANSACTION")
        try:
            yield conn
        except Exception:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    def _upsert(self, conn: duckdb.DuckDBPyConnection, record: UploadRecord) -> None:
        conn.execute(
            f"INSERT OR REPLACE INTO {self._ops(TABLE_UPLOAD_LEDGER)} ({_RECORD_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            [
                record.fingerprint,
                record.remote_location,
                record.status.value,
                record.last_attempt_time,
                record.attempt_count,
                record.updated_at,
                record.failure_reason,
            ],
        )

    @staticmethod
    def _to_record(row: tuple[Any, ...]) -> UploadRecord:
        try:
            status = UploadStatus(row[2])
        except ValueError as e:
            raise LedgerError(f"Corrupt ledger row for {row[0]}: unknown status {row[2]!r}") from e

        last_attempt: datetime | None = row[3]
        return UploadRecord(
            fingerprint=row[0],
            remote_location=row[1],
            status=status,
            last_attempt_time=last_attempt,
            attempt_count=int(row[4]),
            updated_at=row[5],
            failure_reason=row[6],
        )
