import logging
import re
from pathlib import Path

from snowflake.connector.errors import OperationalError
from snowflake.snowpark import Session
from snowflake.snowpark.exceptions import SnowparkSQLException

from stage_sync.staging.errors import PermanentUploadError, TransientUploadError

logger = logging.getLogger(__name__)

PERMANENT_SQL_ERRORS = re.compile(
    r"does not exist|not authorized|insufficient privileges|access denied|invalid", re.IGNORECASE
)

ACCEPTED_PUT_STATUSES = {"UPLOADED", "SKIPPED"}
PUT_STATUS_SKIPPED = "SKIPPED"


class SnowparkStage:
    """
    Snowflake internal stage reached through an already-authenticated Snowpark session.

    Remote paths look like "@db.schema.stage/sales/source=IN/order.csv". PUT
    keeps the local file name, so the last remote segment must match it.
    """

    def __init__(self, session: Session, *, parallel: int = 4):
        self.session = session
        self.parallel = parallel

    def put(self, local_path: Path, remote_path: str, *, overwrite: bool, timeout: float | None) -> None:
        stage_dir, _, remote_name = remote_path.rpartition("/")
        if not stage_dir.startswith("@") or remote_name != local_path.name:
            raise PermanentUploadError(f"Invalid stage location {remote_path!r} for {local_path.name}")

        statement_params = {"STATEMENT_TIMEOUT_IN_SECONDS": str(int(timeout))} if timeout else None
        try:
            results = self.session.file.put(
                str(local_path),
                stage_dir,
                auto_compress=False,
                overwrite=overwrite,
                parallel=self.parallel,
                statement_params=statement_params,
            )
        except SnowparkSQLException as e:
            if "timeout" in str(e).lower():
                raise TimeoutError(str(e)) from e
            if PERMANENT_SQL_ERRORS.search(str(e)):
                raise PermanentUploadError(str(e)) from e
            raise TransientUploadError(str(e)) from e
        except OperationalError as e:
            raise TransientUploadError(str(e)) from e

        for result in results:
            if result.status == PUT_STATUS_SKIPPED and not overwrite:
                raise PermanentUploadError(f"Remote object exists and overwrite is disabled: {remote_path}")
            if result.status not in ACCEPTED_PUT_STATUSES:
                raise TransientUploadError(f"PUT {local_path.name} -> {stage_dir} returned {result.status}: {result.message}")
            logger.debug("PUT %s -> %s: %s", local_path.name, stage_dir, result.status)

    def exists(self, remote_path: str) -> bool:
        _, _, tail = remote_path.partition("/")
        rows = self.session.sql(f"LIST '{remote_path}'").collect()
        return any(str(row[0]).endswith(tail) for row in rows)
