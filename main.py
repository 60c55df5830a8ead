import argparse
import logging
import os
import signal
import sys
import threading
from logging.config import dictConfig

from stage_sync.core.settings import CONFIG_PATH, LOG_FOLDER, LOGGING_CONFIG, SNOWFLAKE_ENV_PARAMETERS
from stage_sync.staging.domain import SyncStatus
from stage_sync.staging.errors import SyncError
from stage_sync.staging.ledger_store import UploadLedgerStore
from stage_sync.staging.orchestrator import SyncOrchestrator
from stage_sync.staging.path_classifier import PathClassifier
from stage_sync.staging.stage_uploader import StageUploader
from stage_sync.staging.staging_area import FileSystemStage, StagingArea
from stage_sync.staging.sync_config import FileSystemStageSpec, SyncConfig, load_sync_config
from stage_sync.staging.upload_ledger import UploadLedger

os.makedirs(LOG_FOLDER, exist_ok=True)
dictConfig(LOGGING_CONFIG)

logger = logging.getLogger(__name__)

EXIT_CODES = {SyncStatus.SUCCESS: 0, SyncStatus.PARTIAL: 1, SyncStatus.FAILED: 2}


def build_stage(config: SyncConfig) -> StagingArea:
    if isinstance(config.stage, FileSystemStageSpec):
        return FileSystemStage.from_uri(config.stage.uri)

    from snowflake.snowpark import Session
    from stage_sync.staging.snowpark_stage import SnowparkStage

    connection_parameters = {key: os.environ[env] for key, env in SNOWFLAKE_ENV_PARAMETERS.items() if env in os.environ}
    session = Session.builder.configs(connection_parameters).create()
    return SnowparkStage(session, parallel=config.stage.parallel)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Sync partitioned sales files into a remote stage.")
    parser.add_argument("--config", default=str(CONFIG_PATH), help="Path to the sync YAML config")
    args = parser.parse_args(argv)

    config = load_sync_config(args.config)
    cancel_event = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: cancel_event.set())

    if config.ledger.duckdb_path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(config.ledger.duckdb_path)), exist_ok=True)

    stage = build_stage(config)
    try:
        with UploadLedgerStore(duckdb_path=config.ledger.duckdb_path) as store:
            orchestrator = SyncOrchestrator(
                classifier=PathClassifier(config.fingerprint_mode),
                ledger=UploadLedger(store),
                uploader=StageUploader(stage, config.upload.to_policy()),
                config=config.ledger.to_orchestration_config(),
            )
            report = orchestrator.run(config.root_directory, config.target_prefix, cancel_event=cancel_event)
    except SyncError:
        logger.exception("Sync aborted")
        return 2
    finally:
        close = getattr(getattr(stage, "session", None), "close", None)
        if close is not None:
            close()

    for record, reason in report.failures:
        logger.error("FAILED %s: %s", record.local_path, reason)

    if cancel_event.is_set():
        return 130
    return EXIT_CODES[report.status]


if __name__ == "__main__":
    sys.exit(main())
