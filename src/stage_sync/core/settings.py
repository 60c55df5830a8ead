import os
from typing import Any
from pathlib import Path

PROJECT_NAME = "stage_sync"

# Paths
PROJECT_ROOT_DIR = Path(os.getenv("STAGE_SYNC_HOME", Path(__file__).parent.parent.parent.parent)).resolve()

DATA_DIR = PROJECT_ROOT_DIR / "data"
LEDGER_DB_PATH = DATA_DIR / "ledger.duckdb"

CONFIG_PATH = PROJECT_ROOT_DIR / "configs" / "sync.yaml"
LOG_FOLDER = PROJECT_ROOT_DIR / "logs"

# Ledger
LEDGER_SCHEMA = "ops"
TABLE_UPLOAD_LEDGER = "upload_ledger"
TABLE_SYNC_RUNS = "sync_runs"

# Snowflake session parameters read by the entry point (never by the core)
SNOWFLAKE_ENV_PARAMETERS = {
    "account": "SNOWFLAKE_ACCOUNT",
    "user": "SNOWFLAKE_USER",
    "password": "SNOWFLAKE_PASSWORD",
    "role": "SNOWFLAKE_ROLE",
    "database": "SNOWFLAKE_DATABASE",
    "warehouse": "SNOWFLAKE_WAREHOUSE",
}


# Logging Configuration

LOGGING_CONFIG: dict[str, Any] = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": "INFO",
        },
        "rotating_file": {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "standard",
            "level": "DEBUG",
            "filename": str(LOG_FOLDER / "stage_sync.log"),
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5,
            "encoding": "utf8",
        },
    },
    "loggers": {
        "": {  # root logger
            "handlers": ["console", "rotating_file"],
            "level": "DEBUG",
            "propagate": True
        },
    }

}
