import logging
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Literal, Self, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from stage_sync.core.settings import LEDGER_DB_PATH
from stage_sync.staging.orchestrator import OrchestrationConfig
from stage_sync.staging.stage_uploader import UploadPolicy
from stage_sync.staging.utils import default_worker_count

logger = logging.getLogger(__name__)


class StrictBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)


class FileSystemStageSpec(StrictBaseModel):
    kind: Literal["filesystem"]
    uri: str


class SnowflakeStageSpec(StrictBaseModel):
    kind: Literal["snowflake"]
    parallel: int = Field(default=4, ge=1, le=99)


StageSpec = Annotated[
    Union[FileSystemStageSpec, SnowflakeStageSpec],
    Field(discriminator="kind"),
]


class UploadSpec(StrictBaseModel):
    max_workers: int = Field(default_factory=default_worker_count, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=0.5, ge=0)
    max_delay_seconds: float = Field(default=30.0, ge=0)
    attempt_timeout_seconds: float | None = Field(default=300.0, gt=0)

    @model_validator(mode="after")
    def validate_spec(self) -> Self:
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self

    def to_policy(self) -> UploadPolicy:
        return UploadPolicy(
            max_workers=self.max_workers,
            max_attempts=self.max_attempts,
            base_delay_seconds=self.base_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            attempt_timeout_seconds=self.attempt_timeout_seconds,
        )


class LedgerSpec(StrictBaseModel):
    duckdb_path: str = str(LEDGER_DB_PATH)
    failed_retry_after_seconds: float = Field(default=3600.0, ge=0)
    stale_in_progress_after_seconds: float | None = Field(default=None, ge=0)

    def to_orchestration_config(self) -> OrchestrationConfig:
        stale = self.stale_in_progress_after_seconds
        return OrchestrationConfig(
            failed_retry_after=timedelta(seconds=self.failed_retry_after_seconds),
            stale_in_progress_after=timedelta(seconds=stale) if stale is not None else None,
        )


class SyncConfig(StrictBaseModel):
    root_directory: str
    target_prefix: str
    fingerprint_mode: Literal["sha256", "metadata"] = "sha256"

    stage: StageSpec
    upload: UploadSpec = Field(default_factory=UploadSpec)
    ledger: LedgerSpec = Field(default_factory=LedgerSpec)

    @model_validator(mode="after")
    def validate_spec(self) -> Self:
        if not self.target_prefix.strip("/"):
            raise ValueError("target_prefix must not be empty")
        if isinstance(self.stage, SnowflakeStageSpec) and not self.target_prefix.startswith("@"):
            raise ValueError("Snowflake target_prefix must start with '@' (e.g. '@db.schema.stage/sales')")
        return self


def load_sync_config(path: Path | str) -> SyncConfig:
    with open(path, "r") as file:
        config_yaml = yaml.safe_load(file)

    try:
        config = SyncConfig.model_validate(config_yaml)
    except Exception as e:
        raise ValueError(f"Error loading sync config from {path}: {e}") from e

    logger.debug("Loaded sync config from %s", path)
    return config
