from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from stage_sync.staging.sync_config import FileSystemStageSpec, SnowflakeStageSpec, load_sync_config

SNOWFLAKE_YAML = """
root_directory: /data/sales
target_prefix: "@sales_dwh.source.my_internal_stg/sales"
stage:
  kind: snowflake
  parallel: 8
upload:
  max_workers: 6
  max_attempts: 5
  base_delay_seconds: 1.0
  max_delay_seconds: 20.0
ledger:
  duckdb_path: ":memory:"
  failed_retry_after_seconds: 0.0
  stale_in_progress_after_seconds: 600.0
"""


def write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "sync.yaml"
    path.write_text(text)
    return path


def test_load_snowflake_config(tmp_path: Path) -> None:
    config = load_sync_config(write(tmp_path, SNOWFLAKE_YAML))

    assert isinstance(config.stage, SnowflakeStageSpec)
    assert config.stage.parallel == 8
    assert config.fingerprint_mode == "sha256"

    policy = config.upload.to_policy()
    assert (policy.max_workers, policy.max_attempts) == (6, 5)
    assert policy.attempt_timeout_seconds == 300.0

    orchestration = config.ledger.to_orchestration_config()
    assert orchestration.failed_retry_after == timedelta(0)
    assert orchestration.stale_in_progress_after == timedelta(minutes=10)


def test_filesystem_stage_defaults(tmp_path: Path) -> None:
    config = load_sync_config(
        write(
            tmp_path,
            "root_directory: data\ntarget_prefix: sales\nfingerprint_mode: metadata\n"
            "stage:\n  kind: filesystem\n  uri: s3://bucket/staging\n",
        )
    )

    assert isinstance(config.stage, FileSystemStageSpec)
    assert config.stage.uri == "s3://bucket/staging"
    assert config.fingerprint_mode == "metadata"
    assert config.upload.max_workers >= 1
    assert config.ledger.to_orchestration_config().stale_in_progress_after is None


@pytest.mark.parametrize(
    "text",
    [
        # unknown key
        "root_directory: d\ntarget_prefix: p\nstage: {kind: filesystem, uri: 'file:///tmp'}\nretries: 3\n",
        # unknown stage kind
        "root_directory: d\ntarget_prefix: p\nstage: {kind: ftp}\n",
        # snowflake prefix must be a stage reference
        "root_directory: d\ntarget_prefix: sales\nstage: {kind: snowflake}\n",
        # cap below base delay
        "root_directory: d\ntarget_prefix: p\nstage: {kind: filesystem, uri: 'file:///tmp'}\n"
        "upload: {base_delay_seconds: 5.0, max_delay_seconds: 1.0}\n",
        # zero attempts
        "root_directory: d\ntarget_prefix: p\nstage: {kind: filesystem, uri: 'file:///tmp'}\n"
        "upload: {max_attempts: 0}\n",
    ],
)
def test_invalid_configs_are_rejected(tmp_path: Path, text: str) -> None:
    with pytest.raises(ValueError):
        load_sync_config(write(tmp_path, text))


def test_shipped_config_is_valid() -> None:
    shipped = Path(__file__).resolve().parent.parent / "configs" / "sync.yaml"

    config = load_sync_config(shipped)

    assert config.target_prefix.startswith("@")
