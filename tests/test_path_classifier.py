from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from stage_sync.staging.domain import FileFormat
from stage_sync.staging.errors import ScanError
from stage_sync.staging.path_classifier import PathClassifier, classify_extension, parse_partition_key


def test_partition_key_and_format_from_path(tmp_path: Path) -> None:
    order = tmp_path / "sales" / "source=IN" / "format=csv" / "date=2022-02-22" / "order.csv"
    order.parent.mkdir(parents=True)
    order.write_bytes(b"order_id\n1\n")

    records = list(PathClassifier().scan(tmp_path))

    assert len(records) == 1
    record = records[0]
    assert record.format == FileFormat.CSV
    assert record.partition_key == (("source", "IN"), ("format", "csv"), ("date", "2022-02-22"))
    assert record.size_bytes == len(b"order_id\n1\n")
    assert record.content_fingerprint == hashlib.sha256(b"order_id\n1\n").hexdigest()


@pytest.mark.parametrize(
    ("filename", "expected"),
    [
        ("order.csv", FileFormat.CSV),
        ("ORDER.CSV", FileFormat.CSV),
        ("order.json", FileFormat.JSON),
        ("order.parquet", FileFormat.PARQUET),
        ("part-0001.snappy.parquet", FileFormat.PARQUET),
        ("order.txt", None),
        ("_SUCCESS", None),
    ],
)
def test_classify_extension(filename: str, expected: FileFormat | None) -> None:
    assert classify_extension(filename) == expected


def test_non_partition_segments_are_ignored() -> None:
    assert parse_partition_key(Path("archive/region=EU/raw/date=2022-01-01")) == (
        ("region", "EU"),
        ("date", "2022-01-01"),
    )
    assert parse_partition_key(Path("=orphan/x=")) == (("x", ""),)


def test_unrecognized_files_are_counted(sales_tree: Path) -> None:
    (sales_tree / "README.md").write_text("notes")
    (sales_tree / "source=IN" / "_SUCCESS").write_text("")

    scan = PathClassifier().scan(sales_tree)
    records = list(scan)

    assert sorted(r.format for r in records) == [FileFormat.CSV, FileFormat.JSON, FileFormat.PARQUET]
    assert scan.skipped_count == 2
    assert {s.reason for s in scan.skipped} == {"unrecognized extension"}


def test_unrecognized_count_excludes_non_regular_files(sales_tree: Path) -> None:
    (sales_tree / "README.md").write_text("notes")
    (sales_tree / "source=IN" / "dangling.csv").symlink_to(sales_tree / "gone.csv")

    scan = PathClassifier().scan(sales_tree)
    list(scan)

    assert scan.skipped_count == 2
    assert scan.unrecognized_count == 1
    assert {s.reason for s in scan.skipped} == {"unrecognized extension", "not a regular file"}


def test_scan_is_restartable(sales_tree: Path) -> None:
    scan = PathClassifier().scan(sales_tree)

    first = list(scan)
    second = list(scan)

    assert first == second
    assert len(first) == 3


def test_scan_order_is_deterministic(tmp_path: Path) -> None:
    for name in ["b.csv", "a.csv", "c.json"]:
        (tmp_path / name).write_text("x")

    names = [r.filename for r in PathClassifier().scan(tmp_path)]

    assert names == ["a.csv", "b.csv", "c.json"]


def test_metadata_fingerprint_mode(tmp_path: Path) -> None:
    (tmp_path / "order.csv").write_text("x")

    (record,) = list(PathClassifier("metadata").scan(tmp_path))

    assert record.content_fingerprint.startswith("order.csv_1_")


def test_unknown_fingerprint_mode_is_rejected() -> None:
    with pytest.raises(ValueError):
        PathClassifier("md5")  # type: ignore[arg-type]


def test_missing_root_raises_scan_error(tmp_path: Path) -> None:
    with pytest.raises(ScanError):
        PathClassifier().scan(tmp_path / "does-not-exist")


def test_file_root_raises_scan_error(tmp_path: Path) -> None:
    not_a_dir = tmp_path / "order.csv"
    not_a_dir.write_text("x")

    with pytest.raises(ScanError):
        PathClassifier().scan(not_a_dir)


def test_unreadable_file_is_skipped_not_fatal(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / "good.csv").write_text("ok")
    (tmp_path / "bad.csv").write_text("locked")

    from stage_sync.staging import path_classifier

    real_hash = path_classifier.sha256_file_hash

    def flaky_hash(path: Path) -> str:
        if path.name == "bad.csv":
            raise PermissionError(13, "Permission denied", str(path))
        return real_hash(path)

    monkeypatch.setitem(path_classifier.FINGERPRINTERS, "sha256", flaky_hash)

    scan = PathClassifier().scan(tmp_path)
    records = list(scan)

    assert [r.filename for r in records] == ["good.csv"]
    assert len(scan.skipped) == 1
    assert scan.skipped[0].path.name == "bad.csv"
    assert "Permission denied" in scan.skipped[0].reason
