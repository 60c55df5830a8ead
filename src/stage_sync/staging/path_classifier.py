from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Literal

from stage_sync.staging.domain import EXTENSION_FORMATS, FileFormat, FileRecord, PartitionKey
from stage_sync.staging.errors import ScanError
from stage_sync.staging.utils import metadata_signature, sha256_file_hash

logger = logging.getLogger(__name__)

PARTITION_SEGMENT_PATTERN = re.compile(r"^(?P<key>[^=]+)=(?P<value>.*)$")

FingerprintMode = Literal["sha256", "metadata"]

UNRECOGNIZED_EXTENSION = "unrecognized extension"

FINGERPRINTERS: dict[str, Callable[[Path], str]] = {
    "sha256": sha256_file_hash,
    "metadata": metadata_signature,
}


@dataclass(frozen=True)
class ScanSkip:
    path: Path
    reason: str


def classify_extension(filename: str) -> FileFormat | None:
    lowered = filename.lower()
    for suffix, file_format in EXTENSION_FORMATS.items():
        if lowered.endswith(suffix):
            return file_format
    return None


def parse_partition_key(relative_dir: Path) -> PartitionKey:
    """
    source=IN/format=csv/date=2022-02-22 -> (("source", "IN"), ("format", "csv"), ("date", "2022-02-22"))

    Segments that are not key=value are ignored.
    """
    pairs: list[tuple[str, str]] = []
    for segment in relative_dir.parts:
        match = PARTITION_SEGMENT_PATTERN.match(segment)
        if match:
            pairs.append((match.group("key"), match.group("value")))
    return tuple(pairs)


class DirectoryScan:
    """
    One lazy walk over a root directory.

    Iterating yields FileRecords; files that were passed over are collected in
    `skipped` as the walk advances. Iterating again re-walks the tree.
    """

    def __init__(self, root: Path, fingerprint: Callable[[Path], str]):
        self.root = root
        self._fingerprint = fingerprint
        self.skipped: list[ScanSkip] = []

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    @property
    def unrecognized_count(self) -> int:
        return sum(1 for skip in self.skipped if skip.reason == UNRECOGNIZED_EXTENSION)

    def __iter__(self) -> Iterator[FileRecord]:
        self.skipped = []

        def on_walk_error(error: OSError) -> None:
            path = Path(error.filename) if error.filename else self.root
            logger.warning("Cannot read directory %s: %s", path, error)
            self.skipped.append(ScanSkip(path=path, reason=str(error)))

        for dirpath, dirnames, filenames in os.walk(self.root, onerror=on_walk_error):
            dirnames.sort()
            current_dir = Path(dirpath)
            partition_key = parse_partition_key(current_dir.relative_to(self.root))

            for filename in sorted(filenames):
                file_path = current_dir / filename
                record = self._classify(file_path, partition_key)
                if record is not None:
                    yield record

    def _classify(self, file_path: Path, partition_key: PartitionKey) -> FileRecord | None:
        file_format = classify_extension(file_path.name)
        if file_format is None:
            self.skipped.append(ScanSkip(path=file_path, reason=UNRECOGNIZED_EXTENSION))
            return None

        try:
            if not file_path.is_file():
                self.skipped.append(ScanSkip(path=file_path, reason="not a regular file"))
                return None
            size_bytes = file_path.stat().st_size
            content_fingerprint = self._fingerprint(file_path)
        except OSError as e:
            logger.warning("Skipping unreadable file %s: %s", file_path, e)
            self.skipped.append(ScanSkip(path=file_path, reason=str(e)))
            return None

        return FileRecord(
            local_path=file_path.absolute(),
            format=file_format,
            partition_key=partition_key,
            size_bytes=size_bytes,
            content_fingerprint=content_fingerprint,
        )


class PathClassifier:
    """Classifies regional drop files by extension and key=value directory segments."""

    def __init__(self, fingerprint_mode: FingerprintMode = "sha256"):
        if fingerprint_mode not in FINGERPRINTERS:
            raise ValueError(f"Unknown fingerprint mode '{fingerprint_mode}'")
        self.fingerprint_mode = fingerprint_mode

    def scan(self, root_directory: Path | str) -> DirectoryScan:
        root = Path(root_directory)
        if not root.exists():
            raise ScanError(f"Scan root does not exist: {root}")
        if not root.is_dir():
            raise ScanError(f"Scan root is not a directory: {root}")
        if not os.access(root, os.R_OK | os.X_OK):
            raise ScanError(f"Scan root is not readable: {root}")

        return DirectoryScan(root, FINGERPRINTERS[self.fingerprint_mode])
