from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from typing import Protocol

import pyarrow.fs as pafs

from stage_sync.staging.errors import PermanentUploadError

logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 1024 * 1024


class StagingArea(Protocol):
    """The narrow capability the sync engine needs from a remote stage."""

    def put(self, local_path: Path, remote_path: str, *, overwrite: bool, timeout: float | None) -> None:
        ...

    def exists(self, remote_path: str) -> bool:
        ...


class FileSystemStage:
    """
    Stage backed by a pyarrow filesystem (local, S3, GCS, HDFS, ...).

    remote paths are resolved under base_path. Bytes are copied verbatim:
    no compression is inferred from the file extension.
    """

    def __init__(self, filesystem: pafs.FileSystem, base_path: str = ""):
        self.filesystem = filesystem
        self.base_path = base_path.rstrip("/")

    @classmethod
    def from_uri(cls, uri: str) -> "FileSystemStage":
        filesystem, base_path = pafs.FileSystem.from_uri(uri)
        return cls(filesystem, base_path)

    def resolve(self, remote_path: str) -> str:
        relative = remote_path.lstrip("/")
        if not relative or any(part in ("", ".", "..") for part in relative.split("/")):
            raise PermanentUploadError(f"Invalid remote path: {remote_path!r}")
        return f"{self.base_path}/{relative}" if self.base_path else relative

    def exists(self, remote_path: str) -> bool:
        info = self.filesystem.get_file_info(self.resolve(remote_path))
        return info.type != pafs.FileType.NotFound

    def put(self, local_path: Path, remote_path: str, *, overwrite: bool, timeout: float | None) -> None:
        target = self.resolve(remote_path)
        if not overwrite and self.exists(remote_path):
            raise PermanentUploadError(f"Remote object exists and overwrite is disabled: {target}")

        deadline = time.monotonic() + timeout if timeout is not None else None
        parent = target.rsplit("/", 1)[0] if "/" in target else ""
        if parent:
            self.filesystem.create_dir(parent, recursive=True)

        # The published object is only replaced once every byte has landed in a sibling key.
        tmp_target = f"{target}.tmp-{uuid.uuid4().hex}"
        try:
            with open(local_path, "rb") as source, self.filesystem.open_output_stream(tmp_target, compression=None) as sink:
                for chunk in iter(lambda: source.read(COPY_CHUNK_SIZE), b""):
                    if deadline is not None and time.monotonic() > deadline:
                        raise TimeoutError(f"Upload of {local_path} exceeded {timeout}s")
                    sink.write(chunk)
            self.filesystem.move(tmp_target, target)
        except BaseException:
            self._discard(tmp_target)
            raise

        logger.debug("Copied %s -> %s", local_path, target)

    def _discard(self, path: str) -> None:
        try:
            if self.filesystem.get_file_info(path).type != pafs.FileType.NotFound:
                self.filesystem.delete_file(path)
        except OSError as e:
            logger.warning("Could not remove partial upload %s: %s", path, e)
