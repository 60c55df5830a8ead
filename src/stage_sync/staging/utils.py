import hashlib
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

HASH_CHUNK_SIZE = 131072


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def sha256_file_hash(file_path: Path) -> str:
    hash_sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            hash_sha256.update(chunk)
    return hash_sha256.hexdigest()


def metadata_signature(file_path: Path) -> str:
    stat = file_path.stat()
    return f"{file_path.name}_{stat.st_size}_{stat.st_mtime}"


def upload_fingerprint(content_fingerprint: str, remote_location: str) -> str:
    """
    Ledger key for one upload.

    Includes the remote location so identical bytes dropped into two partitions
    are staged twice, and any content change yields a fresh key.
    """
    payload = f"{content_fingerprint}|{remote_location}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def default_worker_count() -> int:
    # Same default as ThreadPoolExecutor: uploads are I/O bound.
    return min(32, (os.cpu_count() or 1) + 4)


class KeyedLocks:
    """
    One mutex per key, created on demand and dropped once no caller holds or
    waits on it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
