from __future__ import annotations

import threading
from pathlib import Path

from stage_sync.staging.utils import KeyedLocks, sha256_file_hash, upload_fingerprint


def test_upload_fingerprint_depends_on_content_and_location() -> None:
    base = upload_fingerprint("abc", "@stage/sales/a.csv")

    assert base == upload_fingerprint("abc", "@stage/sales/a.csv")
    assert base != upload_fingerprint("abd", "@stage/sales/a.csv")
    assert base != upload_fingerprint("abc", "@stage/sales/b.csv")


def test_sha256_of_empty_file(tmp_path: Path) -> None:
    empty = tmp_path / "empty.csv"
    empty.write_bytes(b"")

    assert sha256_file_hash(empty) == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_keyed_locks_are_released_after_use() -> None:
    locks = KeyedLocks()

    with locks.hold("a"):
        assert len(locks) == 1
        with locks.hold("b"):
            assert len(locks) == 2

    assert len(locks) == 0


def test_keyed_locks_serialize_one_key() -> None:
    locks = KeyedLocks()
    inside = 0
    peak = 0
    guard = threading.Lock()

    def work() -> None:
        nonlocal inside, peak
        for _ in range(200):
            with locks.hold("same"):
                with guard:
                    inside += 1
                    peak = max(peak, inside)
                with guard:
                    inside -= 1

    threads = [threading.Thread(target=work) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert peak == 1
    assert len(locks) == 0
