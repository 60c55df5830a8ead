from __future__ import annotations

import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator

import pytest

from stage_sync.staging.ledger_store import UploadLedgerStore
from stage_sync.staging.upload_ledger import UploadLedger


class FakeClock:
    def __init__(self, start: datetime = datetime(2022, 2, 22, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeStage:
    """
    In-memory staging area.

    `failures` maps a remote path to an exception factory; every put for that
    path raises it. Successful puts store the bytes.
    """

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.puts: list[tuple[str, float | None]] = []
        self.failures: dict[str, Callable[[], BaseException]] = {}
        self._lock = threading.Lock()

    def put(self, local_path: Path, remote_path: str, *, overwrite: bool, timeout: float | None) -> None:
        with self._lock:
            self.puts.append((remote_path, timeout))
        factory = self.failures.get(remote_path)
        if factory is not None:
            raise factory()
        with self._lock:
            self.objects[remote_path] = Path(local_path).read_bytes()

    def exists(self, remote_path: str) -> bool:
        return remote_path in self.objects

    def attempts_for(self, remote_path: str) -> int:
        return sum(1 for path, _ in self.puts if path == remote_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Iterator[UploadLedgerStore]:
    with UploadLedgerStore(duckdb_path=":memory:") as opened:
        yield opened


@pytest.fixture
def ledger(store: UploadLedgerStore, clock: FakeClock) -> UploadLedger:
    return UploadLedger(store, clock=clock)


@pytest.fixture
def fake_stage() -> FakeStage:
    return FakeStage()


@pytest.fixture
def sales_tree(tmp_path: Path) -> Path:
    """One CSV, one JSON and one Parquet file under source/format/date partitions."""
    root = tmp_path / "sales"
    files = {
        "source=IN/format=csv/date=2022-02-22/order.csv": b"order_id,amount\n1,10.5\n",
        "source=US/format=json/date=2022-02-22/order.json": b'{"order_id": 2, "amount": 3.25}\n',
        "source=FR/format=parquet/date=2022-02-22/order.snappy.parquet": b"PAR1fake-parquet-bytesPAR1",
    }
    for relpath, payload in files.items():
        path = root / relpath
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(payload)
    return root
