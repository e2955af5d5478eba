"""Shared fixtures: fake store, test configuration, dataset builder."""
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from tsingest.config import IngestConfig
from tsingest.errors import StoreError
from tsingest.logger import LogLevel, StructuredLogger, set_logger
from tsingest.service import SessionManager
from tsingest.session_store import MemorySessionStore
from tsingest.store import PushResult


class FakeStore:
    """
    In-memory store.

    Series identifiers become available after `resolve_after` empty answers
    (None: never). Pushes for a metric listed in `push_failures` raise
    StoreError as many times as configured.
    """

    def __init__(self):
        self.pushed: List[list] = []
        self.resolve_calls = 0
        self.resolve_after: Optional[int] = 0
        self.push_failures: Dict[str, int] = {}
        self.outcomes: List[PushResult] = []
        self._series_calls: Dict[tuple, int] = {}
        self._lock = threading.Lock()

    @property
    def points(self) -> list:
        return [point for batch in self.pushed for point in batch]

    def push(self, points):
        with self._lock:
            metric = points[0].metric
            if self.push_failures.get(metric, 0) > 0:
                self.push_failures[metric] -= 1
                raise StoreError("connection refused")
            self.pushed.append(list(points))
            if self.outcomes:
                return self.outcomes.pop(0)
            return PushResult(succeeded=len(points))

    def resolve_identifier(self, metric, tags, start_ms):
        with self._lock:
            self.resolve_calls += 1
            key = (metric, tuple(sorted(tags.items())))
            seen = self._series_calls.get(key, 0)
            self._series_calls[key] = seen + 1
            if self.resolve_after is None or seen < self.resolve_after:
                return None
            return "TS_" + metric + "_" + "_".join(value for _, value in key[1])


@pytest.fixture(autouse=True)
def quiet_logger():
    """Only errors reach the test output."""
    set_logger(StructuredLogger(min_level=LogLevel.ERROR))
    yield


ENV_VARS = (
    "OPENTSDB_API_URL",
    "INGEST_WORKERS",
    "INGEST_CHUNK_SIZE",
    "INGEST_QUEUE_SIZE",
    "INGEST_REQUEST_TIMEOUT",
    "INGESTER_ROOT_PATH",
    "INGEST_DEFAULT_IMPORTER",
    "SESSION_STORE_URL",
    "INGEST_LOG_LEVEL",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """
    Empty ingestion environment, cwd in tmp_path.

    Setting then deleting makes monkeypatch remove on teardown whatever
    load_dotenv() adds.
    """
    for name in ENV_VARS:
        monkeypatch.setenv(name, "unset")
        monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def config(tmp_path):
    return IngestConfig(
        environment="local",
        opentsdb_api_url="http://tsdb.test/api",
        chunk_size=10,
        worker_count=2,
        queue_size=2,
        poll_interval=0.01,
        resolve_retry_delay=0.0,
        session_store_url=str(tmp_path / "sessions.json"),
    )


@pytest.fixture
def session_store():
    return MemorySessionStore()


@pytest.fixture
def manager(config, store, session_store):
    manager = SessionManager(config, store=store, session_store=session_store, sleep=lambda _: None)
    manager.start()
    yield manager
    manager.shutdown()


@pytest.fixture
def make_csv(tmp_path):
    """Write a CSV file under the dataset root (tmp_path / 'data')."""
    root = tmp_path / "data"
    root.mkdir(exist_ok=True)

    def _make(relative: str, rows: List[str], header: str = "timestamp;value") -> Path:
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join([header] + rows) + "\n", encoding="utf-8")
        return path

    _make.root = root
    return _make


def iso_rows(count: int, start: int = 0) -> List[str]:
    """count well-formed ISO rows, one second apart."""
    return [f"2020-01-01T00:{(start + i) // 60:02d}:{(start + i) % 60:02d}Z;{i}.5" for i in range(count)]


@pytest.fixture
def rows():
    return iso_rows


def wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def eventually():
    return wait_until
