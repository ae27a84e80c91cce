# tests/conftest.py
import importlib
import itertools
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import pytest
from fastapi.testclient import TestClient

from pqsched.config import ConfigProvider, Settings
from pqsched.engine.dispatcher import StartOutcome, StartResult
from pqsched.storage import SQLiteDB, apply_migrations

_counter = itertools.count(1)

DEFAULT_ENV = {
    "PQS_POLL_INTERVAL_MS": "100",
    "PQS_MAX_WORKERS": "2",
    "PQS_ENABLED": "true",
    "PQS_START_TIMEOUT_MS": "20000",
    "PQS_CLAIM_LOCK_MS": "30000",
    "PQS_LOG_LEVEL": "warning",
}


def now_ms() -> int:
    return int(time.time() * 1000)


def insert_task(
    conn: sqlite3.Connection,
    task_id: str,
    *,
    command: Optional[str] = "SELECT 1;",
    task_type: Optional[str] = "Command",
    priority: int = 0,
    scheduled_time: Optional[int] = None,
    status: str = "pending",
) -> None:
    """Raw insert, so tests can create rows the API would reject."""
    now = now_ms()
    conn.execute(
        """
        INSERT INTO tasks(id, command, task_type, status, priority, scheduled_time, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?);
        """,
        (task_id, command, task_type, status, priority, now if scheduled_time is None else scheduled_time, now, now),
    )


def task_row(conn: sqlite3.Connection, task_id: str) -> sqlite3.Row:
    return conn.execute("SELECT * FROM tasks WHERE id = ?;", (task_id,)).fetchone()


def wait_until(fn, timeout_s: float = 5.0, poll_s: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if fn():
            return True
        time.sleep(poll_s)
    return False


def make_settings(db_path: Path, **overrides) -> Settings:
    values = dict(
        db_path=db_path,
        poll_interval_ms=100,
        max_concurrent_workers=2,
        enabled=True,
        start_timeout_ms=20_000,
        claim_lock_ms=30_000,
        process_timeout_s=0,
        host="127.0.0.1",
        port=8000,
        log_level="warning",
    )
    values.update(overrides)
    return Settings(**values)


class FakeHandle:
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        self.executor_id: Optional[int] = None
        self.released: Optional[bool] = None

    def release(self, proceed: bool) -> None:
        self.released = proceed


class FakeLauncher:
    """
    Stands in for ProcessLauncher: no process is started, the outcome is scripted.
    """

    def __init__(self, outcome: StartOutcome = StartOutcome.STARTED, *, fail_spawn: bool = False) -> None:
        self.outcome = outcome
        self.fail_spawn = fail_spawn
        self.spawned: list[str] = []
        self.handles: list[FakeHandle] = []

    def spawn(self, task_id: str) -> FakeHandle:
        if self.fail_spawn:
            raise OSError("cannot fork")
        self.spawned.append(task_id)
        handle = FakeHandle(task_id)
        self.handles.append(handle)
        return handle

    def await_start(self, handle: FakeHandle, timeout_s: float) -> StartResult:
        if self.outcome is StartOutcome.STARTED:
            return StartResult(StartOutcome.STARTED, executor_id=40_000 + len(self.spawned))
        return StartResult(self.outcome, detail="scripted")


@pytest.fixture()
def db(tmp_path: Path) -> SQLiteDB:
    """
    Fresh migrated database per test.
    """
    db = SQLiteDB(tmp_path / "tasks.db")
    conn = db.connect()
    try:
        apply_migrations(conn)
    finally:
        conn.close()
    return db


@pytest.fixture()
def conn(db: SQLiteDB) -> Iterator[sqlite3.Connection]:
    conn = db.connect()
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def config_factory(db: SQLiteDB):
    """
    Usage:
      config = config_factory(max_concurrent_workers=1)
    """

    def _make(**overrides) -> ConfigProvider:
        settings = make_settings(db.db_path, **overrides)
        return ConfigProvider(loader=lambda: settings)

    return _make


def _apply_env(monkeypatch: pytest.MonkeyPatch, db_path: Path, overrides: Optional[dict[str, str]] = None) -> None:
    monkeypatch.setenv("PQS_DB_PATH", str(db_path))
    for k, v in DEFAULT_ENV.items():
        monkeypatch.setenv(k, v)
    if overrides:
        for k, v in overrides.items():
            monkeypatch.setenv(k, v)


@contextmanager
def _client_ctx(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, *, overrides: Optional[dict[str, str]] = None,
                db_path: Optional[Path] = None) -> Iterator[TestClient]:
    if db_path is None:
        db_path = tmp_path / f"api_{next(_counter)}.db"

    _apply_env(monkeypatch, db_path, overrides)

    # Import after env is set; reload to avoid cross-test state
    app_mod = importlib.import_module("pqsched.api.app")
    importlib.reload(app_mod)

    with TestClient(app_mod.app) as client:
        yield client


@pytest.fixture()
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    """
    Default integration test client.
    Uses DEFAULT_ENV and a fresh sqlite db per test.
    """
    with _client_ctx(monkeypatch, tmp_path) as c:
        yield c


@pytest.fixture()
def client_factory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """
    Factory for tests that need custom settings or a pre-populated DB.

      with client_factory(overrides={"PQS_ENABLED": "false"}) as client:
          ...
    """

    def _make(*, overrides: Optional[dict[str, str]] = None, db_path: Optional[Path] = None):
        return _client_ctx(monkeypatch, tmp_path, overrides=overrides, db_path=db_path)

    return _make
