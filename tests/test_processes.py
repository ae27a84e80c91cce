# tests/test_processes.py
"""
End-to-end runs with real worker processes.
"""
import os
import signal
import sys
import time

import pytest
from conftest import insert_task, task_row, wait_until

from pqsched.domain.errors import WorkerStartTimeout
from pqsched.engine import ProcessLauncher, WorkerDispatcher, build_scheduler
from pqsched.engine.dispatcher import StartOutcome
from pqsched.storage import TaskRepo


def _status(conn, task_id: str) -> str:
    return task_row(conn, task_id)["status"]


def test_failing_task_does_not_affect_siblings(db, conn, config_factory):
    insert_task(conn, "boom", command="INSERT INTO no_such_table VALUES (1);", priority=3)
    insert_task(conn, "ext-ok", command="true", task_type="ExternalProcess", priority=2)
    insert_task(
        conn,
        "sql-ok",
        command="CREATE TABLE IF NOT EXISTS side(x INTEGER); INSERT INTO side VALUES (42);",
        priority=1,
    )
    sched = build_scheduler(db, config_factory(max_concurrent_workers=3))

    report = sched.run_once()
    assert report.dispatched == ["boom", "ext-ok", "sql-ok"]

    terminal = {"completed", "failed"}
    assert wait_until(
        lambda: all(_status(conn, t) in terminal for t in ("boom", "ext-ok", "sql-ok")),
        timeout_s=30.0,
        poll_s=0.1,
    )
    assert _status(conn, "boom") == "failed"
    assert _status(conn, "ext-ok") == "completed"
    assert _status(conn, "sql-ok") == "completed"
    assert conn.execute("SELECT x FROM side;").fetchone()["x"] == 42

    row = task_row(conn, "ext-ok")
    assert row["executor_id"] > 0
    assert row["started_at"] <= row["completed_at"]
    assert TaskRepo(conn).count_running() == 0


def test_launcher_reports_worker_pid(db, conn):
    insert_task(conn, "t", command="true", task_type="ExternalProcess", status="running")
    launcher = ProcessLauncher(db.db_path, log_level="warning")

    handle = launcher.spawn("t")
    result = launcher.await_start(handle, timeout_s=20.0)

    assert result.outcome is StartOutcome.STARTED
    assert result.executor_id == handle.process.pid
    handle.release(True)
    handle.process.join(timeout=20.0)
    assert handle.process.exitcode == 0
    assert _status(conn, "t") == "completed"


def test_released_false_skips_execution(db, conn):
    insert_task(conn, "t", command="true", task_type="ExternalProcess", status="running")
    launcher = ProcessLauncher(db.db_path, log_level="warning")

    handle = launcher.spawn("t")
    assert launcher.await_start(handle, timeout_s=20.0).outcome is StartOutcome.STARTED
    handle.release(False)
    handle.process.join(timeout=20.0)

    assert handle.process.exitcode == 0
    assert _status(conn, "t") == "running"


def test_missing_row_worker_exits_one(db):
    launcher = ProcessLauncher(db.db_path, log_level="warning")

    handle = launcher.spawn("ghost")
    assert launcher.await_start(handle, timeout_s=20.0).outcome is StartOutcome.STARTED
    handle.release(True)
    handle.process.join(timeout=20.0)

    assert handle.process.exitcode == 1


def test_start_timeout_terminates_worker(db, conn):
    insert_task(conn, "t", command="true", task_type="ExternalProcess")
    launcher = ProcessLauncher(db.db_path, log_level="warning")
    dispatcher = WorkerDispatcher(launcher, start_timeout_s=0.001)

    with pytest.raises(WorkerStartTimeout):
        dispatcher.dispatch("t")

    assert _status(conn, "t") == "pending"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_interrupt_does_not_abandon_running_task(db, conn):
    insert_task(conn, "t", command="sleep 1", task_type="ExternalProcess", status="running")
    launcher = ProcessLauncher(db.db_path, log_level="warning")

    handle = launcher.spawn("t")
    assert launcher.await_start(handle, timeout_s=20.0).outcome is StartOutcome.STARTED
    handle.release(True)
    time.sleep(0.3)
    # What a Ctrl-C on the daemon's terminal delivers to every worker.
    os.kill(handle.process.pid, signal.SIGINT)
    handle.process.join(timeout=20.0)

    assert handle.process.exitcode == 0
    assert _status(conn, "t") == "completed"
