# src/pqsched/engine/worker.py
from __future__ import annotations

import os
import signal
import sqlite3
import time
from pathlib import Path
from typing import Optional

from pqsched.domain.states import TaskStatus
from pqsched.logging import configure_logging, get_logger
from pqsched.storage import SQLiteDB, TaskRepo

from .executors import execute_payload

_LOG = get_logger(__name__)

EXIT_OK = 0
EXIT_SETUP_FAILURE = 1

# Message the child sends once it is alive; the parent answers True/False.
STARTED = "started"

# A sibling's Command payload can hold the write lock past busy_timeout.
TERMINAL_RETRY_S = 600.0
_RETRY_MIN_DELAY_S = 0.05
_RETRY_MAX_DELAY_S = 1.0


def now_ms() -> int:
    return int(time.time() * 1000)


class Worker:
    """
    Executes exactly one task and writes its terminal status.

    Design choice:
    - Runs inside its own process with its own SQLite connection; nothing it
      raises can reach the scheduler.
    - Payload errors of any kind end as status=failed. Only setup problems
      (store unreachable, row missing, NULL fields) produce exit code 1.
    """

    def __init__(
        self,
        db: SQLiteDB,
        *,
        process_timeout_s: Optional[float] = None,
        terminal_retry_s: float = TERMINAL_RETRY_S,
    ) -> None:
        self._db = db
        self._process_timeout_s = process_timeout_s
        self._terminal_retry_s = terminal_retry_s

    def run(self, task_id: str) -> int:
        try:
            conn = self._db.connect()
        except sqlite3.Error:
            _LOG.exception("Task %s: cannot open task store.", task_id)
            return EXIT_SETUP_FAILURE

        try:
            return self._run(TaskRepo(conn), conn, task_id)
        except sqlite3.Error:
            _LOG.exception("Task %s: task store error.", task_id)
            return EXIT_SETUP_FAILURE
        finally:
            conn.close()

    def _run(self, repo: TaskRepo, conn: sqlite3.Connection, task_id: str) -> int:
        payload = repo.load_task(task_id)
        if payload is None:
            # Nothing to record against; the row is gone.
            _LOG.error("Task %s not found; no terminal status written.", task_id)
            return EXIT_SETUP_FAILURE

        if payload.command is None or payload.task_type is None:
            _LOG.error("Task %s has no command or task_type; marking failed.", task_id)
            self._record_terminal(
                repo,
                task_id,
                TaskStatus.FAILED,
                error="Task row is missing command or task_type",
            )
            return EXIT_SETUP_FAILURE

        start = now_ms()
        _LOG.info("Running task %s (%s)", task_id, payload.task_type)

        error: Optional[str] = None
        try:
            execute_payload(
                conn,
                payload.command,
                payload.task_type,
                process_timeout_s=self._process_timeout_s,
            )
            status = TaskStatus.COMPLETED
        except Exception as e:
            _LOG.exception("Task %s failed.", task_id)
            status, error = TaskStatus.FAILED, str(e) or repr(e)

        self._record_terminal(repo, task_id, status, error=error)
        _LOG.info("Task %s %s in %dms", task_id, status, now_ms() - start)
        return EXIT_OK

    def _record_terminal(
        self,
        repo: TaskRepo,
        task_id: str,
        status: TaskStatus,
        error: Optional[str] = None,
    ) -> bool:
        """
        Writes the terminal status, waiting out a busy store.

        "database is locked" only means another connection holds the write
        lock; the write is retried with backoff for up to `terminal_retry_s`.
        Other store errors propagate.
        """
        deadline = time.monotonic() + self._terminal_retry_s
        delay = _RETRY_MIN_DELAY_S
        while True:
            try:
                return repo.mark_terminal(task_id, status, now_ms(), error=error)
            except sqlite3.OperationalError as e:
                if time.monotonic() + delay > deadline:
                    raise
                _LOG.warning("Task %s: terminal write deferred (%s); retrying in %.2fs.", task_id, e, delay)
                time.sleep(delay)
                delay = min(delay * 2, _RETRY_MAX_DELAY_S)


def worker_main(
    db_path: str,
    task_id: str,
    conn,
    log_level: str = "info",
    handshake_timeout_s: float = 30.0,
    process_timeout_s: Optional[float] = None,
) -> None:
    """
    Entry point of a spawned worker process.

    Handshake with the dispatcher over `conn` (a multiprocessing Pipe end):
      child -> ("started", pid)
      parent -> True once the task is recorded as running, False to skip
    The task is only executed after True; a False, a closed pipe or no
    answer within `handshake_timeout_s` exits 0 without touching the row.

    SIGINT is ignored: Ctrl-C on the daemon reaches the whole process group,
    and an in-flight task must still end with a terminal write. The ignored
    disposition is inherited by ExternalProcess children.
    """
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    configure_logging(log_level)
    proceed = False
    try:
        conn.send((STARTED, os.getpid()))
        if conn.poll(handshake_timeout_s):
            proceed = bool(conn.recv())
        else:
            _LOG.warning("Task %s: no go-ahead from scheduler within %.1fs.", task_id, handshake_timeout_s)
    except (EOFError, OSError):
        _LOG.warning("Task %s: scheduler went away before go-ahead.", task_id)
    finally:
        conn.close()

    if not proceed:
        _LOG.info("Task %s skipped.", task_id)
        raise SystemExit(EXIT_OK)

    worker = Worker(SQLiteDB(Path(db_path)), process_timeout_s=process_timeout_s)
    raise SystemExit(worker.run(task_id))
