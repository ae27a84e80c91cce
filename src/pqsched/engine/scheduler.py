# src/pqsched/engine/scheduler.py
from __future__ import annotations

import multiprocessing
import os
import socket
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

from pqsched.config import ConfigProvider, SchedulerConfig
from pqsched.domain.errors import DispatchError
from pqsched.domain.models import ClaimedTask
from pqsched.logging import get_logger
from pqsched.storage import SQLiteDB, TaskRepo

from .dispatcher import ProcessLauncher, WorkerDispatcher
from .shutdown import ShutdownSignal

_LOG = get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CycleReport:
    """
    What one scheduling cycle did.
    """
    running: int = 0
    available: int = 0
    claimed: list[str] = field(default_factory=list)
    dispatched: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class Scheduler:
    """
    Scheduler loop:
    - Sleeps poll_interval (interruptible by shutdown or wake)
    - Exits on shutdown or when the config kill switch is off
    - Computes free slots from DB truth (status=running count vs. cap)
    - Claims due pending tasks up to the free slots
    - Dispatches each one to a worker process and records it as running

    Concurrency semantics:
    - The cap is enforced only through the running count each cycle. With
      several scheduler instances on one store, brief overshoot is possible.
    - A task whose worker fails to start is never marked running; its claim
      is released so the next cycle picks it up again (no backoff).
    """

    def __init__(
        self,
        db: SQLiteDB,
        config: ConfigProvider,
        dispatcher: WorkerDispatcher,
        *,
        claim_lock_ms: int = 30_000,
        shutdown: Optional[ShutdownSignal] = None,
    ) -> None:
        if claim_lock_ms <= 0:
            raise ValueError("claim_lock_ms must be > 0")

        self._db = db
        self._config = config
        self._dispatcher = dispatcher
        self._claim_lock_ms = claim_lock_ms
        self._shutdown = shutdown or ShutdownSignal()
        self._claimant = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._thread: Optional[threading.Thread] = None

    @property
    def claimant(self) -> str:
        return self._claimant

    @property
    def shutdown_signal(self) -> ShutdownSignal:
        return self._shutdown

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """
        Starts the scheduler loop on a background thread.
        Safe to call once.
        """
        if self.is_alive():
            return

        self._thread = threading.Thread(target=self.run_forever, name="pqsched-scheduler", daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        """
        Requests shutdown and waits for the loop thread.

        In-flight workers are separate processes and keep running.
        """
        self.request_shutdown()
        if self._thread:
            self._thread.join(timeout=timeout_s)
        _LOG.info("Scheduler stopped.")

    def request_shutdown(self) -> None:
        self._shutdown.request()

    def wake(self) -> None:
        self._shutdown.wake()

    def run_forever(self) -> None:
        cfg = self._config.snapshot()
        _LOG.info(
            "Starting scheduler %s: poll_interval_ms=%d max_workers=%d",
            self._claimant,
            cfg.poll_interval_ms,
            cfg.max_concurrent_workers,
        )

        while True:
            if self._shutdown.wait(self._config.snapshot().poll_interval_s):
                break

            cfg = self._config.snapshot()
            if not cfg.enabled:
                _LOG.info("Scheduler disabled by configuration; exiting loop.")
                break

            try:
                self.run_once(cfg)
            except sqlite3.Error:
                _LOG.warning("Task store error; skipping this cycle.", exc_info=True)
            except Exception:
                _LOG.exception("Scheduler iteration failed (continuing).")

        _LOG.info("Scheduler loop exited.")

    def run_once(self, cfg: Optional[SchedulerConfig] = None) -> CycleReport:
        """
        One scheduling cycle on its own connection.
        """
        cfg = cfg or self._config.snapshot()

        # Reap finished worker processes.
        multiprocessing.active_children()

        conn = self._db.connect()
        try:
            return self._claim_and_dispatch(TaskRepo(conn), cfg)
        finally:
            conn.close()

    def _claim_and_dispatch(self, repo: TaskRepo, cfg: SchedulerConfig) -> CycleReport:
        report = CycleReport()
        report.running = repo.count_running()
        report.available = max(0, cfg.max_concurrent_workers - report.running)
        if report.available <= 0:
            _LOG.debug("No free slots: running=%d cap=%d", report.running, cfg.max_concurrent_workers)
            return report

        if self._shutdown.is_set():
            return report

        claimed = repo.claim_pending(
            limit=report.available,
            now_ms=now_ms(),
            claimant=self._claimant,
            lock_ms=self._claim_lock_ms,
        )
        report.claimed = [t.id for t in claimed]
        if not claimed:
            return report

        for i, task in enumerate(claimed):
            try:
                ok = self._dispatch_one(repo, task)
            except Exception:
                # Claims not turned into running rows go back to the queue.
                self._release_claims(repo, claimed[i:])
                raise
            if ok:
                report.dispatched.append(task.id)
            else:
                report.failed.append(task.id)

        _LOG.info(
            "Claimed %d task(s); dispatched=%d failed=%d running_before=%d",
            len(claimed),
            len(report.dispatched),
            len(report.failed),
            report.running,
        )
        return report

    def _dispatch_one(self, repo: TaskRepo, task: ClaimedTask) -> bool:
        try:
            handle = self._dispatcher.dispatch(task.id)
        except DispatchError as e:
            _LOG.warning("Dispatch failed for task %s: %s", task.id, e)
            repo.release_claim(task.id, self._claimant)
            return False

        try:
            marked = repo.mark_running(task.id, handle.executor_id, now_ms(), self._claimant)
        except Exception:
            handle.release(False)
            raise

        handle.release(marked)
        if not marked:
            _LOG.warning("Task %s is no longer claimable; worker %s told to skip.", task.id, handle.executor_id)
            return False

        _LOG.debug("Task %s running on executor %s", task.id, handle.executor_id)
        return True

    def _release_claims(self, repo: TaskRepo, tasks: list[ClaimedTask]) -> None:
        for task in tasks:
            try:
                repo.release_claim(task.id, self._claimant)
            except sqlite3.Error:
                _LOG.warning("Could not release claim on task %s; it lapses after the lock expires.", task.id, exc_info=True)


def build_scheduler(
    db: SQLiteDB,
    config: ConfigProvider,
    *,
    shutdown: Optional[ShutdownSignal] = None,
) -> Scheduler:
    """
    Wires a Scheduler with process-backed workers from the current settings.
    """
    settings = config.settings
    launcher = ProcessLauncher(
        db.db_path,
        log_level=settings.log_level,
        process_timeout_s=settings.process_timeout_s or None,
    )
    return Scheduler(
        db,
        config,
        WorkerDispatcher(launcher, settings.start_timeout_s),
        claim_lock_ms=settings.claim_lock_ms,
        shutdown=shutdown,
    )
