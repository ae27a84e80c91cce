# src/pqsched/engine/dispatcher.py
from __future__ import annotations

import multiprocessing
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Optional, Protocol

from pqsched.domain.errors import WorkerStartError, WorkerStartTimeout
from pqsched.logging import get_logger

from .worker import STARTED, worker_main

_LOG = get_logger(__name__)


class StartOutcome(StrEnum):
    STARTED = "started"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class StartResult:
    outcome: StartOutcome
    executor_id: Optional[int] = None
    detail: str = ""


class WorkerHandle(Protocol):
    task_id: str
    executor_id: Optional[int]

    def release(self, proceed: bool) -> None: ...


class Launcher(Protocol):
    def spawn(self, task_id: str) -> WorkerHandle: ...

    def await_start(self, handle: WorkerHandle, timeout_s: float) -> StartResult: ...


class ProcessHandle:
    """
    Parent side of one spawned worker process.

    Held only until `release()`; after that the scheduler has no further
    visibility of the task.
    """

    def __init__(self, task_id: str, process, conn) -> None:
        self.task_id = task_id
        self.process = process
        self.conn = conn
        self.executor_id: Optional[int] = None

    def release(self, proceed: bool) -> None:
        try:
            self.conn.send(proceed)
        except (BrokenPipeError, OSError):
            _LOG.warning("Worker for task %s gone before release (proceed=%s).", self.task_id, proceed)
        finally:
            self.conn.close()

    def abort(self) -> None:
        self.conn.close()
        if self.process.is_alive():
            self.process.terminate()
        self.process.join(timeout=1.0)


class ProcessLauncher:
    """
    Starts one fresh OS process per task (multiprocessing "spawn" context).

    Nothing is inherited from the scheduler besides the arguments, so a
    crashing worker cannot take the scheduler or its siblings with it.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        log_level: str = "info",
        handshake_timeout_s: float = 30.0,
        process_timeout_s: Optional[float] = None,
        start_method: str = "spawn",
    ) -> None:
        self._db_path = str(db_path)
        self._log_level = log_level
        self._handshake_timeout_s = handshake_timeout_s
        self._process_timeout_s = process_timeout_s
        self._ctx = multiprocessing.get_context(start_method)

    def spawn(self, task_id: str) -> ProcessHandle:
        parent_conn, child_conn = self._ctx.Pipe()
        process = self._ctx.Process(
            target=worker_main,
            args=(
                self._db_path,
                task_id,
                child_conn,
                self._log_level,
                self._handshake_timeout_s,
                self._process_timeout_s,
            ),
            name=f"pqsched-worker-{task_id}",
            # Non-daemonic: dispatched workers outlive a scheduler shutdown.
            daemon=False,
        )
        try:
            process.start()
        except Exception:
            parent_conn.close()
            raise
        finally:
            # The child owns its end now; closing ours makes its death visible as EOF.
            child_conn.close()
        return ProcessHandle(task_id, process, parent_conn)

    def await_start(self, handle: ProcessHandle, timeout_s: float) -> StartResult:
        try:
            if not handle.conn.poll(timeout_s):
                handle.abort()
                return StartResult(StartOutcome.TIMED_OUT, detail=f"no start confirmation within {timeout_s}s")
            tag, pid = handle.conn.recv()
        except (EOFError, OSError):
            handle.abort()
            return StartResult(
                StartOutcome.FAILED,
                detail=f"worker exited before confirming start (exitcode={handle.process.exitcode})",
            )

        if tag != STARTED:
            handle.abort()
            return StartResult(StartOutcome.FAILED, detail=f"unexpected handshake message {tag!r}")
        return StartResult(StartOutcome.STARTED, executor_id=int(pid))


class WorkerDispatcher:
    """
    spawn + bounded wait for start confirmation.

    Returns the live handle with `executor_id` set, or raises a DispatchError
    subclass; in that case no worker is left able to run the task.
    """

    def __init__(self, launcher: Launcher, start_timeout_s: float) -> None:
        if start_timeout_s <= 0:
            raise ValueError("start_timeout_s must be > 0")
        self._launcher = launcher
        self._start_timeout_s = start_timeout_s

    def dispatch(self, task_id: str) -> WorkerHandle:
        try:
            handle = self._launcher.spawn(task_id)
        except Exception as e:
            raise WorkerStartError(
                f"Failed to spawn worker for task {task_id}: {e!r}",
                details={"id": task_id},
            ) from e

        result = self._launcher.await_start(handle, self._start_timeout_s)
        if result.outcome is StartOutcome.STARTED:
            handle.executor_id = result.executor_id
            return handle

        if result.outcome is StartOutcome.TIMED_OUT:
            raise WorkerStartTimeout(
                f"Worker for task {task_id} did not start: {result.detail}",
                details={"id": task_id},
            )
        raise WorkerStartError(
            f"Worker for task {task_id} failed to start: {result.detail}",
            details={"id": task_id},
        )
