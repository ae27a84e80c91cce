# src/pqsched/storage/repo.py
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Optional

from pqsched.domain.errors import ConflictError, NotFoundError, ValidationError
from pqsched.domain.models import ClaimedTask, TaskCreate, TaskPayload, TaskView
from pqsched.domain.states import TaskStatus
from pqsched.logging import get_logger

from .db import begin_immediate, commit, rollback

_LOG = get_logger(__name__)

_TASK_COLUMNS = """
    id, command, task_type, status, priority, scheduled_time,
    started_at, completed_at, executor_id,
    created_at, updated_at, last_error
"""


@dataclass
class TaskRepo:
    """
    Repository encapsulating all SQL access to the task queue.

    Important invariants:
    - Claiming is exclusive: BEGIN IMMEDIATE serializes claimants and rows
      holding a live claim lock of another claimant are skipped, not waited on.
    - Every status write is conditional on the expected prior status, so
      the pending -> running -> terminal order holds even under races.
    - started_at / completed_at are written once, by the guarded transition.
    """
    conn: sqlite3.Connection

    # -------------------------
    # Read operations
    # -------------------------

    def get_task(self, task_id: str) -> TaskView:
        row = self.conn.execute(
            f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?;",
            (task_id,),
        ).fetchone()
        if not row:
            raise NotFoundError(f"Task not found: {task_id}", details={"id": task_id})
        return _to_view(row)

    def list_tasks(
        self,
        limit: int = 200,
        offset: int = 0,
        status: Optional[TaskStatus] = None,
    ) -> tuple[list[TaskView], int]:
        where, params = "", ()
        if status is not None:
            where, params = "WHERE status = ?", (status.value,)

        total = self.conn.execute(f"SELECT COUNT(*) AS c FROM tasks {where};", params).fetchone()["c"]
        rows = self.conn.execute(
            f"""
            SELECT {_TASK_COLUMNS}
            FROM tasks
            {where}
            ORDER BY priority DESC, scheduled_time ASC, id ASC
            LIMIT ? OFFSET ?;
            """,
            (*params, limit, offset),
        ).fetchall()
        return [_to_view(r) for r in rows], int(total)

    def count_running(self) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS c FROM tasks WHERE status = ?;",
            (TaskStatus.RUNNING.value,),
        ).fetchone()
        return int(row["c"])

    def load_task(self, task_id: str) -> Optional[TaskPayload]:
        """
        Returns the payload of a task, or None when the row does not exist.
        """
        row = self.conn.execute(
            "SELECT command, task_type FROM tasks WHERE id = ?;",
            (task_id,),
        ).fetchone()
        if row is None:
            return None
        return TaskPayload(command=row["command"], task_type=row["task_type"])

    # -------------------------
    # Write operations
    # -------------------------

    def create_task(self, task: TaskCreate, now_ms: int) -> None:
        """
        Inserts a pending task. Rejects duplicate ids.
        """
        scheduled = task.scheduled_time if task.scheduled_time is not None else now_ms
        try:
            begin_immediate(self.conn)

            existing = self.conn.execute("SELECT 1 FROM tasks WHERE id=?;", (task.id,)).fetchone()
            if existing:
                raise ConflictError(f"Task already exists: {task.id}", details={"id": task.id})

            self.conn.execute(
                """
                INSERT INTO tasks(
                  id, command, task_type, status, priority, scheduled_time,
                  created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    task.id,
                    task.command,
                    task.task_type.value,
                    TaskStatus.PENDING.value,
                    task.priority,
                    scheduled,
                    now_ms,
                    now_ms,
                ),
            )
            commit(self.conn)
        except Exception:
            rollback(self.conn)
            raise

    def claim_pending(
        self,
        limit: int,
        now_ms: int,
        claimant: str,
        lock_ms: int,
    ) -> list[ClaimedTask]:
        """
        Claims up to `limit` due pending tasks for `claimant`.

        Order: priority DESC, scheduled_time ASC, id ASC.

        Rows whose claim lock belongs to someone else and has not expired are
        skipped. Status stays `pending`; the caller records the running
        transition per task with `mark_running` once a worker is confirmed.
        """
        if limit <= 0:
            return []

        try:
            begin_immediate(self.conn)

            rows = self.conn.execute(
                """
                SELECT id, command, task_type
                FROM tasks
                WHERE status = ?
                  AND scheduled_time <= ?
                  AND (claimed_by IS NULL OR claim_expires_at IS NULL OR claim_expires_at <= ?)
                ORDER BY priority DESC, scheduled_time ASC, id ASC
                LIMIT ?;
                """,
                (TaskStatus.PENDING.value, now_ms, now_ms, limit),
            ).fetchall()

            if not rows:
                commit(self.conn)
                return []

            ids = [r["id"] for r in rows]
            self.conn.execute(
                f"""
                UPDATE tasks
                SET claimed_by = ?,
                    claim_expires_at = ?,
                    updated_at = ?
                WHERE id IN ({",".join("?" for _ in ids)})
                  AND status = ?;
                """,
                (claimant, now_ms + lock_ms, now_ms, *ids, TaskStatus.PENDING.value),
            )

            commit(self.conn)
            return [ClaimedTask(id=r["id"], command=r["command"], task_type=r["task_type"]) for r in rows]
        except Exception:
            rollback(self.conn)
            raise

    def release_claim(self, task_id: str, claimant: str) -> bool:
        """
        Drops the claim lock held by `claimant` so the next cycle can retry.
        """
        cur = self.conn.execute(
            """
            UPDATE tasks
            SET claimed_by = NULL,
                claim_expires_at = NULL
            WHERE id = ?
              AND claimed_by = ?
              AND status = ?;
            """,
            (task_id, claimant, TaskStatus.PENDING.value),
        )
        return cur.rowcount == 1

    def mark_running(self, task_id: str, executor_id: int, started_at: int, claimant: str) -> bool:
        """
        pending -> running for a task this claimant holds.

        Returns False (and writes nothing) when the row is no longer pending or
        the claim was lost to another claimant after its lock expired.
        """
        cur = self.conn.execute(
            """
            UPDATE tasks
            SET status = ?,
                started_at = ?,
                executor_id = ?,
                updated_at = ?,
                claimed_by = NULL,
                claim_expires_at = NULL
            WHERE id = ?
              AND status = ?
              AND claimed_by = ?;
            """,
            (
                TaskStatus.RUNNING.value,
                started_at,
                executor_id,
                started_at,
                task_id,
                TaskStatus.PENDING.value,
                claimant,
            ),
        )
        return cur.rowcount == 1

    def mark_terminal(
        self,
        task_id: str,
        status: TaskStatus,
        completed_at: int,
        error: Optional[str] = None,
    ) -> bool:
        """
        running -> completed | failed, in one update.

        Returns False when the row is missing or not running; the caller
        logs it, nothing is overwritten.
        """
        if not status.is_terminal:
            raise ValidationError(
                f"Not a terminal status: {status}",
                details={"id": task_id, "status": status.value},
            )

        cur = self.conn.execute(
            """
            UPDATE tasks
            SET status = ?,
                completed_at = ?,
                updated_at = ?,
                last_error = ?
            WHERE id = ?
              AND status = ?;
            """,
            (status.value, completed_at, completed_at, error, task_id, TaskStatus.RUNNING.value),
        )
        if cur.rowcount == 0:
            _LOG.warning("Task %s was not running; terminal status %s not recorded.", task_id, status)
            return False
        return True


def _to_view(row: sqlite3.Row) -> TaskView:
    return TaskView(
        id=row["id"],
        command=row["command"],
        task_type=row["task_type"],
        status=TaskStatus(row["status"]),
        priority=row["priority"],
        scheduled_time=row["scheduled_time"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        executor_id=row["executor_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_error=row["last_error"],
    )
