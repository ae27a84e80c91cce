# tests/test_repo_transitions.py
import sqlite3

import pytest
from conftest import insert_task, now_ms, task_row

from pqsched.domain.errors import ConflictError, NotFoundError, ValidationError
from pqsched.domain.models import TaskCreate
from pqsched.domain.states import TaskStatus, TaskType, can_transition
from pqsched.storage import TaskRepo


def _claimed(conn, task_id: str, claimant: str = "s1") -> TaskRepo:
    repo = TaskRepo(conn)
    insert_task(conn, task_id)
    repo.claim_pending(limit=1, now_ms=now_ms(), claimant=claimant, lock_ms=10_000)
    return repo


def test_mark_running_records_executor_and_start_time(conn):
    repo = _claimed(conn, "t")
    started = now_ms()

    assert repo.mark_running("t", executor_id=1234, started_at=started, claimant="s1") is True

    row = task_row(conn, "t")
    assert row["status"] == "running"
    assert row["executor_id"] == 1234
    assert row["started_at"] == started
    assert row["claimed_by"] is None
    assert repo.count_running() == 1


def test_mark_running_requires_own_claim(conn):
    repo = _claimed(conn, "t", claimant="s1")
    assert repo.mark_running("t", executor_id=1, started_at=now_ms(), claimant="s2") is False
    assert task_row(conn, "t")["status"] == "pending"


def test_mark_running_is_one_shot(conn):
    repo = _claimed(conn, "t")
    first = now_ms()
    assert repo.mark_running("t", executor_id=1, started_at=first, claimant="s1") is True
    assert repo.mark_running("t", executor_id=2, started_at=first + 10, claimant="s1") is False

    row = task_row(conn, "t")
    assert row["started_at"] == first
    assert row["executor_id"] == 1


def test_mark_terminal_from_running_only(conn):
    repo = _claimed(conn, "t")

    # pending -> completed is not an edge
    assert repo.mark_terminal("t", TaskStatus.COMPLETED, now_ms()) is False
    assert task_row(conn, "t")["status"] == "pending"

    repo.mark_running("t", executor_id=1, started_at=now_ms(), claimant="s1")
    done_at = now_ms()
    assert repo.mark_terminal("t", TaskStatus.FAILED, done_at, error="boom") is True

    row = task_row(conn, "t")
    assert row["status"] == "failed"
    assert row["completed_at"] == done_at
    assert row["last_error"] == "boom"

    # terminal is sticky, completed_at is not overwritten
    assert repo.mark_terminal("t", TaskStatus.COMPLETED, done_at + 5) is False
    assert task_row(conn, "t")["completed_at"] == done_at


def test_mark_terminal_rejects_non_terminal_status(conn):
    repo = _claimed(conn, "t")
    with pytest.raises(ValidationError):
        repo.mark_terminal("t", TaskStatus.RUNNING, now_ms())


def test_store_trigger_rejects_illegal_edges(conn):
    insert_task(conn, "done", status="completed")
    insert_task(conn, "new")

    with pytest.raises(sqlite3.IntegrityError):
        conn.execute("UPDATE tasks SET status = 'running' WHERE id = 'done';")
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute("UPDATE tasks SET status = 'completed' WHERE id = 'new';")


def test_transition_table():
    assert can_transition(TaskStatus.PENDING, TaskStatus.RUNNING)
    assert can_transition(TaskStatus.RUNNING, TaskStatus.FAILED)
    assert not can_transition(TaskStatus.PENDING, TaskStatus.COMPLETED)
    assert not can_transition(TaskStatus.COMPLETED, TaskStatus.RUNNING)


def test_create_get_and_list(conn):
    repo = TaskRepo(conn)
    t = now_ms()
    repo.create_task(TaskCreate(id="a", command="SELECT 1", task_type=TaskType.COMMAND, priority=1), now_ms=t)
    repo.create_task(
        TaskCreate(id="b", command="true", task_type=TaskType.EXTERNAL_PROCESS, priority=7, scheduled_time=t + 5),
        now_ms=t,
    )

    a = repo.get_task("a")
    assert a.status is TaskStatus.PENDING
    assert a.scheduled_time == t
    assert repo.get_task("b").task_type == "ExternalProcess"

    tasks, total = repo.list_tasks()
    assert total == 2
    assert [v.id for v in tasks] == ["b", "a"]

    pending, n = repo.list_tasks(status=TaskStatus.RUNNING)
    assert (pending, n) == ([], 0)

    with pytest.raises(ConflictError):
        repo.create_task(TaskCreate(id="a", command="SELECT 2", task_type=TaskType.COMMAND), now_ms=t)
    with pytest.raises(NotFoundError):
        repo.get_task("missing")


def test_load_task(conn):
    insert_task(conn, "t", command="echo 1", task_type="ExternalProcess")
    payload = TaskRepo(conn).load_task("t")
    assert payload.command == "echo 1"
    assert payload.task_type == "ExternalProcess"
    assert TaskRepo(conn).load_task("nope") is None
