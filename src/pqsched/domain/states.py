# src/pqsched/domain/states.py
from __future__ import annotations

from enum import StrEnum


class TaskStatus(StrEnum):
    """
    Lifecycle states stored in the DB.

    Allowed edges (enforced by a trigger in the schema as well):
      - PENDING -> RUNNING: scheduler recorded a confirmed worker
      - RUNNING -> COMPLETED | FAILED: worker wrote its terminal status

    COMPLETED and FAILED are sticky; nothing requeues them.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class TaskType(StrEnum):
    """
    Execution mode of a task payload.

    - COMMAND: SQL script run in one transaction against the task store
    - EXTERNAL_PROCESS: shell command, never rolled back
    """

    COMMAND = "Command"
    EXTERNAL_PROCESS = "ExternalProcess"


ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]
