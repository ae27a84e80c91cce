# src/pqsched/domain/errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class PQSBaseError(Exception):
    """
    Base domain error.

    The API layer maps these to HTTP responses; the engine uses them to tell
    dispatch problems apart from task-level failures.
    """
    message: str
    code: str = "PQS_ERROR"
    details: Optional[dict[str, Any]] = None

    def __str__(self) -> str:
        return self.message


@dataclass
class ValidationError(PQSBaseError):
    code: str = "VALIDATION_ERROR"


@dataclass
class NotFoundError(PQSBaseError):
    code: str = "NOT_FOUND"


@dataclass
class ConflictError(PQSBaseError):
    code: str = "CONFLICT"


@dataclass
class DispatchError(PQSBaseError):
    """Worker could not be started for a claimed task."""
    code: str = "DISPATCH_ERROR"


@dataclass
class WorkerStartError(DispatchError):
    code: str = "WORKER_START_FAILED"


@dataclass
class WorkerStartTimeout(DispatchError):
    code: str = "WORKER_START_TIMEOUT"


@dataclass
class TaskExecutionError(PQSBaseError):
    """Task payload failed; ends in status=failed, never retried."""
    code: str = "TASK_EXECUTION_FAILED"


@dataclass
class UnknownTaskTypeError(TaskExecutionError):
    code: str = "UNKNOWN_TASK_TYPE"
