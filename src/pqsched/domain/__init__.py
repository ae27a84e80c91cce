"""
Domain layer for pqsched.

- states: TaskStatus / TaskType enums and the allowed status edges
- models: Pydantic models for API input/output, plain records for the engine
- errors: domain-level exceptions
"""

from .states import TaskStatus, TaskType, can_transition
from .models import (
    ClaimedTask,
    ErrorResponse,
    SchedulerView,
    TaskCreate,
    TaskListResponse,
    TaskPayload,
    TaskView,
)
from .errors import (
    PQSBaseError,
    ValidationError,
    NotFoundError,
    ConflictError,
    DispatchError,
    WorkerStartError,
    WorkerStartTimeout,
    TaskExecutionError,
    UnknownTaskTypeError,
)

__all__ = [
    "TaskStatus",
    "TaskType",
    "can_transition",
    "TaskCreate",
    "TaskView",
    "TaskListResponse",
    "SchedulerView",
    "ErrorResponse",
    "ClaimedTask",
    "TaskPayload",
    "PQSBaseError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "DispatchError",
    "WorkerStartError",
    "WorkerStartTimeout",
    "TaskExecutionError",
    "UnknownTaskTypeError",
]
