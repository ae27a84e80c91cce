from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .states import TaskStatus, TaskType


TaskId = Annotated[str, Field(min_length=1, max_length=256)]


class TaskCreate(BaseModel):
    """
    API input model for submitting a task.

    `scheduled_time` is epoch milliseconds; omitted means "now".
    """
    model_config = ConfigDict(extra="forbid")

    id: TaskId
    command: Annotated[str, Field(min_length=1, max_length=65_536)]
    task_type: TaskType
    priority: int = 0
    scheduled_time: Optional[Annotated[int, Field(ge=0)]] = None

    @field_validator("command")
    @classmethod
    def _validate_command(cls, command: str) -> str:
        if not command.strip():
            raise ValueError("command must not be blank")
        return command


class TaskView(BaseModel):
    """
    API output model for a single task.
    """
    model_config = ConfigDict(extra="forbid")

    id: str
    command: Optional[str] = None
    # Kept as text: rows may carry a type this version does not know.
    task_type: Optional[str] = None

    status: TaskStatus
    priority: int
    scheduled_time: int

    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    executor_id: Optional[int] = None

    created_at: int
    updated_at: int
    last_error: Optional[str] = None


class TaskListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tasks: list[TaskView]
    total: int


class SchedulerView(BaseModel):
    model_config = ConfigDict(extra="forbid")

    poll_interval_ms: int
    max_concurrent_workers: int
    enabled: bool
    running: int
    alive: bool


class ErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error: str
    code: str
    details: dict = Field(default_factory=dict)


@dataclass(frozen=True)
class ClaimedTask:
    """A pending task locked by one claimant, in claim order."""
    id: str
    command: Optional[str]
    task_type: Optional[str]


@dataclass(frozen=True)
class TaskPayload:
    """What a worker needs to execute a task. Fields may be NULL in the row."""
    command: Optional[str]
    task_type: Optional[str]
