# src/pqsched/api/routes.py
from __future__ import annotations

import time
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from pqsched.config import ConfigProvider
from pqsched.domain.errors import ConflictError, NotFoundError, PQSBaseError
from pqsched.domain.models import (
    ErrorResponse,
    SchedulerView,
    TaskCreate,
    TaskListResponse,
    TaskView,
)
from pqsched.domain.states import TaskStatus
from pqsched.engine import Scheduler
from pqsched.logging import get_logger
from pqsched.storage import TaskRepo

from .deps import get_config, get_repo, get_scheduler

_LOG = get_logger(__name__)
router = APIRouter()


def now_ms() -> int:
    return int(time.time() * 1000)


def _error_response(err: PQSBaseError, http_status: int) -> JSONResponse:
    payload = ErrorResponse(
        error=err.message,
        code=err.code,
        details=err.details or {},
    ).model_dump()
    return JSONResponse(status_code=http_status, content=payload)


@router.get("/healthz")
def healthz() -> dict:
    return {"ok": True}


@router.post("/tasks", response_model=None, status_code=201)
def submit_task(
    task: TaskCreate,
    repo: TaskRepo = Depends(get_repo),
    scheduler: Scheduler = Depends(get_scheduler),
):
    """
    Enqueue a pending task.

    Due tasks are picked up on the next cycle; the scheduler is woken so that
    cycle starts right away.
    """
    try:
        repo.create_task(task, now_ms=now_ms())
    except ConflictError as e:
        return _error_response(e, 409)
    except PQSBaseError as e:
        return _error_response(e, 400)

    scheduler.wake()
    return {"id": task.id}


@router.get("/tasks/{task_id}", response_model=TaskView)
def get_task_status(
    task_id: str,
    repo: TaskRepo = Depends(get_repo),
):
    try:
        return repo.get_task(task_id)
    except NotFoundError as e:
        return _error_response(e, 404)


@router.get("/tasks", response_model=TaskListResponse)
def list_tasks(
    limit: int = Query(default=200, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    status: Optional[TaskStatus] = Query(default=None),
    repo: TaskRepo = Depends(get_repo),
):
    tasks, total = repo.list_tasks(limit=limit, offset=offset, status=status)
    return TaskListResponse(tasks=tasks, total=total)


@router.get("/scheduler", response_model=SchedulerView)
def scheduler_state(
    repo: TaskRepo = Depends(get_repo),
    config: ConfigProvider = Depends(get_config),
    scheduler: Scheduler = Depends(get_scheduler),
):
    snap = config.snapshot()
    return SchedulerView(
        poll_interval_ms=snap.poll_interval_ms,
        max_concurrent_workers=snap.max_concurrent_workers,
        enabled=snap.enabled,
        running=repo.count_running(),
        alive=scheduler.is_alive(),
    )


@router.post("/scheduler/wake", status_code=202)
def wake_scheduler(scheduler: Scheduler = Depends(get_scheduler)) -> dict:
    scheduler.wake()
    return {"woken": True}


@router.post("/scheduler/reload")
def reload_config(
    config: ConfigProvider = Depends(get_config),
    scheduler: Scheduler = Depends(get_scheduler),
) -> dict:
    """
    Re-read PQS_* settings. A disabled config stops the loop on its next cycle.
    """
    snap = config.reload()
    scheduler.wake()
    _LOG.info("Config reloaded via API.")
    return {
        "poll_interval_ms": snap.poll_interval_ms,
        "max_concurrent_workers": snap.max_concurrent_workers,
        "enabled": snap.enabled,
    }
