# src/pqsched/api/deps.py
from __future__ import annotations

import sqlite3
from typing import Generator

from fastapi import Depends, Request

from pqsched.config import ConfigProvider
from pqsched.engine import Scheduler
from pqsched.storage import SQLiteDB, TaskRepo


def get_config(request: Request) -> ConfigProvider:
    """
    Live config provider stored on app.state during startup.
    """
    return request.app.state.config  # type: ignore[attr-defined]


def get_scheduler(request: Request) -> Scheduler:
    return request.app.state.scheduler  # type: ignore[attr-defined]


def get_db(request: Request) -> SQLiteDB:
    return request.app.state.db  # type: ignore[attr-defined]


def get_conn(
    db: SQLiteDB = Depends(get_db),
) -> Generator[sqlite3.Connection, None, None]:
    """
    Provides a per-request SQLite connection.
    """
    conn = db.connect()
    try:
        yield conn
    finally:
        conn.close()


def get_repo(
    conn: sqlite3.Connection = Depends(get_conn),
) -> TaskRepo:
    return TaskRepo(conn)
