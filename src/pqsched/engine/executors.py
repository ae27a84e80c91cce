# src/pqsched/engine/executors.py
"""
The two execution modes of a task payload.

Both raise on failure; turning errors into a `failed` status is the
worker's job.
"""
from __future__ import annotations

import re
import sqlite3
import subprocess
from typing import Optional

from pqsched.domain.errors import TaskExecutionError, UnknownTaskTypeError
from pqsched.domain.states import TaskType
from pqsched.logging import get_logger
from pqsched.storage.db import begin_immediate, commit, iter_statements, rollback

_LOG = get_logger(__name__)

# Keep last_error readable when a process dumps a lot on stderr.
_MAX_OUTPUT_CHARS = 2_000

_TRANSACTION_CONTROL = frozenset({"BEGIN", "COMMIT", "END", "ROLLBACK", "SAVEPOINT", "RELEASE"})

# First word of a statement, after any leading comments.
_LEADING_KEYWORD = re.compile(r"\s*(?:(?:--[^\n]*(?:\n|$)|/\*.*?\*/)\s*)*([A-Za-z]+)", re.S)


def _leading_keyword(stmt: str) -> str:
    m = _LEADING_KEYWORD.match(stmt)
    return m.group(1).upper() if m else ""


def run_command(conn: sqlite3.Connection, command: str) -> int:
    """
    Runs a SQL script as one transaction against the task store.

    Any statement failing rolls back everything the script did. Scripts
    that manage transactions themselves (COMMIT, SAVEPOINT, ...) are
    refused before anything runs.
    Returns the number of statements executed.
    """
    statements = list(iter_statements(command))
    for stmt in statements:
        keyword = _leading_keyword(stmt)
        if keyword in _TRANSACTION_CONTROL:
            raise TaskExecutionError(
                f"Transaction control is not allowed in a Command payload: {keyword}",
                details={"statement": stmt[:200]},
            )

    executed = 0
    try:
        begin_immediate(conn)
        for stmt in statements:
            conn.execute(stmt)
            if not conn.in_transaction:
                raise TaskExecutionError(
                    "Command payload ended its own transaction",
                    details={"statement": stmt[:200]},
                )
            executed += 1
        commit(conn)
    except Exception:
        rollback(conn)
        raise
    return executed


def run_external_process(command: str, timeout_s: Optional[float] = None) -> int:
    """
    Runs a shell command outside any transaction.

    Whatever the command did before failing stays done. Non-zero exit and
    timeouts raise TaskExecutionError.
    """
    try:
        proc = subprocess.run(
            command,
            shell=True,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired as e:
        raise TaskExecutionError(
            f"Process timed out after {timeout_s}s",
            details={"timeout_s": timeout_s},
        ) from e

    if proc.returncode != 0:
        output = (proc.stderr or proc.stdout or "").strip()[-_MAX_OUTPUT_CHARS:]
        raise TaskExecutionError(
            f"Process exited with code {proc.returncode}: {output or 'no output'}",
            details={"exit_code": proc.returncode},
        )

    _LOG.debug("Process output: %s", proc.stdout.strip()[-_MAX_OUTPUT_CHARS:])
    return proc.returncode


def execute_payload(
    conn: sqlite3.Connection,
    command: str,
    task_type: str,
    *,
    process_timeout_s: Optional[float] = None,
) -> None:
    try:
        kind = TaskType(task_type)
    except ValueError as e:
        raise UnknownTaskTypeError(
            f"Unknown task type: {task_type!r}",
            details={"task_type": task_type},
        ) from e

    if kind is TaskType.COMMAND:
        run_command(conn, command)
    else:
        run_external_process(command, timeout_s=process_timeout_s)
