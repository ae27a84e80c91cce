# src/pqsched/storage/migrations.py
from __future__ import annotations

import re
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pqsched.logging import get_logger

from .db import begin_immediate, commit, iter_statements, rollback

_LOG = get_logger(__name__)

# NNN_description.sql
_MIGRATION_RE = re.compile(r"^(?P<version>\d+)_.*\.sql$")


@dataclass(frozen=True)
class Migration:
    version: int
    filename: str
    path: Path


def default_migrations_dir() -> Path:
    """SQL files shipped inside the package (storage/sql)."""
    return Path(__file__).resolve().with_name("sql")


def apply_migrations(conn: sqlite3.Connection, migrations_dir: Optional[Path] = None) -> int:
    """
    Brings the task store schema up to date. Returns the number of files applied.

    Each file runs in its own BEGIN IMMEDIATE transaction together with its
    schema_migrations row. A daemon and an API process starting on the same
    database apply a version at most once between them, and a file that
    fails leaves neither schema changes nor a version row.
    """
    directory = (migrations_dir or default_migrations_dir()).resolve()
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations dir not found: {directory}")

    _ensure_migrations_table(conn)

    applied = 0
    for m in _load_migrations(directory):
        if _apply_one(conn, m):
            applied += 1

    if applied:
        _LOG.info("Schema migrated: %d file(s) applied.", applied)
    else:
        _LOG.debug("Schema up to date.")
    return applied


def _apply_one(conn: sqlite3.Connection, m: Migration) -> bool:
    begin_immediate(conn)
    try:
        # Re-checked under the write lock; another process may have won.
        done = conn.execute("SELECT 1 FROM schema_migrations WHERE version = ?;", (m.version,)).fetchone()
        if done is not None:
            commit(conn)
            return False

        _LOG.info("Applying migration %03d (%s)", m.version, m.filename)
        for stmt in iter_statements(m.path.read_text(encoding="utf-8")):
            conn.execute(stmt)
        conn.execute(
            "INSERT INTO schema_migrations(version, filename, applied_at) VALUES (?, ?, ?);",
            (m.version, m.filename, int(time.time() * 1000)),
        )
        commit(conn)
        return True
    except Exception:
        rollback(conn)
        raise


def _ensure_migrations_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations(
          version INTEGER PRIMARY KEY,
          filename TEXT NOT NULL,
          applied_at INTEGER NOT NULL
        );
        """
    )


def _load_migrations(directory: Path) -> list[Migration]:
    found: list[Migration] = []
    for path in directory.glob("*.sql"):
        m = _MIGRATION_RE.match(path.name)
        if m:
            found.append(Migration(version=int(m.group("version")), filename=path.name, path=path))
    return sorted(found, key=lambda x: x.version)
