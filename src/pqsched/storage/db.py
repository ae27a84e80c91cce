# src/pqsched/storage/db.py
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator


@dataclass(frozen=True)
class SQLiteDB:
    """
    SQLite connection factory.

    Notes:
    - One connection per thread and per worker process; connections never
      cross a process boundary, only `db_path` does.
    - WAL mode lets workers write terminal statuses while the scheduler reads.
    """
    db_path: Path
    timeout_s: float = 5.0

    def connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.timeout_s,
            isolation_level=None,          # transactions are managed manually (BEGIN/COMMIT)
            check_same_thread=True,
        )
        conn.row_factory = sqlite3.Row
        self._apply_pragmas(conn)
        return conn

    def _apply_pragmas(self, conn: sqlite3.Connection) -> None:
        cur = conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA foreign_keys=ON;")
        cur.execute(f"PRAGMA busy_timeout={int(self.timeout_s * 1000)};")
        cur.execute("PRAGMA synchronous=NORMAL;")
        cur.close()


def begin_immediate(conn: sqlite3.Connection) -> None:
    """
    Begins a transaction that takes the RESERVED lock up front.

    Every claimant serializes here, which is what makes a claim exclusive.
    """
    conn.execute("BEGIN IMMEDIATE;")


def commit(conn: sqlite3.Connection) -> None:
    conn.execute("COMMIT;")


def rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK;")


def iter_statements(script: str) -> Iterator[str]:
    """
    Splits a SQL script into single statements.

    `sqlite3.Connection.execute` only accepts one statement, and
    `executescript` commits on its own, so Command payloads are fed through
    here. Semicolons inside literals or trigger bodies are kept intact by
    asking SQLite whether the accumulated text is complete.
    """
    pieces = script.split(";")
    buf = ""
    for piece in pieces[:-1]:
        buf += piece + ";"
        if sqlite3.complete_statement(buf):
            stmt = buf.strip()
            buf = ""
            if stmt.rstrip(";").strip():
                yield stmt

    # Last statement without a semicolon, or an unterminated literal that
    # SQLite should get to report.
    leftover = (buf + pieces[-1]).strip()
    if leftover:
        yield leftover
