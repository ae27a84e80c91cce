# src/pqsched/storage/__init__.py
"""
Storage layer for pqsched (SQLite).

- db: connection factory, pragmas, transaction helpers
- migrations: numbered SQL migrations shipped in storage/sql
- repo: transactional task queue operations (claim, transitions)
"""

from .db import SQLiteDB
from .migrations import apply_migrations, default_migrations_dir
from .repo import TaskRepo

__all__ = ["SQLiteDB", "apply_migrations", "default_migrations_dir", "TaskRepo"]
