# src/pqsched/api/__init__.py
"""
API layer for pqsched (FastAPI).

- app: FastAPI instance + lifespan (migrations, scheduler thread)
- routes: task and scheduler endpoints
- deps: dependency injection helpers
"""

from .app import app

__all__ = ["app"]
