# src/pqsched/api/app.py
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from pqsched.config import ConfigProvider
from pqsched.engine import build_scheduler
from pqsched.logging import configure_logging, get_logger
from pqsched.storage import SQLiteDB, apply_migrations

from .routes import router

_LOG = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Responsible for:
    - loading settings
    - configuring logging
    - running DB migrations
    - starting the scheduler loop on a background thread
    - stopping it on shutdown (dispatched workers keep running)
    """
    config = ConfigProvider()
    settings = config.settings
    configure_logging(settings.log_level)

    db = SQLiteDB(settings.db_path)

    conn = db.connect()
    try:
        apply_migrations(conn)
    finally:
        conn.close()

    scheduler = build_scheduler(db, config)

    app.state.config = config
    app.state.db = db
    app.state.scheduler = scheduler

    scheduler.start()
    _LOG.info("Startup complete.")

    try:
        yield
    finally:
        scheduler.stop(timeout_s=5.0)
        _LOG.info("Shutdown complete.")


app = FastAPI(
    title="Persistent-Queue Task Scheduler",
    version="0.1.0",
    lifespan=lifespan,
)
app.include_router(router)
