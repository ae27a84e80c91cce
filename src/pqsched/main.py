from __future__ import annotations

from pqsched.config import ConfigProvider, load_settings
from pqsched.engine import build_scheduler, install_signal_handlers
from pqsched.logging import configure_logging, get_logger
from pqsched.storage import SQLiteDB, apply_migrations


def main() -> int:
    """
    Scheduler daemon entrypoint (`pqsched` / `python -m pqsched.main`).

    Runs the poll loop in the foreground until SIGTERM/SIGINT, or until the
    PQS_ENABLED kill switch is off. SIGHUP re-reads PQS_* settings.
    """
    try:
        config = ConfigProvider()
    except ValueError as e:
        configure_logging("info")
        get_logger(__name__).error("Invalid configuration: %s", e)
        return 1

    settings = config.settings
    configure_logging(settings.log_level)
    log = get_logger(__name__)
    log.info("Starting pqsched with DB path: %s", settings.db_path)

    db = SQLiteDB(settings.db_path)
    conn = db.connect()
    try:
        apply_migrations(conn)
    finally:
        conn.close()

    scheduler = build_scheduler(db, config)
    install_signal_handlers(scheduler.shutdown_signal, on_reload=config.reload)
    scheduler.run_forever()
    return 0


def serve() -> int:
    """
    HTTP API entrypoint (`pqsched-api`). The app lifespan starts the scheduler.

    Recommended dev command:
      uvicorn pqsched.api.app:app --reload
    """
    settings = load_settings()
    configure_logging(settings.log_level)
    log = get_logger(__name__)

    try:
        import uvicorn
    except ImportError:
        log.error("uvicorn is not installed. Install with: pip install uvicorn")
        return 1

    uvicorn.run(
        "pqsched.api.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        reload=False,  # prefer `uvicorn ... --reload` in dev
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
