from __future__ import annotations

import logging
import sys
from typing import Optional

# Workers are separate processes, so every line carries the pid.
_FORMAT = "%(asctime)s %(levelname)s [%(process)d] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"
# Only the handler carrying this name is replaced on reconfigure.
_HANDLER_NAME = "pqsched.stdout"

_LEVELS = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,  # no TRACE in stdlib logging
}


def configure_logging(log_level: str = "info") -> None:
    """
    Sends every record to stdout in one line format.

    Called by the daemon, the API lifespan and each spawned worker. Calling it
    again swaps the handler it installed before and leaves handlers owned by
    others (uvicorn, pytest) alone.
    """
    level = parse_level(log_level)

    root = logging.getLogger()
    root.setLevel(level)

    for h in list(root.handlers):
        if h.get_name() == _HANDLER_NAME:
            root.removeHandler(h)
            h.close()

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT))
    root.addHandler(handler)

    # Access lines never drop below INFO, even at debug.
    logging.getLogger("uvicorn.access").setLevel(max(level, logging.INFO))
    logging.getLogger("uvicorn.error").setLevel(level)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name if name else "pqsched")


def parse_level(log_level: str) -> int:
    return _LEVELS.get(log_level.lower().strip(), logging.INFO)
