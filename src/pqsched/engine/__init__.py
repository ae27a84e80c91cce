# src/pqsched/engine/__init__.py
"""
Execution engine for pqsched.

- scheduler: poll loop, slot accounting, claim + dispatch
- dispatcher: worker process spawn and start confirmation
- worker: runs one task in its own process and records the outcome
- executors: Command (transactional SQL) and ExternalProcess modes
- shutdown: stop flag / wake latch and signal wiring
"""

from .dispatcher import ProcessLauncher, WorkerDispatcher
from .scheduler import CycleReport, Scheduler, build_scheduler
from .shutdown import ShutdownSignal, install_signal_handlers

__all__ = [
    "CycleReport",
    "ProcessLauncher",
    "Scheduler",
    "ShutdownSignal",
    "WorkerDispatcher",
    "build_scheduler",
    "install_signal_handlers",
]
