# src/pqsched/engine/shutdown.py
from __future__ import annotations

import signal
import threading
from typing import Callable, Optional

from pqsched.logging import get_logger

_LOG = get_logger(__name__)


class ShutdownSignal:
    """
    Stop flag plus a wake latch for the scheduler loop.

    - `request()` sets the flag once (idempotent) and trips the latch, so a
      loop sleeping in `wait()` returns immediately.
    - `wake()` trips the latch only: the loop runs a cycle early.
    """

    def __init__(self) -> None:
        self._stop = threading.Event()
        self._latch = threading.Event()

    def request(self) -> None:
        if not self._stop.is_set():
            _LOG.info("Shutdown requested.")
        self._stop.set()
        self._latch.set()

    def is_set(self) -> bool:
        return self._stop.is_set()

    def wake(self) -> None:
        self._latch.set()

    def wait(self, timeout_s: float) -> bool:
        """
        Sleeps up to `timeout_s` or until woken. Returns True if shutdown
        has been requested.
        """
        if self._stop.is_set():
            return True
        # Only a wake that was seen is consumed; one landing after a timeout
        # stays set for the next wait.
        if self._latch.wait(timeout=timeout_s):
            self._latch.clear()
        return self._stop.is_set()


def install_signal_handlers(
    shutdown: ShutdownSignal,
    on_reload: Optional[Callable[[], None]] = None,
) -> None:
    """
    SIGTERM / SIGINT request shutdown; SIGHUP reloads config and wakes the loop.

    Must be called from the main thread.
    """

    def _on_stop(signum, _frame) -> None:
        _LOG.info("Received %s.", signal.Signals(signum).name)
        shutdown.request()

    def _on_hup(_signum, _frame) -> None:
        if on_reload is not None:
            on_reload()
        shutdown.wake()

    signal.signal(signal.SIGTERM, _on_stop)
    signal.signal(signal.SIGINT, _on_stop)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _on_hup)
