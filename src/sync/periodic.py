from __future__ import annotations

import logging
import threading
from typing import Callable, Optional


logger = logging.getLogger(__name__)


class PeriodicSync:
    """
    Re-run `trigger` every `interval` seconds on a daemon thread.

    The trigger is expected to be `SyncOrchestrator.start_sync`, which already
    ignores calls made while a pass is running, so a slow pass simply causes
    the next tick to be skipped. Exceptions from the trigger are logged and do
    not stop the loop.
    """

    def __init__(self, trigger: Callable[[], object], interval: float, *, run_immediately: bool = False) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._trigger = trigger
        self._interval = interval
        self._run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="periodic-sync", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def wait(self) -> None:
        """Block until `stop()` is called from another thread."""
        self._stop.wait()

    def _loop(self) -> None:
        if self._run_immediately:
            self._tick()
        while not self._stop.wait(self._interval):
            self._tick()

    def _tick(self) -> None:
        try:
            self._trigger()
        except Exception:
            logger.exception("Periodic sync trigger failed")

    def __enter__(self) -> "PeriodicSync":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


__all__ = ["PeriodicSync"]
