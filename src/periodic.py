"""
Fixed-period background tasks.
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs a callable every `period` seconds on a daemon thread.

    A failing run is logged and the schedule continues.
    """

    def __init__(self, name: str, period: float, fn: Callable[[], None], initial_delay: float = 0):
        self.name = name
        self.period = period
        self.initial_delay = initial_delay
        self._fn = fn
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> bool:
        """Run the task now; returns False if it raised."""
        try:
            self._fn()
            return True
        except Exception as e:
            logger.exception(f"Periodic task {self.name} failed: {e}")
            return False

    def _loop(self) -> None:
        if self._stop.wait(self.initial_delay):
            return
        while not self._stop.is_set():
            self.run_once()
            if self._stop.wait(self.period):
                break

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"Started periodic task {self.name} (every {self.period}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info(f"Stopped periodic task {self.name}")
