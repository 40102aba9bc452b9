"""
PORTICO Periodic Tasks
======================

Interval runner for the DNS refresh and cleared-client sweep cycles.

A task runs its callable, then waits ``interval`` seconds before the next
run, so a slow cycle simply delays the next tick instead of overlapping
with it. Exceptions are logged and the loop keeps going.

Author: Team PORTICO
"""

import threading
from typing import Callable, Optional

from loguru import logger


class PeriodicTask:
    """Runs a callable on a daemon thread every ``interval`` seconds."""

    def __init__(self, name: str, interval: float, func: Callable[[], object],
                 run_immediately: bool = False):
        self.name = name
        self.interval = interval
        self.func = func
        self.run_immediately = run_immediately

        self.runs = 0
        self.failures = 0
        self._in_flight = threading.Event()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def in_flight(self) -> bool:
        return self._in_flight.is_set()

    def start(self):
        if self.is_running:
            return
        # Each loop waits on its own stop event
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._loop, args=(self._stop_event,), daemon=True, name=self.name
        )
        self._thread.start()
        logger.info(f"{self.name} started (every {self.interval}s)")

    def stop(self, timeout: Optional[float] = None):
        """Stop scheduling new runs; an in-flight run is allowed to finish on its own."""
        self._stop_event.set()
        if self._thread and timeout:
            self._thread.join(timeout)
        self._thread = None

    def run_once(self) -> bool:
        """Run the callable now unless a run is already in flight."""
        if self._in_flight.is_set():
            logger.warning(f"{self.name}: previous run still in flight, skipping")
            return False

        self._in_flight.set()
        try:
            self.func()
            return True
        except Exception as e:
            self.failures += 1
            logger.error(f"Error: {self.name} failed: {e}")
            return False
        finally:
            self.runs += 1
            self._in_flight.clear()

    def _loop(self, stop_event: threading.Event):
        if self.run_immediately:
            self.run_once()
        while not stop_event.wait(self.interval):
            self.run_once()
