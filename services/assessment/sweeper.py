"""Periodic timeout sweep.

A daemon thread calls `AttemptOrchestrator.sweep_expired` every `interval` seconds so
attempts whose time ran out are closed and graded even if the student never comes back.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from .orchestrator import AttemptOrchestrator

log = logging.getLogger(__name__)


class TimeoutSweeper:
    """Background loop around `sweep_expired`."""

    def __init__(self, orchestrator: AttemptOrchestrator, interval: float = 30.0) -> None:
        self.orchestrator = orchestrator
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> list[int]:
        return self.orchestrator.sweep_expired()

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                log.exception("timeout sweep failed")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="TimeoutSweeper", daemon=True)
        self._thread.start()
        log.info("timeout sweeper started (every %.1fs)", self.interval)

    def stop(self) -> None:
        """Signal the loop and wait for the current pass to finish."""
        if self._thread and self._thread.is_alive():
            self._stop_event.set()
            self._thread.join(timeout=self.interval)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
