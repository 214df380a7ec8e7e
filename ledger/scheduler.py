from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable

from ledger.scheduled_transactions import ScheduledTransactionService, SweepReport

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 60 * 60


class Scheduler:
    """Runs the scheduled-transaction sweep on a fixed interval.

    One daemon thread waits on an event between ticks. A tick that arrives
    while a sweep is still running, manual or periodic, is skipped.
    """

    def __init__(
        self,
        service: ScheduledTransactionService,
        interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("Scheduler interval must be positive.")
        self.service = service
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._stop_event = threading.Event()
        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._state_lock:
            if self.is_running:
                logger.warning("Scheduler already running")
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._loop, name="scheduled-transactions", daemon=True
            )
            self._thread.start()
        logger.info("Scheduler started with a %s second interval", self.interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._state_lock:
            thread = self._thread
            if thread is None:
                return
            self._stop_event.set()
            self._thread = None
        thread.join(timeout)
        logger.info("Scheduler stopped")

    def trigger(self, now: datetime | None = None) -> SweepReport | None:
        """Run one sweep now. Returns None when a sweep is already in progress."""
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Sweep already in progress; skipping this run")
            return None
        try:
            return self.service.materialize_due(now or self.clock())
        finally:
            self._run_lock.release()

    def status(self) -> dict[str, bool]:
        return {
            "is_running": self.is_running,
            "has_active_timer": self.is_running and not self._stop_event.is_set(),
        }

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.trigger()
            except Exception:
                logger.exception("Scheduled transaction sweep failed")
