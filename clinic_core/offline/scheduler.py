# =============================================================================
# clinic_core/offline/scheduler.py
# Cancellable Repeating Timers
# =============================================================================
"""
Scheduler abstraction used for periodic health checks and drain attempts.

Components never start their own timer threads; they receive a Scheduler
and ask it for repeating tasks. Production code uses ThreadScheduler,
tests substitute a virtual-time implementation.
"""

from __future__ import annotations
import threading
from abc import ABC, abstractmethod
from typing import Callable, List, Optional
import logging

logger = logging.getLogger(__name__)


class ScheduledTask(ABC):
    """Handle for a repeating task."""

    @abstractmethod
    def cancel(self) -> None:
        """Stop the task. Safe to call more than once."""

    @property
    @abstractmethod
    def cancelled(self) -> bool:
        """Whether cancel() has been called."""


class Scheduler(ABC):
    """Creates cancellable repeating tasks."""

    @abstractmethod
    def schedule_repeating(
        self,
        interval: float,
        callback: Callable[[], None],
        name: str = "task",
    ) -> ScheduledTask:
        """Run callback every `interval` seconds until cancelled."""


class RepeatingTimer(ScheduledTask):
    """
    Daemon thread that waits `interval` seconds between callback runs.

    The wait uses an Event so cancel() interrupts it immediately.
    """

    def __init__(self, interval: float, callback: Callable[[], None], name: str = "task"):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> RepeatingTimer:
        self._thread = threading.Thread(target=self._loop, daemon=True, name=self.name)
        self._thread.start()
        return self

    def _loop(self) -> None:
        while not self._stop.is_set():
            # Wait for interval or stop signal
            if self._stop.wait(timeout=self.interval):
                break
            try:
                self.callback()
            except Exception as e:
                logger.error(f"Error in scheduled task '{self.name}': {e}")

    def cancel(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()


class ThreadScheduler(Scheduler):
    """Scheduler backed by one daemon thread per task."""

    def __init__(self):
        self._tasks: List[RepeatingTimer] = []

    def schedule_repeating(
        self,
        interval: float,
        callback: Callable[[], None],
        name: str = "task",
    ) -> ScheduledTask:
        task = RepeatingTimer(interval, callback, name=name).start()
        self._tasks.append(task)
        logger.debug(f"Scheduled '{name}' every {interval}s")
        return task

    def cancel_all(self) -> None:
        """Cancel every task created by this scheduler."""
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()
