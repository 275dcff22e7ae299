#!/usr/bin/env python3
"""
Periodic scheduling for the collectd reporter.

ReportScheduler runs a zero-argument task on a background thread with a fixed
delay between runs. Runs never overlap: a tick that arrives while the previous
run is still in progress is skipped, not queued.

Typical usage:
    from scheduler import ReportScheduler

    scheduler = ReportScheduler(reporter.report_runnable(60), period=60)
    scheduler.start()
    ...
    scheduler.stop()
"""

import threading
import logging
from typing import Dict, Any, Optional, Callable

__version__ = '1.0.0'
__all__ = ['ReportScheduler']

logger = logging.getLogger("CollectdReporter.Scheduler")


class ReportScheduler:
    """Runs a report task every `period` seconds on a daemon thread."""

    def __init__(self, task: Callable[[], None], period: float,
                 initial_delay: Optional[float] = None, name: str = "collectd-reporter"):
        """
        Initialize the scheduler.

        Args:
            task (callable): Zero-argument task, run once per tick
            period (float): Delay in seconds between the end of one run and
                the start of the next
            initial_delay (float, optional): Delay before the first run.
                Defaults to one period.
            name (str): Name of the background thread
        """
        if period <= 0:
            raise ValueError(f"period must be positive: {period}")
        self.task = task
        self.period = period
        self.initial_delay = period if initial_delay is None else initial_delay
        self.name = name

        self._run_lock = threading.Lock()
        self._stopped = threading.Event()
        self.thread: Optional[threading.Thread] = None

        # Track statistics
        self.runs = 0
        self.skipped = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive() and not self._stopped.is_set()

    def start(self) -> None:
        """Start the scheduler thread. Does nothing if already running."""
        if self.running:
            return

        self._stopped.clear()
        self.thread = threading.Thread(target=self._scheduler_thread, name=self.name)
        self.thread.daemon = True
        self.thread.start()
        logger.info(f"Reporting scheduled every {self.period}s")

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop scheduling new runs and wait for an in-flight run to finish.

        Args:
            timeout (float, optional): Maximum time to wait for the thread
        """
        self._stopped.set()
        if self.thread is not None and self.thread is not threading.current_thread():
            self.thread.join(timeout)
        self.thread = None
        logger.info("Reporting stopped")

    def run_once(self) -> bool:
        """
        Run the task now unless a run is already in progress.

        Exceptions from the task are logged, never raised.

        Returns:
            bool: True if the task ran, False if the tick was skipped
        """
        if not self._run_lock.acquire(blocking=False):
            self.skipped += 1
            logger.warning("Previous report still running, skipping this tick")
            return False
        try:
            self.task()
        except Exception as e:
            self.failures += 1
            logger.error(f"Report task failed: {e}", exc_info=True)
        finally:
            self.runs += 1
            self._run_lock.release()
        return True

    def get_stats(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'period': self.period,
            'runs': self.runs,
            'skipped': self.skipped,
            'failures': self.failures
        }

    def _scheduler_thread(self) -> None:
        """Thread that waits out the delay and runs the task until stopped."""
        delay = self.initial_delay
        while not self._stopped.wait(delay):
            self.run_once()
            delay = self.period
