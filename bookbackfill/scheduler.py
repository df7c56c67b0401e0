"""
Periodic trigger for the backfill coordinator.

One daemon thread runs ticks with a fixed delay: the next tick starts
``interval`` seconds after the previous one finished, so two ticks never
race on the same rows.  Each tick optionally reclaims stale PROCESSING
tasks, then runs one batch cycle.

Usage:
    scheduler = BackfillScheduler(coordinator, interval=5.0, store=store)
    scheduler.start()
    ...
    scheduler.stop()
"""

import threading
from typing import Optional

from .cleanup import reclaim_stale_tasks
from .coordinator import BackfillCoordinator, BatchResult
from .logger import get_logger
from .storage import TaskStore

logger = get_logger()


class BackfillScheduler:
    """
    Fixed-delay scheduler around :meth:`BackfillCoordinator.process_queue`.

    Args:
        coordinator: Coordinator whose batch cycle is run each tick
        interval: Seconds between the end of one tick and the start of the next
        store: Store swept for stale PROCESSING tasks (defaults to the coordinator's)
        stale_after_minutes: Reclaim threshold; 0 disables the sweep
    """

    def __init__(
        self,
        coordinator: BackfillCoordinator,
        interval: float = 5.0,
        store: Optional[TaskStore] = None,
        stale_after_minutes: int = 0,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got: {interval}")
        self.coordinator = coordinator
        self.interval = interval
        self.store = store or coordinator.store
        self.stale_after_minutes = stale_after_minutes
        self.ticks = 0

        self._stop = threading.Event()
        self._tick_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> Optional[BatchResult]:
        """
        Run a single tick now.

        Returns:
            The batch result, or None if another tick was already running
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.debug("Backfill tick already in progress; skipping")
            return None
        try:
            if self.stale_after_minutes > 0:
                reclaim_stale_tasks(self.store, self.stale_after_minutes)
            result = self.coordinator.process_queue()
            self.ticks += 1
            if result.fetched:
                logger.info(
                    "Backfill tick finished",
                    tick=self.ticks,
                    fetched=result.fetched,
                    completed=result.completed,
                    retry_scheduled=result.retry_scheduled,
                    failed=result.failed,
                    rejected=result.rejected,
                )
            return result
        finally:
            self._tick_lock.release()

    def _loop(self) -> None:
        logger.debug("Backfill scheduler loop started")
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.exception(f"Backfill tick error: {e}")
            self._stop.wait(self.interval)
        logger.debug("Backfill scheduler loop stopped")

    def start(self) -> None:
        """Start the background thread; the first tick runs immediately."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="backfill-scheduler")
        self._thread.start()
        logger.info(
            "Backfill scheduler started",
            interval_seconds=self.interval,
            stale_after_minutes=self.stale_after_minutes,
        )

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        """Signal stop and wait for the current tick to finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Backfill scheduler stopped", ticks=self.ticks)

    def run_forever(self) -> None:
        """Run ticks on the calling thread until :meth:`stop` or Ctrl-C."""
        logger.info("Backfill scheduler running in foreground", interval_seconds=self.interval)
        try:
            self._loop()
        except KeyboardInterrupt:
            logger.info("Backfill scheduler interrupted")
        finally:
            self._stop.set()
