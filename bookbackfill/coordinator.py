"""
Backfill coordinator.

Owns the queue's behaviour on top of :class:`~bookbackfill.storage.TaskStore`:

* ``enqueue`` is idempotent per ``source|source_id`` and never raises.
* ``process_queue`` pulls one bounded batch (priority ASC, then oldest)
  and runs every task through fetch → map → upsert.
* Each claimed task passes the capacity gate before its provider is
  called.  A rate-limiter or bulkhead refusal puts the task back in
  the queue *without* spending an attempt; fetch, mapping and upsert
  failures spend one, and the task turns FAILED once its attempts are
  used up.

The coordinator keeps no task state between calls: every batch is
re-read from the store, so it can be restarted at any time.  Tasks left
in PROCESSING by a crash are handled by :mod:`bookbackfill.cleanup`.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .capacity import CapacityGate, CapacityRejected
from .logger import StructuredLogger, get_logger
from .models import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PRIORITY,
    BookAggregate,
    QueuedTask,
    QueueStats,
    TaskStatus,
    UpsertResult,
)
from .providers.registry import ProviderAdapter, ProviderRegistry, build_default_registry
from .retry import is_transient_error
from .storage import TaskStore
from .upsert import BookUpsertService

UpsertFn = Callable[[BookAggregate], UpsertResult]

DEFAULT_BATCH_SIZE = 10
DEFAULT_STATS_WINDOW = timedelta(hours=1)


class TaskOutcome(str, Enum):
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"  # failed, back in the queue
    FAILED = "failed"                    # failed, attempts exhausted
    REJECTED = "rejected"                # capacity gate refused, no attempt spent
    SKIPPED = "skipped"                  # claimed elsewhere
    ERROR = "error"                      # store error, state unknown


@dataclass
class BatchResult:
    """Per-outcome counts for one batch cycle."""

    fetched: int = 0
    completed: int = 0
    retry_scheduled: int = 0
    failed: int = 0
    rejected: int = 0
    skipped: int = 0
    errors: int = 0

    def add(self, outcome: TaskOutcome) -> None:
        field_name = {
            TaskOutcome.COMPLETED: "completed",
            TaskOutcome.RETRY_SCHEDULED: "retry_scheduled",
            TaskOutcome.FAILED: "failed",
            TaskOutcome.REJECTED: "rejected",
            TaskOutcome.SKIPPED: "skipped",
            TaskOutcome.ERROR: "errors",
        }[outcome]
        setattr(self, field_name, getattr(self, field_name) + 1)


class _StepFailed(Exception):
    """A pipeline step failed; the message is what gets stored on the task."""

    def __init__(self, message: str, error_type: str, transient: bool = False):
        self.error_type = error_type
        self.transient = transient
        super().__init__(message)


class BackfillCoordinator:
    """
    Enqueues, schedules and processes backfill tasks.

    Args:
        store: Durable task store.
        registry: Source → (fetch, map) pairs.
        upsert: Callable persisting a :class:`BookAggregate`.
        gate: Capacity gate checked before each task; None admits everything.
        batch_size: Tasks pulled per :meth:`process_queue` call.
        max_attempts: ``max_attempts`` stored on newly enqueued tasks.
        stats_window: Trailing window used by :meth:`get_queue_stats`.
        workers: Tasks run concurrently within one batch.  1 (default)
            processes them one at a time in dequeue order.
    """

    def __init__(
        self,
        store: TaskStore,
        registry: ProviderRegistry,
        upsert: UpsertFn,
        gate: Optional[CapacityGate] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        stats_window: timedelta = DEFAULT_STATS_WINDOW,
        workers: int = 1,
        logger: Optional[StructuredLogger] = None,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if workers < 1:
            raise ValueError(f"workers must be >= 1, got {workers}")
        self.store = store
        self.registry = registry
        self.upsert = upsert
        self.gate = gate or CapacityGate()
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.stats_window = stats_window
        self.workers = workers
        self.logger = logger or get_logger()
        self.logger.info(
            "BackfillCoordinator initialized",
            sources=registry.sources,
            batch_size=batch_size,
            workers=workers,
        )

    @classmethod
    def from_settings(cls, settings, store: Optional[TaskStore] = None) -> "BackfillCoordinator":
        """Wire store, providers, upsert service and capacity gate from *settings*."""
        store = store or TaskStore(settings.database_url)
        return cls(
            store=store,
            registry=build_default_registry(settings),
            upsert=BookUpsertService(store.engine).upsert,
            gate=CapacityGate.from_settings(settings),
            batch_size=settings.batch_size,
            max_attempts=settings.max_attempts,
            stats_window=timedelta(minutes=settings.stats_window_minutes),
            workers=settings.workers,
        )

    # ------------------------------------------------------------------
    # Enqueue / dequeue
    # ------------------------------------------------------------------

    def enqueue(self, source: str, source_id: str, priority: int = DEFAULT_PRIORITY) -> None:
        """
        Queue ``source|source_id`` for backfill.

        Duplicates are ignored whatever the existing task's status.  Never
        raises: blank input is logged and dropped, store errors are logged.

        Args:
            source: Provider name (e.g. ``GOOGLE_BOOKS``)
            source_id: The provider's identifier for the record
            priority: 1 = most urgent (user-facing) ... 10 = background
        """
        if not source or not source.strip() or not source_id or not source_id.strip():
            self.logger.warning(
                "Cannot enqueue backfill task with blank source or source_id",
                source=source,
                source_id=source_id,
            )
            return

        try:
            created = self.store.insert_if_absent(source, source_id, priority, self.max_attempts)
        except SQLAlchemyError as e:
            self.logger.error(
                "Error enqueuing backfill task", source=source, source_id=source_id, error=str(e)
            )
            return

        self.logger.debug(
            "Enqueued backfill task" if created else "Backfill task already present",
            source=source,
            source_id=source_id,
            priority=priority,
        )

    def fetch_queued_tasks(self, limit: Optional[int] = None) -> List[QueuedTask]:
        """Up to *limit* eligible tasks in scheduling order; [] on store failure."""
        try:
            return self.store.fetch_queued(self.batch_size if limit is None else limit)
        except SQLAlchemyError as e:
            self.logger.error("Error fetching queued tasks", error=str(e))
            return []

    # ------------------------------------------------------------------
    # Batch cycle
    # ------------------------------------------------------------------

    def process_queue(self) -> BatchResult:
        """Run one batch cycle.  Never raises."""
        result = BatchResult()
        try:
            tasks = self.fetch_queued_tasks(self.batch_size)
            if not tasks:
                return result
            result.fetched = len(tasks)
            self.logger.info(f"Processing {len(tasks)} backfill tasks")

            if self.workers == 1:
                for task in tasks:
                    result.add(self.process_task(task))
            else:
                with ThreadPoolExecutor(
                    max_workers=min(self.workers, len(tasks)),
                    thread_name_prefix="backfill",
                ) as pool:
                    for outcome in pool.map(self.process_task, tasks):
                        result.add(outcome)
        except Exception as e:
            self.logger.exception("Error in backfill queue processor", error=str(e))
        return result

    def process_task(self, task: QueuedTask) -> TaskOutcome:
        """Claim *task*, admit it through the capacity gate, then run it."""
        try:
            return self._run_task(task)
        except SQLAlchemyError as e:
            self.logger.error(
                "Store error while processing backfill task",
                task_id=task.id,
                source=task.source,
                source_id=task.source_id,
                error=str(e),
            )
            return TaskOutcome.ERROR

    def _run_task(self, task: QueuedTask) -> TaskOutcome:
        if not self.store.claim(task.id):
            self.logger.debug("Backfill task no longer queued; skipping", task_id=task.id)
            return TaskOutcome.SKIPPED

        adapter = self.registry.get(task.source)
        if adapter is None:
            self._start_attempt(task)
            self.logger.warning("Unsupported backfill source", source=task.source, task_id=task.id)
            return self._on_failure(task, _StepFailed(
                f"Unsupported source: {task.source} (no fetch client or mapper registered)",
                "UnsupportedSource",
            ))

        # Only the row claimed above may be requeued on rejection
        try:
            with self.gate.admit():
                self._start_attempt(task)
                try:
                    aggregate = self._fetch_and_map(task, adapter)
                    result = self._persist(task, aggregate)
                except _StepFailed as e:
                    return self._on_failure(task, e)
        except CapacityRejected as e:
            return self._on_capacity_rejected(task, e)

        self.logger.info(
            f"Backfill completed: {task.source} {task.source_id}",
            book_id=result.book_id,
            slug=result.slug,
            is_new=result.is_new,
        )
        if not self.store.mark_completed(task.id):
            self.logger.warning("Backfill task left PROCESSING before completion", task_id=task.id)
        self.logger.record_task_success(task.source)
        return TaskOutcome.COMPLETED

    def _start_attempt(self, task: QueuedTask) -> None:
        self.logger.info(
            "Processing backfill task",
            task_id=task.id,
            source=task.source,
            source_id=task.source_id,
            attempt=f"{task.attempts + 1}/{task.max_attempts}",
        )
        self.logger.record_task_attempt(task.source)

    def _fetch_and_map(self, task: QueuedTask, adapter: ProviderAdapter) -> BookAggregate:
        try:
            document = adapter.fetch(task.source_id)
        except Exception as e:
            self.logger.error(
                f"Error fetching from {task.source}", source_id=task.source_id, error=str(e)
            )
            raise _StepFailed(
                f"Fetch failed: {e}", type(e).__name__, transient=is_transient_error(e)
            ) from e
        if document is None:
            raise _StepFailed("API returned no data", "NotFound")

        try:
            aggregate = adapter.map(document)
        except Exception as e:
            self.logger.exception(
                f"Mapper for {task.source} raised", source_id=task.source_id, error=str(e)
            )
            raise _StepFailed(f"Mapping failed: {e}", type(e).__name__) from e
        if aggregate is None:
            raise _StepFailed("Mapper returned no aggregate (invalid data)", "InvalidData")
        return aggregate

    def _persist(self, task: QueuedTask, aggregate: BookAggregate) -> UpsertResult:
        try:
            return self.upsert(aggregate)
        except Exception as e:
            self.logger.error(
                "Error upserting book", source=task.source, source_id=task.source_id, error=str(e)
            )
            raise _StepFailed(
                f"Upsert failed: {e}", type(e).__name__, transient=is_transient_error(e)
            ) from e

    def _on_failure(self, task: QueuedTask, failure: _StepFailed) -> TaskOutcome:
        message = str(failure)
        try:
            status = self.store.mark_failed(task.id, message)
        except SQLAlchemyError as e:
            self.logger.error(
                "Error marking backfill task as failed", task_id=task.id, error=str(e)
            )
            return TaskOutcome.ERROR

        if status is None:
            self.logger.warning(
                "Backfill task left PROCESSING before its failure was recorded",
                task_id=task.id,
                error=message,
            )
            return TaskOutcome.SKIPPED

        requeued = status == TaskStatus.QUEUED
        self.logger.record_task_failure(task.source, failure.error_type, requeued=requeued)
        if requeued:
            self.logger.info(
                "Backfill task failed; will retry next cycle",
                task_id=task.id,
                error=message,
                transient=failure.transient,
            )
            return TaskOutcome.RETRY_SCHEDULED

        self.logger.warning(
            "Backfill task permanently failed",
            task_id=task.id,
            source=task.source,
            source_id=task.source_id,
            attempts=task.attempts + 1,
            error=message,
        )
        return TaskOutcome.FAILED

    def _on_capacity_rejected(self, task: QueuedTask, exc: CapacityRejected) -> TaskOutcome:
        self.logger.warning(
            f"Backfill task {task.source} {task.source_id} rejected by {exc.gate}; "
            "will retry next cycle",
            reason=str(exc),
        )
        self.logger.record_capacity_rejection(exc.gate)
        try:
            self.store.requeue(task.id)
        except SQLAlchemyError as e:
            self.logger.error("Error resetting task to QUEUED after rejection", task_id=task.id, error=str(e))
            return TaskOutcome.ERROR
        return TaskOutcome.REJECTED

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def get_queue_stats(self) -> QueueStats:
        """Counts per status for tasks created within the stats window."""
        try:
            counts = self.store.count_by_status(datetime.now() - self.stats_window)
        except SQLAlchemyError as e:
            self.logger.error("Error fetching queue stats", error=str(e))
            return QueueStats()
        return QueueStats(
            queued=counts.get(TaskStatus.QUEUED.value, 0),
            processing=counts.get(TaskStatus.PROCESSING.value, 0),
            completed=counts.get(TaskStatus.COMPLETED.value, 0),
            failed=counts.get(TaskStatus.FAILED.value, 0),
        )

    def retry_failed_tasks(self) -> int:
        """Re-queue every FAILED task with a fresh attempt budget."""
        try:
            count = self.store.reset_failed()
        except SQLAlchemyError as e:
            self.logger.error("Error retrying failed tasks", error=str(e))
            return 0
        self.logger.info("Re-queued failed backfill tasks", count=count)
        return count
