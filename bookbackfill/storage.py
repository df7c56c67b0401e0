"""
Durable task store for the backfill queue.

Every queue state change is a single SQL statement against the
``backfill_tasks`` table; the table is the only shared mutable state, so
any number of coordinator processes can read it.  Status transitions
that matter for exclusivity (claiming, failing, completing) are
conditional updates on the current status.

Store errors propagate as ``sqlalchemy.exc.SQLAlchemyError``; deciding
what a failure means is the coordinator's job.
"""

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

from .database import BackfillTask, init_database
from .logger import get_logger
from .models import DEFAULT_MAX_ATTEMPTS, DEFAULT_PRIORITY, QueuedTask, TaskStatus
from .normalize import compute_dedupe_key

logger = get_logger()

ERROR_MESSAGE_MAX_LENGTH = 1000

QUEUED = TaskStatus.QUEUED.value
PROCESSING = TaskStatus.PROCESSING.value
COMPLETED = TaskStatus.COMPLETED.value
FAILED = TaskStatus.FAILED.value


def _truncate(message: Optional[str]) -> Optional[str]:
    if message is None or len(message) <= ERROR_MESSAGE_MAX_LENGTH:
        return message
    return message[: ERROR_MESSAGE_MAX_LENGTH - 3] + "..."


class TaskStore:
    """SQL contracts of the backfill queue.

    Args:
        db: SQLite file path or database URL.  Tables are created on first use.
    """

    def __init__(self, db: Union[str, Path]) -> None:
        self.engine = init_database(db)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.debug("TaskStore initialised", url=str(self.engine.url))

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Transactional session: commits on success, rolls back on error."""
        with self._session_factory.begin() as session:
            yield session

    # ------------------------------------------------------------------
    # Enqueue / dequeue
    # ------------------------------------------------------------------

    def _insert_ignoring_duplicates(self, values: dict):
        dialect = self.engine.dialect.name
        if dialect == "sqlite":
            stmt = sqlite.insert(BackfillTask).values(**values)
        elif dialect == "postgresql":
            stmt = postgresql.insert(BackfillTask).values(**values)
        else:
            raise NotImplementedError(f"insert-if-absent not supported on {dialect}")
        return stmt.on_conflict_do_nothing(index_elements=["dedupe_key"])

    def insert_if_absent(
        self,
        source: str,
        source_id: str,
        priority: int = DEFAULT_PRIORITY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> bool:
        """Insert a QUEUED task unless its dedupe key already exists.

        An existing row is left untouched whatever its status.

        Returns:
            True if a row was created, False for a duplicate.
        """
        now = datetime.now()
        stmt = self._insert_ignoring_duplicates({
            "source": source,
            "source_id": source_id,
            "dedupe_key": compute_dedupe_key(source, source_id),
            "priority": priority,
            "status": QUEUED,
            "attempts": 0,
            "max_attempts": max_attempts,
            "created_at": now,
            "updated_at": now,
        })
        with self.session() as session:
            return session.execute(stmt).rowcount == 1

    def fetch_queued(self, limit: int) -> List[QueuedTask]:
        """Eligible tasks, most urgent first (priority ASC, then oldest first)."""
        stmt = (
            select(BackfillTask)
            .where(BackfillTask.status == QUEUED)
            .where(BackfillTask.attempts < BackfillTask.max_attempts)
            .order_by(
                BackfillTask.priority.asc(),
                BackfillTask.created_at.asc(),
                BackfillTask.id.asc(),
            )
            .limit(limit)
        )
        with self.session() as session:
            rows = session.scalars(stmt).all()
            return [
                QueuedTask(
                    id=row.id,
                    source=row.source,
                    source_id=row.source_id,
                    priority=row.priority,
                    attempts=row.attempts,
                    max_attempts=row.max_attempts,
                )
                for row in rows
            ]

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _update(self, task_id: int, *conditions, **values) -> int:
        stmt = (
            update(BackfillTask)
            .where(BackfillTask.id == task_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with self.session() as session:
            return session.execute(stmt).rowcount

    def claim(self, task_id: int) -> bool:
        """QUEUED → PROCESSING.  False if the task is no longer QUEUED."""
        return self._update(
            task_id,
            BackfillTask.status == QUEUED,
            status=PROCESSING,
            updated_at=datetime.now(),
        ) == 1

    def mark_completed(self, task_id: int) -> bool:
        now = datetime.now()
        return self._update(
            task_id,
            BackfillTask.status == PROCESSING,
            status=COMPLETED,
            error_message=None,
            completed_at=now,
            updated_at=now,
        ) == 1

    def mark_failed(self, task_id: int, error_message: str) -> Optional[TaskStatus]:
        """Count a failed attempt.

        The task goes back to QUEUED, or to FAILED once ``attempts + 1``
        reaches ``max_attempts``; both columns are updated in one statement.

        Returns:
            The resulting status, or None if the task was not PROCESSING.
        """
        updated = self._update(
            task_id,
            BackfillTask.status == PROCESSING,
            status=case(
                (BackfillTask.attempts + 1 >= BackfillTask.max_attempts, FAILED),
                else_=QUEUED,
            ),
            attempts=BackfillTask.attempts + 1,
            error_message=_truncate(error_message),
            updated_at=datetime.now(),
        )
        if updated != 1:
            return None
        with self.session() as session:
            status = session.scalar(select(BackfillTask.status).where(BackfillTask.id == task_id))
        return TaskStatus(status)

    def requeue(self, task_id: int) -> bool:
        """PROCESSING → QUEUED without touching the attempt count.

        Only the worker holding the claim may call this.
        """
        return self._update(
            task_id,
            BackfillTask.status == PROCESSING,
            status=QUEUED,
            updated_at=datetime.now(),
        ) == 1

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def count_by_status(self, since: datetime) -> Dict[str, int]:
        """Task counts per status for tasks created after *since*."""
        stmt = (
            select(BackfillTask.status, func.count(BackfillTask.id))
            .where(BackfillTask.created_at > since)
            .group_by(BackfillTask.status)
        )
        with self.session() as session:
            return {status: count for status, count in session.execute(stmt)}

    def reset_failed(self) -> int:
        """FAILED → QUEUED with attempts and error cleared.  Returns rows affected."""
        stmt = (
            update(BackfillTask)
            .where(BackfillTask.status == FAILED)
            .values(status=QUEUED, attempts=0, error_message=None, updated_at=datetime.now())
            .execution_options(synchronize_session=False)
        )
        with self.session() as session:
            return session.execute(stmt).rowcount

    def reclaim_stale(self, cutoff: datetime, reason: str) -> int:
        """PROCESSING rows untouched since *cutoff* → QUEUED, attempts unchanged."""
        stmt = (
            update(BackfillTask)
            .where(BackfillTask.status == PROCESSING, BackfillTask.updated_at < cutoff)
            .values(status=QUEUED, error_message=_truncate(reason), updated_at=datetime.now())
            .execution_options(synchronize_session=False)
        )
        with self.session() as session:
            return session.execute(stmt).rowcount

    def get_task(self, task_id: int) -> Optional[BackfillTask]:
        with self.session() as session:
            return session.get(BackfillTask, task_id)

    def get_task_by_key(self, source: str, source_id: str) -> Optional[BackfillTask]:
        stmt = select(BackfillTask).where(
            BackfillTask.dedupe_key == compute_dedupe_key(source, source_id)
        )
        with self.session() as session:
            return session.scalars(stmt).first()

    def list_tasks(self, status: Optional[str] = None, limit: Optional[int] = None) -> List[BackfillTask]:
        """Return tasks newest first, optionally filtered by *status*."""
        stmt = select(BackfillTask).order_by(BackfillTask.created_at.desc(), BackfillTask.id.desc())
        if status:
            stmt = stmt.where(BackfillTask.status == status)
        if limit:
            stmt = stmt.limit(limit)
        with self.session() as session:
            return list(session.scalars(stmt).all())

    def close(self) -> None:
        """Dispose of the connection pool."""
        self.engine.dispose()
