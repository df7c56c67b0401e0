"""
Cleanup module for reclaiming stale backfill tasks.

A task stays PROCESSING only while a coordinator is working on it.  If the
process dies mid-task the row is left PROCESSING forever and never
dequeued again; reclaiming it puts it back in the queue.
"""

from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from .logger import get_logger
from .storage import TaskStore

logger = get_logger()

DEFAULT_STALE_MINUTES = 15


def reclaim_stale_tasks(store: TaskStore, minutes: int = DEFAULT_STALE_MINUTES) -> int:
    """
    Return PROCESSING tasks untouched for more than *minutes* to QUEUED.

    The attempt count is left alone: the interrupted attempt never reached
    an outcome.

    Args:
        store: Task store to sweep
        minutes: Staleness threshold (must be positive)

    Returns:
        Number of tasks reclaimed (0 on store errors)
    """
    if minutes <= 0:
        raise ValueError(f"minutes must be positive, got: {minutes}")

    cutoff = datetime.now() - timedelta(minutes=minutes)
    reason = f"Reclaimed after {minutes} min in PROCESSING (worker interrupted)"
    try:
        reclaimed = store.reclaim_stale(cutoff, reason)
    except SQLAlchemyError as e:
        logger.error(f"Stale task reclaim failed: {e}", minutes=minutes)
        return 0

    if reclaimed:
        logger.warning(
            f"Reclaimed {reclaimed} stale PROCESSING tasks",
            minutes=minutes,
            cutoff=cutoff.isoformat(),
        )
    else:
        logger.debug("No stale PROCESSING tasks", cutoff=cutoff.isoformat())
    return reclaimed
