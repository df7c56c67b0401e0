"""
Tests for storage.py - the task store's SQL contracts.
"""

from datetime import datetime, timedelta

from sqlalchemy import func, select, update

from bookbackfill.database import BackfillTask
from bookbackfill.models import TaskStatus
from bookbackfill.storage import ERROR_MESSAGE_MAX_LENGTH


def set_columns(store, task_id, **values):
    with store.session() as session:
        session.execute(update(BackfillTask).where(BackfillTask.id == task_id).values(**values))


def task_id(store, source_id, source="FAKE"):
    return store.get_task_by_key(source, source_id).id


class TestInsertIfAbsent:
    """Enqueue is insert-if-absent on the dedupe key."""

    def test_creates_queued_row(self, store):
        assert store.insert_if_absent("GOOGLE_BOOKS", "abc", priority=2) is True

        task = store.get_task_by_key("GOOGLE_BOOKS", "abc")
        assert task.dedupe_key == "GOOGLE_BOOKS|abc"
        assert task.status == "QUEUED"
        assert task.priority == 2
        assert task.attempts == 0
        assert task.max_attempts == 3
        assert task.error_message is None
        assert task.completed_at is None

    def test_duplicate_is_ignored(self, store):
        assert store.insert_if_absent("P", "X", 1) is True
        assert store.insert_if_absent("P", "X", 9) is False

        with store.session() as session:
            assert session.scalar(select(func.count(BackfillTask.id))) == 1
        assert store.get_task_by_key("P", "X").priority == 1

    def test_duplicate_leaves_terminal_row_untouched(self, store):
        store.insert_if_absent("FAKE", "done")
        tid = task_id(store, "done")
        set_columns(store, tid, status="FAILED", attempts=3, error_message="API returned no data")

        assert store.insert_if_absent("FAKE", "done") is False

        task = store.get_task(tid)
        assert task.status == "FAILED"
        assert task.attempts == 3
        assert task.error_message == "API returned no data"

    def test_same_id_different_source_is_distinct(self, store):
        assert store.insert_if_absent("GOOGLE_BOOKS", "9780140328721")
        assert store.insert_if_absent("OPEN_LIBRARY", "9780140328721")
        assert len(store.list_tasks()) == 2


class TestFetchQueued:
    """Dequeue order and eligibility."""

    def test_priority_then_age(self, store):
        store.insert_if_absent("FAKE", "low", priority=5)
        store.insert_if_absent("FAKE", "first-urgent", priority=1)
        store.insert_if_absent("FAKE", "second-urgent", priority=1)

        batch = store.fetch_queued(limit=2)

        assert [t.source_id for t in batch] == ["first-urgent", "second-urgent"]

    def test_out_of_range_priority_sorts_literally(self, store):
        store.insert_if_absent("FAKE", "normal", priority=1)
        store.insert_if_absent("FAKE", "negative", priority=-3)
        store.insert_if_absent("FAKE", "huge", priority=99)

        assert [t.source_id for t in store.fetch_queued(10)] == ["negative", "normal", "huge"]

    def test_skips_non_queued_and_exhausted(self, store):
        for sid in ("queued", "processing", "completed", "failed", "exhausted"):
            store.insert_if_absent("FAKE", sid)
        set_columns(store, task_id(store, "processing"), status="PROCESSING")
        set_columns(store, task_id(store, "completed"), status="COMPLETED")
        set_columns(store, task_id(store, "failed"), status="FAILED")
        set_columns(store, task_id(store, "exhausted"), attempts=3)

        assert [t.source_id for t in store.fetch_queued(10)] == ["queued"]

    def test_returns_plain_task_values(self, store):
        store.insert_if_absent("FAKE", "X", priority=4, max_attempts=5)

        (task,) = store.fetch_queued(1)

        assert task.source == "FAKE"
        assert task.priority == 4
        assert task.attempts == 0
        assert task.max_attempts == 5

    def test_empty_queue(self, store):
        assert store.fetch_queued(10) == []


class TestTransitions:
    """Conditional status updates."""

    def test_claim_is_exclusive(self, store):
        store.insert_if_absent("FAKE", "X")
        tid = task_id(store, "X")

        assert store.claim(tid) is True
        assert store.claim(tid) is False
        assert store.get_task(tid).status == "PROCESSING"

    def test_mark_completed_keeps_attempts(self, store):
        store.insert_if_absent("FAKE", "X")
        tid = task_id(store, "X")
        set_columns(store, tid, attempts=2, error_message="Fetch failed: timeout")
        store.claim(tid)

        assert store.mark_completed(tid) is True

        task = store.get_task(tid)
        assert task.status == "COMPLETED"
        assert task.attempts == 2
        assert task.completed_at is not None
        assert task.error_message is None

    def test_mark_completed_requires_processing(self, store):
        store.insert_if_absent("FAKE", "X")
        assert store.mark_completed(task_id(store, "X")) is False

    def test_mark_failed_requeues_until_exhausted(self, store):
        store.insert_if_absent("FAKE", "X", max_attempts=2)
        tid = task_id(store, "X")

        store.claim(tid)
        assert store.mark_failed(tid, "first") == TaskStatus.QUEUED
        assert store.get_task(tid).attempts == 1

        store.claim(tid)
        assert store.mark_failed(tid, "second") == TaskStatus.FAILED

        task = store.get_task(tid)
        assert task.status == "FAILED"
        assert task.attempts == 2
        assert task.error_message == "second"

    def test_mark_failed_requires_processing(self, store):
        store.insert_if_absent("FAKE", "X")
        tid = task_id(store, "X")

        assert store.mark_failed(tid, "boom") is None
        assert store.get_task(tid).attempts == 0

    def test_error_message_truncated(self, store):
        store.insert_if_absent("FAKE", "X")
        tid = task_id(store, "X")
        store.claim(tid)

        store.mark_failed(tid, "x" * 5000)

        message = store.get_task(tid).error_message
        assert len(message) == ERROR_MESSAGE_MAX_LENGTH
        assert message.endswith("...")

    def test_requeue_does_not_touch_attempts(self, store):
        store.insert_if_absent("FAKE", "X")
        tid = task_id(store, "X")
        set_columns(store, tid, attempts=1)
        store.claim(tid)

        assert store.requeue(tid) is True

        task = store.get_task(tid)
        assert task.status == "QUEUED"
        assert task.attempts == 1

    def test_requeue_requires_processing(self, store):
        store.insert_if_absent("FAKE", "X")
        tid = task_id(store, "X")

        assert store.requeue(tid) is False
        assert store.get_task(tid).status == "QUEUED"

    def test_requeue_never_revives_terminal_rows(self, store):
        store.insert_if_absent("FAKE", "X")
        tid = task_id(store, "X")
        set_columns(store, tid, status="COMPLETED")

        assert store.requeue(tid) is False
        assert store.get_task(tid).status == "COMPLETED"


class TestAdmin:
    """Stats, bulk retry and stale reclaim."""

    def test_count_by_status_within_window(self, store):
        for sid in ("a", "b", "c", "old"):
            store.insert_if_absent("FAKE", sid)
        set_columns(store, task_id(store, "b"), status="FAILED")
        set_columns(store, task_id(store, "old"), created_at=datetime.now() - timedelta(hours=2))

        counts = store.count_by_status(datetime.now() - timedelta(hours=1))

        assert counts == {"QUEUED": 2, "FAILED": 1}

    def test_reset_failed_touches_only_failed(self, store):
        for sid in ("f1", "f2", "q1", "q2", "q3"):
            store.insert_if_absent("FAKE", sid)
        for sid in ("f1", "f2"):
            set_columns(store, task_id(store, sid), status="FAILED", attempts=3, error_message="boom")
        set_columns(store, task_id(store, "q1"), attempts=1, error_message="retrying")

        assert store.reset_failed() == 2

        for sid in ("f1", "f2"):
            task = store.get_task_by_key("FAKE", sid)
            assert (task.status, task.attempts, task.error_message) == ("QUEUED", 0, None)
        q1 = store.get_task_by_key("FAKE", "q1")
        assert (q1.attempts, q1.error_message) == (1, "retrying")

    def test_reclaim_stale(self, store):
        for sid in ("stuck", "busy", "queued"):
            store.insert_if_absent("FAKE", sid)
        stuck, busy = task_id(store, "stuck"), task_id(store, "busy")
        set_columns(store, stuck, status="PROCESSING", attempts=1,
                    updated_at=datetime.now() - timedelta(hours=1))
        set_columns(store, busy, status="PROCESSING")

        assert store.reclaim_stale(datetime.now() - timedelta(minutes=15), "reclaimed") == 1

        task = store.get_task(stuck)
        assert (task.status, task.attempts, task.error_message) == ("QUEUED", 1, "reclaimed")
        assert store.get_task(busy).status == "PROCESSING"

    def test_list_tasks_filters_and_limits(self, store):
        for sid in ("a", "b", "c"):
            store.insert_if_absent("FAKE", sid)
        set_columns(store, task_id(store, "b"), status="FAILED")

        assert [t.source_id for t in store.list_tasks()] == ["c", "b", "a"]
        assert [t.source_id for t in store.list_tasks(status="FAILED")] == ["b"]
        assert len(store.list_tasks(limit=2)) == 2
