import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .cleanup import reclaim_stale_tasks
from .config import BackfillSettings, load_env
from .coordinator import BackfillCoordinator, BatchResult
from .logger import get_logger
from .models import DEFAULT_PRIORITY, TaskStatus
from .scheduler import BackfillScheduler
from .storage import TaskStore


def build_coordinator(args: argparse.Namespace) -> BackfillCoordinator:
    settings: BackfillSettings = args.settings
    return BackfillCoordinator.from_settings(settings, store=TaskStore(settings.database_url))


def print_batch(result: BatchResult) -> None:
    print(
        f"Done. fetched={result.fetched} completed={result.completed} "
        f"retry={result.retry_scheduled} failed={result.failed} "
        f"rejected={result.rejected} skipped={result.skipped} errors={result.errors}"
    )


def cmd_enqueue(args: argparse.Namespace) -> None:
    if not args.source.strip() or not args.id.strip():
        raise SystemExit("Source and id must not be blank")
    store = TaskStore(args.settings.database_url)
    created = store.insert_if_absent(args.source, args.id, args.priority, args.settings.max_attempts)
    task = store.get_task_by_key(args.source, args.id)
    print(f"Task: {task.id} ({task.dedupe_key})")
    print(f"Status: {'queued' if created else 'duplicate, ' + task.status.lower()}")


def cmd_enqueue_file(args: argparse.Namespace) -> None:
    input_path = Path(args.input)
    if not input_path.exists():
        raise SystemExit(f"Input file not found: {input_path}")
    store = TaskStore(args.settings.database_url)
    total = new = duplicate = 0
    with input_path.open("r", encoding="utf-8") as f:
        for line in f:
            source_id = line.strip()
            if not source_id or source_id.startswith("#"):
                continue
            total += 1
            if store.insert_if_absent(
                args.source, source_id, args.priority, args.settings.max_attempts
            ):
                new += 1
            else:
                duplicate += 1
    print(f"Done. total={total} queued={new} duplicate={duplicate}")


def cmd_run_once(args: argparse.Namespace) -> None:
    coordinator = build_coordinator(args)
    scheduler = BackfillScheduler(
        coordinator, stale_after_minutes=args.settings.stale_processing_minutes
    )
    print_batch(scheduler.run_once())
    get_logger().log_metrics_summary()


def cmd_run(args: argparse.Namespace) -> None:
    settings: BackfillSettings = args.settings
    coordinator = build_coordinator(args)
    scheduler = BackfillScheduler(
        coordinator,
        interval=args.interval or settings.interval_seconds,
        stale_after_minutes=settings.stale_processing_minutes,
    )
    print(f"Processing backfill queue every {scheduler.interval:g}s (Ctrl-C to stop)...")
    scheduler.run_forever()
    get_logger().log_metrics_summary()


def cmd_stats(args: argparse.Namespace) -> None:
    stats = build_coordinator(args).get_queue_stats()
    if args.json:
        print(json.dumps(stats.to_dict(), indent=2))
        return
    print(f"Last {args.settings.stats_window_minutes} min:")
    for status, count in stats.to_dict().items():
        print(f"  {status}: {count}")
    print(f"  total: {stats.total}")


def cmd_retry_failed(args: argparse.Namespace) -> None:
    count = build_coordinator(args).retry_failed_tasks()
    print(f"Re-queued {count} failed tasks")


def cmd_reclaim_stale(args: argparse.Namespace) -> None:
    minutes = args.minutes or args.settings.stale_processing_minutes
    if minutes <= 0:
        raise SystemExit("Stale threshold must be positive (use --minutes)")
    count = reclaim_stale_tasks(TaskStore(args.settings.database_url), minutes)
    print(f"Reclaimed {count} stale tasks")


def cmd_list(args: argparse.Namespace) -> None:
    tasks = TaskStore(args.settings.database_url).list_tasks(status=args.status, limit=args.limit)
    if not tasks:
        print("No tasks in queue.")
        return
    print(f"Found {len(tasks)} tasks:\n")
    for task in tasks:
        print(f"ID: {task.id}")
        print(f"  Key: {task.dedupe_key}")
        print(f"  Priority: {task.priority}")
        print(f"  Status: {task.status}")
        print(f"  Attempts: {task.attempts}/{task.max_attempts}")
        if task.error_message:
            print(f"  Error: {task.error_message}")
        print(f"  Created: {task.created_at:%Y-%m-%d %H:%M:%S}")
        print()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bookbackfill", description="Backfill queue for book metadata providers"
    )
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--db", help="Database path or URL (default: $BACKFILL_DATABASE_URL or data/backfill.db)")

    subparsers = parser.add_subparsers(dest="command")
    enq = subparsers.add_parser("enqueue", help="Queue one provider record for backfill")
    enq.add_argument("--source", required=True, help="Provider, e.g. GOOGLE_BOOKS or OPEN_LIBRARY")
    enq.add_argument("--id", required=True, help="Provider's identifier (volume id, ISBN)")
    enq.add_argument("--priority", type=int, default=DEFAULT_PRIORITY, help="1 = most urgent, 10 = background (default: 5)")
    enq.set_defaults(func=cmd_enqueue)

    enqf = subparsers.add_parser("enqueue-file", help="Queue provider ids from a file (one per line)")
    enqf.add_argument("--input", required=True, help="Text file with one id per line")
    enqf.add_argument("--source", required=True, help="Provider for every id in the file")
    enqf.add_argument("--priority", type=int, default=DEFAULT_PRIORITY, help="Priority for every id (default: 5)")
    enqf.set_defaults(func=cmd_enqueue_file)

    once = subparsers.add_parser("run-once", help="Process a single batch and exit")
    once.set_defaults(func=cmd_run_once)

    run = subparsers.add_parser("run", help="Process the queue periodically until interrupted")
    run.add_argument("--interval", type=float, help="Seconds between batches (default: $BACKFILL_INTERVAL_SECONDS or 5)")
    run.set_defaults(func=cmd_run)

    st = subparsers.add_parser("stats", help="Show task counts per status over the stats window")
    st.add_argument("--json", action="store_true", help="Print counts as JSON")
    st.set_defaults(func=cmd_stats)

    rf = subparsers.add_parser("retry-failed", help="Re-queue every FAILED task with a fresh attempt budget")
    rf.set_defaults(func=cmd_retry_failed)

    rs = subparsers.add_parser("reclaim-stale", help="Return stuck PROCESSING tasks to the queue")
    rs.add_argument("--minutes", type=int, help="Staleness threshold (default: $BACKFILL_STALE_PROCESSING_MINUTES or 15)")
    rs.set_defaults(func=cmd_reclaim_stale)

    lst = subparsers.add_parser("list", help="List tasks, newest first")
    lst.add_argument("--status", choices=[s.value for s in TaskStatus], help="Only tasks in this status")
    lst.add_argument("--limit", type=int, default=50, help="Maximum tasks to show (default: 50)")
    lst.set_defaults(func=cmd_list)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    # Load .env if present (GOOGLE_BOOKS_API_KEY, BACKFILL_* settings)
    load_env()
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return

    if not hasattr(args, "func"):
        parser.print_help()
        return

    try:
        settings = BackfillSettings.from_env()
    except ValueError as e:
        raise SystemExit(f"Invalid configuration: {e}")
    if args.db:
        settings.database_url = args.db
    get_logger().set_level(settings.log_level)
    args.settings = settings

    args.func(args)


if __name__ == "__main__":
    main(sys.argv[1:])
