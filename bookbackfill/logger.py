"""
Structured logging for the backfill queue.

Provides centralized logging with console and file outputs, plus
in-memory counters used to monitor queue health between stats queries.
"""

import json
import logging
import os
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks task and provider metrics for the running process.
    """

    def __init__(
        self,
        name: str = "bookbackfill",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = True,
        enable_console: bool = True,
    ):
        """
        Initialize the structured logger.

        Args:
            name: Logger name
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for log files (default: $BACKFILL_LOG_DIR or logs/)
            enable_file: Write logs to file
            enable_console: Output logs to console
        """
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))
        self.logger.handlers.clear()

        # Counters are bumped from worker threads when workers > 1
        self._metrics_lock = threading.Lock()
        self.metrics = self._empty_metrics()

        if enable_console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_handler.setFormatter(logging.Formatter(
                fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))
            self.logger.addHandler(console_handler)

        if enable_file:
            if log_dir is None:
                log_dir = Path(os.getenv("BACKFILL_LOG_DIR") or "logs")
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"bookbackfill_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(
                fmt="%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))
            self.logger.addHandler(file_handler)

    @staticmethod
    def _empty_metrics() -> dict:
        return {
            "api_calls": 0,
            "tasks_attempted": 0,
            "tasks_completed": 0,
            "tasks_failed": 0,
            "tasks_requeued": 0,
            "capacity_rejections": {},
            "errors_by_type": {},
            "source_success_rate": {},
        }

    def debug(self, message: str, **kwargs):
        """Log debug message with optional context."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        """Log info message with optional context."""
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional context."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with optional context."""
        self._log(logging.ERROR, message, kwargs)

    def exception(self, message: str, **kwargs):
        """Log an error with the active exception's traceback."""
        self._log(logging.ERROR, message, kwargs, exc_info=True)

    def critical(self, message: str, **kwargs):
        """Log critical message with optional context."""
        self._log(logging.CRITICAL, message, kwargs)

    def set_level(self, level: str):
        """Change the logger and console threshold (the file handler keeps DEBUG)."""
        numeric = getattr(logging, level.upper())
        self.logger.setLevel(numeric)
        for handler in self.logger.handlers:
            if not isinstance(handler, logging.FileHandler):
                handler.setLevel(numeric)

    def _log(self, level: int, message: str, context: dict, exc_info: bool = False):
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str)}"
        self.logger.log(level, message, exc_info=exc_info)

    # Metric tracking methods

    def record_api_call(self):
        """Increment provider API call counter."""
        with self._metrics_lock:
            self.metrics["api_calls"] += 1

    def record_task_attempt(self, source: str):
        """Record that a task for *source* entered processing."""
        with self._metrics_lock:
            self.metrics["tasks_attempted"] += 1
            stats = self.metrics["source_success_rate"].setdefault(
                source, {"attempts": 0, "successes": 0}
            )
            stats["attempts"] += 1

    def record_task_success(self, source: str):
        """Record a completed task."""
        with self._metrics_lock:
            self.metrics["tasks_completed"] += 1
            if source in self.metrics["source_success_rate"]:
                self.metrics["source_success_rate"][source]["successes"] += 1

    def record_task_failure(self, source: str, error_type: str, requeued: bool):
        """Record a failed attempt; *requeued* is False once attempts are exhausted."""
        with self._metrics_lock:
            if requeued:
                self.metrics["tasks_requeued"] += 1
            else:
                self.metrics["tasks_failed"] += 1
            errors = self.metrics["errors_by_type"]
            errors[error_type] = errors.get(error_type, 0) + 1

    def record_capacity_rejection(self, gate: str):
        """Record a rate limiter or bulkhead refusal."""
        with self._metrics_lock:
            rejections = self.metrics["capacity_rejections"]
            rejections[gate] = rejections.get(gate, 0) + 1

    def get_metrics(self) -> dict:
        """Return a copy of current metrics with success rates filled in."""
        with self._metrics_lock:
            metrics_copy = json.loads(json.dumps(self.metrics))
        for stats in metrics_copy["source_success_rate"].values():
            if stats["attempts"] > 0:
                stats["success_rate"] = round(stats["successes"] / stats["attempts"], 3)
        return metrics_copy

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()

        attempted = metrics["tasks_attempted"]
        completed = metrics["tasks_completed"]
        overall_rate = round(completed / attempted * 100, 1) if attempted else 0

        self.info("=== Backfill Session Metrics ===")
        self.info(f"API Calls: {metrics['api_calls']}")
        self.info(f"Tasks: {completed}/{attempted} completed ({overall_rate}% success)")
        self.info(
            f"Re-queued after failure: {metrics['tasks_requeued']}, "
            f"permanently failed: {metrics['tasks_failed']}"
        )

        if metrics["source_success_rate"]:
            self.info("Source Success Rates:")
            for source, stats in metrics["source_success_rate"].items():
                rate = stats.get("success_rate", 0) * 100
                self.info(f"  {source}: {stats['successes']}/{stats['attempts']} ({rate:.1f}%)")

        if metrics["capacity_rejections"]:
            self.info("Capacity Rejections:")
            for gate, count in metrics["capacity_rejections"].items():
                self.info(f"  {gate}: {count}")

        if metrics["errors_by_type"]:
            self.info("Error Types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")


_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "bookbackfill",
    level: str = "INFO",
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
