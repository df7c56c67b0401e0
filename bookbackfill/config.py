"""
Runtime settings for the backfill queue.

Values are read from environment variables, optionally seeded from a
``.env`` file in the working directory.  By default the queue runs
batches of 10 every 5 seconds with 3 attempts per task.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

DEFAULT_DB_PATH = Path("data") / "backfill.db"


def load_env() -> None:
    """Load .env from the working directory if present.

    Variables already set in the environment are never overridden.
    """
    env_path = Path.cwd() / ".env"
    if not env_path.exists():
        return
    load_dotenv(dotenv_path=env_path, override=False)


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass
class BackfillSettings:
    """Everything the queue, scheduler and provider clients need to run."""

    database_url: str = f"sqlite:///{DEFAULT_DB_PATH}"
    batch_size: int = 10
    interval_seconds: float = 5.0
    max_attempts: int = 3
    stats_window_minutes: int = 60
    rate_limit_calls: int = 10
    rate_limit_period_seconds: float = 1.0
    bulkhead_max_concurrent: int = 5
    bulkhead_max_wait_seconds: float = 0.0
    workers: int = 1
    fetch_timeout_seconds: float = 15.0
    stale_processing_minutes: int = 15
    google_books_api_key: Optional[str] = None
    google_books_base_url: str = "https://www.googleapis.com/books/v1"
    open_library_base_url: str = "https://openlibrary.org"
    log_level: str = "INFO"
    log_dir: Optional[Path] = None

    @classmethod
    def from_env(cls) -> "BackfillSettings":
        """Build settings from ``BACKFILL_*`` and provider environment variables.

        Raises:
            ValueError: If a numeric variable is malformed or out of range.
        """
        defaults = cls()
        log_dir = _env_str("BACKFILL_LOG_DIR", None)
        return cls(
            database_url=_env_str("BACKFILL_DATABASE_URL", defaults.database_url),
            batch_size=_env_int("BACKFILL_BATCH_SIZE", defaults.batch_size, minimum=1),
            interval_seconds=_env_float(
                "BACKFILL_INTERVAL_SECONDS", defaults.interval_seconds, minimum=0.1
            ),
            max_attempts=_env_int("BACKFILL_MAX_ATTEMPTS", defaults.max_attempts, minimum=1),
            stats_window_minutes=_env_int(
                "BACKFILL_STATS_WINDOW_MINUTES", defaults.stats_window_minutes, minimum=1
            ),
            rate_limit_calls=_env_int(
                "BACKFILL_RATE_LIMIT_CALLS", defaults.rate_limit_calls, minimum=1
            ),
            rate_limit_period_seconds=_env_float(
                "BACKFILL_RATE_LIMIT_PERIOD_SECONDS",
                defaults.rate_limit_period_seconds,
                minimum=0.001,
            ),
            bulkhead_max_concurrent=_env_int(
                "BACKFILL_BULKHEAD_MAX_CONCURRENT", defaults.bulkhead_max_concurrent, minimum=1
            ),
            bulkhead_max_wait_seconds=_env_float(
                "BACKFILL_BULKHEAD_MAX_WAIT_SECONDS", defaults.bulkhead_max_wait_seconds
            ),
            workers=_env_int("BACKFILL_WORKERS", defaults.workers, minimum=1),
            fetch_timeout_seconds=_env_float(
                "BACKFILL_FETCH_TIMEOUT_SECONDS", defaults.fetch_timeout_seconds, minimum=0.1
            ),
            stale_processing_minutes=_env_int(
                "BACKFILL_STALE_PROCESSING_MINUTES", defaults.stale_processing_minutes
            ),
            google_books_api_key=_env_str("GOOGLE_BOOKS_API_KEY", None),
            google_books_base_url=_env_str(
                "GOOGLE_BOOKS_API_BASE_URL", defaults.google_books_base_url
            ),
            open_library_base_url=_env_str("OPENLIBRARY_API_URL", defaults.open_library_base_url),
            log_level=_env_str("BACKFILL_LOG_LEVEL", defaults.log_level).upper(),
            log_dir=Path(log_dir) if log_dir else None,
        )
