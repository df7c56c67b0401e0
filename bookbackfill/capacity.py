"""
Admission gates evaluated before each task is processed.

Two independent controls bound pressure on external providers:

* ``RateLimiter`` caps calls per time window (pyrate-limiter, fail-fast).
* ``Bulkhead`` caps concurrently in-flight task executions.

A refusal raises :class:`CapacityRejected`.  Callers treat it as
backpressure ("the system is busy"), never as a task failure.
"""

import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from pyrate_limiter import Limiter, Rate

from .logger import get_logger

logger = get_logger()


class CapacityRejected(Exception):
    """An admission gate refused to let a task run right now."""

    def __init__(self, gate: str, message: str):
        self.gate = gate
        super().__init__(message)


class RateLimiter:
    """Fail-fast sliding-window limiter: at most *calls* acquisitions per *period_seconds*."""

    def __init__(self, name: str, calls: int, period_seconds: float):
        if calls <= 0:
            raise ValueError(f"calls must be positive, got: {calls}")
        if period_seconds <= 0:
            raise ValueError(f"period_seconds must be positive, got: {period_seconds}")
        self.name = name
        self.calls = calls
        self.period_seconds = period_seconds
        self._limiter = Limiter(
            Rate(calls, int(period_seconds * 1000)),
            raise_when_fail=False,
            max_delay=None,
        )

    def try_acquire(self) -> bool:
        """Take a slot if one is free; never blocks."""
        return bool(self._limiter.try_acquire(self.name, weight=1))

    def acquire(self) -> None:
        """Take a slot or raise :class:`CapacityRejected`."""
        if not self.try_acquire():
            raise CapacityRejected(
                "rate_limiter",
                f"Rate limiter '{self.name}' exhausted "
                f"({self.calls} calls per {self.period_seconds:g}s)",
            )


class Bulkhead:
    """Caps the number of concurrently admitted executions."""

    def __init__(self, name: str, max_concurrent: int, max_wait_seconds: float = 0.0):
        if max_concurrent <= 0:
            raise ValueError(f"max_concurrent must be positive, got: {max_concurrent}")
        self.name = name
        self.max_concurrent = max_concurrent
        self.max_wait_seconds = max_wait_seconds
        self._semaphore = threading.BoundedSemaphore(max_concurrent)
        self._in_flight = 0
        self._count_lock = threading.Lock()

    @property
    def in_flight(self) -> int:
        with self._count_lock:
            return self._in_flight

    @contextmanager
    def admit(self) -> Iterator[None]:
        """Hold one slot for the duration of the block.

        Raises:
            CapacityRejected: If no slot frees up within ``max_wait_seconds``.
        """
        if self.max_wait_seconds > 0:
            acquired = self._semaphore.acquire(timeout=self.max_wait_seconds)
        else:
            acquired = self._semaphore.acquire(blocking=False)
        if not acquired:
            raise CapacityRejected(
                "bulkhead",
                f"Bulkhead '{self.name}' full ({self.max_concurrent} in flight)",
            )
        with self._count_lock:
            self._in_flight += 1
        try:
            yield
        finally:
            with self._count_lock:
                self._in_flight -= 1
            self._semaphore.release()


class CapacityGate:
    """Rate limiter and bulkhead composed into one admission check.

    Either control may be omitted.  The rate limiter is consulted first so a
    rate refusal never occupies a bulkhead slot.
    """

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        bulkhead: Optional[Bulkhead] = None,
    ):
        self.rate_limiter = rate_limiter
        self.bulkhead = bulkhead

    @contextmanager
    def admit(self) -> Iterator[None]:
        if self.rate_limiter is not None:
            self.rate_limiter.acquire()
        if self.bulkhead is None:
            yield
            return
        with self.bulkhead.admit():
            yield

    @classmethod
    def from_settings(cls, settings, name: str = "provider-backfill") -> "CapacityGate":
        logger.debug(
            "Creating capacity gate",
            name=name,
            rate_limit_calls=settings.rate_limit_calls,
            rate_limit_period_seconds=settings.rate_limit_period_seconds,
            bulkhead_max_concurrent=settings.bulkhead_max_concurrent,
        )
        return cls(
            rate_limiter=RateLimiter(
                name, settings.rate_limit_calls, settings.rate_limit_period_seconds
            ),
            bulkhead=Bulkhead(
                name, settings.bulkhead_max_concurrent, settings.bulkhead_max_wait_seconds
            ),
        )
