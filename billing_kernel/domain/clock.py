"""
Clock -- injectable time source for rule evaluation and audit timestamps.

Responsibility:
    Provides a clock interface so that the evaluator and the services never
    call ``datetime.now()`` directly.  Time and day-of-week rule conditions
    are evaluated against the instant the clock reports, converted into the
    venue's billing timezone.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O (except SystemClock,
    which is the one sanctioned I/O boundary for time).

Failure modes:
    - SequentialClock raises RuntimeError if exhausted and no fallback time.
    - local_moment raises ZoneInfoNotFoundError for unknown timezone names.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Iterator
from zoneinfo import ZoneInfo


class Clock(ABC):
    """
    Abstract clock interface.

    Contract:
        Services that need the current time receive a Clock instance via
        constructor injection.

    Guarantees:
        - ``now()`` returns a timezone-aware ``datetime``.
        - ``now_utc()`` returns a UTC-normalized ``datetime``.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time."""
        ...

    @abstractmethod
    def now_utc(self) -> datetime:
        """Get the current UTC time."""
        ...

    def now_in(self, zone: str) -> datetime:
        """Current time expressed in the named IANA timezone."""
        return local_moment(self.now(), zone)


class SystemClock(Clock):
    """Production clock that returns actual system time (UTC)."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    Guarantees:
        - ``now()`` returns the same value on repeated calls until ``advance()``
          or ``set_time()`` is called.
        - ``tick()`` advances by exactly 1 second and returns the new time.
    """

    def __init__(self, fixed_time: datetime | None = None):
        """
        Args:
            fixed_time: Instant the clock reports.  Naive values are taken
                       as UTC.  Defaults to Monday 2024-01-01 12:00 UTC.
        """
        fixed_time = fixed_time or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        self._fixed_time = _aware(fixed_time)
        self._advance_seconds = 0

    def now(self) -> datetime:
        return self._fixed_time + timedelta(seconds=self._advance_seconds)

    def now_utc(self) -> datetime:
        return self.now().astimezone(timezone.utc)

    def set_time(self, time: datetime) -> None:
        """Set the clock to a specific time."""
        self._fixed_time = _aware(time)
        self._advance_seconds = 0

    def advance(self, seconds: int = 1) -> None:
        """Advance the clock by the specified seconds."""
        self._advance_seconds += seconds

    def tick(self) -> datetime:
        """Advance by 1 second and return new time."""
        self.advance(1)
        return self.now()


class SequentialClock(Clock):
    """
    Clock that returns sequential times from a predefined list.

    Contract:
        Initialized with a non-empty list of ``datetime`` values.  After
        exhaustion, repeats the last value.

    Raises:
        ValueError: If initialized with an empty list.
        RuntimeError: If exhausted with no recorded last time.
    """

    def __init__(self, times: list[datetime]):
        if not times:
            raise ValueError("SequentialClock requires at least one time")
        self._times: Iterator[datetime] = iter(_aware(t) for t in times)
        self._last_time: datetime | None = None
        self._exhausted = False

    def now(self) -> datetime:
        """Get the next time in sequence."""
        if self._exhausted:
            if self._last_time is None:
                raise RuntimeError("SequentialClock has no times")
            return self._last_time

        try:
            self._last_time = next(self._times)
            return self._last_time
        except StopIteration:
            self._exhausted = True
            if self._last_time is None:
                raise RuntimeError("SequentialClock exhausted with no times")
            return self._last_time

    def now_utc(self) -> datetime:
        return self.now().astimezone(timezone.utc)


def _aware(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def local_moment(moment: datetime, zone: str) -> datetime:
    """
    Convert an instant into wall-clock time for the named timezone.

    Naive datetimes are treated as UTC.
    """
    return _aware(moment).astimezone(ZoneInfo(zone))
