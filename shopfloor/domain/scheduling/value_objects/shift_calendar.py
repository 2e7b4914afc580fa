"""
Shift Calendar Value Object

Facility working-time rules: non-working weekdays, fixed breaks and a work
window that may wrap past midnight (08:00 until 01:30 the next day).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta

from ....core.observability import CALENDAR_FAILURES, get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ShiftBreak:
    """Half-open non-working interval [start, end) within a day."""

    start: time
    end: time

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError("Break end must be after break start")

    def contains(self, time_of_day: time) -> bool:
        return self.start <= time_of_day < self.end


@dataclass(frozen=True)
class ShiftCalendar:
    """
    Working/non-working evaluation for facility-local instants.

    Precedence: non-working weekday, then breaks, then the work window.
    A window with ``work_start > work_end`` wraps midnight; both ends are
    inclusive.
    """

    work_start: time = time(8, 0)
    work_end: time = time(1, 30)
    breaks: tuple[ShiftBreak, ...] = (
        ShiftBreak(time(12, 0), time(13, 0)),
        ShiftBreak(time(21, 0), time(21, 30)),
    )
    non_working_weekdays: frozenset[int] = field(
        default_factory=lambda: frozenset({5, 6})  # 0=Monday, 6=Sunday
    )
    utc_offset: timedelta = timedelta(hours=4)

    def __post_init__(self):
        for weekday in self.non_working_weekdays:
            if not 0 <= weekday <= 6:
                raise ValueError(
                    f"Invalid weekday: {weekday}. Must be 0-6 (Monday=0, Sunday=6)"
                )

    @classmethod
    def from_settings(cls, settings) -> ShiftCalendar:
        """Build the calendar from ``Settings`` SHIFT_* and FACILITY_* values."""
        return cls(
            work_start=settings.SHIFT_WORK_START,
            work_end=settings.SHIFT_WORK_END,
            breaks=tuple(ShiftBreak(start, end) for start, end in settings.SHIFT_BREAKS),
            non_working_weekdays=frozenset(settings.SHIFT_NON_WORKING_WEEKDAYS),
            utc_offset=timedelta(hours=settings.FACILITY_UTC_OFFSET_HOURS),
        )

    def to_local(self, utc_instant: datetime) -> datetime:
        """Convert a naive UTC instant to facility-local time."""
        return utc_instant + self.utc_offset

    def is_working_at(self, utc_instant: datetime) -> bool:
        """Check a naive UTC instant against the calendar. Never raises."""
        try:
            return self._evaluate(self.to_local(utc_instant))
        except Exception:
            return self._fail_open(utc_instant)

    def is_working_instant(self, local_instant: datetime) -> bool:
        """
        Check if a facility-local instant is working time.

        Never raises: an evaluation failure is logged as a defect and the
        instant is reported as working so running jobs are not stalled.

        Args:
            local_instant: Facility-local datetime

        Returns:
            True if the instant is working time
        """
        try:
            return self._evaluate(local_instant)
        except Exception:
            return self._fail_open(local_instant)

    def _fail_open(self, instant) -> bool:
        CALENDAR_FAILURES.inc()
        logger.error(
            "Shift calendar evaluation failed, treating instant as working",
            instant=repr(instant),
            exc_info=True,
        )
        return True

    def _evaluate(self, local_instant: datetime) -> bool:
        if local_instant.weekday() in self.non_working_weekdays:
            return False

        time_of_day = local_instant.time()
        for shift_break in self.breaks:
            if shift_break.contains(time_of_day):
                return False

        return self.is_within_work_window(time_of_day)

    def is_within_work_window(self, time_of_day: time) -> bool:
        if self.work_start <= self.work_end:
            return self.work_start <= time_of_day <= self.work_end
        # Overnight wrap
        return time_of_day >= self.work_start or time_of_day <= self.work_end
