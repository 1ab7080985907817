"""
Business Calendar
=================

Calendar-aware business-time arithmetic for SLA clocks.

A calendar is a named IANA time zone, a set of weekly business-hour windows
and a set of whole-day holidays. `BusinessCalendar.business_elapsed` answers
"how much business time lies in [start, end)" and is the only primitive the
clock engine needs.

Windows are expressed as offsets from *local* midnight and every civil day is
converted separately, so days with a daylight-saving transition keep their
wall-clock boundaries (a 09:00-17:00 window is still 8 real hours).
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import IntEnum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from core.exceptions import InvalidCalendarConfigException

SECONDS_PER_DAY = 86400
ONE_MILLISECOND = timedelta(milliseconds=1)


class DayOfWeek(IntEnum):
    """Day numbering used by stored business hours (0 is Sunday)."""
    SUNDAY = 0
    MONDAY = 1
    TUESDAY = 2
    WEDNESDAY = 3
    THURSDAY = 4
    FRIDAY = 5
    SATURDAY = 6

    @classmethod
    def of(cls, day: date) -> "DayOfWeek":
        # date.weekday() counts from Monday
        return cls((day.weekday() + 1) % 7)


def ensure_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def truncate_to_millisecond(value: datetime) -> datetime:
    """Drop sub-millisecond precision so elapsed deltas are whole milliseconds."""
    return value.replace(microsecond=value.microsecond - value.microsecond % 1000)


@dataclass(frozen=True)
class BusinessHourWindow:
    """
    One open-hours interval on a given weekday.

    Offsets are seconds after local midnight; the end is exclusive, so an
    end of 86400 means "until midnight".
    """
    day_of_week: DayOfWeek
    start_offset_seconds: int
    end_offset_seconds: int

    def __post_init__(self):
        object.__setattr__(self, "day_of_week", DayOfWeek(self.day_of_week))

    @property
    def duration_seconds(self) -> int:
        return self.end_offset_seconds - self.start_offset_seconds

    def problems(self) -> List[str]:
        """Describe what is wrong with this window (empty when valid)."""
        issues = []
        if not 0 <= self.start_offset_seconds < SECONDS_PER_DAY:
            issues.append(
                f"{self.day_of_week.name}: start offset {self.start_offset_seconds} outside [0, 86400)"
            )
        if not 0 < self.end_offset_seconds <= SECONDS_PER_DAY:
            issues.append(
                f"{self.day_of_week.name}: end offset {self.end_offset_seconds} outside (0, 86400]"
            )
        if self.start_offset_seconds >= self.end_offset_seconds:
            issues.append(
                f"{self.day_of_week.name}: start {self.start_offset_seconds} is not before end {self.end_offset_seconds}"
            )
        return issues

    def overlaps(self, other: "BusinessHourWindow") -> bool:
        return (
            self.day_of_week == other.day_of_week
            and self.start_offset_seconds < other.end_offset_seconds
            and other.start_offset_seconds < self.end_offset_seconds
        )

    def bounds(self, day: date, zone: ZoneInfo) -> Tuple[datetime, datetime]:
        """UTC instants of this window on the given civil day."""
        midnight = datetime(day.year, day.month, day.day, tzinfo=zone)
        # Aware arithmetic on a zoneinfo datetime moves the wall clock,
        # the UTC offset is re-derived for the resulting local time.
        start = midnight + timedelta(seconds=self.start_offset_seconds)
        end = midnight + timedelta(seconds=self.end_offset_seconds)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


@dataclass(frozen=True)
class Holiday:
    """A whole civil day, in the calendar's zone, with no business time."""
    date: date
    label: str = ""


def find_window_problems(windows: Iterable[BusinessHourWindow]) -> List[Tuple[DayOfWeek, str]]:
    """Return (day, message) for every malformed or overlapping window."""
    problems: List[Tuple[DayOfWeek, str]] = []
    by_day: Dict[DayOfWeek, List[BusinessHourWindow]] = {}

    for window in windows:
        for issue in window.problems():
            problems.append((window.day_of_week, issue))
        by_day.setdefault(window.day_of_week, []).append(window)

    for day, day_windows in by_day.items():
        ordered = sorted(day_windows, key=lambda w: (w.start_offset_seconds, w.end_offset_seconds))
        for previous, current in zip(ordered, ordered[1:]):
            if previous.overlaps(current):
                problems.append((
                    day,
                    f"{day.name}: window {previous.start_offset_seconds}-{previous.end_offset_seconds} "
                    f"overlaps {current.start_offset_seconds}-{current.end_offset_seconds}"
                ))

    return problems


@dataclass
class BusinessCalendar:
    """
    Read-only business calendar.

    Days listed in `invalid_days` hold malformed windows; they are treated
    as closed rather than failing every computation that touches them.
    """
    id: str
    name: str
    timezone: str
    windows: Tuple[BusinessHourWindow, ...] = ()
    holidays: Tuple[Holiday, ...] = ()
    invalid_days: FrozenSet[DayOfWeek] = frozenset()

    _zone: ZoneInfo = field(init=False, repr=False, compare=False)
    _windows_by_day: Dict[DayOfWeek, Tuple[BusinessHourWindow, ...]] = field(
        init=False, repr=False, compare=False
    )
    _holiday_dates: FrozenSet[date] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        try:
            self._zone = ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise InvalidCalendarConfigException(self.id, [f"unknown time zone '{self.timezone}'"])

        self.windows = tuple(self.windows)
        self.holidays = tuple(self.holidays)

        grouped: Dict[DayOfWeek, List[BusinessHourWindow]] = {}
        for window in self.windows:
            grouped.setdefault(window.day_of_week, []).append(window)
        self._windows_by_day = {
            day: tuple(sorted(ws, key=lambda w: w.start_offset_seconds))
            for day, ws in grouped.items()
        }
        self._holiday_dates = frozenset(h.date for h in self.holidays)

    @classmethod
    def build(
        cls,
        calendar_id: str,
        name: str,
        timezone_name: str,
        windows: Iterable[BusinessHourWindow],
        holidays: Iterable[Holiday] = (),
        strict: bool = True,
    ) -> "BusinessCalendar":
        """
        Construct a calendar from configuration rows.

        Args:
            strict: raise InvalidCalendarConfigException on bad windows
                instead of closing the affected days.
        """
        windows = tuple(windows)
        problems = find_window_problems(windows)
        if problems and strict:
            raise InvalidCalendarConfigException(calendar_id, [msg for _, msg in problems])

        return cls(
            id=calendar_id,
            name=name,
            timezone=timezone_name,
            windows=windows,
            holidays=tuple(holidays),
            invalid_days=frozenset(day for day, _ in problems),
        )

    @property
    def zone(self) -> ZoneInfo:
        return self._zone

    def validate(self) -> None:
        """Raise InvalidCalendarConfigException if any window is malformed."""
        problems = find_window_problems(self.windows)
        if problems:
            raise InvalidCalendarConfigException(self.id, [msg for _, msg in problems])

    def is_holiday(self, day: date) -> bool:
        return day in self._holiday_dates

    def windows_for(self, day: date) -> Tuple[BusinessHourWindow, ...]:
        """Windows that apply on a civil day (empty for holidays and invalid days)."""
        if self.is_holiday(day):
            return ()
        weekday = DayOfWeek.of(day)
        if weekday in self.invalid_days:
            return ()
        return self._windows_by_day.get(weekday, ())

    def business_elapsed(self, start: datetime, end: datetime) -> timedelta:
        """
        Business time inside [start, end).

        Returns zero when end is not after start, so a checkpoint that is
        slightly ahead of "now" (clock skew) never produces negative time.
        """
        start = ensure_utc(start)
        end = ensure_utc(end)
        if end <= start:
            return timedelta(0)

        day = start.astimezone(self._zone).date()
        last_day = end.astimezone(self._zone).date()
        total = timedelta(0)

        while day <= last_day:
            for window in self.windows_for(day):
                window_start, window_end = window.bounds(day, self._zone)
                lo = max(start, window_start)
                hi = min(end, window_end)
                if hi > lo:
                    total += hi - lo
            day += timedelta(days=1)

        return total

    def business_elapsed_ms(self, start: datetime, end: datetime) -> int:
        """Business time inside [start, end) in whole milliseconds."""
        return self.business_elapsed(start, end) // ONE_MILLISECOND

    def is_business_time(self, instant: datetime) -> bool:
        instant = ensure_utc(instant)
        day = instant.astimezone(self._zone).date()
        for window in self.windows_for(day):
            window_start, window_end = window.bounds(day, self._zone)
            if window_start <= instant < window_end:
                return True
        return False

    def weekly_business_seconds(self) -> int:
        """Nominal open seconds per week, ignoring holidays and DST."""
        return sum(
            w.duration_seconds
            for day, ws in self._windows_by_day.items()
            if day not in self.invalid_days
            for w in ws
        )


def parse_clock_time(value: str) -> int:
    """Parse "HH:MM" or "HH:MM:SS" into seconds after midnight ("24:00" allowed)."""
    parts = value.strip().split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        raise ValueError(f"invalid time of day '{value}', expected HH:MM")
    hours, minutes = int(parts[0]), int(parts[1])
    seconds = int(parts[2]) if len(parts) == 3 else 0
    if minutes > 59 or seconds > 59:
        raise ValueError(f"invalid time of day '{value}'")
    total = hours * 3600 + minutes * 60 + seconds
    if total > SECONDS_PER_DAY:
        raise ValueError(f"time of day '{value}' is past 24:00")
    return total


def format_clock_time(offset_seconds: int) -> str:
    hours, rest = divmod(offset_seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    if seconds:
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
    return f"{hours:02d}:{minutes:02d}"


def default_business_week(start: str = "09:00", end: str = "17:00") -> List[BusinessHourWindow]:
    """Monday-Friday windows, handy for seeding and tests."""
    start_s, end_s = parse_clock_time(start), parse_clock_time(end)
    return [
        BusinessHourWindow(day, start_s, end_s)
        for day in (
            DayOfWeek.MONDAY, DayOfWeek.TUESDAY, DayOfWeek.WEDNESDAY,
            DayOfWeek.THURSDAY, DayOfWeek.FRIDAY,
        )
    ]


def optional_zone(name: Optional[str]) -> Optional[ZoneInfo]:
    """ZoneInfo for a name, or None when the name is empty or unknown."""
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None
