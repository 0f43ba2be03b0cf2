"""
SLA Value Objects
==================

Immutable value objects for the SLA domain and the business-hours calculator.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared, which lets one assembled
``EffectiveCalendar`` be cached and read by many concurrent requests.

All times of day are integer minutes from midnight in ``[0, 1440]``.
``"24:00"`` is normalized to 1440 when a schedule is loaded, so the
algorithms below never parse strings.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import SlaStatus, SlaZone, Weekday
from core.exceptions import ConfigurationError

MINUTES_PER_DAY = 1440

MinuteRange = Tuple[int, int]
InstantRange = Tuple[datetime, datetime]
Range = Union[MinuteRange, InstantRange]


def to_minute_of_day(value: Union[str, time, int]) -> int:
    """
    Normalize a time of day to minutes from midnight.

    Accepts ``"HH:MM"``, ``"HH:MM:SS"``, ``datetime.time`` or an int.
    ``"24:00"`` (and ``"24:00:00"``) maps to 1440. Seconds are truncated.

    Raises:
        ValueError: If the value is not a valid time of day
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid time of day: {value!r}")
    if isinstance(value, int):
        minutes = value
    elif isinstance(value, time):
        minutes = value.hour * 60 + value.minute
    else:
        parts = str(value).strip().split(":")
        if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
            raise ValueError(f"Invalid time of day: {value!r}")
        hours, mins = int(parts[0]), int(parts[1])
        if mins > 59 or (hours == 24 and mins != 0):
            raise ValueError(f"Invalid time of day: {value!r}")
        minutes = hours * 60 + mins

    if not 0 <= minutes <= MINUTES_PER_DAY:
        raise ValueError(f"Time of day out of range: {value!r}")
    return minutes


def format_minute_of_day(minutes: int) -> str:
    """Render minutes from midnight as ``HH:MM`` (1440 renders as ``24:00``)."""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def format_duration(minutes: int) -> str:
    """
    Human readable duration used in notifications.

    Examples:
        45 -> "45m", 125 -> "2h 5m", 1440 -> "1d", 1565 -> "1d 2h 5m"
    """
    minutes = max(0, int(minutes))
    days, rest = divmod(minutes, MINUTES_PER_DAY)
    hours, mins = divmod(rest, 60)

    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if mins or not parts:
        parts.append(f"{mins}m")
    return " ".join(parts)


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """
    Resolve an IANA zone name.

    Raises:
        ConfigurationError: If the zone is unknown
    """
    if not name or name.upper() in ("UTC", "ETC/UTC", "Z"):
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone '{name}'", {"timezone": name}) from e


# ========== Calendar ==========

@dataclass(frozen=True)
class DayWindow:
    """Working window of one weekday, in minutes from midnight."""
    start: int
    end: int

    def __post_init__(self):
        if not 0 <= self.start <= self.end <= MINUTES_PER_DAY:
            raise ValueError(f"Invalid working window {self.start}-{self.end}")


@dataclass(frozen=True)
class BreakWindow:
    """
    A recurring break inside the working window.

    An empty ``applies_to_days`` means the break applies every day.
    """
    start: int
    end: int
    applies_to_days: FrozenSet[Weekday] = frozenset()

    def __post_init__(self):
        if not 0 <= self.start <= self.end <= MINUTES_PER_DAY:
            raise ValueError(f"Invalid break window {self.start}-{self.end}")

    def applies_to(self, weekday: Weekday) -> bool:
        return not self.applies_to_days or weekday in self.applies_to_days


@dataclass(frozen=True)
class HolidayDate:
    """
    A full-day or partial-day holiday.

    A partial holiday without both bounds is treated as a full day.
    """
    day: date
    is_full_day: bool = True
    start: Optional[int] = None
    end: Optional[int] = None
    name: Optional[str] = None

    @property
    def blocks_whole_day(self) -> bool:
        return self.is_full_day or self.start is None or self.end is None


@dataclass(frozen=True)
class EffectiveCalendar:
    """
    Schedule, breaks and holidays assembled into one value.

    Built once per cache load and consumed by ``BusinessHoursCalculator``.
    A 24x7 calendar ignores day windows, breaks and holidays.
    """
    schedule_id: Optional[str]
    name: str
    is_24x7: bool
    days: Dict[Weekday, DayWindow] = field(default_factory=dict)
    breaks: Tuple[BreakWindow, ...] = ()
    holidays: Dict[date, HolidayDate] = field(default_factory=dict)
    timezone_name: str = "UTC"

    @classmethod
    def always_open(cls, name: str = "24x7") -> "EffectiveCalendar":
        """Calendar used when a rule has no schedule."""
        return cls(schedule_id=None, name=name, is_24x7=True)

    @property
    def tz(self) -> tzinfo:
        return resolve_timezone(self.timezone_name)

    def with_holidays(self, holidays: Iterable[HolidayDate]) -> "EffectiveCalendar":
        return EffectiveCalendar(
            schedule_id=self.schedule_id,
            name=self.name,
            is_24x7=self.is_24x7,
            days=self.days,
            breaks=self.breaks,
            holidays={h.day: h for h in holidays},
            timezone_name=self.timezone_name,
        )

    def working_segments(self, day: date) -> List[MinuteRange]:
        """
        Working minute ranges of a calendar day.

        The day's window minus applicable breaks minus a partial holiday.
        """
        if self.is_24x7:
            return [(0, MINUTES_PER_DAY)]

        holiday = self.holidays.get(day)
        if holiday is not None and holiday.blocks_whole_day:
            return []

        weekday = Weekday.of(day)
        window = self.days.get(weekday)
        if window is None or window.start >= window.end:
            return []

        exclusions = [(b.start, b.end) for b in self.breaks if b.applies_to(weekday)]
        if holiday is not None:
            exclusions.append((holiday.start, holiday.end))
        return subtract_ranges([(window.start, window.end)], exclusions)

    def available_minutes(self, day: date) -> int:
        return sum(b - a for a, b in self.working_segments(day))


# ========== Range arithmetic ==========

def merge_ranges(ranges: Iterable[Range]) -> List[Range]:
    """Sort and merge overlapping or touching ranges of minutes or instants."""
    merged: List[Range] = []
    for start, end in sorted(r for r in ranges if r[1] > r[0]):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def subtract_ranges(segments: Sequence[Range], exclusions: Iterable[Range]) -> List[Range]:
    """Remove every exclusion from the given disjoint segments."""
    result = list(segments)
    for ex_start, ex_end in merge_ranges(exclusions):
        pieces = []
        for start, end in result:
            if ex_end <= start or ex_start >= end:
                pieces.append((start, end))
                continue
            if start < ex_start:
                pieces.append((start, ex_start))
            if ex_end < end:
                pieces.append((ex_end, end))
        result = pieces
    return result


# ========== Pauses & classification ==========

@dataclass(frozen=True)
class PauseInterval:
    """A closed interval during which the SLA clock did not accrue."""
    start: datetime
    end: datetime


@dataclass(frozen=True)
class SlaClassification:
    """Outcome of classifying elapsed working minutes against TATs."""
    status: SlaStatus
    zone: SlaZone
    percent_used: int
    remaining_minutes: int
    overage_minutes: int

    @property
    def is_breached(self) -> bool:
        return self.status == SlaStatus.BREACHED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "zone": self.zone.value,
            "percent_used": self.percent_used,
            "remaining_minutes": self.remaining_minutes,
            "overage_minutes": self.overage_minutes,
        }


# ========== Calculator ==========

class BusinessHoursCalculator:
    """
    Pure working-time arithmetic over an ``EffectiveCalendar``.

    Working windows are laid out per local calendar day and converted
    to UTC instants, so intervals are intersected in absolute time and
    DST transitions neither add nor drop minutes. A 24x7 calendar is
    plain wall-clock time. Naive datetimes are taken to be UTC. Every
    value is an integer number of minutes; instants are truncated to
    the minute.
    """

    def __init__(self, max_walk_days: int = 366):
        self.max_walk_days = max_walk_days

    # ---------- instants ----------

    @staticmethod
    def _to_utc(instant: datetime) -> datetime:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return instant.astimezone(timezone.utc).replace(second=0, microsecond=0)

    @staticmethod
    def _local_date(instant: datetime, tz: tzinfo) -> date:
        return instant.astimezone(tz).date()

    @staticmethod
    def _to_instant(day: date, minute: int, tz: tzinfo) -> datetime:
        local = datetime.combine(day, time()) + timedelta(minutes=minute)
        return local.replace(tzinfo=tz).astimezone(timezone.utc)

    @staticmethod
    def _minutes(ranges: Iterable[InstantRange]) -> int:
        return sum(int((b - a).total_seconds()) // 60 for a, b in ranges)

    def _working_instants(self, day: date, calendar: EffectiveCalendar) -> List[InstantRange]:
        tz = calendar.tz
        return [
            (self._to_instant(day, a, tz), self._to_instant(day, b, tz))
            for a, b in calendar.working_segments(day)
        ]

    # ---------- operations ----------

    def elapsed_working_minutes(
        self,
        start: datetime,
        end: datetime,
        calendar: EffectiveCalendar,
        pauses: Sequence[PauseInterval] = (),
    ) -> int:
        """
        Working minutes between two instants, excluding pauses.

        Non-working days and full holidays contribute nothing. On other
        days the overlap with the working window is taken, minus breaks,
        partial holidays and the union of pause intervals. Overlapping
        exclusions are never subtracted twice.
        """
        start, end = self._to_utc(start), self._to_utc(end)
        if end <= start:
            return 0

        if calendar.is_24x7:
            worked: List[InstantRange] = [(start, end)]
        else:
            worked = []
            day = self._local_date(start, calendar.tz)
            last = self._local_date(end, calendar.tz)
            while day <= last:
                for seg_start, seg_end in self._working_instants(day, calendar):
                    lo, hi = max(seg_start, start), min(seg_end, end)
                    if hi > lo:
                        worked.append((lo, hi))
                day += timedelta(days=1)
            worked = merge_ranges(worked)

        paused = [(self._to_utc(p.start), self._to_utc(p.end)) for p in pauses]
        if worked and paused:
            worked = subtract_ranges(worked, paused)
        return max(0, self._minutes(worked))

    def advance_by_working_minutes(
        self,
        start: datetime,
        minutes: int,
        calendar: EffectiveCalendar,
    ) -> datetime:
        """
        Instant reached after ``minutes`` of working time from ``start``.

        ``start`` is first snapped forward to the next working moment.
        Breaks and partial holidays occupy wall-clock time without
        consuming the budget. Returns a UTC-aware datetime.

        Raises:
            ConfigurationError: If no working time is found within
                ``max_walk_days`` days
        """
        remaining = max(0, int(minutes))
        start = self._to_utc(start)
        if calendar.is_24x7:
            return start + timedelta(minutes=remaining)

        day = self._local_date(start, calendar.tz)
        for _ in range(self.max_walk_days):
            for seg_start, seg_end in self._working_instants(day, calendar):
                if seg_end <= start:
                    continue
                position = max(seg_start, start)
                available = self._minutes([(position, seg_end)])
                if remaining < available or (remaining == available and remaining > 0):
                    return position + timedelta(minutes=remaining)
                remaining -= available
            day += timedelta(days=1)

        raise ConfigurationError(
            f"Calendar '{calendar.name}' has no working time within {self.max_walk_days} days",
            {"schedule_id": calendar.schedule_id, "start": start.isoformat()},
        )

    def next_working_moment(self, start: datetime, calendar: EffectiveCalendar) -> datetime:
        """Snap an instant forward to the first working minute at or after it."""
        return self.advance_by_working_minutes(start, 0, calendar)

    @staticmethod
    def classify(elapsed_minutes: int, min_tat: int, avg_tat: int, max_tat: int) -> SlaClassification:
        """
        Classify elapsed working minutes against the three TATs.

        ``percent_used`` is ``round(elapsed / max_tat * 100)`` rounding
        half up. A breached ticket reports overage and no remaining time.
        """
        elapsed = max(0, int(elapsed_minutes))
        if elapsed >= max_tat:
            status, zone = SlaStatus.BREACHED, SlaZone.RED
        elif elapsed >= avg_tat:
            status, zone = SlaStatus.CRITICAL, SlaZone.ORANGE
        elif elapsed >= min_tat:
            status, zone = SlaStatus.WARNING, SlaZone.YELLOW
        else:
            status, zone = SlaStatus.ON_TRACK, SlaZone.GREEN

        percent = (elapsed * 200 + max_tat) // (2 * max_tat) if max_tat > 0 else 0
        return SlaClassification(
            status=status,
            zone=zone,
            percent_used=percent,
            remaining_minutes=max(0, max_tat - elapsed),
            overage_minutes=max(0, elapsed - max_tat),
        )
