import datetime
from dataclasses import dataclass
from typing import Optional, Tuple

from perfhistory.core.config import settings
from perfhistory.core.errors import InvalidRequest


# Format strings bound into TO_DATE(:x, 'YYYY-MM-DD HH24:MI:SS')
ORACLE_DATETIME_FORMAT = '%Y-%m-%d %H:%M:%S'

TIER_A = 'ash'
TIER_B = 'awr'
TIER_C = 'v$sql'


def _parse_date(value: str) -> datetime.date:
    try:
        return datetime.datetime.strptime(value, '%Y-%m-%d').date()
    except (TypeError, ValueError):
        raise InvalidRequest(f"Date must be YYYY-MM-DD, got {value!r}")


def _parse_time(value: str) -> datetime.time:
    for fmt in ('%H:%M:%S', '%H:%M'):
        try:
            return datetime.datetime.strptime(value, fmt).time()
        except (TypeError, ValueError):
            continue
    raise InvalidRequest(f"Time must be HH:MM or HH:MM:SS, got {value!r}")


@dataclass(frozen=True)
class TimeWindow:
    """
    A resolved read window. Without a time filter it is the half-open day
    [date 00:00, date+1 00:00); with one it is the closed range
    [date+start, date+end].
    """
    date: datetime.date
    begin: datetime.datetime
    end: datetime.datetime
    start_time: Optional[datetime.time] = None
    end_time: Optional[datetime.time] = None
    guard_minutes: int = 1

    @property
    def has_time_filter(self) -> bool:
        return self.start_time is not None

    @property
    def date_str(self) -> str:
        return self.date.isoformat()

    def bounds(self, tier: str) -> Tuple[str, str]:
        """Boundary strings for a tier query; only tier C with a time filter is widened."""
        begin, end = self.begin, self.end
        if tier == TIER_C and self.has_time_filter:
            guard = datetime.timedelta(minutes=self.guard_minutes)
            begin, end = begin - guard, end + guard
        return begin.strftime(ORACLE_DATETIME_FORMAT), end.strftime(ORACLE_DATETIME_FORMAT)

    def hour_range(self) -> Optional[Tuple[int, int]]:
        if not self.has_time_filter:
            return None
        return self.start_time.hour, self.end_time.hour

    def days_before(self, today: Optional[datetime.date] = None) -> int:
        today = today or datetime.date.today()
        return (today - self.date).days

    def describe(self) -> Optional[dict]:
        if not self.has_time_filter:
            return None
        begin, end = self.bounds(TIER_B)
        return {
            'start_time': self.start_time.strftime('%H:%M:%S'),
            'end_time': self.end_time.strftime('%H:%M:%S'),
            'start_datetime': begin,
            'end_datetime': end,
        }


def resolve_window(date: str, start_time: Optional[str] = None, end_time: Optional[str] = None,
                   guard_minutes: Optional[int] = None) -> TimeWindow:
    if not date:
        raise InvalidRequest("Date is required")
    day = _parse_date(date)
    guard = settings.WINDOW_GUARD_MINUTES if guard_minutes is None else guard_minutes

    if not start_time and not end_time:
        begin = datetime.datetime.combine(day, datetime.time.min)
        return TimeWindow(date=day, begin=begin, end=begin + datetime.timedelta(days=1), guard_minutes=guard)

    if not start_time or not end_time:
        raise InvalidRequest("start_time and end_time must be given together")

    start, end = _parse_time(start_time), _parse_time(end_time)
    if start > end:
        raise InvalidRequest(f"start_time {start_time} is after end_time {end_time}")
    return TimeWindow(
        date=day,
        begin=datetime.datetime.combine(day, start),
        end=datetime.datetime.combine(day, end),
        start_time=start,
        end_time=end,
        guard_minutes=guard,
    )
