"""
Digest schedule arithmetic.

All stored timestamps are naive UTC. The time of day is a wall-clock time in
the account's timezone (UTC when unset), so a 09:00 digest stays at 09:00
across daylight saving changes.
"""
from datetime import date, datetime, time, timedelta
from typing import Iterable, List, Optional, Tuple

from dateutil import tz

from src.database.models import DigestSchedule

# Bitmask, Sunday is the most significant bit
DAYS = {
    'SUN': 0b1000000,  # 64
    'MON': 0b0100000,  # 32
    'TUE': 0b0010000,  # 16
    'WED': 0b0001000,  # 8
    'THU': 0b0000100,  # 4
    'FRI': 0b0000010,  # 2
    'SAT': 0b0000001,  # 1
}

# Look ahead at most two weeks for the next matching weekday
MAX_WEEKLY_SCAN_DAYS = 14


def mask_for(sunday_based_day: int) -> int:
    """Bitmask for a day numbered 0 = Sunday ... 6 = Saturday"""
    if sunday_based_day < 0 or sunday_based_day > 6:
        raise ValueError(f"Invalid day of week: {sunday_based_day}")
    return 1 << (6 - sunday_based_day)


def days_to_bitmask(days: Iterable[str]) -> int:
    mask = 0
    for day in days:
        mask |= DAYS[day.upper()]
    return mask


def bitmask_to_days(bitmask: int) -> List[str]:
    return [name for name, mask in DAYS.items() if bitmask & mask]


def _sunday_based(d: date) -> int:
    # Python weekdays start on Monday = 0
    return (d.weekday() + 1) % 7


def _zone(tz_name: Optional[str]):
    # Unknown names fall back to UTC
    return (tz.gettz(tz_name) if tz_name else None) or tz.UTC


def _to_local(moment: datetime, zone) -> datetime:
    return moment.replace(tzinfo=tz.UTC).astimezone(zone)


def _to_utc_naive(moment: datetime) -> datetime:
    return moment.astimezone(tz.UTC).replace(tzinfo=None)


def _at(day: date, time_of_day: time, zone) -> datetime:
    return datetime.combine(day, time_of_day).replace(tzinfo=zone)


def calculate_next_occurrence(schedule: DigestSchedule, from_time: datetime,
                              tz_name: Optional[str] = None) -> Optional[datetime]:
    """First slot strictly after `from_time` (naive UTC), or None without a pattern"""
    zone = _zone(tz_name)
    local_from = _to_local(from_time, zone)
    time_of_day = schedule.time_of_day or time(0, 0)

    if schedule.interval_days:
        interval_start = local_from.date()
        slot = _at(interval_start, time_of_day, zone)
        if slot > local_from:
            return _to_utc_naive(slot)
        next_start = interval_start + timedelta(days=schedule.interval_days)
        return _to_utc_naive(_at(next_start, time_of_day, zone))

    if schedule.days_of_week:
        current = _sunday_based(local_from.date())
        for days_to_add in range(MAX_WEEKLY_SCAN_DAYS):
            if not schedule.days_of_week & mask_for((current + days_to_add) % 7):
                continue
            candidate = _at(local_from.date() + timedelta(days=days_to_add), time_of_day, zone)
            if candidate <= local_from:
                # today's slot already passed
                continue
            return _to_utc_naive(candidate)

    return None


def is_due(schedule: DigestSchedule, now: datetime) -> bool:
    return schedule.next_occurrence_at is not None and schedule.next_occurrence_at <= now


def next_slots(schedule: DigestSchedule, now: datetime,
               tz_name: Optional[str] = None) -> Tuple[datetime, Optional[datetime]]:
    """(last, next) for a due schedule; next is the first slot after `now` on the original grid"""
    last = schedule.next_occurrence_at or now
    next_occurrence = calculate_next_occurrence(schedule, last, tz_name)
    while next_occurrence is not None and next_occurrence <= now:
        next_occurrence = calculate_next_occurrence(schedule, next_occurrence, tz_name)
    return last, next_occurrence


def advance(schedule: DigestSchedule, now: datetime, tz_name: Optional[str] = None) -> DigestSchedule:
    schedule.last_occurrence_at, schedule.next_occurrence_at = next_slots(schedule, now, tz_name)
    return schedule
