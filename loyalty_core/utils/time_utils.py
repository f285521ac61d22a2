"""
Date, time-block and money helpers shared by the ledger and the campaign engine.

All persisted timestamps are naive UTC. Organization-local views (birthday,
recurring calendars, send blocks) go through ZoneInfo.
"""
import calendar
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from zoneinfo import ZoneInfo

CENT = Decimal('0.01')

# Dispatcher cadence: one block every 3 hours, local time
TIME_BLOCKS = ['00:00', '03:00', '06:00', '09:00', '12:00', '15:00', '18:00', '21:00']

DAYS = 'days'
WEEKS = 'weeks'
MONTHS = 'months'
YEARS = 'years'
TIME_UNITS = (DAYS, WEEKS, MONTHS, YEARS)


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def money(value) -> Decimal:
    """Coerce to a two-place Decimal."""
    if isinstance(value, Decimal):
        return value.quantize(CENT, rounding=ROUND_HALF_UP)
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def add_months(value, months: int):
    """Calendar month arithmetic, clamping to the last day of the month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def shift(value, amount: int, unit: str):
    """Move a date/datetime by amount units (negative moves back)."""
    if unit == DAYS:
        return value + timedelta(days=amount)
    if unit == WEEKS:
        return value + timedelta(weeks=amount)
    if unit == MONTHS:
        return add_months(value, amount)
    if unit == YEARS:
        return add_months(value, amount * 12)
    raise ValueError(f'Unknown time unit: {unit}')


def to_local(value: datetime, tz_name: str) -> datetime:
    """Naive UTC -> aware local time in tz_name."""
    return value.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz_name))


def to_utc_naive(value: datetime) -> datetime:
    """Aware datetime -> naive UTC."""
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def local_date(value: datetime, tz_name: str) -> date:
    return to_local(value, tz_name).date()


def parse_block(block: str) -> time:
    hour, minute = (int(part) for part in block.split(':'))
    return time(hour=hour, minute=minute)


def floor_time_block(local_value: datetime) -> str:
    """Most recent block at or before the given local time."""
    minutes = local_value.hour * 60 + local_value.minute
    current = TIME_BLOCKS[0]
    for block in TIME_BLOCKS:
        block_time = parse_block(block)
        if block_time.hour * 60 + block_time.minute <= minutes:
            current = block
        else:
            break
    return current


def next_block_occurrence(local_value: datetime, block: str) -> datetime:
    """First occurrence of block's wall-clock time at or after local_value."""
    block_time = parse_block(block)
    candidate = datetime.combine(local_value.date(), block_time, tzinfo=local_value.tzinfo)
    if candidate < local_value:
        candidate = datetime.combine(
            local_value.date() + timedelta(days=1), block_time, tzinfo=local_value.tzinfo
        )
    return candidate


def days_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 86400


def month_day_matches(birthday: date, today: date) -> bool:
    """Birthday match on month/day; 29 Feb falls back to 28 Feb in common years."""
    if birthday.month == today.month and birthday.day == today.day:
        return True
    if birthday.month == 2 and birthday.day == 29 and not calendar.isleap(today.year):
        return today.month == 2 and today.day == 28
    return False
