"""
Typed trigger parameters for campaigns.

Each trigger type has exactly one parameter shape. The raw JSON stored on
Campaign.trigger_config is parsed into the matching frozen dataclass by
parse_trigger_config(), so evaluation code never guesses which keys exist.

Trigger types and their parameters:
- first_purchase: none
- new_purchase: min_sale_value (optional)
- purchase_count: target_count (exact match)
- purchase_value_threshold: threshold (lifetime value crossing)
- new_cashback_threshold: min_amount (just-accumulated amount)
- total_cashback_threshold: min_available (resulting balance)
- time_in_segment: segments, duration_value, duration_unit
- segment_entry: segments
- birthday: none
- recurring_schedule: frequency, interval, weekdays (0=Sunday) or month_days, start_date
- cashback_expiring: days_before
"""
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from ..utils.exceptions import ValidationError
from ..utils.time_utils import TIME_UNITS, DAYS


class TriggerType(str, Enum):
    FIRST_PURCHASE = 'first_purchase'
    NEW_PURCHASE = 'new_purchase'
    PURCHASE_COUNT = 'purchase_count'
    PURCHASE_VALUE_THRESHOLD = 'purchase_value_threshold'
    NEW_CASHBACK_THRESHOLD = 'new_cashback_threshold'
    TOTAL_CASHBACK_THRESHOLD = 'total_cashback_threshold'
    TIME_IN_SEGMENT = 'time_in_segment'
    SEGMENT_ENTRY = 'segment_entry'
    BIRTHDAY = 'birthday'
    RECURRING_SCHEDULE = 'recurring_schedule'
    CASHBACK_EXPIRING = 'cashback_expiring'


class RecurrenceFrequency(str, Enum):
    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'


# ==================== Trigger variants ====================

@dataclass(frozen=True)
class FirstPurchaseTrigger:
    trigger_type = TriggerType.FIRST_PURCHASE


@dataclass(frozen=True)
class NewPurchaseTrigger:
    min_sale_value: Optional[Decimal] = None
    trigger_type = TriggerType.NEW_PURCHASE


@dataclass(frozen=True)
class PurchaseCountTrigger:
    target_count: int
    trigger_type = TriggerType.PURCHASE_COUNT


@dataclass(frozen=True)
class PurchaseValueThresholdTrigger:
    threshold: Decimal
    trigger_type = TriggerType.PURCHASE_VALUE_THRESHOLD


@dataclass(frozen=True)
class NewCashbackThresholdTrigger:
    min_amount: Decimal
    trigger_type = TriggerType.NEW_CASHBACK_THRESHOLD


@dataclass(frozen=True)
class TotalCashbackThresholdTrigger:
    min_available: Decimal
    trigger_type = TriggerType.TOTAL_CASHBACK_THRESHOLD


@dataclass(frozen=True)
class TimeInSegmentTrigger:
    segments: Tuple[str, ...]
    duration_value: int
    duration_unit: str = DAYS
    trigger_type = TriggerType.TIME_IN_SEGMENT


@dataclass(frozen=True)
class SegmentEntryTrigger:
    segments: Tuple[str, ...] = ()  # empty: any segment
    trigger_type = TriggerType.SEGMENT_ENTRY


@dataclass(frozen=True)
class BirthdayTrigger:
    trigger_type = TriggerType.BIRTHDAY


@dataclass(frozen=True)
class RecurringScheduleTrigger:
    frequency: RecurrenceFrequency
    interval: int = 1
    weekdays: Tuple[int, ...] = ()    # 0=Sunday .. 6=Saturday
    month_days: Tuple[int, ...] = ()  # 1..31
    start_date: Optional[date] = None
    trigger_type = TriggerType.RECURRING_SCHEDULE


@dataclass(frozen=True)
class CashbackExpiringTrigger:
    days_before: int = 7
    trigger_type = TriggerType.CASHBACK_EXPIRING


TriggerConfig = Union[
    FirstPurchaseTrigger,
    NewPurchaseTrigger,
    PurchaseCountTrigger,
    PurchaseValueThresholdTrigger,
    NewCashbackThresholdTrigger,
    TotalCashbackThresholdTrigger,
    TimeInSegmentTrigger,
    SegmentEntryTrigger,
    BirthdayTrigger,
    RecurringScheduleTrigger,
    CashbackExpiringTrigger,
]


# ==================== Parsing ====================

def _decimal(raw: Dict[str, Any], key: str, required: bool = True) -> Optional[Decimal]:
    value = raw.get(key)
    if value is None or value == '':
        if required:
            raise ValidationError(f'{key} is required', key)
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f'{key} must be a number', key)
    if not result.is_finite():
        raise ValidationError(f'{key} must be a number', key)
    if result < 0:
        raise ValidationError(f'{key} must not be negative', key)
    return result


def _int(raw: Dict[str, Any], key: str, default: Optional[int] = None, minimum: int = 0) -> int:
    value = raw.get(key, default)
    if value is None:
        raise ValidationError(f'{key} is required', key)
    try:
        result = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{key} must be an integer', key)
    if result < minimum:
        raise ValidationError(f'{key} must be at least {minimum}', key)
    return result


def _int_list(raw: Dict[str, Any], key: str, low: int, high: int) -> Tuple[int, ...]:
    values = raw.get(key) or []
    if not isinstance(values, (list, tuple)):
        raise ValidationError(f'{key} must be a list', key)
    result = []
    for value in values:
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f'{key} must contain integers', key)
        if number < low or number > high:
            raise ValidationError(f'{key} values must be between {low} and {high}', key)
        result.append(number)
    return tuple(sorted(set(result)))


def _segments(raw: Dict[str, Any]) -> Tuple[str, ...]:
    values = raw.get('segments') or []
    if isinstance(values, str):
        values = [values]
    return tuple(str(v) for v in values)


def parse_trigger_config(trigger_type, raw: Optional[Dict[str, Any]]) -> TriggerConfig:
    """
    Build the typed trigger parameters for a campaign.

    Raises:
        ValidationError: unknown trigger type or malformed parameters
    """
    raw = raw or {}
    try:
        trigger_type = TriggerType(trigger_type)
    except ValueError:
        raise ValidationError(f'Unknown trigger type: {trigger_type}', 'trigger_type')

    if trigger_type is TriggerType.FIRST_PURCHASE:
        return FirstPurchaseTrigger()
    if trigger_type is TriggerType.NEW_PURCHASE:
        return NewPurchaseTrigger(min_sale_value=_decimal(raw, 'min_sale_value', required=False))
    if trigger_type is TriggerType.PURCHASE_COUNT:
        return PurchaseCountTrigger(target_count=_int(raw, 'target_count', minimum=1))
    if trigger_type is TriggerType.PURCHASE_VALUE_THRESHOLD:
        return PurchaseValueThresholdTrigger(threshold=_decimal(raw, 'threshold'))
    if trigger_type is TriggerType.NEW_CASHBACK_THRESHOLD:
        return NewCashbackThresholdTrigger(min_amount=_decimal(raw, 'min_amount'))
    if trigger_type is TriggerType.TOTAL_CASHBACK_THRESHOLD:
        return TotalCashbackThresholdTrigger(min_available=_decimal(raw, 'min_available'))
    if trigger_type is TriggerType.TIME_IN_SEGMENT:
        unit = raw.get('duration_unit', DAYS)
        if unit not in TIME_UNITS:
            raise ValidationError(f'Unknown duration unit: {unit}', 'duration_unit')
        return TimeInSegmentTrigger(
            segments=_segments(raw),
            duration_value=_int(raw, 'duration_value', minimum=1),
            duration_unit=unit,
        )
    if trigger_type is TriggerType.SEGMENT_ENTRY:
        return SegmentEntryTrigger(segments=_segments(raw))
    if trigger_type is TriggerType.BIRTHDAY:
        return BirthdayTrigger()
    if trigger_type is TriggerType.RECURRING_SCHEDULE:
        try:
            frequency = RecurrenceFrequency(raw.get('frequency'))
        except ValueError:
            raise ValidationError(f"Unknown recurrence frequency: {raw.get('frequency')}", 'frequency')
        weekdays = _int_list(raw, 'weekdays', 0, 6)
        month_days = _int_list(raw, 'month_days', 1, 31)
        if frequency is RecurrenceFrequency.WEEKLY and not weekdays:
            raise ValidationError('Weekly schedules need at least one weekday', 'weekdays')
        if frequency is RecurrenceFrequency.MONTHLY and not month_days:
            raise ValidationError('Monthly schedules need at least one day of month', 'month_days')
        start_date = raw.get('start_date')
        if isinstance(start_date, str):
            try:
                start_date = date.fromisoformat(start_date)
            except ValueError:
                raise ValidationError('start_date must be YYYY-MM-DD', 'start_date')
        return RecurringScheduleTrigger(
            frequency=frequency,
            interval=_int(raw, 'interval', default=1, minimum=1),
            weekdays=weekdays,
            month_days=month_days,
            start_date=start_date,
        )
    if trigger_type is TriggerType.CASHBACK_EXPIRING:
        return CashbackExpiringTrigger(days_before=_int(raw, 'days_before', default=7, minimum=0))

    raise ValidationError(f'Unhandled trigger type: {trigger_type}', 'trigger_type')


def trigger_config_to_dict(config: TriggerConfig) -> Dict[str, Any]:
    """JSON-safe form of a parsed trigger config (for storage and API output)."""
    result: Dict[str, Any] = {}
    for name in getattr(config, '__dataclass_fields__', {}):
        value = getattr(config, name)
        if isinstance(value, Decimal):
            value = float(value)
        elif isinstance(value, tuple):
            value = list(value)
        elif isinstance(value, Enum):
            value = value.value
        elif isinstance(value, date):
            value = value.isoformat()
        result[name] = value
    return result
