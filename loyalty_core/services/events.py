"""
Business events consumed by the campaign engine.

Each event type carries one payload shape. EVENT_TRIGGER_TYPES maps an event
to the only trigger types it can satisfy, so evaluation never looks at
campaigns of unrelated triggers.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from ..models.campaign_triggers import TriggerType
from ..utils.time_utils import utcnow


class EventType(str, Enum):
    SALE_COMPLETED = 'sale_completed'
    BALANCE_CHANGED = 'balance_changed'
    SEGMENT_ENTERED = 'segment_entered'
    SEGMENT_STAY = 'segment_stay'
    DAILY_TICK = 'daily_tick'


@dataclass(frozen=True)
class SalePayload:
    sale_id: Optional[int]
    sale_value: Decimal
    purchase_count: int          # lifetime count including this sale
    previous_total: Decimal      # lifetime value before this sale
    new_total: Decimal           # lifetime value including this sale


@dataclass(frozen=True)
class BalancePayload:
    transaction_type: str        # LedgerTransactionType value
    amount: Decimal              # increment of this change
    new_available: Decimal
    sale_id: Optional[int] = None
    sale_value: Optional[Decimal] = None


@dataclass(frozen=True)
class SegmentPayload:
    segment: str
    entered_at: datetime
    previous_segment: Optional[str] = None


@dataclass(frozen=True)
class TickPayload:
    local_date: date             # organization-local calendar day


EventPayload = Union[SalePayload, BalancePayload, SegmentPayload, TickPayload]


@dataclass(frozen=True)
class BusinessEvent:
    event_type: EventType
    organization_id: int
    client_id: int
    payload: EventPayload
    occurred_at: datetime = field(default_factory=utcnow)

    @property
    def sale_id(self) -> Optional[int]:
        return getattr(self.payload, 'sale_id', None)

    @property
    def sale_value(self) -> Optional[Decimal]:
        return getattr(self.payload, 'sale_value', None)


EVENT_TRIGGER_TYPES = {
    EventType.SALE_COMPLETED: (
        TriggerType.FIRST_PURCHASE,
        TriggerType.NEW_PURCHASE,
        TriggerType.PURCHASE_COUNT,
        TriggerType.PURCHASE_VALUE_THRESHOLD,
    ),
    EventType.BALANCE_CHANGED: (
        TriggerType.NEW_CASHBACK_THRESHOLD,
        TriggerType.TOTAL_CASHBACK_THRESHOLD,
    ),
    EventType.SEGMENT_ENTERED: (
        TriggerType.SEGMENT_ENTRY,
    ),
    EventType.SEGMENT_STAY: (
        TriggerType.TIME_IN_SEGMENT,
    ),
    EventType.DAILY_TICK: (
        TriggerType.BIRTHDAY,
        TriggerType.RECURRING_SCHEDULE,
        TriggerType.CASHBACK_EXPIRING,
    ),
}
