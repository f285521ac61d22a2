"""
Trigger Evaluator.

Given a business event, returns the active campaigns of the event's
organization whose trigger is satisfied, with a reason payload that ends up
in the scheduled interaction's metadata.

Only trigger types the event can satisfy are looked up (EVENT_TRIGGER_TYPES),
and each trigger variant has exactly one matcher in _MATCHERS.
"""
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from flask import current_app

from ..models.campaign_triggers import (
    BirthdayTrigger,
    CashbackExpiringTrigger,
    FirstPurchaseTrigger,
    NewCashbackThresholdTrigger,
    NewPurchaseTrigger,
    PurchaseCountTrigger,
    PurchaseValueThresholdTrigger,
    RecurrenceFrequency,
    RecurringScheduleTrigger,
    SegmentEntryTrigger,
    TimeInSegmentTrigger,
    TotalCashbackThresholdTrigger,
)
from ..models.cashback import LedgerTransactionType
from ..models.organization import Client, Organization
from ..utils.exceptions import ClientNotFoundError
from ..utils.time_utils import add_months, local_date, money, month_day_matches, shift
from .campaign_service import CampaignRule, CampaignService
from .events import (
    BalancePayload,
    BusinessEvent,
    EVENT_TRIGGER_TYPES,
    SalePayload,
    SegmentPayload,
    TickPayload,
)
from .ledger_service import LedgerService

Reason = Optional[Dict[str, Any]]


@dataclass(frozen=True)
class TriggerMatch:
    campaign: CampaignRule
    client_id: int
    reason: Dict[str, Any]


# ==================== Recurring calendar ====================

def _sunday_week_start(day: date) -> date:
    # isoweekday: Monday=1 .. Sunday=7, so Sunday maps to offset 0
    return day - timedelta(days=day.isoweekday() % 7)


def recurring_schedule_due(trigger: RecurringScheduleTrigger, today: date, anchor: date) -> bool:
    """
    Whether a recurring schedule fires on the given local day.

    DAILY fires every `interval` days from the anchor; WEEKLY every
    `interval` weeks (weeks start on Sunday) on the listed weekdays; MONTHLY
    every `interval` months on the listed days, where a day past the end of
    a short month fires on its last day.
    """
    if today < anchor:
        return False

    if trigger.frequency is RecurrenceFrequency.DAILY:
        return (today - anchor).days % trigger.interval == 0

    if trigger.frequency is RecurrenceFrequency.WEEKLY:
        weeks = (_sunday_week_start(today) - _sunday_week_start(anchor)).days // 7
        if weeks % trigger.interval != 0:
            return False
        return today.isoweekday() % 7 in trigger.weekdays

    months = (today.year - anchor.year) * 12 + today.month - anchor.month
    if months % trigger.interval != 0:
        return False
    if today.day in trigger.month_days:
        return True
    is_last_day = add_months(today.replace(day=1), 1) - timedelta(days=1) == today
    return is_last_day and any(day > today.day for day in trigger.month_days)


# ==================== Matchers ====================
# Each returns a reason dict when the trigger fires, None otherwise.

def _match_first_purchase(trigger: FirstPurchaseTrigger, event: BusinessEvent, client: Client, evaluator) -> Reason:
    payload = event.payload
    if isinstance(payload, SalePayload) and payload.purchase_count == 1:
        return {'trigger': 'first_purchase', 'sale_id': payload.sale_id}
    return None


def _match_new_purchase(trigger: NewPurchaseTrigger, event, client, evaluator) -> Reason:
    payload = event.payload
    if not isinstance(payload, SalePayload):
        return None
    if trigger.min_sale_value is not None and money(payload.sale_value) < trigger.min_sale_value:
        return None
    return {'trigger': 'new_purchase', 'sale_id': payload.sale_id, 'sale_value': str(money(payload.sale_value))}


def _match_purchase_count(trigger: PurchaseCountTrigger, event, client, evaluator) -> Reason:
    payload = event.payload
    if isinstance(payload, SalePayload) and payload.purchase_count == trigger.target_count:
        return {'trigger': 'purchase_count', 'sale_id': payload.sale_id, 'purchase_count': payload.purchase_count}
    return None


def _match_purchase_value_threshold(trigger: PurchaseValueThresholdTrigger, event, client, evaluator) -> Reason:
    payload = event.payload
    if not isinstance(payload, SalePayload):
        return None
    # Fires once, on the sale that crosses the threshold
    if money(payload.previous_total) < trigger.threshold <= money(payload.new_total):
        return {
            'trigger': 'purchase_value_threshold',
            'sale_id': payload.sale_id,
            'threshold': str(trigger.threshold),
            'lifetime_value': str(money(payload.new_total)),
        }
    return None


def _match_new_cashback_threshold(trigger: NewCashbackThresholdTrigger, event, client, evaluator) -> Reason:
    payload = event.payload
    if not isinstance(payload, BalancePayload):
        return None
    if payload.transaction_type != LedgerTransactionType.ACCUMULATE.value:
        return None
    if money(payload.amount) >= trigger.min_amount:
        return {'trigger': 'new_cashback_threshold', 'sale_id': payload.sale_id, 'amount': str(money(payload.amount))}
    return None


def _match_total_cashback_threshold(trigger: TotalCashbackThresholdTrigger, event, client, evaluator) -> Reason:
    payload = event.payload
    if not isinstance(payload, BalancePayload):
        return None
    # Only credits can lift the balance over the threshold
    if payload.transaction_type != LedgerTransactionType.ACCUMULATE.value:
        return None
    if money(payload.new_available) >= trigger.min_available:
        return {
            'trigger': 'total_cashback_threshold',
            'sale_id': payload.sale_id,
            'available': str(money(payload.new_available)),
        }
    return None


def _match_time_in_segment(trigger: TimeInSegmentTrigger, event, client, evaluator) -> Reason:
    payload = event.payload
    if not isinstance(payload, SegmentPayload):
        return None
    if trigger.segments and payload.segment not in trigger.segments:
        return None
    if shift(payload.entered_at, trigger.duration_value, trigger.duration_unit) <= event.occurred_at:
        return {
            'trigger': 'time_in_segment',
            'segment': payload.segment,
            'entered_at': payload.entered_at.isoformat(),
        }
    return None


def _match_segment_entry(trigger: SegmentEntryTrigger, event, client, evaluator) -> Reason:
    payload = event.payload
    if not isinstance(payload, SegmentPayload):
        return None
    if trigger.segments and payload.segment not in trigger.segments:
        return None
    return {'trigger': 'segment_entry', 'segment': payload.segment, 'previous_segment': payload.previous_segment}


def _match_birthday(trigger: BirthdayTrigger, event, client, evaluator) -> Reason:
    payload = event.payload
    if not isinstance(payload, TickPayload) or client.birthday is None:
        return None
    if month_day_matches(client.birthday, payload.local_date):
        return {'trigger': 'birthday', 'date': payload.local_date.isoformat()}
    return None


def _match_recurring_schedule(trigger: RecurringScheduleTrigger, event, client, evaluator) -> Reason:
    payload = event.payload
    if not isinstance(payload, TickPayload):
        return None
    anchor = trigger.start_date or evaluator.campaign_anchor_date
    if anchor is None:
        anchor = payload.local_date
    if recurring_schedule_due(trigger, payload.local_date, anchor):
        return {'trigger': 'recurring_schedule', 'date': payload.local_date.isoformat()}
    return None


def _match_cashback_expiring(trigger: CashbackExpiringTrigger, event, client, evaluator) -> Reason:
    if not isinstance(event.payload, TickPayload):
        return None
    lots = evaluator.expiring_lots(client.id, trigger.days_before, event.occurred_at)
    if not lots:
        return None
    total = sum((money(lot.remaining) for lot in lots), Decimal('0.00'))
    return {
        'trigger': 'cashback_expiring',
        'amount': str(total),
        'expires_at': lots[0].expires_at.isoformat(),
    }


_MATCHERS: Dict[type, Callable[..., Reason]] = {
    FirstPurchaseTrigger: _match_first_purchase,
    NewPurchaseTrigger: _match_new_purchase,
    PurchaseCountTrigger: _match_purchase_count,
    PurchaseValueThresholdTrigger: _match_purchase_value_threshold,
    NewCashbackThresholdTrigger: _match_new_cashback_threshold,
    TotalCashbackThresholdTrigger: _match_total_cashback_threshold,
    TimeInSegmentTrigger: _match_time_in_segment,
    SegmentEntryTrigger: _match_segment_entry,
    BirthdayTrigger: _match_birthday,
    RecurringScheduleTrigger: _match_recurring_schedule,
    CashbackExpiringTrigger: _match_cashback_expiring,
}


class TriggerEvaluator:
    """
    Matches business events against an organization's active campaigns.

    Usage:
        evaluator = TriggerEvaluator(organization_id)
        for match in evaluator.evaluate(event):
            ...
    """

    def __init__(self, organization_id: int, campaign_service: CampaignService = None, ledger=None):
        self.organization_id = organization_id
        self.campaigns = campaign_service or CampaignService(organization_id)
        self._ledger = ledger
        self._timezone = None
        self.campaign_anchor_date: Optional[date] = None

    def evaluate(self, event: BusinessEvent, client: Client = None) -> List[TriggerMatch]:
        """
        Campaigns fired by the event for its client.

        Raises:
            ClientNotFoundError: client not in this organization
        """
        if event.organization_id != self.organization_id:
            return []

        trigger_types = EVENT_TRIGGER_TYPES.get(event.event_type, ())
        if not trigger_types:
            return []

        if client is None:
            client = Client.query.filter_by(id=event.client_id, organization_id=self.organization_id).first()
            if client is None:
                raise ClientNotFoundError(event.client_id)

        matches: List[TriggerMatch] = []
        for trigger_type in trigger_types:
            for rule in self.campaigns.get_active_rules(trigger_type):
                if not rule.accepts_segment(client.segment):
                    continue
                reason = self.match_rule(rule, event, client)
                if reason is not None:
                    matches.append(TriggerMatch(campaign=rule, client_id=client.id, reason=reason))

        if matches:
            current_app.logger.debug(
                f"[Triggers] {event.event_type.value} for client {client.id} matched "
                f"campaigns {[m.campaign.campaign_id for m in matches]}"
            )
        return matches

    def match_rule(self, rule: CampaignRule, event: BusinessEvent, client: Client) -> Reason:
        matcher = _MATCHERS.get(type(rule.trigger))
        if matcher is None:
            raise TypeError(f'No matcher for trigger config {type(rule.trigger).__name__}')

        self.campaign_anchor_date = (
            local_date(rule.created_at, self.timezone) if rule.created_at else None
        )
        return matcher(rule.trigger, event, client, self)

    # ==================== Helper Methods ====================

    @property
    def timezone(self) -> str:
        if self._timezone is None:
            org = Organization.query.get(self.organization_id)
            self._timezone = org.timezone if org else current_app.config['INTERACTIONS_TIMEZONE']
        return self._timezone

    def expiring_lots(self, client_id: int, within_days: int, now):
        if self._ledger is None:
            self._ledger = LedgerService(self.organization_id)
        return self._ledger.get_expiring_lots(client_id, within_days, now=now)
