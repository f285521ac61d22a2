"""
Campaign Automation Service.

Glue between business events and campaign sends:
event -> TriggerEvaluator -> InteractionScheduler (frequency guard inside)
-> optional cashback reward -> immediate delivery for zero-offset campaigns.

Failures are isolated per campaign: a broken campaign is logged and skipped,
never propagated to the sale or cron job that produced the event.

Daily tick (run once a day per organization) builds the calendar events:
birthdays, recurring schedules, expiring cashback and time-in-segment.
"""
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Set

from flask import current_app

from ..extensions import db
from ..models.campaign import Campaign
from ..models.campaign_triggers import TriggerType
from ..models.cashback import AmountType, CashbackTransaction, LedgerTransactionStatus, LedgerTransactionType
from ..models.organization import Client, Organization
from ..utils.exceptions import AuthorizationError, ClientNotFoundError, LoyaltyError, ValidationError
from ..utils.time_utils import DAYS, local_date, money, shift, to_utc_naive, utcnow
from .campaign_service import CampaignService
from .events import (
    BalancePayload,
    BusinessEvent,
    EventType,
    SalePayload,
    SegmentPayload,
    TickPayload,
)
from .interaction_dispatcher import InteractionDispatcher
from .interaction_scheduler import InteractionScheduler
from .ledger_service import LedgerService
from .trigger_evaluator import TriggerEvaluator, recurring_schedule_due


class CampaignAutomationService:
    """
    Usage:
        automation = CampaignAutomationService(organization_id)
        result = automation.process_event(event)
    """

    def __init__(
        self,
        organization_id: int,
        evaluator: TriggerEvaluator = None,
        scheduler: InteractionScheduler = None,
        ledger: LedgerService = None,
        dispatcher: InteractionDispatcher = None
    ):
        self.organization_id = organization_id
        self.campaigns = CampaignService(organization_id)
        self.ledger = ledger or LedgerService(organization_id)
        self.evaluator = evaluator or TriggerEvaluator(organization_id, self.campaigns, self.ledger)
        self.scheduler = scheduler or InteractionScheduler(organization_id)
        self._dispatcher = dispatcher

    @property
    def dispatcher(self) -> InteractionDispatcher:
        if self._dispatcher is None:
            self._dispatcher = InteractionDispatcher()
        return self._dispatcher

    # ==================== Event processing ====================

    def process_event(self, event: BusinessEvent, now: datetime = None, deliver_immediately: bool = True) -> Dict[str, Any]:
        """
        Evaluate, schedule and reward for one event.

        Returns:
            Summary dict: matched, scheduled, capped, rewards, interactions, errors
        """
        now = now or utcnow()
        results = {
            'event_type': event.event_type.value,
            'client_id': event.client_id,
            'matched': 0,
            'scheduled': 0,
            'capped': 0,
            'rewards': 0,
            'interactions': [],
            'errors': [],
        }

        try:
            matches = self.evaluator.evaluate(event)
        except LoyaltyError as e:
            current_app.logger.warning(f"[Automation] Cannot evaluate {event.event_type.value}: {e.message}")
            results['errors'].append({'error': e.message})
            return results

        results['matched'] = len(matches)
        immediate: List[int] = []

        for match in matches:
            campaign_id = match.campaign.campaign_id
            try:
                outcome = self.scheduler.schedule(
                    event.client_id,
                    match.campaign,
                    reason_metadata=match.reason,
                    origin_sale_id=event.sale_id,
                    now=now,
                )
                if not outcome.scheduled:
                    results['capped'] += 1
                    continue

                results['scheduled'] += 1
                results['interactions'].append(outcome.interaction.id)
                if outcome.immediate:
                    immediate.append(outcome.interaction.id)

                if self.grant_reward(campaign_id, event, now=now) is not None:
                    results['rewards'] += 1
            except Exception as e:
                db.session.rollback()
                current_app.logger.exception(
                    f"[Automation] Campaign {campaign_id} failed for client {event.client_id}"
                )
                results['errors'].append({'campaign_id': campaign_id, 'error': str(e)})

        if deliver_immediately:
            for interaction_id in immediate:
                self.dispatcher.deliver_now(interaction_id, now=now)

        return results

    def grant_reward(self, campaign_id: int, event: BusinessEvent, now: datetime = None) -> Optional[CashbackTransaction]:
        """
        Credit the campaign's cashback reward, if it has one.

        No active program, or a percentage reward without a sale value, is a
        no-op.
        """
        now = now or utcnow()
        campaign = Campaign.query.get(campaign_id)
        if campaign is None or not campaign.reward_active or campaign.reward_value is None:
            return None

        program = self.ledger.get_active_program()
        if program is None:
            current_app.logger.info(
                f"[Automation] Campaign {campaign_id} reward skipped: no active cashback program"
            )
            return None

        if campaign.reward_type == AmountType.PERCENTAGE.value:
            if event.sale_value is None:
                return None
            amount = money(Decimal(str(event.sale_value)) * money(campaign.reward_value) / Decimal('100'))
        else:
            amount = money(campaign.reward_value)
        if amount <= 0:
            return None

        if campaign.reward_expiry_value:
            expiry_days = (shift(now, campaign.reward_expiry_value, campaign.reward_expiry_unit or DAYS) - now).days
        else:
            expiry_days = program.expiry_days

        return self.ledger.accumulate(
            event.client_id,
            program.id,
            event.sale_id,
            amount,
            expiry_days,
            campaign_id=campaign.id,
            sale_value=event.sale_value,
            description=f'Campaign reward: {campaign.title}',
            now=now,
        )

    # ==================== Segment changes ====================

    def process_segment_change(self, client_id: int, new_segment: str, now: datetime = None) -> Dict[str, Any]:
        """Record a client's new segment and fire segment-entry campaigns."""
        now = now or utcnow()
        client = Client.query.filter_by(id=client_id, organization_id=self.organization_id).first()
        if client is None:
            raise ClientNotFoundError(client_id)

        previous = client.segment
        if previous == new_segment:
            return {'changed': False, 'client_id': client_id, 'segment': new_segment}

        client.segment = new_segment
        client.segment_entered_at = now
        db.session.commit()

        event = BusinessEvent(
            event_type=EventType.SEGMENT_ENTERED,
            organization_id=self.organization_id,
            client_id=client_id,
            payload=SegmentPayload(segment=new_segment, entered_at=now, previous_segment=previous),
            occurred_at=now,
        )
        results = self.process_event(event, now=now)
        results['changed'] = True
        return results

    # ==================== Daily tick ====================

    def run_daily_tick(self, now: datetime = None) -> Dict[str, Any]:
        """
        Calendar-driven campaigns for one organization.

        Each candidate client gets one DAILY_TICK event (and one SEGMENT_STAY
        event when time-in-segment campaigns exist).
        """
        now = now or utcnow()
        org = Organization.query.get(self.organization_id)
        tz_name = org.timezone if org else current_app.config['INTERACTIONS_TIMEZONE']
        today = local_date(now, tz_name)

        results = {
            'organization_id': self.organization_id,
            'local_date': today.isoformat(),
            'clients': 0,
            'scheduled': 0,
            'capped': 0,
            'errors': [],
        }

        tick_clients = self._tick_candidates(today, now, tz_name)
        for client_id in sorted(tick_clients):
            event = BusinessEvent(
                event_type=EventType.DAILY_TICK,
                organization_id=self.organization_id,
                client_id=client_id,
                payload=TickPayload(local_date=today),
                occurred_at=now,
            )
            self._merge(results, self.process_event(event, now=now))

        for client in self._segment_stay_candidates():
            event = BusinessEvent(
                event_type=EventType.SEGMENT_STAY,
                organization_id=self.organization_id,
                client_id=client.id,
                payload=SegmentPayload(segment=client.segment, entered_at=client.segment_entered_at),
                occurred_at=now,
            )
            self._merge(results, self.process_event(event, now=now))
            tick_clients.add(client.id)

        results['clients'] = len(tick_clients)
        current_app.logger.info(
            f"[Automation] Daily tick for org {self.organization_id} ({today.isoformat()}): "
            f"{results['clients']} clients, {results['scheduled']} scheduled, {results['capped']} capped"
        )
        return results

    # ==================== Helper Methods ====================

    def _tick_candidates(self, today, now: datetime, tz_name: str) -> Set[int]:
        candidates: Set[int] = set()
        base = Client.query.with_entities(Client.id).filter(Client.organization_id == self.organization_id)

        birthday_rules = self.campaigns.get_active_rules(TriggerType.BIRTHDAY)
        if birthday_rules:
            rows = base.filter(Client.birthday.isnot(None)).with_entities(Client.id, Client.birthday).all()
            candidates.update(
                client_id for client_id, birthday in rows
                if birthday.month == today.month
            )

        recurring_rules = self.campaigns.get_active_rules(TriggerType.RECURRING_SCHEDULE)
        due_rules = [
            rule for rule in recurring_rules
            if recurring_schedule_due(
                rule.trigger, today,
                rule.trigger.start_date or (local_date(rule.created_at, tz_name) if rule.created_at else today)
            )
        ]
        if due_rules:
            query = base
            if all(rule.segments for rule in due_rules):
                segments = {segment for rule in due_rules for segment in rule.segments}
                query = query.filter(Client.segment.in_(segments))
            candidates.update(row[0] for row in query.all())

        expiring_rules = self.campaigns.get_active_rules(TriggerType.CASHBACK_EXPIRING)
        if expiring_rules:
            horizon = max(rule.trigger.days_before for rule in expiring_rules)
            rows = db.session.query(CashbackTransaction.client_id).filter(
                CashbackTransaction.organization_id == self.organization_id,
                CashbackTransaction.transaction_type == LedgerTransactionType.ACCUMULATE.value,
                CashbackTransaction.status == LedgerTransactionStatus.ACTIVE.value,
                CashbackTransaction.remaining > 0,
                CashbackTransaction.expires_at.isnot(None),
                CashbackTransaction.expires_at >= now,
                CashbackTransaction.expires_at <= now + timedelta(days=horizon),
            ).distinct().all()
            candidates.update(row[0] for row in rows)

        return candidates

    def _segment_stay_candidates(self) -> List[Client]:
        rules = self.campaigns.get_active_rules(TriggerType.TIME_IN_SEGMENT)
        if not rules:
            return []
        query = Client.query.filter(
            Client.organization_id == self.organization_id,
            Client.segment.isnot(None),
            Client.segment_entered_at.isnot(None),
        )
        if all(rule.trigger.segments for rule in rules):
            segments = {segment for rule in rules for segment in rule.trigger.segments}
            query = query.filter(Client.segment.in_(segments))
        return query.order_by(Client.id.asc()).all()

    @staticmethod
    def _merge(results: Dict[str, Any], event_result: Dict[str, Any]) -> None:
        results['scheduled'] += event_result['scheduled']
        results['capped'] += event_result['capped']
        results['errors'].extend(event_result['errors'])


def process_business_event(event: BusinessEvent) -> Dict[str, Any]:
    """Router entry point: build the service inside the worker's app context."""
    return CampaignAutomationService(event.organization_id).process_event(event)


# ==================== Event construction ====================

def build_sale_event(organization_id: int, client: Client, sale, occurred_at: datetime = None) -> BusinessEvent:
    """SALE_COMPLETED for a sale already reflected in the client's aggregates."""
    new_total = money(client.purchase_total or 0)
    return BusinessEvent(
        event_type=EventType.SALE_COMPLETED,
        organization_id=organization_id,
        client_id=client.id,
        payload=SalePayload(
            sale_id=sale.id,
            sale_value=money(sale.value),
            purchase_count=client.purchase_count,
            previous_total=new_total - money(sale.value),
            new_total=new_total,
        ),
        occurred_at=occurred_at or utcnow(),
    )


def build_balance_event(organization_id: int, txn: CashbackTransaction, occurred_at: datetime = None) -> BusinessEvent:
    """BALANCE_CHANGED from a ledger transaction."""
    return BusinessEvent(
        event_type=EventType.BALANCE_CHANGED,
        organization_id=organization_id,
        client_id=txn.client_id,
        payload=BalancePayload(
            transaction_type=txn.transaction_type,
            amount=money(txn.amount),
            new_available=money(txn.balance_after),
            sale_id=txn.sale_id,
            sale_value=money(txn.sale_value) if txn.sale_value is not None else None,
        ),
        occurred_at=occurred_at or utcnow(),
    )


def build_event_from_request(data: Dict[str, Any], organization_id: int) -> BusinessEvent:
    """
    Inbound event from the API, for the calling organization.

    Expected keys: event_type, client_id and, per type,
    sale_id/amount/purchase_count_to_date, amount/new_balance/transaction_type,
    segment/entered_at, or local_date. An organization_id in the body is
    tolerated only when it names the calling organization.

    Raises:
        ValidationError: missing or malformed fields
        AuthorizationError: body organization_id is another organization
    """
    try:
        event_type = EventType(data.get('event_type'))
    except ValueError:
        raise ValidationError(f"Unknown event type: {data.get('event_type')}", 'event_type')

    if data.get('organization_id') is not None:
        if _required_int(data, 'organization_id') != organization_id:
            raise AuthorizationError('Events can only be sent for the calling organization')
    client_id = _required_int(data, 'client_id')

    client = Client.query.filter_by(id=client_id, organization_id=organization_id).first()
    if client is None:
        raise ValidationError(f'Client {client_id} not found', 'client_id')

    now = utcnow()
    if event_type is EventType.SALE_COMPLETED:
        amount = _decimal(data, 'amount')
        purchase_count = data.get('purchase_count_to_date')
        new_total = money(client.purchase_total or 0)
        payload = SalePayload(
            sale_id=data.get('sale_id'),
            sale_value=amount,
            purchase_count=int(purchase_count) if purchase_count is not None else client.purchase_count,
            previous_total=new_total - amount,
            new_total=new_total,
        )
    elif event_type is EventType.BALANCE_CHANGED:
        payload = BalancePayload(
            transaction_type=data.get('transaction_type', LedgerTransactionType.ACCUMULATE.value),
            amount=_decimal(data, 'amount'),
            new_available=_decimal(data, 'new_balance'),
            sale_id=data.get('sale_id'),
        )
    elif event_type in (EventType.SEGMENT_ENTERED, EventType.SEGMENT_STAY):
        segment = data.get('segment') or client.segment
        if not segment:
            raise ValidationError('segment is required', 'segment')
        entered_at = data.get('entered_at')
        if entered_at:
            try:
                entered_at = datetime.fromisoformat(entered_at)
                if entered_at.tzinfo is not None:
                    entered_at = to_utc_naive(entered_at)
            except (TypeError, ValueError):
                raise ValidationError('entered_at must be an ISO timestamp', 'entered_at')
        else:
            entered_at = client.segment_entered_at or now
        payload = SegmentPayload(segment=segment, entered_at=entered_at, previous_segment=data.get('previous_segment'))
    else:
        org = Organization.query.get(organization_id)
        tz_name = org.timezone if org else current_app.config['INTERACTIONS_TIMEZONE']
        payload = TickPayload(local_date=local_date(now, tz_name))

    return BusinessEvent(
        event_type=event_type,
        organization_id=organization_id,
        client_id=client_id,
        payload=payload,
        occurred_at=now,
    )


def _required_int(data: Dict[str, Any], key: str) -> int:
    try:
        return int(data[key])
    except (KeyError, TypeError, ValueError):
        raise ValidationError(f'{key} is required', key)


def _decimal(data: Dict[str, Any], key: str) -> Decimal:
    try:
        return money(data[key])
    except (KeyError, InvalidOperation, TypeError, ValueError):
        raise ValidationError(f'{key} must be a number', key)
