"""
Sale Service.

Registers a sale and its cashback movements as one unit, then hands the
campaign side effects to the per-client event router:

1. Under the client lock and row lock: optional redemption (limit and
   balance checked first), sale insert, client purchase aggregates,
   cashback accumulation through the active program. One commit.
2. After commit, still under the client lock so submission order matches
   commit order: SALE_COMPLETED / BALANCE_CHANGED evaluation, attribution
   and immediate delivery are queued for the client.

A failed redemption aborts the whole sale. Campaign failures never do.
"""
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from flask import current_app

from ..extensions import db
from ..models.campaign import Interaction
from ..models.cashback import CashbackTransaction
from ..models.organization import Client
from ..models.sale import Sale, SaleStatus
from ..utils.event_router import get_event_router
from ..utils.exceptions import (
    ClientNotFoundError,
    ConcurrentBalanceConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidStatusTransitionError,
    RedemptionLimitExceededError,
    SaleNotFoundError,
    ValidationError,
)
from ..utils.locks import client_lock
from ..utils.time_utils import money, utcnow
from .attribution_service import AttributionService
from .campaign_automation import CampaignAutomationService, build_balance_event, build_sale_event
from .ledger_service import LedgerService

ZERO = Decimal('0.00')


@dataclass
class SaleResult:
    sale: Sale
    redemption: Optional[CashbackTransaction] = None
    accumulation: Optional[CashbackTransaction] = None
    side_effects: Optional[Future] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sale': self.sale.to_dict(),
            'redemption': self.redemption.to_dict() if self.redemption else None,
            'accumulation': self.accumulation.to_dict() if self.accumulation else None,
        }


class SaleService:
    """
    Usage:
        result = SaleService(organization_id).record_sale(client_id, Decimal('120.00'))
    """

    def __init__(self, organization_id: int, ledger: LedgerService = None):
        self.organization_id = organization_id
        self.ledger = ledger or LedgerService(organization_id)

    # ==================== Intake ====================

    def record_sale(
        self,
        client_id: int,
        sale_value,
        redeem_amount=0,
        external_id: str = None,
        sold_at: datetime = None,
        now: datetime = None
    ) -> SaleResult:
        """
        Register a sale with optional cashback redemption.

        Raises:
            ClientNotFoundError: unknown client
            InvalidAmountError: sale value <= 0 or negative redemption
            RedemptionLimitExceededError: above the program's limit for this sale
            InsufficientBalanceError: redemption above the available balance
        """
        now = now or utcnow()
        sold_at = sold_at or now
        sale_value = self._positive(sale_value)
        redeem_amount = money(redeem_amount or 0)
        if redeem_amount < ZERO:
            raise InvalidAmountError(redeem_amount)

        with client_lock(client_id):
            attempt = 0
            while True:
                attempt += 1
                try:
                    client, result = self._register(
                        client_id, sale_value, redeem_amount, external_id, sold_at, now
                    )
                    db.session.commit()
                    break
                except ConcurrentBalanceConflictError:
                    db.session.rollback()
                    if attempt > self.ledger.max_retries:
                        raise
                    current_app.logger.warning(
                        f"[Sales] Balance conflict registering sale for client {client_id}, "
                        f"retrying ({attempt}/{self.ledger.max_retries})"
                    )
                except Exception:
                    db.session.rollback()
                    raise

            sale = result.sale
            current_app.logger.info(
                f"[Sales] Sale {sale.id} for client {client_id}: value {sale_value}, "
                f"redeemed {redeem_amount}, accumulated "
                f"{result.accumulation.amount if result.accumulation else ZERO}"
            )

            events = [build_sale_event(self.organization_id, client, sale, occurred_at=now)]
            if result.accumulation is not None:
                events.append(build_balance_event(self.organization_id, result.accumulation, occurred_at=now))
            result.side_effects = get_event_router().submit(
                client_id, run_sale_side_effects, self.organization_id, sale.id, events
            )

        return result

    def _register(self, client_id, sale_value, redeem_amount, external_id, sold_at, now):
        """Stage the sale, its ledger movements and client aggregates. Caller commits."""
        client = Client.query.filter_by(
            id=client_id,
            organization_id=self.organization_id
        ).with_for_update().populate_existing().first()
        if client is None:
            raise ClientNotFoundError(client_id)

        program = self.ledger.get_active_program()
        if redeem_amount > ZERO:
            self._check_redemption(client_id, program, sale_value, redeem_amount)

        sale = Sale(
            organization_id=self.organization_id,
            client_id=client_id,
            external_id=external_id,
            value=sale_value,
            cashback_redeemed=redeem_amount,
            status=SaleStatus.VALID.value,
            sold_at=sold_at,
            created_at=now,
        )
        db.session.add(sale)
        db.session.flush()

        result = SaleResult(sale=sale)
        if redeem_amount > ZERO:
            result.redemption = self.ledger.redeem(
                client_id, program.id, sale.id, redeem_amount,
                description=f'Redeemed on sale {sale.id}', now=now, commit=False
            )

        client.purchase_count = (client.purchase_count or 0) + 1
        client.purchase_total = money(client.purchase_total or 0) + sale_value
        if client.first_purchase_at is None:
            client.first_purchase_at = sold_at
        if client.last_purchase_at is None or sold_at >= client.last_purchase_at:
            client.last_purchase_at = sold_at

        # Accumulation is earned on the full sale value, redemption included
        if program is not None:
            amount = self.ledger.calculate_accumulation(program, sale_value)
            if amount > ZERO:
                result.accumulation = self.ledger.accumulate(
                    client_id, program.id, sale.id, amount, program.expiry_days,
                    sale_value=sale_value, now=now, commit=False
                )

        return client, result

    def cancel_sale(self, sale_id: int, reason: str = None, now: datetime = None) -> Dict[str, Any]:
        """
        Cancel a sale: reverse its remaining cashback and drop the campaign
        interactions it scheduled that were not sent yet.

        Raises:
            SaleNotFoundError, InvalidStatusTransitionError
        """
        now = now or utcnow()
        sale = Sale.query.filter_by(id=sale_id, organization_id=self.organization_id).first()
        if sale is None:
            raise SaleNotFoundError(sale_id)

        with client_lock(sale.client_id):
            try:
                sale = Sale.query.filter_by(id=sale_id).with_for_update().populate_existing().first()
                if sale.status == SaleStatus.CANCELED.value:
                    raise InvalidStatusTransitionError('sale', sale.status, SaleStatus.CANCELED.value)

                sale.status = SaleStatus.CANCELED.value
                sale.canceled_at = now
                sale.cancel_reason = reason

                client = Client.query.filter_by(id=sale.client_id).with_for_update().populate_existing().first()
                client.purchase_count = max(0, (client.purchase_count or 0) - 1)
                client.purchase_total = max(ZERO, money(client.purchase_total or 0) - money(sale.value))

                reversals = self.ledger.reverse_sale(sale.id, reason=reason, now=now, commit=False)

                removed = Interaction.query.filter(
                    Interaction.origin_sale_id == sale.id,
                    Interaction.executed_at.is_(None),
                    Interaction.claimed_at.is_(None),
                ).delete(synchronize_session=False)

                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

        current_app.logger.info(
            f"[Sales] Sale {sale_id} canceled: {len(reversals)} cashback reversal(s), "
            f"{removed} pending interaction(s) removed"
        )
        return {
            'sale': sale.to_dict(),
            'reversals': [t.to_dict() for t in reversals],
            'interactions_removed': removed,
        }

    # ==================== Helper Methods ====================

    def _check_redemption(self, client_id: int, program, sale_value: Decimal, redeem_amount: Decimal) -> None:
        if program is None:
            raise ValidationError('No active cashback program to redeem from', 'redeem_amount')

        balance = self.ledger.get_balance(client_id, program.id)
        available = money(balance.available) if balance else ZERO
        if redeem_amount > available:
            raise InsufficientBalanceError(available, redeem_amount)

        limit = self.ledger.max_redeemable(program, available, sale_value)
        if redeem_amount > limit:
            raise RedemptionLimitExceededError(redeem_amount, limit)

    @staticmethod
    def _positive(value) -> Decimal:
        try:
            amount = money(value)
        except (InvalidOperation, TypeError, ValueError):
            raise InvalidAmountError(value)
        if amount <= ZERO:
            raise InvalidAmountError(value)
        return amount


def run_sale_side_effects(organization_id: int, sale_id: int, events: List) -> Dict[str, Any]:
    """
    Campaign work for a committed sale, in order: triggers, attribution.

    Runs on the client's router shard. Each step is best effort.
    """
    automation = CampaignAutomationService(organization_id)
    results = {'sale_id': sale_id, 'events': [], 'conversions': []}

    for event in events:
        try:
            results['events'].append(automation.process_event(event))
        except Exception as e:
            db.session.rollback()
            current_app.logger.exception(
                f"[Sales] Campaign processing failed for {event.event_type.value} of sale {sale_id}"
            )
            results['events'].append({'event_type': event.event_type.value, 'error': str(e)})

    sale = Sale.query.get(sale_id)
    if sale is not None:
        try:
            conversions = AttributionService(organization_id).attribute_sale(sale)
            results['conversions'] = [c.id for c in conversions]
        except Exception as e:
            db.session.rollback()
            current_app.logger.exception(f"[Sales] Attribution failed for sale {sale_id}")
            results['attribution_error'] = str(e)

    return results
