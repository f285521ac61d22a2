"""
Attribution Service.

Credits a new sale to the campaign interactions that preceded it:
- candidates: the client's executed campaign interactions, sent at or before
  the sale, whose campaign counts for attribution and whose window still
  covers the sale
- LAST_TOUCH / FIRST_TOUCH: one interaction (latest / earliest, ties to the
  lowest id) that no earlier sale consumed; it is consumed here
- LINEAR: every candidate, revenue split evenly to the cent

Each conversion carries a snapshot of the client's purchase profile before
the sale and a classification (acquisition, reactivation, acceleration,
late, regular) used by campaign reports.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN
from typing import Dict, List, Optional

from flask import current_app
from sqlalchemy import and_, or_

from ..extensions import db
from ..models.campaign import AttributionModel, Campaign, CampaignConversion, ConversionType, Interaction
from ..models.organization import Organization
from ..models.sale import Sale, SaleStatus
from ..utils.locks import client_lock
from ..utils.time_utils import CENT, days_between, money, utcnow


@dataclass(frozen=True)
class PurchaseProfile:
    """Client purchase history strictly before a sale."""
    purchase_count: int
    average_ticket: Optional[Decimal]
    average_cycle_days: Optional[Decimal]
    reliable_cycle: bool
    days_since_last_purchase: Optional[int]


class AttributionService:
    """
    Usage:
        conversions = AttributionService(organization_id).attribute_sale(sale)
    """

    def __init__(self, organization_id: int):
        self.organization_id = organization_id
        config = current_app.config
        self.late_ratio = Decimal(str(config.get('ATTRIBUTION_LATE_RATIO', 0.8)))
        self.reliable_min = config.get('ATTRIBUTION_RELIABLE_CYCLE_MIN_PURCHASES', 3)
        self.dormancy_days = self._dormancy_days(config.get('ATTRIBUTION_DORMANCY_DAYS', 90))

    # ==================== Attribution ====================

    def attribute_sale(self, sale: Sale, now: datetime = None, commit: bool = True) -> List[CampaignConversion]:
        """
        Create the conversions for a sale.

        Running it again for the same sale returns the conversions already
        recorded instead of consuming more interactions.
        """
        now = now or utcnow()
        if sale.status != SaleStatus.VALID.value:
            return []

        with client_lock(sale.client_id):
            try:
                existing = CampaignConversion.query.filter_by(sale_id=sale.id).order_by(CampaignConversion.id).all()
                if existing:
                    return existing

                candidates = self._candidates(sale)
                if not candidates:
                    return []

                profile = self.purchase_profile(sale)
                conversions: List[CampaignConversion] = []

                by_model: Dict[str, List[tuple]] = {}
                for interaction, campaign in candidates:
                    by_model.setdefault(campaign.attribution_model, []).append((interaction, campaign))

                for model in (AttributionModel.LAST_TOUCH.value, AttributionModel.FIRST_TOUCH.value):
                    chosen = self._consume_single(by_model.get(model, []), model, now)
                    if chosen is not None:
                        interaction, campaign = chosen
                        conversions.append(self._conversion(
                            sale, interaction, campaign, profile, Decimal('1'), money(sale.value)
                        ))

                linear = by_model.get(AttributionModel.LINEAR.value, [])
                if linear:
                    shares = split_evenly(money(sale.value), len(linear))
                    weight = (Decimal('1') / len(linear)).quantize(Decimal('0.0001'))
                    for (interaction, campaign), share in zip(linear, shares):
                        conversions.append(self._conversion(sale, interaction, campaign, profile, weight, share))

                for conversion in conversions:
                    db.session.add(conversion)
                db.session.flush()
                if commit:
                    db.session.commit()
            except Exception:
                if commit:
                    db.session.rollback()
                raise

        if conversions:
            current_app.logger.info(
                f"[Attribution] Sale {sale.id} attributed to interactions "
                f"{[c.interaction_id for c in conversions]} ({conversions[0].conversion_type})"
            )
        return conversions

    def purchase_profile(self, sale: Sale) -> PurchaseProfile:
        previous = Sale.query.filter(
            Sale.client_id == sale.client_id,
            Sale.status == SaleStatus.VALID.value,
            Sale.id != sale.id,
            or_(
                Sale.sold_at < sale.sold_at,
                and_(Sale.sold_at == sale.sold_at, Sale.id < sale.id),
            ),
        ).order_by(Sale.sold_at.asc(), Sale.id.asc()).all()

        count = len(previous)
        if count == 0:
            return PurchaseProfile(0, None, None, False, None)

        total = sum((money(s.value) for s in previous), Decimal('0.00'))
        average_ticket = money(total / count)

        average_cycle = None
        if count >= 2:
            span = days_between(previous[0].sold_at, previous[-1].sold_at)
            average_cycle = Decimal(str(span / (count - 1))).quantize(CENT)

        days_since_last = int(days_between(previous[-1].sold_at, sale.sold_at))
        return PurchaseProfile(
            purchase_count=count,
            average_ticket=average_ticket,
            average_cycle_days=average_cycle,
            reliable_cycle=count >= self.reliable_min and average_cycle is not None,
            days_since_last_purchase=days_since_last,
        )

    def classify(self, profile: PurchaseProfile, interaction_at: datetime, sale_at: datetime,
                 window_days: int) -> ConversionType:
        if profile.purchase_count == 0:
            return ConversionType.AQUISICAO
        if profile.days_since_last_purchase is not None and profile.days_since_last_purchase > self.dormancy_days:
            return ConversionType.REATIVACAO
        if (
            profile.reliable_cycle
            and profile.days_since_last_purchase is not None
            and Decimal(profile.days_since_last_purchase) < profile.average_cycle_days
        ):
            return ConversionType.ACELERACAO
        elapsed = Decimal(str(days_between(interaction_at, sale_at)))
        if window_days and elapsed >= self.late_ratio * window_days:
            return ConversionType.ATRASADA
        return ConversionType.REGULAR

    # ==================== Helper Methods ====================

    def _candidates(self, sale: Sale) -> List[tuple]:
        rows = db.session.query(Interaction, Campaign).join(
            Campaign, Interaction.campaign_id == Campaign.id
        ).filter(
            Interaction.organization_id == self.organization_id,
            Interaction.client_id == sale.client_id,
            Interaction.executed_at.isnot(None),
            Interaction.executed_at <= sale.sold_at,
            Campaign.attribution_applicable.is_(True),
        ).order_by(Interaction.executed_at.asc(), Interaction.id.asc()).all()

        return [
            (interaction, campaign) for interaction, campaign in rows
            if sale.sold_at <= interaction.executed_at + timedelta(days=campaign.attribution_window_days or 0)
        ]

    def _consume_single(self, candidates: List[tuple], model: str, now: datetime) -> Optional[tuple]:
        """Pick and consume one unconsumed interaction; losers of a race fall through to the next."""
        if model == AttributionModel.LAST_TOUCH.value:
            ordered = sorted(candidates, key=lambda pair: (pair[0].executed_at, -pair[0].id), reverse=True)
        else:
            ordered = sorted(candidates, key=lambda pair: (pair[0].executed_at, pair[0].id))

        for interaction, campaign in ordered:
            if interaction.attributed_at is not None:
                continue
            consumed = Interaction.query.filter(
                Interaction.id == interaction.id,
                Interaction.attributed_at.is_(None),
            ).update({Interaction.attributed_at: now}, synchronize_session=False)
            if consumed == 1:
                return interaction, campaign
        return None

    def _conversion(self, sale: Sale, interaction: Interaction, campaign: Campaign,
                    profile: PurchaseProfile, weight: Decimal, revenue: Decimal) -> CampaignConversion:
        sale_value = money(sale.value)
        monetary_delta = None
        monetary_delta_percent = None
        if profile.average_ticket:
            monetary_delta = sale_value - profile.average_ticket
            monetary_delta_percent = (monetary_delta / profile.average_ticket * 100).quantize(CENT)

        frequency_delta = None
        if profile.average_cycle_days is not None and profile.days_since_last_purchase is not None:
            frequency_delta = profile.average_cycle_days - Decimal(profile.days_since_last_purchase)

        conversion_type = self.classify(
            profile, interaction.executed_at, sale.sold_at, campaign.attribution_window_days
        )

        return CampaignConversion(
            organization_id=self.organization_id,
            sale_id=sale.id,
            interaction_id=interaction.id,
            campaign_id=campaign.id,
            client_id=sale.client_id,
            attribution_model=campaign.attribution_model,
            attribution_weight=weight,
            attributed_revenue=revenue,
            sale_value=sale_value,
            interaction_at=interaction.executed_at,
            converted_at=sale.sold_at,
            minutes_to_conversion=int((sale.sold_at - interaction.executed_at).total_seconds() // 60),
            average_ticket=profile.average_ticket,
            average_cycle_days=profile.average_cycle_days,
            purchase_count=profile.purchase_count,
            reliable_cycle=profile.reliable_cycle,
            days_since_last_purchase=profile.days_since_last_purchase,
            conversion_type=conversion_type.value,
            frequency_delta_days=frequency_delta,
            monetary_delta=monetary_delta,
            monetary_delta_percent=monetary_delta_percent,
        )

    def _dormancy_days(self, default: int) -> int:
        org = Organization.query.get(self.organization_id)
        if org and (org.settings or {}).get('dormancy_days'):
            return int(org.settings['dormancy_days'])
        return default


def split_evenly(amount: Decimal, parts: int) -> List[Decimal]:
    """Split to the cent; the last share absorbs the rounding so shares sum to amount."""
    if parts <= 0:
        return []
    share = (amount / parts).quantize(CENT, rounding=ROUND_DOWN)
    shares = [share] * (parts - 1)
    shares.append(amount - share * (parts - 1))
    return shares
