"""
Frequency Guard.

Decides whether a campaign may create another interaction for a client:
- recurrence disabled: only if the client never had one from this campaign
- recurrence with an interval: only if none was created in the last interval
- recurrence without an interval: always

The scheduler calls check() while holding the client lock, in the same
transaction as the insert, so two concurrent triggers cannot both pass.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from flask import current_app

from ..models.campaign import Interaction
from ..utils.time_utils import DAYS, shift, utcnow


@dataclass(frozen=True)
class FrequencyDecision:
    allowed: bool
    reason: str
    last_interaction_at: Optional[datetime] = None


class FrequencyGuard:
    """
    Usage:
        decision = FrequencyGuard().check(client_id, campaign)
        if not decision.allowed:
            ...
    """

    ALLOWED = 'allowed'
    NO_RECURRENCE = 'recurrence_disabled'
    WITHIN_INTERVAL = 'within_interval'

    def check(self, client_id: int, campaign, now: datetime = None) -> FrequencyDecision:
        """
        Args:
            client_id: Client about to be contacted
            campaign: Campaign or CampaignRule (needs id, allow_recurrence
                and the frequency interval fields)
        """
        now = now or utcnow()
        campaign_id = getattr(campaign, 'campaign_id', None) or campaign.id

        last = Interaction.query.with_entities(Interaction.created_at).filter(
            Interaction.client_id == client_id,
            Interaction.campaign_id == campaign_id,
        ).order_by(Interaction.created_at.desc()).first()
        last_at = last[0] if last else None

        if not campaign.allow_recurrence:
            if last_at is not None:
                return self._reject(client_id, campaign_id, self.NO_RECURRENCE, last_at)
            return FrequencyDecision(True, self.ALLOWED)

        interval = campaign.frequency_interval_value or 0
        if interval <= 0 or last_at is None:
            return FrequencyDecision(True, self.ALLOWED, last_at)

        cutoff = shift(now, -interval, campaign.frequency_interval_unit or DAYS)
        if last_at > cutoff:
            return self._reject(client_id, campaign_id, self.WITHIN_INTERVAL, last_at)
        return FrequencyDecision(True, self.ALLOWED, last_at)

    @staticmethod
    def _reject(client_id: int, campaign_id: int, reason: str, last_at: datetime) -> FrequencyDecision:
        current_app.logger.info(
            f"[Frequency] Campaign {campaign_id} capped for client {client_id} "
            f"({reason}, last interaction {last_at.isoformat()})"
        )
        return FrequencyDecision(False, reason, last_at)
