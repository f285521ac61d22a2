"""
Interaction Scheduler.

Turns a campaign match into a persisted, not-yet-executed Interaction:
- due time = now + the campaign's send offset, pushed forward to the next
  occurrence of its time block in the organization's local time
- no offset: due now, flagged immediate so the caller may deliver right away
- the frequency guard runs under the client lock, in the insert's transaction
"""
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Optional, Tuple

from flask import current_app

from ..extensions import db
from ..models.campaign import Campaign, DeliveryStatus, Interaction
from ..models.organization import Client, Organization
from ..utils.exceptions import CampaignNotFoundError, ClientNotFoundError
from ..utils.locks import client_lock
from ..utils.time_utils import (
    DAYS,
    floor_time_block,
    next_block_occurrence,
    shift,
    to_local,
    to_utc_naive,
    utcnow,
)
from .frequency_guard import FrequencyDecision, FrequencyGuard


@dataclass
class ScheduleOutcome:
    interaction: Optional[Interaction]
    decision: FrequencyDecision
    immediate: bool = False

    @property
    def scheduled(self) -> bool:
        return self.interaction is not None


def compute_due(campaign: Campaign, now: datetime, tz_name: str) -> Tuple[date, str, datetime, bool]:
    """
    Where a new interaction lands.

    Returns:
        (local scheduled date, time block, due_at as naive UTC, immediate)
    """
    local_now = to_local(now, tz_name)
    offset = campaign.send_offset_value or 0

    if offset <= 0:
        return local_now.date(), floor_time_block(local_now), now, True

    target = shift(local_now, offset, campaign.send_offset_unit or DAYS)
    if campaign.send_time_block:
        due_local = next_block_occurrence(target, campaign.send_time_block)
        block = campaign.send_time_block
    else:
        due_local = target
        block = floor_time_block(target)
    return due_local.date(), block, to_utc_naive(due_local), False


class InteractionScheduler:
    """
    Usage:
        scheduler = InteractionScheduler(organization_id)
        outcome = scheduler.schedule(client_id, campaign, {'trigger': 'birthday'})
        if outcome.immediate:
            dispatcher.deliver_now(outcome.interaction.id)
    """

    def __init__(self, organization_id: int, guard: FrequencyGuard = None):
        self.organization_id = organization_id
        self.guard = guard or FrequencyGuard()

    def schedule(
        self,
        client_id: int,
        campaign,
        reason_metadata: Dict[str, Any] = None,
        origin_sale_id: int = None,
        now: datetime = None,
        commit: bool = True
    ) -> ScheduleOutcome:
        """
        Create an interaction unless the frequency guard rejects it.

        Args:
            campaign: Campaign or CampaignRule; the row is re-read so a
                campaign deactivated after being cached is not scheduled
            commit: False only when the caller already holds client_lock
                for the whole unit of work

        Raises:
            ClientNotFoundError, CampaignNotFoundError
        """
        now = now or utcnow()
        campaign_id = getattr(campaign, 'campaign_id', None) or campaign.id

        with client_lock(client_id):
            try:
                client = Client.query.filter_by(
                    id=client_id,
                    organization_id=self.organization_id
                ).with_for_update().first()
                if client is None:
                    raise ClientNotFoundError(client_id)

                campaign = Campaign.query.filter_by(
                    id=campaign_id,
                    organization_id=self.organization_id
                ).first()
                if campaign is None:
                    raise CampaignNotFoundError(campaign_id)
                if not campaign.is_active:
                    return self._skip(FrequencyDecision(False, 'campaign_inactive'), commit)

                decision = self.guard.check(client_id, campaign, now=now)
                if not decision.allowed:
                    return self._skip(decision, commit)

                tz_name = self._timezone()
                scheduled_date, block, due_at, immediate = compute_due(campaign, now, tz_name)

                metadata = dict(reason_metadata or {})
                metadata['immediate'] = immediate

                interaction = Interaction(
                    organization_id=self.organization_id,
                    client_id=client_id,
                    campaign_id=campaign.id,
                    title=campaign.title,
                    description=campaign.description,
                    origin_sale_id=origin_sale_id,
                    scheduled_date=scheduled_date,
                    time_block=block,
                    due_at=due_at,
                    delivery_status=DeliveryStatus.PENDING.value,
                    delivery_attempts=0,
                    metadata_json=metadata,
                    created_at=now,
                )
                db.session.add(interaction)
                db.session.flush()
                if commit:
                    db.session.commit()
            except Exception:
                if commit:
                    db.session.rollback()
                raise

        current_app.logger.info(
            f"[Scheduler] Interaction {interaction.id} for client {client_id} campaign {campaign_id} "
            f"due {due_at.isoformat()} ({scheduled_date.isoformat()} {block})"
        )
        return ScheduleOutcome(interaction, decision, immediate)

    def _timezone(self) -> str:
        org = Organization.query.get(self.organization_id)
        return org.timezone if org else current_app.config['INTERACTIONS_TIMEZONE']

    @staticmethod
    def _skip(decision: FrequencyDecision, commit: bool) -> ScheduleOutcome:
        # Nothing was staged; ending the transaction releases the client row lock
        if commit:
            db.session.commit()
        return ScheduleOutcome(None, decision)
