"""
Tests for the Interaction Scheduler.

Times use America/Sao_Paulo (UTC-3): NOW is 12:00 local on 2026-03-02.
"""
import pytest
from datetime import date, datetime, timedelta
from types import SimpleNamespace

from conftest import NOW
from loyalty_core.extensions import db
from loyalty_core.models import Campaign, Interaction
from loyalty_core.services.interaction_scheduler import InteractionScheduler, compute_due
from loyalty_core.utils.exceptions import CampaignNotFoundError, ClientNotFoundError

TZ = 'America/Sao_Paulo'


class TestComputeDue:
    """Tests for compute_due."""

    def test_no_offset_is_immediate(self, app):
        """Test that zero-offset campaigns are due now, in the current block."""
        campaign = Campaign(send_offset_value=0)

        assert compute_due(campaign, NOW, TZ) == (date(2026, 3, 2), '12:00', NOW, True)

    def test_offset_pushed_to_time_block(self, app):
        """Test that the due time moves to the next occurrence of the block."""
        campaign = Campaign(send_offset_value=1, send_offset_unit='days', send_time_block='09:00')

        # now + 1 day = 03-03 12:00 local, next 09:00 is 03-04
        assert compute_due(campaign, NOW, TZ) == (
            date(2026, 3, 4), '09:00', datetime(2026, 3, 4, 12, 0), False
        )

    def test_block_later_the_same_day(self, app):
        """Test a block still ahead on the target day."""
        campaign = Campaign(send_offset_value=2, send_offset_unit='days', send_time_block='21:00')

        # 03-04 21:00 local is 03-05 00:00 UTC
        assert compute_due(campaign, NOW, TZ) == (
            date(2026, 3, 4), '21:00', datetime(2026, 3, 5, 0, 0), False
        )

    def test_offset_without_block(self, app):
        """Test that without a fixed block the due time is the offset itself."""
        campaign = Campaign(send_offset_value=1, send_offset_unit='weeks', send_time_block=None)

        assert compute_due(campaign, NOW, TZ) == (
            date(2026, 3, 9), '12:00', datetime(2026, 3, 9, 15, 0), False
        )


class TestSchedule:
    """Tests for InteractionScheduler.schedule."""

    def test_schedule_creates_pending_interaction(self, app, sample_client, make_campaign):
        """Test the persisted interaction and its metadata."""
        campaign = make_campaign('birthday', send_offset_value=1, send_time_block='09:00')
        scheduler = InteractionScheduler(sample_client.organization_id)

        outcome = scheduler.schedule(sample_client.id, campaign, {'trigger': 'birthday'}, now=NOW)

        assert outcome.scheduled is True
        assert outcome.immediate is False
        interaction = outcome.interaction
        assert interaction.campaign_id == campaign.id
        assert interaction.title == campaign.title
        assert interaction.executed_at is None
        assert interaction.delivery_status == 'pending'
        assert interaction.scheduled_date == date(2026, 3, 4)
        assert interaction.time_block == '09:00'
        assert interaction.due_at == datetime(2026, 3, 4, 12, 0)
        assert interaction.created_at == NOW
        assert interaction.metadata_json == {'trigger': 'birthday', 'immediate': False}

    def test_schedule_immediate(self, app, sample_client, make_campaign):
        """Test that zero-offset campaigns are flagged immediate."""
        campaign = make_campaign('first_purchase')

        outcome = InteractionScheduler(sample_client.organization_id).schedule(
            sample_client.id, campaign, now=NOW
        )

        assert outcome.immediate is True
        assert outcome.interaction.due_at == NOW
        assert outcome.interaction.metadata_json['immediate'] is True

    def test_frequency_guard_applies(self, app, sample_client, make_campaign):
        """Test that a second interaction of a non-recurring campaign is capped."""
        campaign = make_campaign('first_purchase', allow_recurrence=False)
        scheduler = InteractionScheduler(sample_client.organization_id)

        assert scheduler.schedule(sample_client.id, campaign, now=NOW).scheduled is True
        outcome = scheduler.schedule(sample_client.id, campaign, now=NOW + timedelta(days=1))

        assert outcome.scheduled is False
        assert outcome.decision.reason == 'recurrence_disabled'
        assert Interaction.query.count() == 1

    def test_inactive_campaign_not_scheduled(self, app, sample_client, make_campaign):
        """Test that a campaign deactivated after being matched is skipped."""
        campaign = make_campaign('birthday')
        campaign.is_active = False
        db.session.commit()

        outcome = InteractionScheduler(sample_client.organization_id).schedule(
            sample_client.id, campaign, now=NOW
        )

        assert outcome.scheduled is False
        assert outcome.decision.reason == 'campaign_inactive'

    def test_origin_sale_recorded(self, app, sample_client, make_campaign):
        """Test that the originating sale is stored on the interaction."""
        from loyalty_core.models import Sale

        sale = Sale(organization_id=sample_client.organization_id, client_id=sample_client.id,
                    value=100, sold_at=NOW)
        db.session.add(sale)
        db.session.commit()
        campaign = make_campaign('new_purchase')

        outcome = InteractionScheduler(sample_client.organization_id).schedule(
            sample_client.id, campaign, origin_sale_id=sale.id, now=NOW
        )

        assert outcome.interaction.origin_sale_id == sale.id

    def test_unknown_client(self, app, sample_organization, make_campaign):
        """Test that an unknown client raises ClientNotFoundError."""
        campaign = make_campaign('birthday')

        with pytest.raises(ClientNotFoundError):
            InteractionScheduler(sample_organization.id).schedule(9999, campaign, now=NOW)

    def test_unknown_campaign(self, app, sample_client):
        """Test that an unknown campaign raises CampaignNotFoundError."""
        with pytest.raises(CampaignNotFoundError):
            InteractionScheduler(sample_client.organization_id).schedule(
                sample_client.id, SimpleNamespace(campaign_id=9999), now=NOW
            )
