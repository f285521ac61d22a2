"""
Campaign Service.

Campaign CRUD plus the read path used on every business event: active
campaigns indexed by (organization, trigger type), cached as immutable
CampaignRule snapshots and dropped from the cache on every write.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from flask import current_app

from ..extensions import db
from ..models.campaign import AttributionModel, Campaign
from ..models.campaign_triggers import (
    TriggerConfig,
    TriggerType,
    parse_trigger_config,
    trigger_config_to_dict,
)
from ..models.cashback import AmountType
from ..utils.cache import cache, cache_key, delete_many
from ..utils.exceptions import CampaignNotFoundError, ValidationError
from ..utils.time_utils import DAYS, TIME_BLOCKS, TIME_UNITS


@dataclass(frozen=True)
class CampaignRule:
    """What the evaluator and the frequency guard need from a campaign."""
    campaign_id: int
    organization_id: int
    title: str
    trigger_type: TriggerType
    trigger: TriggerConfig
    segments: Tuple[str, ...]
    allow_recurrence: bool
    frequency_interval_value: int
    frequency_interval_unit: str
    created_at: Optional[datetime]

    @classmethod
    def from_campaign(cls, campaign: Campaign) -> 'CampaignRule':
        return cls(
            campaign_id=campaign.id,
            organization_id=campaign.organization_id,
            title=campaign.title,
            trigger_type=TriggerType(campaign.trigger_type),
            trigger=campaign.trigger,
            segments=tuple(campaign.segments or ()),
            allow_recurrence=bool(campaign.allow_recurrence),
            frequency_interval_value=campaign.frequency_interval_value or 0,
            frequency_interval_unit=campaign.frequency_interval_unit or DAYS,
            created_at=campaign.created_at,
        )

    def accepts_segment(self, segment: Optional[str]) -> bool:
        """Campaigns with target segments only apply to clients in one of them."""
        return not self.segments or segment in self.segments


# Fields accepted on create/update, besides trigger_type/trigger_config
_SIMPLE_FIELDS = (
    'title', 'description', 'is_active', 'allow_recurrence', 'template_id',
    'attribution_applicable', 'reward_active',
)


class CampaignService:
    """
    Campaign management for one organization.

    Usage:
        service = CampaignService(organization_id)
        campaign = service.create_campaign({...})
        rules = service.get_active_rules(TriggerType.BIRTHDAY)
    """

    def __init__(self, organization_id: int):
        self.organization_id = organization_id

    # ==================== Cached rule index ====================

    def get_active_rules(self, trigger_type) -> List[CampaignRule]:
        """Active campaigns of one trigger type, from cache when possible."""
        trigger_type = TriggerType(trigger_type)
        key = cache_key('campaign_rules', self.organization_id, trigger_type.value)

        rules = cache.get(key)
        if rules is not None:
            return rules

        campaigns = Campaign.query.filter_by(
            organization_id=self.organization_id,
            trigger_type=trigger_type.value,
            is_active=True
        ).order_by(Campaign.id.asc()).all()

        rules = []
        for campaign in campaigns:
            try:
                rules.append(CampaignRule.from_campaign(campaign))
            except ValidationError as e:
                # One broken definition must not hide the others
                current_app.logger.error(
                    f"[Campaigns] Skipping campaign {campaign.id} with invalid trigger config: {e.message}"
                )

        cache.set(key, rules, timeout=current_app.config.get('CAMPAIGN_CACHE_TIMEOUT', 30))
        return rules

    def invalidate_cache(self) -> None:
        delete_many([
            cache_key('campaign_rules', self.organization_id, trigger_type.value)
            for trigger_type in TriggerType
        ])

    # ==================== CRUD ====================

    def get_campaign(self, campaign_id: int) -> Campaign:
        campaign = Campaign.query.filter_by(id=campaign_id, organization_id=self.organization_id).first()
        if not campaign:
            raise CampaignNotFoundError(campaign_id)
        return campaign

    def list_campaigns(self, active_only: bool = False, trigger_type: str = None) -> List[Campaign]:
        query = Campaign.query.filter_by(organization_id=self.organization_id)
        if active_only:
            query = query.filter_by(is_active=True)
        if trigger_type:
            query = query.filter_by(trigger_type=trigger_type)
        return query.order_by(Campaign.created_at.desc(), Campaign.id.desc()).all()

    def create_campaign(self, data: Dict[str, Any]) -> Campaign:
        """
        Create a campaign from API-shaped data.

        Raises:
            ValidationError: missing title, unknown trigger type, bad parameters
        """
        if not data.get('title'):
            raise ValidationError('title is required', 'title')
        if not data.get('trigger_type'):
            raise ValidationError('trigger_type is required', 'trigger_type')

        campaign = Campaign(organization_id=self.organization_id)
        self._apply(campaign, data, creating=True)

        db.session.add(campaign)
        db.session.commit()
        self.invalidate_cache()

        current_app.logger.info(
            f"[Campaigns] Created campaign {campaign.id} ({campaign.trigger_type}) for org {self.organization_id}"
        )
        return campaign

    def update_campaign(self, campaign_id: int, data: Dict[str, Any]) -> Campaign:
        campaign = self.get_campaign(campaign_id)
        self._apply(campaign, data, creating=False)
        db.session.commit()
        self.invalidate_cache()
        return campaign

    def set_active(self, campaign_id: int, active: bool) -> Campaign:
        campaign = self.get_campaign(campaign_id)
        campaign.is_active = active
        db.session.commit()
        self.invalidate_cache()
        return campaign

    # ==================== Helper Methods ====================

    def _apply(self, campaign: Campaign, data: Dict[str, Any], creating: bool) -> None:
        for name in _SIMPLE_FIELDS:
            if name in data:
                setattr(campaign, name, data[name])

        if 'trigger_type' in data or 'trigger_config' in data:
            trigger_type = data.get('trigger_type', campaign.trigger_type)
            trigger = parse_trigger_config(trigger_type, data.get('trigger_config', campaign.trigger_config))
            campaign.trigger_type = trigger.trigger_type.value
            campaign.trigger_config = trigger_config_to_dict(trigger)

        if 'segments' in data:
            segments = data['segments'] or []
            if isinstance(segments, str):
                segments = [segments]
            campaign.segments = [str(s) for s in segments]
        elif creating:
            campaign.segments = []

        if 'frequency_interval_value' in data:
            campaign.frequency_interval_value = self._non_negative_int(data, 'frequency_interval_value')
        if 'frequency_interval_unit' in data:
            campaign.frequency_interval_unit = self._unit(data, 'frequency_interval_unit')

        if 'send_offset_value' in data:
            campaign.send_offset_value = self._non_negative_int(data, 'send_offset_value')
        if 'send_offset_unit' in data:
            campaign.send_offset_unit = self._unit(data, 'send_offset_unit')
        if 'send_time_block' in data:
            block = data['send_time_block']
            if block is not None and block not in TIME_BLOCKS:
                raise ValidationError(f'send_time_block must be one of {", ".join(TIME_BLOCKS)}', 'send_time_block')
            campaign.send_time_block = block

        if 'attribution_model' in data:
            try:
                campaign.attribution_model = AttributionModel(data['attribution_model']).value
            except ValueError:
                raise ValidationError(f"Unknown attribution model: {data['attribution_model']}", 'attribution_model')
        if 'attribution_window_days' in data:
            window = self._non_negative_int(data, 'attribution_window_days')
            if window < 1:
                raise ValidationError('attribution_window_days must be at least 1', 'attribution_window_days')
            campaign.attribution_window_days = window

        if 'reward_type' in data:
            reward_type = data['reward_type']
            if reward_type is not None:
                try:
                    reward_type = AmountType(reward_type).value
                except ValueError:
                    raise ValidationError(f'Unknown reward type: {reward_type}', 'reward_type')
            campaign.reward_type = reward_type
        if 'reward_value' in data:
            value = data['reward_value']
            if value is not None:
                try:
                    value = Decimal(str(value))
                except (InvalidOperation, ValueError):
                    raise ValidationError('reward_value must be a number', 'reward_value')
                if not value.is_finite() or value < 0:
                    raise ValidationError('reward_value must be a non-negative number', 'reward_value')
            campaign.reward_value = value
        if 'reward_expiry_value' in data:
            campaign.reward_expiry_value = (
                self._non_negative_int(data, 'reward_expiry_value')
                if data['reward_expiry_value'] is not None else None
            )
        if 'reward_expiry_unit' in data:
            campaign.reward_expiry_unit = self._unit(data, 'reward_expiry_unit')

        if campaign.reward_active and (not campaign.reward_type or campaign.reward_value is None):
            raise ValidationError('Active rewards need reward_type and reward_value', 'reward_type')

    @staticmethod
    def _non_negative_int(data: Dict[str, Any], key: str) -> int:
        try:
            value = int(data[key] or 0)
        except (TypeError, ValueError):
            raise ValidationError(f'{key} must be an integer', key)
        if value < 0:
            raise ValidationError(f'{key} must not be negative', key)
        return value

    @staticmethod
    def _unit(data: Dict[str, Any], key: str) -> str:
        unit = data[key] or DAYS
        if unit not in TIME_UNITS:
            raise ValidationError(f'{key} must be one of {", ".join(TIME_UNITS)}', key)
        return unit
