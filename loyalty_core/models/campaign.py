"""
Campaign automation models.

- Campaign: marketing rule (trigger, recurrence cap, send offset, attribution, reward)
- Interaction: a scheduled or sent touch for one client
- CampaignConversion: a sale credited to an interaction
"""
from enum import Enum

from ..extensions import db
from ..utils.time_utils import utcnow, DAYS
from .campaign_triggers import parse_trigger_config, trigger_config_to_dict


# ==================== Enums ====================

class AttributionModel(str, Enum):
    LAST_TOUCH = 'last_touch'
    FIRST_TOUCH = 'first_touch'
    LINEAR = 'linear'


class DeliveryStatus(str, Enum):
    PENDING = 'pending'      # Waiting for its block
    SENDING = 'sending'      # Claimed by a dispatcher run
    SENT = 'sent'            # Transport accepted it
    FAILED = 'failed'        # Rejected or errored - retried next run
    UNKNOWN = 'unknown'      # Timed out - provider status checked before retrying


class ConversionType(str, Enum):
    AQUISICAO = 'AQUISICAO'      # First purchase ever
    REATIVACAO = 'REATIVACAO'    # Came back after the dormancy threshold
    ACELERACAO = 'ACELERACAO'    # Bought sooner than their usual cycle
    REGULAR = 'REGULAR'
    ATRASADA = 'ATRASADA'        # Converted near the end of the window


# ==================== Models ====================

class Campaign(db.Model):
    """
    Marketing rule owned by an organization.

    trigger_config holds the raw JSON parameters; use `trigger` for the
    parsed, typed form.
    """
    __tablename__ = 'campaigns'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organizations.id'), nullable=False)

    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    # Trigger
    trigger_type = db.Column(db.String(50), nullable=False)
    trigger_config = db.Column(db.JSON, default=dict)

    # Target RFM segments (empty list = every client)
    segments = db.Column(db.JSON, default=list)

    # Recurrence cap per client
    allow_recurrence = db.Column(db.Boolean, default=True, nullable=False)
    frequency_interval_value = db.Column(db.Integer, default=0)
    frequency_interval_unit = db.Column(db.String(20), default=DAYS)

    # Send offset: N units after the trigger, at a fixed time block
    send_offset_value = db.Column(db.Integer, default=0)
    send_offset_unit = db.Column(db.String(20), default=DAYS)
    send_time_block = db.Column(db.String(5))  # '00:00', '03:00', ... '21:00'

    # Message template handed to the transport
    template_id = db.Column(db.String(255))

    # Attribution
    attribution_model = db.Column(db.String(20), default=AttributionModel.LAST_TOUCH.value, nullable=False)
    attribution_window_days = db.Column(db.Integer, default=14, nullable=False)
    attribution_applicable = db.Column(db.Boolean, default=True, nullable=False)

    # Cashback reward granted when the campaign fires
    reward_active = db.Column(db.Boolean, default=False, nullable=False)
    reward_type = db.Column(db.String(20))  # AmountType
    reward_value = db.Column(db.Numeric(12, 2))
    reward_expiry_value = db.Column(db.Integer)
    reward_expiry_unit = db.Column(db.String(20), default=DAYS)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    organization = db.relationship('Organization', backref=db.backref('campaigns', lazy='dynamic'))

    __table_args__ = (
        db.Index('ix_campaigns_org_trigger_active', 'organization_id', 'trigger_type', 'is_active'),
    )

    def __repr__(self):
        return f'<Campaign {self.id}: {self.title} ({self.trigger_type})>'

    @property
    def trigger(self):
        return parse_trigger_config(self.trigger_type, self.trigger_config)

    def to_dict(self):
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'title': self.title,
            'description': self.description,
            'is_active': self.is_active,
            'trigger_type': self.trigger_type,
            'trigger_config': trigger_config_to_dict(self.trigger),
            'segments': self.segments or [],
            'allow_recurrence': self.allow_recurrence,
            'frequency_interval_value': self.frequency_interval_value,
            'frequency_interval_unit': self.frequency_interval_unit,
            'send_offset_value': self.send_offset_value,
            'send_offset_unit': self.send_offset_unit,
            'send_time_block': self.send_time_block,
            'template_id': self.template_id,
            'attribution_model': self.attribution_model,
            'attribution_window_days': self.attribution_window_days,
            'attribution_applicable': self.attribution_applicable,
            'reward_active': self.reward_active,
            'reward_type': self.reward_type,
            'reward_value': float(self.reward_value) if self.reward_value is not None else None,
            'reward_expiry_value': self.reward_expiry_value,
            'reward_expiry_unit': self.reward_expiry_unit,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class Interaction(db.Model):
    """
    One touch (message) to a client.

    executed_at is the send gate: it is set only after the transport accepted
    the message, and the dispatcher never picks up a row that has it.
    attributed_at marks a row already used as the single source of a
    last/first-touch conversion.
    """
    __tablename__ = 'interactions'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organizations.id'), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'), nullable=False)
    campaign_id = db.Column(db.Integer, db.ForeignKey('campaigns.id'))  # null for manual touches

    title = db.Column(db.String(255))
    description = db.Column(db.Text)
    origin_sale_id = db.Column(db.Integer, db.ForeignKey('sales.id'))

    # Schedule (organization-local date + block, and the UTC instant they map to)
    scheduled_date = db.Column(db.Date, nullable=False)
    time_block = db.Column(db.String(5), nullable=False)
    due_at = db.Column(db.DateTime, nullable=False)

    # Delivery
    delivery_status = db.Column(db.String(20), default=DeliveryStatus.PENDING.value, nullable=False)
    delivery_attempts = db.Column(db.Integer, default=0, nullable=False)
    delivery_error = db.Column(db.String(500))
    provider_message_id = db.Column(db.String(255))
    claimed_at = db.Column(db.DateTime)
    executed_at = db.Column(db.DateTime)

    attributed_at = db.Column(db.DateTime)

    # What triggered it (reason, amounts, ...)
    metadata_json = db.Column('metadata', db.JSON, default=dict)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    client = db.relationship('Client', backref=db.backref('interactions', lazy='dynamic'))
    campaign = db.relationship('Campaign', backref=db.backref('interactions', lazy='dynamic'))

    __table_args__ = (
        db.Index('ix_interactions_frequency', 'client_id', 'campaign_id', 'created_at'),
        db.Index('ix_interactions_dispatch', 'scheduled_date', 'time_block', 'executed_at'),
        db.Index('ix_interactions_due', 'due_at', 'executed_at'),
    )

    def __repr__(self):
        return f'<Interaction {self.id}: campaign {self.campaign_id} client {self.client_id}>'

    @property
    def is_executed(self) -> bool:
        return self.executed_at is not None

    def to_dict(self):
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'client_id': self.client_id,
            'campaign_id': self.campaign_id,
            'title': self.title,
            'scheduled_date': self.scheduled_date.isoformat() if self.scheduled_date else None,
            'time_block': self.time_block,
            'due_at': self.due_at.isoformat() if self.due_at else None,
            'delivery_status': self.delivery_status,
            'delivery_attempts': self.delivery_attempts,
            'delivery_error': self.delivery_error,
            'provider_message_id': self.provider_message_id,
            'executed_at': self.executed_at.isoformat() if self.executed_at else None,
            'attributed_at': self.attributed_at.isoformat() if self.attributed_at else None,
            'metadata': self.metadata_json or {},
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class CampaignConversion(db.Model):
    """
    Sale credited to an interaction, with a snapshot of the client's
    purchase profile at conversion time for reporting.
    """
    __tablename__ = 'campaign_conversions'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organizations.id'), nullable=False)
    sale_id = db.Column(db.Integer, db.ForeignKey('sales.id'), nullable=False)
    interaction_id = db.Column(db.Integer, db.ForeignKey('interactions.id'), nullable=False)
    campaign_id = db.Column(db.Integer, db.ForeignKey('campaigns.id'), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'), nullable=False)

    # Attribution
    attribution_model = db.Column(db.String(20), nullable=False)
    attribution_weight = db.Column(db.Numeric(6, 4), default=1, nullable=False)
    attributed_revenue = db.Column(db.Numeric(12, 2), nullable=False)
    sale_value = db.Column(db.Numeric(12, 2), nullable=False)

    interaction_at = db.Column(db.DateTime, nullable=False)
    converted_at = db.Column(db.DateTime, nullable=False)
    minutes_to_conversion = db.Column(db.Integer, nullable=False)

    # Client snapshot before this sale
    average_ticket = db.Column(db.Numeric(12, 2))
    average_cycle_days = db.Column(db.Numeric(10, 2))
    purchase_count = db.Column(db.Integer)
    reliable_cycle = db.Column(db.Boolean, default=False)
    days_since_last_purchase = db.Column(db.Integer)

    conversion_type = db.Column(db.String(20), nullable=False)
    frequency_delta_days = db.Column(db.Numeric(10, 2))   # average cycle - actual gap
    monetary_delta = db.Column(db.Numeric(12, 2))         # sale - average ticket
    monetary_delta_percent = db.Column(db.Numeric(10, 2))

    created_at = db.Column(db.DateTime, default=utcnow)

    interaction = db.relationship('Interaction', backref=db.backref('conversions', lazy='dynamic'))
    campaign = db.relationship('Campaign')

    __table_args__ = (
        db.UniqueConstraint('sale_id', 'interaction_id', name='uq_conversion_sale_interaction'),
        db.Index('ix_conversions_sale', 'sale_id'),
        db.Index('ix_conversions_interaction', 'interaction_id'),
    )

    def __repr__(self):
        return f'<CampaignConversion sale={self.sale_id} interaction={self.interaction_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'sale_id': self.sale_id,
            'interaction_id': self.interaction_id,
            'campaign_id': self.campaign_id,
            'client_id': self.client_id,
            'attribution_model': self.attribution_model,
            'attribution_weight': float(self.attribution_weight),
            'attributed_revenue': float(self.attributed_revenue),
            'sale_value': float(self.sale_value),
            'minutes_to_conversion': self.minutes_to_conversion,
            'conversion_type': self.conversion_type,
            'average_ticket': float(self.average_ticket) if self.average_ticket is not None else None,
            'average_cycle_days': float(self.average_cycle_days) if self.average_cycle_days is not None else None,
            'purchase_count': self.purchase_count,
            'reliable_cycle': self.reliable_cycle,
            'days_since_last_purchase': self.days_since_last_purchase,
            'frequency_delta_days': float(self.frequency_delta_days) if self.frequency_delta_days is not None else None,
            'monetary_delta': float(self.monetary_delta) if self.monetary_delta is not None else None,
            'monetary_delta_percent': float(self.monetary_delta_percent) if self.monetary_delta_percent is not None else None,
            'converted_at': self.converted_at.isoformat() if self.converted_at else None,
        }
