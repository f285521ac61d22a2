"""
Organization (tenant) and Client models.
"""
from flask import current_app

from ..extensions import db
from ..utils.time_utils import utcnow


class Organization(db.Model):
    """
    A business using the loyalty platform.
    Global table - every other row is scoped to one organization.
    """
    __tablename__ = 'organizations'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)

    # Settings (JSON for flexibility): timezone, dormancy_days, ...
    settings = db.Column(db.JSON, default=dict)

    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    clients = db.relationship('Client', backref='organization', lazy='dynamic')

    def __repr__(self):
        return f'<Organization {self.id}: {self.name}>'

    @property
    def timezone(self) -> str:
        tz_name = (self.settings or {}).get('timezone')
        return tz_name or current_app.config['INTERACTIONS_TIMEZONE']

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'timezone': self.timezone,
            'is_active': self.is_active,
        }


class Client(db.Model):
    """
    A customer of an organization.

    Purchase aggregates are maintained by the sale intake so the trigger
    evaluator and attribution can read "count so far" without scanning sales.
    """
    __tablename__ = 'clients'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organizations.id'), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(30))
    email = db.Column(db.String(255))
    birthday = db.Column(db.Date)  # year is ignored

    # RFM segment, recomputed outside this service
    segment = db.Column(db.String(50), index=True)
    segment_entered_at = db.Column(db.DateTime)

    # Purchase aggregates
    purchase_count = db.Column(db.Integer, default=0, nullable=False)
    purchase_total = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    first_purchase_at = db.Column(db.DateTime)
    last_purchase_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.Index('ix_clients_org_segment', 'organization_id', 'segment'),
    )

    def __repr__(self):
        return f'<Client {self.id}: {self.name}>'

    def to_dict(self):
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'name': self.name,
            'phone': self.phone,
            'email': self.email,
            'birthday': self.birthday.isoformat() if self.birthday else None,
            'segment': self.segment,
            'segment_entered_at': self.segment_entered_at.isoformat() if self.segment_entered_at else None,
            'purchase_count': self.purchase_count,
            'purchase_total': float(self.purchase_total or 0),
            'first_purchase_at': self.first_purchase_at.isoformat() if self.first_purchase_at else None,
            'last_purchase_at': self.last_purchase_at.isoformat() if self.last_purchase_at else None,
        }
