"""
Sale model.
"""
from enum import Enum

from ..extensions import db
from ..utils.time_utils import utcnow


class SaleStatus(str, Enum):
    VALID = 'valid'
    CANCELED = 'canceled'


class Sale(db.Model):
    """A completed purchase registered for a client."""
    __tablename__ = 'sales'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organizations.id'), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'), nullable=False)

    external_id = db.Column(db.String(100))  # POS / e-commerce order reference
    value = db.Column(db.Numeric(12, 2), nullable=False)
    cashback_redeemed = db.Column(db.Numeric(12, 2), default=0)

    status = db.Column(db.String(20), default=SaleStatus.VALID.value, nullable=False)
    canceled_at = db.Column(db.DateTime)
    cancel_reason = db.Column(db.String(255))

    sold_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    client = db.relationship('Client', backref=db.backref('sales', lazy='dynamic'))

    __table_args__ = (
        db.Index('ix_sales_client_sold_at', 'client_id', 'sold_at'),
    )

    def __repr__(self):
        return f'<Sale {self.id}: {self.value} for client {self.client_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'client_id': self.client_id,
            'external_id': self.external_id,
            'value': float(self.value),
            'cashback_redeemed': float(self.cashback_redeemed or 0),
            'status': self.status,
            'sold_at': self.sold_at.isoformat() if self.sold_at else None,
        }
