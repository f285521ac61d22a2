"""
Cashback program, balance and ledger transaction models.

The balance row is a running total; CashbackTransaction is the append-only
ledger that justifies every change to it. Amount, type and the
before/after snapshot of a transaction never change after insert - only
status and remaining move as a lot is consumed, expires or is canceled.
"""
from decimal import Decimal
from enum import Enum

from ..extensions import db
from ..utils.time_utils import utcnow


# ==================== Enums ====================

class AmountType(str, Enum):
    """How an amount is derived from a sale."""
    FIXED = 'fixed'              # Flat amount
    PERCENTAGE = 'percentage'    # Percent of the sale value


class LedgerTransactionType(str, Enum):
    ACCUMULATE = 'accumulate'
    REDEEM = 'redeem'
    EXPIRE = 'expire'
    CANCEL = 'cancel'            # Reversal of an accumulation when its sale is canceled


class LedgerTransactionStatus(str, Enum):
    ACTIVE = 'active'
    CONSUMED = 'consumed'
    EXPIRED = 'expired'


# ==================== Models ====================

class CashbackProgram(db.Model):
    """
    Per-organization accumulation and redemption rules.

    Only one program per organization is expected to be active at a time.
    """
    __tablename__ = 'cashback_programs'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organizations.id'), nullable=False, index=True)

    title = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, default=True)

    # Accumulation
    accumulation_type = db.Column(db.String(20), default=AmountType.PERCENTAGE.value, nullable=False)
    accumulation_value = db.Column(db.Numeric(12, 2), nullable=False)
    accumulation_min_sale_value = db.Column(db.Numeric(12, 2), default=0)

    # Expiration of accumulated lots, in days
    expiry_days = db.Column(db.Integer, default=90, nullable=False)

    # Redemption cap per sale (None = capped only by balance and sale value)
    redemption_limit_type = db.Column(db.String(20))
    redemption_limit_value = db.Column(db.Numeric(12, 2))

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f'<CashbackProgram {self.id}: {self.title}>'

    def to_dict(self):
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'title': self.title,
            'is_active': self.is_active,
            'accumulation_type': self.accumulation_type,
            'accumulation_value': float(self.accumulation_value),
            'accumulation_min_sale_value': float(self.accumulation_min_sale_value or 0),
            'expiry_days': self.expiry_days,
            'redemption_limit_type': self.redemption_limit_type,
            'redemption_limit_value': float(self.redemption_limit_value) if self.redemption_limit_value is not None else None,
        }


class CashbackBalance(db.Model):
    """
    Running cashback balance for one (client, program).

    Invariant: available = accumulated_total - redeemed_total - expired_total,
    available >= 0. Written only by LedgerService.

    `version` is the optimistic concurrency column: a flush that finds the
    row at a different version raises StaleDataError.
    """
    __tablename__ = 'cashback_balances'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organizations.id'), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'), nullable=False)
    program_id = db.Column(db.Integer, db.ForeignKey('cashback_programs.id'), nullable=False)

    available = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    accumulated_total = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    redeemed_total = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    expired_total = db.Column(db.Numeric(12, 2), default=0, nullable=False)

    version = db.Column(db.Integer, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    client = db.relationship('Client', backref=db.backref('cashback_balances', lazy='dynamic'))
    program = db.relationship('CashbackProgram')

    __table_args__ = (
        db.UniqueConstraint('client_id', 'program_id', name='uq_cashback_balance_client_program'),
    )

    __mapper_args__ = {
        'version_id_col': version,
    }

    def __repr__(self):
        return f'<CashbackBalance client={self.client_id} program={self.program_id} available={self.available}>'

    def is_consistent(self) -> bool:
        expected = (
            Decimal(self.accumulated_total or 0)
            - Decimal(self.redeemed_total or 0)
            - Decimal(self.expired_total or 0)
        )
        return Decimal(self.available or 0) == expected and Decimal(self.available or 0) >= 0

    def to_dict(self):
        return {
            'client_id': self.client_id,
            'program_id': self.program_id,
            'available': float(self.available or 0),
            'accumulated_total': float(self.accumulated_total or 0),
            'redeemed_total': float(self.redeemed_total or 0),
            'expired_total': float(self.expired_total or 0),
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


class CashbackTransaction(db.Model):
    """
    Append-only ledger entry.

    ACCUMULATE rows are lots: `remaining` is decremented FIFO by redemptions
    and zeroed on expiration or cancellation. REDEEM, EXPIRE and CANCEL rows
    carry remaining = 0 and no expiration date.
    """
    __tablename__ = 'cashback_transactions'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organizations.id'), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'), nullable=False)
    program_id = db.Column(db.Integer, db.ForeignKey('cashback_programs.id'), nullable=False)

    # Origin
    sale_id = db.Column(db.Integer, db.ForeignKey('sales.id'))
    sale_value = db.Column(db.Numeric(12, 2))
    campaign_id = db.Column(db.Integer, db.ForeignKey('campaigns.id'))
    related_transaction_id = db.Column(db.Integer, db.ForeignKey('cashback_transactions.id'))

    transaction_type = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), default=LedgerTransactionStatus.ACTIVE.value, nullable=False)

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    remaining = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    balance_before = db.Column(db.Numeric(12, 2), nullable=False)
    balance_after = db.Column(db.Numeric(12, 2), nullable=False)

    expires_at = db.Column(db.DateTime)
    description = db.Column(db.String(500))
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    related_transaction = db.relationship('CashbackTransaction', remote_side=[id])

    __table_args__ = (
        db.Index(
            'ix_cashback_txn_expiration_sweep',
            'client_id', 'program_id', 'status', 'expires_at'
        ),
        db.Index('ix_cashback_txn_client_sale', 'client_id', 'sale_id'),
    )

    def __repr__(self):
        return f'<CashbackTransaction {self.id}: {self.transaction_type} {self.amount} for client {self.client_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'client_id': self.client_id,
            'program_id': self.program_id,
            'sale_id': self.sale_id,
            'campaign_id': self.campaign_id,
            'related_transaction_id': self.related_transaction_id,
            'transaction_type': self.transaction_type,
            'status': self.status,
            'amount': float(self.amount),
            'remaining': float(self.remaining or 0),
            'balance_before': float(self.balance_before),
            'balance_after': float(self.balance_after),
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'description': self.description,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
