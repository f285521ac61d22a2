"""
Database models for Loyalty Core.
"""
from .organization import Organization, Client
from .sale import Sale, SaleStatus
from .cashback import (
    CashbackProgram,
    CashbackBalance,
    CashbackTransaction,
    AmountType,
    LedgerTransactionType,
    LedgerTransactionStatus,
)
from .campaign import (
    Campaign,
    Interaction,
    CampaignConversion,
    AttributionModel,
    DeliveryStatus,
    ConversionType,
)
from .campaign_triggers import TriggerType, RecurrenceFrequency

__all__ = [
    'Organization',
    'Client',
    'Sale',
    'SaleStatus',
    'CashbackProgram',
    'CashbackBalance',
    'CashbackTransaction',
    'AmountType',
    'LedgerTransactionType',
    'LedgerTransactionStatus',
    'Campaign',
    'Interaction',
    'CampaignConversion',
    'AttributionModel',
    'DeliveryStatus',
    'ConversionType',
    'TriggerType',
    'RecurrenceFrequency',
]
