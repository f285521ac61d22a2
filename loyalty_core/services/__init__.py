"""
Business logic services for Loyalty Core.
"""
from .ledger_service import LedgerService
from .campaign_service import CampaignService
from .trigger_evaluator import TriggerEvaluator
from .frequency_guard import FrequencyGuard
from .interaction_scheduler import InteractionScheduler
from .interaction_dispatcher import InteractionDispatcher
from .attribution_service import AttributionService
from .campaign_automation import CampaignAutomationService
from .sale_service import SaleService

__all__ = [
    'LedgerService',
    'CampaignService',
    'TriggerEvaluator',
    'FrequencyGuard',
    'InteractionScheduler',
    'InteractionDispatcher',
    'AttributionService',
    'CampaignAutomationService',
    'SaleService',
]
