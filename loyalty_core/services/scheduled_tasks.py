"""
Scheduled Tasks Service for Loyalty Core.

Handles automated background jobs:
- Interaction dispatch (every 3-hour block)
- Cashback expiration sweep (daily, midnight)
- Daily tick: birthdays, recurring schedules, expiring cashback, time in segment

These tasks can be triggered by:
1. The in-process APScheduler (utils/scheduler.py)
2. Flask CLI commands (for cron jobs)
3. The /api/cron endpoints (external cron)
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from flask import current_app

from ..extensions import db
from ..models.cashback import CashbackTransaction, LedgerTransactionStatus, LedgerTransactionType
from ..models.organization import Organization
from ..utils.time_utils import money, utcnow
from .campaign_automation import CampaignAutomationService
from .interaction_dispatcher import InteractionDispatcher
from .ledger_service import LedgerService


class ScheduledTasksService:
    """
    Service for running scheduled/background tasks across organizations.
    """

    def get_organizations(self, organization_id: int = None) -> List[Organization]:
        if organization_id:
            org = Organization.query.get(organization_id)
            return [org] if org else []
        return Organization.query.filter_by(is_active=True).order_by(Organization.id.asc()).all()

    # ==================== INTERACTION DISPATCH ====================

    def dispatch_interactions(self, organization_id: int = None, now: datetime = None) -> Dict[str, Any]:
        """
        Deliver every due campaign interaction.

        One dispatcher pass covers all organizations unless organization_id
        narrows it; the dispatcher claims rows so overlapping runs are safe.
        """
        now = now or utcnow()
        results = InteractionDispatcher().dispatch_due(now=now, organization_id=organization_id)
        self._log_scheduled_task('dispatch_interactions', organization_id, results)
        return results

    # ==================== CASHBACK EXPIRATION ====================

    def expire_cashback(self, organization_id: int = None, dry_run: bool = False,
                        now: datetime = None) -> Dict[str, Any]:
        """
        Expire every accumulation lot past its expiry date.

        Args:
            organization_id: Single organization, or every active one
            dry_run: If True, report what would expire without writing

        Returns:
            Summary across organizations plus a per-organization breakdown
        """
        now = now or utcnow()
        results = {
            'organizations': 0,
            'processed': 0,
            'expired_entries': 0,
            'clients_affected': 0,
            'total_expired': Decimal('0.00'),
            'errors': [],
            'details': [],
            'dry_run': dry_run,
            'run_date': now.isoformat(),
        }

        for org in self.get_organizations(organization_id):
            results['organizations'] += 1
            try:
                if dry_run:
                    org_results = self.get_expiring_preview(org.id, now=now)
                else:
                    org_results = LedgerService(org.id).expire_due(now=now)
            except Exception as e:
                db.session.rollback()
                current_app.logger.exception(f"[ScheduledTask] Expiration failed for org {org.id}")
                results['errors'].append({'organization_id': org.id, 'error': str(e)})
                continue

            results['processed'] += org_results.get('processed', 0)
            results['expired_entries'] += org_results.get('expired_entries', 0)
            results['clients_affected'] += org_results.get('clients_affected', 0)
            results['total_expired'] += money(org_results.get('total_expired', 0))
            results['errors'].extend(org_results.get('errors', []))
            results['details'].append({'organization_id': org.id, **{
                k: org_results.get(k) for k in ('expired_entries', 'clients_affected', 'total_expired')
            }})

        self._log_scheduled_task('expire_cashback', organization_id, results)
        return results

    def get_expiring_preview(self, organization_id: int, now: datetime = None) -> Dict[str, Any]:
        """What an expiration sweep would do right now, without doing it."""
        now = now or utcnow()
        lots = CashbackTransaction.query.filter(
            CashbackTransaction.organization_id == organization_id,
            CashbackTransaction.transaction_type == LedgerTransactionType.ACCUMULATE.value,
            CashbackTransaction.status == LedgerTransactionStatus.ACTIVE.value,
            CashbackTransaction.remaining > 0,
            CashbackTransaction.expires_at.isnot(None),
            CashbackTransaction.expires_at < now,
        ).all()
        return {
            'processed': len(lots),
            'expired_entries': len(lots),
            'clients_affected': len({lot.client_id for lot in lots}),
            'total_expired': sum((money(lot.remaining) for lot in lots), Decimal('0.00')),
            'errors': [],
        }

    # ==================== DAILY TICK ====================

    def run_daily_tick(self, organization_id: int = None, now: datetime = None) -> Dict[str, Any]:
        """Calendar-driven campaigns for every active organization."""
        now = now or utcnow()
        results = {
            'organizations': 0,
            'clients': 0,
            'scheduled': 0,
            'capped': 0,
            'errors': [],
            'details': [],
            'run_date': now.isoformat(),
        }

        for org in self.get_organizations(organization_id):
            results['organizations'] += 1
            try:
                org_results = CampaignAutomationService(org.id).run_daily_tick(now=now)
            except Exception as e:
                db.session.rollback()
                current_app.logger.exception(f"[ScheduledTask] Daily tick failed for org {org.id}")
                results['errors'].append({'organization_id': org.id, 'error': str(e)})
                continue

            results['clients'] += org_results['clients']
            results['scheduled'] += org_results['scheduled']
            results['capped'] += org_results['capped']
            results['errors'].extend(org_results['errors'])
            results['details'].append(org_results)

        self._log_scheduled_task('daily_tick', organization_id, results)
        return results

    # ==================== Helper Methods ====================

    def _log_scheduled_task(self, task_name: str, organization_id: Optional[int], results: Dict):
        """Log a scheduled task execution for audit purposes."""
        scope = f"org {organization_id}" if organization_id else "all organizations"
        current_app.logger.info(
            f"[ScheduledTask] {task_name} for {scope}: "
            f"processed={results.get('processed', results.get('organizations', 0))}, "
            f"errors={len(results.get('errors', []))}"
        )


# Singleton instance
scheduled_tasks_service = ScheduledTasksService()
