"""
Interaction Dispatcher.

Delivers campaign interactions whose due time has passed. Per interaction:

1. Claim it with a conditional UPDATE (still unexecuted, no live claim) and
   commit, so two dispatcher runs never send the same row concurrently.
2. If the previous attempt timed out (UNKNOWN), ask the transport whether
   the message went out before sending again.
3. Send with no database transaction open.
4. Record the outcome: SENT sets executed_at; FAILED and UNKNOWN leave it
   null so the next run retries. A claim older than DISPATCH_CLAIM_TTL_SECONDS
   is treated as abandoned (worker died mid-send).

Delivery is at-least-once; the interaction id is the idempotency key.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import or_

from ..extensions import db
from ..models.campaign import Campaign, DeliveryStatus, Interaction
from ..models.organization import Client
from ..utils.exceptions import DeliveryFailedError, DeliveryTimeoutError
from ..utils.time_utils import utcnow
from .delivery_transport import DeliveryRequest, DeliveryResult, DeliveryTransport, get_transport


class InteractionDispatcher:
    """
    Usage:
        dispatcher = InteractionDispatcher()
        results = dispatcher.dispatch_due()
    """

    def __init__(self, transport: DeliveryTransport = None, claim_ttl_seconds: int = None, batch_size: int = None):
        self.transport = transport or get_transport()
        self.claim_ttl = timedelta(seconds=(
            claim_ttl_seconds if claim_ttl_seconds is not None
            else current_app.config.get('DISPATCH_CLAIM_TTL_SECONDS', 600)
        ))
        self.batch_size = batch_size or current_app.config.get('DISPATCH_BATCH_SIZE', 200)

    # ==================== Batch ====================

    def dispatch_due(self, now: datetime = None, organization_id: int = None, limit: int = None) -> Dict[str, Any]:
        """
        Deliver every due, unexecuted campaign interaction.

        Returns:
            Summary dict: processed, sent, failed, unknown, skipped, errors
        """
        now = now or utcnow()
        results = {
            'processed': 0,
            'sent': 0,
            'failed': 0,
            'unknown': 0,
            'skipped': 0,
            'errors': [],
            'run_at': now.isoformat(),
        }

        query = Interaction.query.with_entities(Interaction.id).filter(
            Interaction.campaign_id.isnot(None),
            Interaction.executed_at.is_(None),
            Interaction.due_at <= now,
            or_(Interaction.claimed_at.is_(None), Interaction.claimed_at < now - self.claim_ttl),
        )
        if organization_id:
            query = query.filter(Interaction.organization_id == organization_id)
        interaction_ids: List[int] = [row[0] for row in query.order_by(
            Interaction.due_at.asc(),
            Interaction.id.asc()
        ).limit(limit or self.batch_size).all()]
        db.session.commit()

        for interaction_id in interaction_ids:
            results['processed'] += 1
            try:
                status = self._deliver(interaction_id, now)
            except Exception as e:
                db.session.rollback()
                results['failed'] += 1
                results['errors'].append({'interaction_id': interaction_id, 'error': str(e)})
                current_app.logger.exception(f"[Dispatcher] Unexpected error on interaction {interaction_id}")
                self._release(interaction_id, DeliveryStatus.FAILED, str(e))
                continue

            if status is None:
                results['skipped'] += 1
            elif status == DeliveryStatus.SENT:
                results['sent'] += 1
            elif status == DeliveryStatus.UNKNOWN:
                results['unknown'] += 1
            else:
                results['failed'] += 1

        if results['processed']:
            current_app.logger.info(
                f"[Dispatcher] Processed {results['processed']} interactions: "
                f"{results['sent']} sent, {results['failed']} failed, {results['unknown']} unknown"
            )
        return results

    def deliver_now(self, interaction_id: int, now: datetime = None) -> Optional[DeliveryStatus]:
        """Immediate path for zero-offset campaigns; same claim/send/record steps."""
        now = now or utcnow()
        try:
            return self._deliver(interaction_id, now)
        except Exception as e:
            db.session.rollback()
            current_app.logger.exception(f"[Dispatcher] Immediate delivery of interaction {interaction_id} failed")
            self._release(interaction_id, DeliveryStatus.FAILED, str(e))
            return DeliveryStatus.FAILED

    # ==================== Steps ====================

    def _deliver(self, interaction_id: int, now: datetime) -> Optional[DeliveryStatus]:
        """Run one interaction through claim, send and record. None if skipped."""
        if not self._claim(interaction_id, now):
            return None

        interaction = Interaction.query.filter_by(id=interaction_id).populate_existing().first()
        previous_status = interaction.delivery_status
        request = self._build_request(interaction)
        interaction.delivery_status = DeliveryStatus.SENDING.value
        db.session.commit()

        if previous_status == DeliveryStatus.UNKNOWN.value:
            confirmed = self.transport.lookup(interaction_id)
            if confirmed is not None and confirmed.accepted:
                current_app.logger.info(
                    f"[Dispatcher] Interaction {interaction_id} confirmed sent by provider, not resending"
                )
                return self._record(interaction_id, confirmed, now)

        try:
            result = self.transport.send(request)
        except DeliveryTimeoutError as e:
            current_app.logger.warning(
                f"[Dispatcher] Delivery of interaction {interaction_id} timed out: {e.message}"
            )
            self._release(interaction_id, DeliveryStatus.UNKNOWN, e.message)
            return DeliveryStatus.UNKNOWN
        except DeliveryFailedError as e:
            current_app.logger.warning(
                f"[Dispatcher] Delivery of interaction {interaction_id} failed: {e.message}"
            )
            self._release(interaction_id, DeliveryStatus.FAILED, e.message)
            return DeliveryStatus.FAILED

        return self._record(interaction_id, result, now)

    def _claim(self, interaction_id: int, now: datetime) -> bool:
        claimed = Interaction.query.filter(
            Interaction.id == interaction_id,
            Interaction.executed_at.is_(None),
            or_(Interaction.claimed_at.is_(None), Interaction.claimed_at < now - self.claim_ttl),
        ).update({
            Interaction.claimed_at: now,
            Interaction.delivery_attempts: Interaction.delivery_attempts + 1,
        }, synchronize_session=False)
        db.session.commit()
        return claimed == 1

    def _record(self, interaction_id: int, result: DeliveryResult, now: datetime) -> DeliveryStatus:
        if not result.accepted:
            current_app.logger.warning(
                f"[Dispatcher] Interaction {interaction_id} rejected by transport: {result.error}"
            )
            self._release(interaction_id, DeliveryStatus.FAILED, result.error)
            return DeliveryStatus.FAILED

        Interaction.query.filter(
            Interaction.id == interaction_id,
            Interaction.executed_at.is_(None),
        ).update({
            Interaction.executed_at: now,
            Interaction.delivery_status: DeliveryStatus.SENT.value,
            Interaction.provider_message_id: result.provider_message_id,
            Interaction.delivery_error: None,
            Interaction.claimed_at: None,
        }, synchronize_session=False)
        db.session.commit()
        return DeliveryStatus.SENT

    def _release(self, interaction_id: int, status: DeliveryStatus, error: Optional[str]) -> None:
        """Leave the interaction unexecuted, unclaimed and marked with why."""
        Interaction.query.filter(
            Interaction.id == interaction_id,
            Interaction.executed_at.is_(None),
        ).update({
            Interaction.delivery_status: status.value,
            Interaction.delivery_error: (error or '')[:500],
            Interaction.claimed_at: None,
        }, synchronize_session=False)
        db.session.commit()

    @staticmethod
    def _build_request(interaction: Interaction) -> DeliveryRequest:
        campaign = Campaign.query.get(interaction.campaign_id) if interaction.campaign_id else None
        client = Client.query.get(interaction.client_id)
        variables = {
            'client_name': client.name if client else None,
            'campaign_title': campaign.title if campaign else interaction.title,
        }
        variables.update(interaction.metadata_json or {})
        return DeliveryRequest(
            interaction_id=interaction.id,
            client_id=interaction.client_id,
            template_id=campaign.template_id if campaign else None,
            variables=variables,
            phone=client.phone if client else None,
        )
