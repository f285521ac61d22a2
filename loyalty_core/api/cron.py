"""
Cron endpoints.

For deployments that trigger jobs from an external scheduler instead of the
in-process APScheduler. Every endpoint requires X-Cron-Secret.
"""
from flask import Blueprint, jsonify, request

from ..middleware.auth import require_cron_secret
from ..services.scheduled_tasks import scheduled_tasks_service

cron_bp = Blueprint('cron', __name__)


@cron_bp.route('/process-interactions', methods=['POST'])
@require_cron_secret
def process_interactions():
    """Deliver due campaign interactions."""
    result = scheduled_tasks_service.dispatch_interactions(
        organization_id=request.args.get('organization_id', type=int)
    )
    return jsonify({
        'success': True,
        'message': f"Sent {result['sent']} of {result['processed']} interactions",
        'result': result,
    })


@cron_bp.route('/expire-cashback', methods=['POST'])
@require_cron_secret
def expire_cashback():
    """
    Expire overdue cashback lots.

    Query params:
    - dry_run: Preview only (default: false)
    - organization_id: Single organization
    """
    dry_run = request.args.get('dry_run', 'false').lower() == 'true'
    result = scheduled_tasks_service.expire_cashback(
        organization_id=request.args.get('organization_id', type=int),
        dry_run=dry_run,
    )
    return jsonify({
        'success': True,
        'message': f"Expired {result['total_expired']:.2f} from {result['clients_affected']} clients",
        'result': result,
    })


@cron_bp.route('/daily-tick', methods=['POST'])
@require_cron_secret
def daily_tick():
    """Evaluate calendar-driven campaigns."""
    result = scheduled_tasks_service.run_daily_tick(
        organization_id=request.args.get('organization_id', type=int)
    )
    return jsonify({
        'success': True,
        'message': f"Scheduled {result['scheduled']} interactions",
        'result': result,
    })
