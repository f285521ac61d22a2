"""
Sale intake API.

Registers sales (with optional cashback redemption) and cancellations.
Campaign side effects run after the response is built, on the client's
router shard.
"""
from datetime import datetime

from flask import Blueprint, g, jsonify, request

from ..middleware.auth import require_organization
from ..services.sale_service import SaleService
from ..utils.errors import bad_request
from ..utils.time_utils import to_utc_naive

sales_bp = Blueprint('sales', __name__)


@sales_bp.route('', methods=['POST'])
@require_organization
def create_sale():
    """
    Register a sale.

    Request body:
    {
        "client_id": 42,
        "sale_value": "120.00",
        "redeem_amount": "10.00",      (optional)
        "external_id": "POS-9911",     (optional)
        "sold_at": "2026-03-01T14:05:00-03:00"   (optional, defaults to now)
    }
    """
    data = request.get_json(silent=True)
    if not data:
        return bad_request('JSON body required')
    if not data.get('client_id'):
        return bad_request('client_id is required')
    if data.get('sale_value') is None:
        return bad_request('sale_value is required')

    sold_at = None
    if data.get('sold_at'):
        try:
            sold_at = datetime.fromisoformat(data['sold_at'])
        except (TypeError, ValueError):
            return bad_request('sold_at must be an ISO timestamp')
        if sold_at.tzinfo is not None:
            sold_at = to_utc_naive(sold_at)

    result = SaleService(g.organization_id).record_sale(
        client_id=int(data['client_id']),
        sale_value=data['sale_value'],
        redeem_amount=data.get('redeem_amount') or 0,
        external_id=data.get('external_id'),
        sold_at=sold_at,
    )

    return jsonify({'success': True, **result.to_dict()}), 201


@sales_bp.route('/<int:sale_id>/cancel', methods=['POST'])
@require_organization
def cancel_sale(sale_id):
    """
    Cancel a sale and reverse its remaining cashback.

    Request body:
    {
        "reason": "Returned by customer"
    }
    """
    data = request.get_json(silent=True) or {}
    result = SaleService(g.organization_id).cancel_sale(sale_id, reason=data.get('reason'))
    return jsonify({'success': True, **result})
