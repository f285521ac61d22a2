"""
Cashback ledger API.

Balances, history and direct redemption against the ledger.
"""
from flask import Blueprint, g, jsonify, request

from ..middleware.auth import require_organization
from ..services.ledger_service import LedgerService
from ..utils.errors import bad_request

cashback_bp = Blueprint('cashback', __name__)


@cashback_bp.route('/balances/<int:client_id>/<int:program_id>', methods=['GET'])
@require_organization
def get_balance(client_id, program_id):
    """Current balance for a client in a program."""
    balance = LedgerService(g.organization_id).get_or_create_balance(client_id, program_id)
    return jsonify(balance.to_dict())


@cashback_bp.route('/expiring/<int:client_id>', methods=['GET'])
@require_organization
def get_expiring(client_id):
    """
    Lots expiring soon.

    Query params:
    - days: Look-ahead window (default: 7)
    """
    days = request.args.get('days', 7, type=int)
    lots = LedgerService(g.organization_id).get_expiring_lots(client_id, days)
    return jsonify({
        'client_id': client_id,
        'days': days,
        'lots': [lot.to_dict() for lot in lots],
        'total_expiring': float(sum(lot.remaining for lot in lots)) if lots else 0.0,
    })


@cashback_bp.route('/redeem', methods=['POST'])
@require_organization
def redeem():
    """
    Redeem cashback outside the sale flow.

    Request body:
    {
        "client_id": 42,
        "program_id": 1,
        "amount": "15.00",
        "sale_id": 981,          (optional)
        "description": "..."     (optional)
    }
    """
    data = request.get_json(silent=True)
    if not data:
        return bad_request('JSON body required')
    for field in ('client_id', 'program_id', 'amount'):
        if data.get(field) is None:
            return bad_request(f'Missing required field: {field}')
    try:
        client_id = int(data['client_id'])
        program_id = int(data['program_id'])
    except (TypeError, ValueError):
        return bad_request('client_id and program_id must be integers')

    txn = LedgerService(g.organization_id).redeem(
        client_id=client_id,
        program_id=program_id,
        sale_id=data.get('sale_id'),
        amount=data['amount'],
        description=data.get('description'),
    )
    return jsonify({'success': True, 'transaction': txn.to_dict()}), 201


@cashback_bp.route('/transactions/<int:client_id>', methods=['GET'])
@require_organization
def get_transactions(client_id):
    """
    Ledger history, newest first.

    Query params:
    - program_id: Filter by program
    - type: Filter by transaction type (accumulate, redeem, expire, cancel)
    - limit: Page size (default: 50, max: 200)
    - offset: Offset (default: 0)
    """
    history = LedgerService(g.organization_id).get_history(
        client_id,
        program_id=request.args.get('program_id', type=int),
        transaction_type=request.args.get('type'),
        limit=min(request.args.get('limit', 50, type=int), 200),
        offset=request.args.get('offset', 0, type=int),
    )
    return jsonify(history)
