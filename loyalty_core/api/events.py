"""
Business event intake.

POST /api/events is the entry point for systems that produce loyalty
events outside this service (POS integrations, the RFM segmentation job).
Events are queued on the client's router shard, so they are processed in
arrival order per client.
"""
from flask import Blueprint, g, jsonify, request

from ..middleware.auth import require_organization
from ..services.campaign_automation import (
    CampaignAutomationService,
    build_event_from_request,
    process_business_event,
)
from ..utils.errors import bad_request
from ..utils.event_router import get_event_router

events_bp = Blueprint('events', __name__)


@events_bp.route('', methods=['POST'])
@require_organization
def receive_event():
    """
    Queue a business event for campaign evaluation.

    The organization comes from X-Organization-Id; a body organization_id
    naming another organization is rejected with 403.

    Request body:
    {
        "event_type": "sale_completed",
        "client_id": 42,
        "sale_id": 981,
        "amount": "150.00",
        "purchase_count_to_date": 3
    }
    """
    data = request.get_json(silent=True)
    if not data:
        return bad_request('JSON body required')

    event = build_event_from_request(data, g.organization_id)
    future = get_event_router().submit(event.client_id, process_business_event, event)

    response = {
        'success': True,
        'event_type': event.event_type.value,
        'client_id': event.client_id,
        'queued': not future.done(),
    }
    if future.done() and future.exception() is None:
        response['result'] = future.result()
    return jsonify(response), 202


@events_bp.route('/segment-change', methods=['POST'])
@require_organization
def segment_change():
    """
    Record a client's new RFM segment and fire segment-entry campaigns.

    Request body:
    {
        "client_id": 42,
        "segment": "champions"
    }
    """
    data = request.get_json(silent=True) or {}
    client_id = data.get('client_id')
    segment = data.get('segment')
    if not client_id or not segment:
        return bad_request('client_id and segment are required')

    result = CampaignAutomationService(g.organization_id).process_segment_change(int(client_id), segment)
    return jsonify({'success': True, 'result': result})
