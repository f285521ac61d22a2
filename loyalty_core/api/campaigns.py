"""
Campaign management API.
"""
from flask import Blueprint, g, jsonify, request

from ..middleware.auth import require_organization
from ..services.campaign_service import CampaignService
from ..utils.errors import bad_request

campaigns_bp = Blueprint('campaigns', __name__)


@campaigns_bp.route('', methods=['GET'])
@require_organization
def list_campaigns():
    """
    List campaigns.

    Query params:
    - active: Only active campaigns (default: false)
    - trigger_type: Filter by trigger type
    """
    active_only = request.args.get('active', 'false').lower() == 'true'
    campaigns = CampaignService(g.organization_id).list_campaigns(
        active_only=active_only,
        trigger_type=request.args.get('trigger_type'),
    )
    return jsonify({
        'campaigns': [c.to_dict() for c in campaigns],
        'total': len(campaigns),
    })


@campaigns_bp.route('/<int:campaign_id>', methods=['GET'])
@require_organization
def get_campaign(campaign_id):
    campaign = CampaignService(g.organization_id).get_campaign(campaign_id)
    return jsonify(campaign.to_dict())


@campaigns_bp.route('', methods=['POST'])
@require_organization
def create_campaign():
    """
    Create a campaign.

    Request body:
    {
        "title": "Welcome",
        "trigger_type": "first_purchase",
        "trigger_config": {},
        "segments": [],
        "allow_recurrence": false,
        "send_offset_value": 1,
        "send_offset_unit": "days",
        "send_time_block": "09:00",
        "template_id": "welcome_v1",
        "attribution_model": "last_touch",
        "attribution_window_days": 7,
        "reward_active": true,
        "reward_type": "fixed",
        "reward_value": "10.00"
    }
    """
    data = request.get_json(silent=True)
    if not data:
        return bad_request('JSON body required')

    campaign = CampaignService(g.organization_id).create_campaign(data)
    return jsonify({'success': True, 'campaign': campaign.to_dict()}), 201


@campaigns_bp.route('/<int:campaign_id>', methods=['PUT'])
@require_organization
def update_campaign(campaign_id):
    data = request.get_json(silent=True)
    if not data:
        return bad_request('JSON body required')

    campaign = CampaignService(g.organization_id).update_campaign(campaign_id, data)
    return jsonify({'success': True, 'campaign': campaign.to_dict()})


@campaigns_bp.route('/<int:campaign_id>/activate', methods=['POST'])
@require_organization
def activate_campaign(campaign_id):
    campaign = CampaignService(g.organization_id).set_active(campaign_id, True)
    return jsonify({'success': True, 'campaign': campaign.to_dict()})


@campaigns_bp.route('/<int:campaign_id>/deactivate', methods=['POST'])
@require_organization
def deactivate_campaign(campaign_id):
    campaign = CampaignService(g.organization_id).set_active(campaign_id, False)
    return jsonify({'success': True, 'campaign': campaign.to_dict()})
