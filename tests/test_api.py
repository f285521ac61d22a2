"""
HTTP API tests.

Requests run through the Flask test client inside the fixture's app
context, so they see the rows the fixtures created.
"""
from datetime import timedelta
from decimal import Decimal

from conftest import NOW
from loyalty_core.extensions import db
from loyalty_core.models import Interaction, Organization, Sale
from loyalty_core.services.ledger_service import LedgerService

CRON_HEADERS = {'X-Cron-Secret': 'test-cron-secret'}


def _credit(client, program, amount, days_ago=1, expiry_days=90):
    return LedgerService(client.organization_id).accumulate(
        client.id, program.id, None, Decimal(amount), expiry_days, now=NOW - timedelta(days=days_ago)
    )


class TestHealth:

    def test_health(self, http):
        response = http.get('/health')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'healthy'


class TestOrganizationAuth:
    """Tests for the organization header."""

    def test_missing_header(self, http, sample_client):
        response = http.post('/api/sales', json={'client_id': sample_client.id, 'sale_value': '10'})

        assert response.status_code == 401
        assert response.get_json()['error']['code'] == 'AUTH_REQUIRED'

    def test_malformed_header(self, http, sample_client):
        response = http.post('/api/sales', json={'client_id': sample_client.id, 'sale_value': '10'},
                             headers={'X-Organization-Id': 'acme'})

        assert response.status_code == 400

    def test_unknown_organization(self, http, sample_client):
        response = http.post('/api/sales', json={'client_id': sample_client.id, 'sale_value': '10'},
                             headers={'X-Organization-Id': '9999'})

        assert response.status_code == 404


class TestSalesAPI:
    """Tests for /api/sales."""

    def test_create_sale(self, http, org_headers, sample_client, sample_program):
        """Test registering a sale earns cashback."""
        response = http.post('/api/sales', headers=org_headers, json={
            'client_id': sample_client.id,
            'sale_value': '200.00',
            'external_id': 'PDV-77',
        })

        assert response.status_code == 201
        data = response.get_json()
        assert data['success'] is True
        assert data['sale']['value'] == 200.0
        assert data['sale']['external_id'] == 'PDV-77'
        assert data['accumulation']['amount'] == 10.0
        assert data['redemption'] is None

    def test_sold_at_is_stored_as_utc(self, http, org_headers, sample_client, sample_program):
        """Test that an offset timestamp is converted to naive UTC."""
        response = http.post('/api/sales', headers=org_headers, json={
            'client_id': sample_client.id,
            'sale_value': '50.00',
            'sold_at': '2026-03-01T14:05:00-03:00',
        })

        assert response.status_code == 201
        assert response.get_json()['sale']['sold_at'] == '2026-03-01T17:05:00'

    def test_invalid_sold_at(self, http, org_headers, sample_client):
        response = http.post('/api/sales', headers=org_headers, json={
            'client_id': sample_client.id, 'sale_value': '50.00', 'sold_at': 'yesterday'
        })

        assert response.status_code == 400

    def test_missing_fields(self, http, org_headers, sample_client):
        assert http.post('/api/sales', headers=org_headers, json={}).status_code == 400
        assert http.post('/api/sales', headers=org_headers, json={'sale_value': '10'}).status_code == 400
        assert http.post('/api/sales', headers=org_headers,
                         json={'client_id': sample_client.id}).status_code == 400

    def test_invalid_amount(self, http, org_headers, sample_client):
        response = http.post('/api/sales', headers=org_headers,
                             json={'client_id': sample_client.id, 'sale_value': '-3'})

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'INVALID_AMOUNT'

    def test_unknown_client(self, http, org_headers):
        response = http.post('/api/sales', headers=org_headers, json={'client_id': 9999, 'sale_value': '10'})

        assert response.status_code == 404
        assert response.get_json()['error']['code'] == 'CLIENT_NOT_FOUND'

    def test_insufficient_balance(self, http, org_headers, sample_client, sample_program):
        """Test that an over-redemption is a 422 and registers nothing."""
        _credit(sample_client, sample_program, '5.00')

        response = http.post('/api/sales', headers=org_headers, json={
            'client_id': sample_client.id, 'sale_value': '100.00', 'redeem_amount': '20.00'
        })

        assert response.status_code == 422
        assert response.get_json()['error']['code'] == 'INSUFFICIENT_BALANCE'
        assert Sale.query.count() == 0

    def test_redemption_limit(self, http, org_headers, sample_client, sample_program):
        sample_program.redemption_limit_type = 'fixed'
        sample_program.redemption_limit_value = Decimal('10.00')
        _credit(sample_client, sample_program, '50.00')

        response = http.post('/api/sales', headers=org_headers, json={
            'client_id': sample_client.id, 'sale_value': '100.00', 'redeem_amount': '20.00'
        })

        assert response.status_code == 422
        assert response.get_json()['error']['code'] == 'REDEMPTION_LIMIT_EXCEEDED'

    def test_cancel_sale(self, http, org_headers, sample_client, sample_program):
        """Test canceling, then canceling again."""
        sale_id = http.post('/api/sales', headers=org_headers, json={
            'client_id': sample_client.id, 'sale_value': '200.00'
        }).get_json()['sale']['id']

        response = http.post(f'/api/sales/{sale_id}/cancel', headers=org_headers, json={'reason': 'returned'})
        assert response.status_code == 200
        data = response.get_json()
        assert data['sale']['status'] == 'canceled'
        assert data['reversals'][0]['amount'] == 10.0

        again = http.post(f'/api/sales/{sale_id}/cancel', headers=org_headers)
        assert again.status_code == 409
        assert again.get_json()['error']['code'] == 'INVALID_STATUS_TRANSITION'

    def test_cancel_unknown_sale(self, http, org_headers):
        response = http.post('/api/sales/9999/cancel', headers=org_headers)

        assert response.status_code == 404
        assert response.get_json()['error']['code'] == 'SALE_NOT_FOUND'


class TestCashbackAPI:
    """Tests for /api/cashback."""

    def test_balance(self, http, org_headers, sample_client, sample_program):
        _credit(sample_client, sample_program, '12.50')

        response = http.get(f'/api/cashback/balances/{sample_client.id}/{sample_program.id}', headers=org_headers)

        assert response.status_code == 200
        assert response.get_json()['available'] == 12.5

    def test_balance_created_at_zero(self, http, org_headers, sample_client, sample_program):
        response = http.get(f'/api/cashback/balances/{sample_client.id}/{sample_program.id}', headers=org_headers)

        assert response.status_code == 200
        assert response.get_json()['available'] == 0.0

    def test_balance_unknown_program(self, http, org_headers, sample_client):
        response = http.get(f'/api/cashback/balances/{sample_client.id}/9999', headers=org_headers)

        assert response.status_code == 404

    def test_redeem(self, http, org_headers, sample_client, sample_program):
        _credit(sample_client, sample_program, '30.00')

        response = http.post('/api/cashback/redeem', headers=org_headers, json={
            'client_id': sample_client.id, 'program_id': sample_program.id, 'amount': '12.00'
        })

        assert response.status_code == 201
        txn = response.get_json()['transaction']
        assert txn['transaction_type'] == 'redeem'
        assert txn['balance_after'] == 18.0

    def test_redeem_insufficient(self, http, org_headers, sample_client, sample_program):
        response = http.post('/api/cashback/redeem', headers=org_headers, json={
            'client_id': sample_client.id, 'program_id': sample_program.id, 'amount': '12.00'
        })

        assert response.status_code == 422

    def test_redeem_missing_field(self, http, org_headers, sample_client):
        response = http.post('/api/cashback/redeem', headers=org_headers, json={'client_id': sample_client.id})

        assert response.status_code == 400

    def test_redeem_non_numeric_ids(self, http, org_headers, sample_client, sample_program):
        response = http.post('/api/cashback/redeem', headers=org_headers, json={
            'client_id': 'maria', 'program_id': sample_program.id, 'amount': '1.00'
        })

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'INVALID_REQUEST'

    def test_campaign_with_nan_threshold(self, http, org_headers):
        response = http.post('/api/campaigns', headers=org_headers, json={
            'title': 'Big spenders',
            'trigger_type': 'purchase_value_threshold',
            'trigger_config': {'threshold': 'NaN'},
        })

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'INVALID_THRESHOLD'

    def test_transactions(self, http, org_headers, sample_client, sample_program):
        _credit(sample_client, sample_program, '10.00', days_ago=3)
        _credit(sample_client, sample_program, '20.00', days_ago=1)

        response = http.get(f'/api/cashback/transactions/{sample_client.id}?limit=1', headers=org_headers)

        data = response.get_json()
        assert data['total'] == 2
        assert data['has_more'] is True
        assert data['transactions'][0]['amount'] == 20.0

    def test_expiring(self, http, org_headers, sample_client, sample_program):
        _credit(sample_client, sample_program, '8.00', days_ago=0, expiry_days=3)

        response = http.get(f'/api/cashback/expiring/{sample_client.id}?days=7', headers=org_headers)

        assert response.status_code == 200
        assert response.get_json()['days'] == 7


class TestCampaignsAPI:
    """Tests for /api/campaigns."""

    def test_create_and_get(self, http, org_headers):
        response = http.post('/api/campaigns', headers=org_headers, json={
            'title': 'Welcome',
            'trigger_type': 'first_purchase',
            'send_offset_value': 1,
            'send_time_block': '09:00',
        })

        assert response.status_code == 201
        campaign = response.get_json()['campaign']
        assert campaign['send_time_block'] == '09:00'

        fetched = http.get(f"/api/campaigns/{campaign['id']}", headers=org_headers)
        assert fetched.get_json()['title'] == 'Welcome'

    def test_create_invalid(self, http, org_headers):
        response = http.post('/api/campaigns', headers=org_headers,
                             json={'title': 'Odd', 'trigger_type': 'anniversary'})

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'INVALID_TRIGGER_TYPE'

    def test_create_without_body(self, http, org_headers):
        assert http.post('/api/campaigns', headers=org_headers).status_code == 400

    def test_list_update_and_deactivate(self, http, org_headers, make_campaign):
        campaign = make_campaign('birthday')

        updated = http.put(f'/api/campaigns/{campaign.id}', headers=org_headers, json={'title': 'Parabens'})
        assert updated.get_json()['campaign']['title'] == 'Parabens'

        http.post(f'/api/campaigns/{campaign.id}/deactivate', headers=org_headers)
        assert http.get('/api/campaigns?active=true', headers=org_headers).get_json()['total'] == 0

        http.post(f'/api/campaigns/{campaign.id}/activate', headers=org_headers)
        assert http.get('/api/campaigns?active=true', headers=org_headers).get_json()['total'] == 1

    def test_unknown_campaign(self, http, org_headers):
        response = http.get('/api/campaigns/9999', headers=org_headers)

        assert response.status_code == 404
        assert response.get_json()['error']['code'] == 'CAMPAIGN_NOT_FOUND'


class TestEventsAPI:
    """Tests for /api/events."""

    def test_sale_event(self, http, org_headers, sample_client, make_campaign):
        """Test that an inbound event is processed (inline in tests)."""
        make_campaign('purchase_count', {'target_count': 3}, send_offset_value=1)

        response = http.post('/api/events', headers=org_headers, json={
            'event_type': 'sale_completed',
            'client_id': sample_client.id,
            'amount': '40.00',
            'purchase_count_to_date': 3,
        })

        assert response.status_code == 202
        data = response.get_json()
        assert data['queued'] is False
        assert data['result']['scheduled'] == 1

    def test_requires_organization_header(self, http, sample_client):
        response = http.post('/api/events', json={
            'event_type': 'sale_completed',
            'organization_id': sample_client.organization_id,
            'client_id': sample_client.id,
            'amount': '40.00',
        })

        assert response.status_code == 401
        assert Interaction.query.count() == 0

    def test_body_cannot_name_another_organization(self, http, sample_client, make_campaign):
        """Test that the header, not the body, decides the tenant."""
        make_campaign('new_purchase', send_offset_value=1)
        caller = Organization(name='Outra Loja', settings={}, is_active=True)
        db.session.add(caller)
        db.session.commit()

        response = http.post('/api/events', headers={'X-Organization-Id': str(caller.id)}, json={
            'event_type': 'sale_completed',
            'organization_id': sample_client.organization_id,
            'client_id': sample_client.id,
            'amount': '40.00',
        })

        assert response.status_code == 403
        assert response.get_json()['error']['code'] == 'AUTHORIZATION_ERROR'
        assert Interaction.query.count() == 0

    def test_client_of_another_organization(self, http, sample_client):
        caller = Organization(name='Outra Loja', settings={}, is_active=True)
        db.session.add(caller)
        db.session.commit()

        response = http.post('/api/events', headers={'X-Organization-Id': str(caller.id)}, json={
            'event_type': 'sale_completed',
            'client_id': sample_client.id,
            'amount': '40.00',
        })

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'INVALID_CLIENT_ID'

    def test_invalid_event(self, http, org_headers, sample_client):
        response = http.post('/api/events', headers=org_headers, json={
            'event_type': 'refund',
            'client_id': sample_client.id,
        })

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'INVALID_EVENT_TYPE'

    def test_empty_body(self, http, org_headers):
        assert http.post('/api/events', headers=org_headers).status_code == 400

    def test_segment_change(self, http, org_headers, sample_client, make_campaign):
        make_campaign('segment_entry', {'segments': ['at_risk']}, send_offset_value=1)

        response = http.post('/api/events/segment-change', headers=org_headers, json={
            'client_id': sample_client.id, 'segment': 'at_risk'
        })

        assert response.status_code == 200
        assert response.get_json()['result']['scheduled'] == 1

    def test_segment_change_requires_fields(self, http, org_headers, sample_client):
        response = http.post('/api/events/segment-change', headers=org_headers,
                             json={'client_id': sample_client.id})

        assert response.status_code == 400


class TestCronAPI:
    """Tests for /api/cron."""

    def test_requires_secret(self, http):
        assert http.post('/api/cron/process-interactions').status_code == 401
        assert http.post('/api/cron/daily-tick', headers={'X-Cron-Secret': 'wrong'}).status_code == 401

    def test_process_interactions(self, http, sample_client, make_campaign, make_interaction, mock_transport):
        campaign = make_campaign('birthday')
        interaction = make_interaction(sample_client, campaign, due_at=NOW)

        response = http.post('/api/cron/process-interactions', headers=CRON_HEADERS)

        assert response.status_code == 200
        assert response.get_json()['result']['sent'] == 1
        assert Interaction.query.get(interaction.id).executed_at is not None

    def test_expire_cashback_dry_run(self, http, sample_client, sample_program):
        lot = _credit(sample_client, sample_program, '10.00', days_ago=100)

        response = http.post('/api/cron/expire-cashback?dry_run=true', headers=CRON_HEADERS)

        assert response.status_code == 200
        result = response.get_json()['result']
        assert result['dry_run'] is True
        assert result['expired_entries'] == 1
        assert lot.status == 'active'

    def test_expire_cashback(self, http, sample_client, sample_program):
        lot = _credit(sample_client, sample_program, '10.00', days_ago=100)

        response = http.post('/api/cron/expire-cashback', headers=CRON_HEADERS)

        assert response.status_code == 200
        assert response.get_json()['result']['clients_affected'] == 1
        assert lot.status == 'expired'

    def test_daily_tick(self, http, sample_organization):
        response = http.post('/api/cron/daily-tick', headers=CRON_HEADERS)

        assert response.status_code == 200
        assert response.get_json()['result']['organizations'] == 1
