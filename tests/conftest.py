"""
Shared fixtures.

The app fixture keeps one application context pushed for the whole test, so
fixtures, services and test-client requests all share one session over the
same in-memory SQLite database.
"""
import pytest
from datetime import date, datetime
from decimal import Decimal
from unittest.mock import MagicMock

from loyalty_core import create_app
from loyalty_core.extensions import TRANSPORT_EXTENSION_KEY, db
from loyalty_core.models import CashbackProgram, Client, Interaction, Organization
from loyalty_core.services.delivery_transport import DeliveryResult, DeliveryTransport

# Monday 2026-03-02 15:00 UTC = 12:00 in America/Sao_Paulo
NOW = datetime(2026, 3, 2, 15, 0)


@pytest.fixture
def app():
    """Create test application."""
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def http(app):
    return app.test_client()


@pytest.fixture
def sample_organization(app):
    org = Organization(
        name='Padaria Central',
        settings={'timezone': 'America/Sao_Paulo'},
        is_active=True
    )
    db.session.add(org)
    db.session.commit()
    return org


@pytest.fixture
def org_headers(sample_organization):
    return {'X-Organization-Id': str(sample_organization.id)}


@pytest.fixture
def sample_client(app, sample_organization):
    client = Client(
        organization_id=sample_organization.id,
        name='Maria Silva',
        phone='+5511999990000',
        email='maria@example.com',
        birthday=date(1990, 3, 2),
        segment='loyal',
        segment_entered_at=datetime(2026, 1, 1, 12, 0),
        purchase_count=0,
        purchase_total=Decimal('0.00'),
    )
    db.session.add(client)
    db.session.commit()
    return client


@pytest.fixture
def make_client(app, sample_organization):
    """Factory for extra clients in the sample organization."""
    def _make(name='Joao Souza', **fields):
        fields.setdefault('organization_id', sample_organization.id)
        fields.setdefault('purchase_count', 0)
        fields.setdefault('purchase_total', Decimal('0.00'))
        client = Client(name=name, **fields)
        db.session.add(client)
        db.session.commit()
        return client
    return _make


@pytest.fixture
def sample_program(app, sample_organization):
    """5% cashback, 90-day expiry, no redemption cap."""
    program = CashbackProgram(
        organization_id=sample_organization.id,
        title='Cashback 5%',
        is_active=True,
        accumulation_type='percentage',
        accumulation_value=Decimal('5.00'),
        accumulation_min_sale_value=Decimal('0.00'),
        expiry_days=90,
    )
    db.session.add(program)
    db.session.commit()
    return program


@pytest.fixture
def make_campaign(app, sample_organization):
    """Factory creating campaigns through CampaignService."""
    from loyalty_core.services.campaign_service import CampaignService

    def _make(trigger_type, trigger_config=None, **fields):
        data = {
            'title': fields.pop('title', f'{trigger_type} campaign'),
            'trigger_type': trigger_type,
            'trigger_config': trigger_config or {},
            'template_id': fields.pop('template_id', f'{trigger_type}_v1'),
        }
        data.update(fields)
        return CampaignService(sample_organization.id).create_campaign(data)
    return _make


@pytest.fixture
def make_interaction(app, sample_organization):
    """Factory for interactions created at a given time, optionally already sent."""
    def _make(client, campaign, created_at=NOW, due_at=None, executed_at=None, metadata_json=None, **fields):
        interaction = Interaction(
            organization_id=sample_organization.id,
            client_id=client.id,
            campaign_id=campaign.id if campaign is not None else None,
            title=campaign.title if campaign is not None else 'Manual touch',
            scheduled_date=(due_at or created_at).date(),
            time_block='12:00',
            due_at=due_at or created_at,
            executed_at=executed_at,
            delivery_status='sent' if executed_at else 'pending',
            delivery_attempts=1 if executed_at else 0,
            metadata_json=metadata_json or {},
            created_at=created_at,
            **fields
        )
        db.session.add(interaction)
        db.session.commit()
        return interaction
    return _make


@pytest.fixture
def mock_transport(app):
    """Transport double installed as the app's transport."""
    transport = MagicMock(spec=DeliveryTransport)
    transport.send.return_value = DeliveryResult(accepted=True, provider_message_id='msg-1')
    transport.lookup.return_value = None
    app.extensions[TRANSPORT_EXTENSION_KEY] = transport
    return transport
