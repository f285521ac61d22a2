"""
Tests for the messaging transport.

The HTTP session is a MagicMock; no request leaves the process.
"""
import pytest
from unittest.mock import MagicMock

import requests

from loyalty_core.config import ProductionConfig, validate_config
from loyalty_core.extensions import TRANSPORT_EXTENSION_KEY
from loyalty_core.services.delivery_transport import (
    DeliveryRequest,
    HttpDeliveryTransport,
    LoggingDeliveryTransport,
    get_transport,
)
from loyalty_core.utils.exceptions import ConfigurationError, DeliveryFailedError, DeliveryTimeoutError


def _response(status_code, json_data=None, text=''):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    if json_data is None:
        response.json.side_effect = ValueError('no json')
    else:
        response.json.return_value = json_data
    return response


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def transport(session):
    return HttpDeliveryTransport('https://gateway.test/', token='secret', timeout=5, session=session)


REQUEST = DeliveryRequest(
    interaction_id=7,
    client_id=3,
    template_id='bday_v1',
    variables={'client_name': 'Maria'},
    phone='+5511999990000',
)


class TestSend:
    """Tests for HttpDeliveryTransport.send."""

    def test_accepted(self, transport, session):
        """Test the request shape and an accepted answer."""
        session.post.return_value = _response(202, {'message_id': 'wamid-1'})

        result = transport.send(REQUEST)

        assert result.accepted is True
        assert result.provider_message_id == 'wamid-1'
        args, kwargs = session.post.call_args
        assert args[0] == 'https://gateway.test/messages'
        assert kwargs['json']['template_id'] == 'bday_v1'
        assert kwargs['json']['phone'] == '+5511999990000'
        assert kwargs['headers']['Authorization'] == 'Bearer secret'
        assert kwargs['headers']['Idempotency-Key'] == 'interaction-7'
        assert kwargs['timeout'] == 5

    def test_duplicate_is_accepted(self, transport, session):
        """Test that a 409 for a known idempotency key counts as sent."""
        session.post.return_value = _response(409, {'message_id': 'wamid-1'})

        assert transport.send(REQUEST).accepted is True

    def test_rejected(self, transport, session):
        """Test that a 4xx is a definite rejection."""
        session.post.return_value = _response(422, text='invalid phone number')

        result = transport.send(REQUEST)

        assert result.accepted is False
        assert 'invalid phone number' in result.error

    def test_server_error(self, transport, session):
        session.post.return_value = _response(503)

        with pytest.raises(DeliveryFailedError):
            transport.send(REQUEST)

    def test_timeout(self, transport, session):
        """Test that a timeout is reported as an unknown outcome."""
        session.post.side_effect = requests.Timeout('read timed out')

        with pytest.raises(DeliveryTimeoutError):
            transport.send(REQUEST)

    def test_connection_error(self, transport, session):
        session.post.side_effect = requests.ConnectionError('refused')

        with pytest.raises(DeliveryFailedError) as exc_info:
            transport.send(REQUEST)
        assert not isinstance(exc_info.value, DeliveryTimeoutError)

    def test_rate_limiter_consulted(self, session):
        limiter = MagicMock()
        session.post.return_value = _response(200, {'id': 'm-1'})
        transport = HttpDeliveryTransport('https://gateway.test', rate_limiter=limiter, session=session)

        assert transport.send(REQUEST).provider_message_id == 'm-1'
        limiter.acquire.assert_called_once()


class TestLookup:
    """Tests for HttpDeliveryTransport.lookup."""

    def test_sent(self, transport, session):
        session.get.return_value = _response(200, {'status': 'delivered', 'message_id': 'wamid-2'})

        result = transport.lookup(7)

        assert result.accepted is True
        assert result.provider_message_id == 'wamid-2'
        assert session.get.call_args[0][0] == 'https://gateway.test/messages/interaction-7'

    def test_not_found(self, transport, session):
        session.get.return_value = _response(404)

        assert transport.lookup(7).accepted is False

    def test_pending_status_is_unknown(self, transport, session):
        session.get.return_value = _response(200, {'status': 'queued'})

        assert transport.lookup(7) is None

    def test_lookup_failure_is_unknown(self, transport, session):
        session.get.side_effect = requests.ConnectionError('refused')

        assert transport.lookup(7) is None


class TestGetTransport:
    """Tests for transport construction."""

    def test_requires_base_url(self):
        with pytest.raises(ConfigurationError):
            HttpDeliveryTransport('')

    def test_logging_transport_without_gateway(self, app):
        app.extensions.pop(TRANSPORT_EXTENSION_KEY, None)

        transport = get_transport()

        assert isinstance(transport, LoggingDeliveryTransport)
        assert transport.send(REQUEST).accepted is True
        assert get_transport() is transport

    def test_http_transport_from_config(self, app):
        app.extensions.pop(TRANSPORT_EXTENSION_KEY, None)
        app.config['MESSAGING_GATEWAY_URL'] = 'https://gateway.test'
        app.config['MESSAGING_RATE_PER_SECOND'] = 20.0

        transport = get_transport()

        assert isinstance(transport, HttpDeliveryTransport)
        assert transport.rate_limiter.rate == 20.0

    def test_no_gateway_outside_debug_or_testing(self, app):
        """Test that a missing gateway fails closed instead of faking sends."""
        app.extensions.pop(TRANSPORT_EXTENSION_KEY, None)
        app.config['TESTING'] = False
        app.config['DEBUG'] = False

        with pytest.raises(ConfigurationError):
            get_transport()
        assert TRANSPORT_EXTENSION_KEY not in app.extensions

    def test_production_requires_gateway(self, monkeypatch):
        monkeypatch.setattr(ProductionConfig, '_secret_key', 'k' * 32)
        monkeypatch.setenv('CRON_SECRET', 'cron')
        monkeypatch.delenv('MESSAGING_GATEWAY_URL', raising=False)

        with pytest.raises(RuntimeError, match='MESSAGING_GATEWAY_URL'):
            validate_config('production')

        monkeypatch.setenv('MESSAGING_GATEWAY_URL', 'https://gateway.test')
        validate_config('production')
