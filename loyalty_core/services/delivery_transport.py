"""
Outbound messaging transport.

The dispatcher hands each due interaction to a DeliveryTransport. The HTTP
implementation posts to the messaging gateway; the interaction id travels as
the Idempotency-Key so a resend after a timeout can be deduplicated by the
gateway, and lookup() lets the dispatcher ask whether a timed-out send
actually went out before trying again.

Configuration:
    MESSAGING_GATEWAY_URL: base URL of the gateway (POST {url}/messages)
    MESSAGING_GATEWAY_TOKEN: bearer token
    MESSAGING_TIMEOUT_SECONDS: per-request timeout
    MESSAGING_RATE_PER_SECOND: shared send rate for the transport instance
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests
from flask import current_app

from ..extensions import TRANSPORT_EXTENSION_KEY
from ..utils.exceptions import ConfigurationError, DeliveryFailedError, DeliveryTimeoutError
from ..utils.logging_config import get_logger
from ..utils.rate_limit import TokenBucketRateLimiter

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeliveryRequest:
    interaction_id: int
    client_id: int
    template_id: Optional[str]
    variables: Dict[str, Any] = field(default_factory=dict)
    phone: Optional[str] = None


@dataclass(frozen=True)
class DeliveryResult:
    accepted: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class DeliveryTransport:
    """Interface every transport implements."""

    def send(self, request: DeliveryRequest) -> DeliveryResult:
        """
        Deliver one message.

        Returns a rejected DeliveryResult for definite failures.

        Raises:
            DeliveryTimeoutError: no answer; the message may have been sent
            DeliveryFailedError: transport-level failure before a definite answer
        """
        raise NotImplementedError

    def lookup(self, interaction_id: int) -> Optional[DeliveryResult]:
        """Provider-side status of an earlier send, or None when unknown."""
        return None


class HttpDeliveryTransport(DeliveryTransport):
    """
    JSON over HTTP to the messaging gateway.

    Usage:
        transport = HttpDeliveryTransport.from_config(app.config)
        result = transport.send(DeliveryRequest(interaction_id=1, client_id=2, template_id='bday'))
    """

    def __init__(
        self,
        base_url: str,
        token: str = None,
        timeout: float = 10,
        rate_limiter: TokenBucketRateLimiter = None,
        session: requests.Session = None
    ):
        if not base_url:
            raise ConfigurationError('MESSAGING_GATEWAY_URL is not configured')
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self.rate_limiter = rate_limiter
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> 'HttpDeliveryTransport':
        return cls(
            base_url=config.get('MESSAGING_GATEWAY_URL'),
            token=config.get('MESSAGING_GATEWAY_TOKEN'),
            timeout=config.get('MESSAGING_TIMEOUT_SECONDS', 10),
            rate_limiter=TokenBucketRateLimiter(config.get('MESSAGING_RATE_PER_SECOND', 5.0)),
        )

    def _get_headers(self, interaction_id: int = None) -> Dict[str, str]:
        headers = {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        if interaction_id is not None:
            headers['Idempotency-Key'] = f'interaction-{interaction_id}'
        return headers

    def send(self, request: DeliveryRequest) -> DeliveryResult:
        if self.rate_limiter:
            self.rate_limiter.acquire()

        payload = {
            'interaction_id': request.interaction_id,
            'client_id': request.client_id,
            'template_id': request.template_id,
            'variables': request.variables,
        }
        if request.phone:
            payload['phone'] = request.phone

        try:
            response = self.session.post(
                f'{self.base_url}/messages',
                json=payload,
                headers=self._get_headers(request.interaction_id),
                timeout=self.timeout
            )
        except requests.Timeout as e:
            raise DeliveryTimeoutError(
                f'Gateway timed out for interaction {request.interaction_id}', e
            )
        except requests.RequestException as e:
            raise DeliveryFailedError(
                f'Gateway request failed for interaction {request.interaction_id}: {e}', e
            )

        if response.status_code in (200, 201, 202):
            data = self._json(response)
            return DeliveryResult(accepted=True, provider_message_id=data.get('message_id') or data.get('id'))

        if response.status_code == 409:
            # Gateway already has this idempotency key
            data = self._json(response)
            return DeliveryResult(accepted=True, provider_message_id=data.get('message_id'))

        if response.status_code >= 500:
            raise DeliveryFailedError(
                f'Gateway error {response.status_code} for interaction {request.interaction_id}'
            )

        return DeliveryResult(
            accepted=False,
            error=f'Gateway rejected message ({response.status_code}): {response.text[:200]}'
        )

    def lookup(self, interaction_id: int) -> Optional[DeliveryResult]:
        try:
            response = self.session.get(
                f'{self.base_url}/messages/interaction-{interaction_id}',
                headers=self._get_headers(),
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.warning('[Transport] Status lookup failed for interaction %s: %s', interaction_id, e)
            return None

        if response.status_code == 404:
            return DeliveryResult(accepted=False, error='not found at gateway')
        if response.status_code != 200:
            return None

        data = self._json(response)
        if data.get('status') in ('accepted', 'sent', 'delivered', 'read'):
            return DeliveryResult(accepted=True, provider_message_id=data.get('message_id'))
        if data.get('status') in ('failed', 'rejected'):
            return DeliveryResult(accepted=False, error=data.get('error') or data.get('status'))
        return None

    @staticmethod
    def _json(response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


class LoggingDeliveryTransport(DeliveryTransport):
    """
    Accepts everything and only logs.

    Development and test only: get_transport refuses to fall back to it
    anywhere else, since its sends never reach a client.
    """

    def send(self, request: DeliveryRequest) -> DeliveryResult:
        logger.info(
            '[Transport] (no gateway) interaction %s client %s template %s',
            request.interaction_id, request.client_id, request.template_id
        )
        return DeliveryResult(accepted=True, provider_message_id=f'local-{request.interaction_id}')


def get_transport(app=None) -> DeliveryTransport:
    """
    The app's transport, built once and kept in app.extensions.

    Tests replace it with app.extensions['loyalty_core.transport'] = MagicMock(...).

    Raises:
        ConfigurationError: no MESSAGING_GATEWAY_URL outside DEBUG/TESTING
    """
    app = app or current_app._get_current_object()
    transport = app.extensions.get(TRANSPORT_EXTENSION_KEY)
    if transport is None:
        if app.config.get('MESSAGING_GATEWAY_URL'):
            transport = HttpDeliveryTransport.from_config(app.config)
        elif app.config.get('DEBUG') or app.config.get('TESTING'):
            transport = LoggingDeliveryTransport()
        else:
            raise ConfigurationError('MESSAGING_GATEWAY_URL is not set; refusing to deliver interactions')
        app.extensions[TRANSPORT_EXTENSION_KEY] = transport
    return transport
