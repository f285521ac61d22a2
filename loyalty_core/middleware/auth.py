"""
Request authentication decorators.

Organization-scoped endpoints identify the tenant with the
X-Organization-Id header (or an organization_id query param). Cron
endpoints are called by an external scheduler and must present the shared
CRON_SECRET in X-Cron-Secret.
"""
import hmac
from functools import wraps

from flask import current_app, g, request

from ..models.organization import Organization
from ..utils.errors import ErrorCode, bad_request, not_found, unauthorized


def require_organization(f):
    """
    Decorator to resolve the calling organization.

    Sets g.organization and g.organization_id.

    Usage:
        @require_organization
        def my_endpoint():
            service = SaleService(g.organization_id)
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw_id = request.headers.get('X-Organization-Id') or request.args.get('organization_id')
        if not raw_id:
            return unauthorized('Missing X-Organization-Id header')

        try:
            organization_id = int(raw_id)
        except (TypeError, ValueError):
            return bad_request('X-Organization-Id must be an integer', ErrorCode.INVALID_REQUEST)

        organization = Organization.query.get(organization_id)
        if not organization or not organization.is_active:
            return not_found(f'Organization {organization_id} not found')

        g.organization = organization
        g.organization_id = organization.id
        return f(*args, **kwargs)

    return decorated_function


def require_cron_secret(f):
    """Decorator for cron endpoints: X-Cron-Secret must equal CRON_SECRET."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get('CRON_SECRET') or ''
        provided = request.headers.get('X-Cron-Secret') or ''
        if not expected or not hmac.compare_digest(provided, expected):
            current_app.logger.warning(f'[Cron] Rejected call to {request.path}')
            return unauthorized('Invalid cron secret')
        return f(*args, **kwargs)

    return decorated_function
