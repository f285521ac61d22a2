"""
Request middleware for Loyalty Core.
"""
from .auth import require_cron_secret, require_organization

__all__ = ['require_cron_secret', 'require_organization']
