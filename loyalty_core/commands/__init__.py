"""
CLI Commands for Loyalty Core.

Provides Flask CLI commands for scheduled tasks.

Usage:
    flask scheduled dispatch-interactions                 # Deliver due interactions
    flask scheduled expire-cashback --organization-id 1   # Expire overdue cashback
    flask scheduled daily-tick                            # Calendar campaigns
"""
from .scheduled import init_app as init_scheduled_commands


def init_app(app):
    """Register all CLI commands with the Flask app."""
    init_scheduled_commands(app)
