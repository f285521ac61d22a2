"""
CLI Commands for Scheduled Tasks.

These commands can be run manually or via cron jobs when the in-process
scheduler is disabled:

# Interaction dispatch (every 3 hours)
0 */3 * * * cd /app && flask scheduled dispatch-interactions

# Cashback expiration (daily at midnight)
0 0 * * * cd /app && flask scheduled expire-cashback

# Calendar campaigns (daily at 8 AM)
0 8 * * * cd /app && flask scheduled daily-tick
"""

import click
from flask.cli import with_appcontext

from ..models.organization import Organization
from ..services.scheduled_tasks import scheduled_tasks_service


@click.group('scheduled')
def scheduled_cli():
    """Scheduled task commands."""
    pass


def _check_organization(organization_id):
    if organization_id and not Organization.query.get(organization_id):
        click.echo(f"Organization {organization_id} not found")
        return False
    return True


@scheduled_cli.command('dispatch-interactions')
@click.option('--organization-id', type=int, help='Specific organization ID (or all if not specified)')
@with_appcontext
def dispatch_interactions(organization_id):
    """
    Deliver every campaign interaction that is due.

    Run this at each 3-hour block.
    """
    if not _check_organization(organization_id):
        return

    result = scheduled_tasks_service.dispatch_interactions(organization_id=organization_id)

    click.echo(f"Processed: {result['processed']} interactions")
    click.echo(f"  Sent: {result['sent']}")
    click.echo(f"  Failed: {result['failed']}")
    click.echo(f"  Unknown (will be checked next run): {result['unknown']}")
    click.echo(f"  Skipped (claimed elsewhere): {result['skipped']}")

    if result['errors']:
        click.echo(f"  Errors: {len(result['errors'])}")
        for error in result['errors'][:5]:
            click.echo(f"    - Interaction {error['interaction_id']}: {error['error']}")


@scheduled_cli.command('expire-cashback')
@click.option('--organization-id', type=int, help='Specific organization ID (or all if not specified)')
@click.option('--dry-run', is_flag=True, help='Preview without expiring cashback')
@with_appcontext
def expire_cashback(organization_id, dry_run):
    """
    Expire cashback lots that have passed their expiry date.

    Run this daily.
    """
    if not _check_organization(organization_id):
        return

    result = scheduled_tasks_service.expire_cashback(organization_id=organization_id, dry_run=dry_run)

    for detail in result['details']:
        click.echo(f"\n{'[DRY RUN] ' if dry_run else ''}Organization {detail['organization_id']}:")
        click.echo(f"  Expired: {detail['expired_entries']} lots")
        click.echo(f"  Clients affected: {detail['clients_affected']}")
        click.echo(f"  Total expired: {detail['total_expired']:.2f}")

    if result['errors']:
        click.echo(f"\nErrors: {len(result['errors'])}")

    click.echo(
        f"\n{'[DRY RUN] ' if dry_run else ''}TOTAL: {result['expired_entries']} lots, "
        f"{result['total_expired']:.2f}"
    )


@scheduled_cli.command('daily-tick')
@click.option('--organization-id', type=int, help='Specific organization ID (or all if not specified)')
@with_appcontext
def daily_tick(organization_id):
    """
    Evaluate birthday, recurring, expiring-cashback and time-in-segment campaigns.

    Run this once a day.
    """
    if not _check_organization(organization_id):
        return

    result = scheduled_tasks_service.run_daily_tick(organization_id=organization_id)

    for detail in result['details']:
        click.echo(f"\nOrganization {detail['organization_id']} ({detail['local_date']}):")
        click.echo(f"  Clients evaluated: {detail['clients']}")
        click.echo(f"  Scheduled: {detail['scheduled']}")
        click.echo(f"  Frequency capped: {detail['capped']}")

    if result['errors']:
        click.echo(f"\nErrors: {len(result['errors'])}")

    click.echo(f"\nTOTAL: {result['scheduled']} interactions scheduled")


def init_app(app):
    """Register CLI commands with the Flask app."""
    app.cli.add_command(scheduled_cli)
