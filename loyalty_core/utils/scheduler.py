"""
Background scheduler for automated tasks.

Handles (all times in INTERACTIONS_TIMEZONE):
- Interaction dispatch at every 3-hour block (00:00, 03:00, ... 21:00)
- Cashback expiration (daily at midnight)
- Daily tick for calendar campaigns (daily at 8 AM)
"""
import os
import logging

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler = None
_flask_app = None  # Store Flask app reference for context


def init_scheduler(app):
    """
    Initialize the background scheduler.

    Only runs in production or when ENABLE_SCHEDULER=true.
    Only the main gunicorn process should run the scheduler.
    """
    global _scheduler, _flask_app

    # Store app reference for context in job functions
    _flask_app = app

    # Don't run scheduler in testing
    if app.config.get('TESTING'):
        # Use print to avoid app context issues during validation
        print('[Scheduler] Disabled in testing mode')
        return

    # Only enable scheduler in production or when explicitly enabled
    if not (os.getenv('FLASK_ENV') == 'production' or os.getenv('ENABLE_SCHEDULER') == 'true'):
        print('[Scheduler] Disabled (set FLASK_ENV=production or ENABLE_SCHEDULER=true)')
        return

    # Prevent multiple scheduler instances (important for gunicorn workers)
    if os.getenv('SCHEDULER_RUNNING') == 'true':
        print('[Scheduler] Already running in another process')
        return

    from apscheduler.schedulers.background import BackgroundScheduler
    from apscheduler.triggers.cron import CronTrigger

    tz_name = app.config['INTERACTIONS_TIMEZONE']

    try:
        _scheduler = BackgroundScheduler(
            timezone=tz_name,
            job_defaults={
                'coalesce': True,  # Combine missed runs
                'max_instances': 1,  # Prevent concurrent runs
                'misfire_grace_time': 3600  # 1 hour grace period
            }
        )

        # Interaction dispatch - every time block
        _scheduler.add_job(
            run_interaction_dispatch,
            trigger=CronTrigger(hour='0,3,6,9,12,15,18,21', minute=0, timezone=tz_name),
            id='interaction_dispatch',
            name='Deliver due campaign interactions',
            replace_existing=True
        )

        # Cashback expiration - daily at midnight
        _scheduler.add_job(
            run_cashback_expiration,
            trigger=CronTrigger(hour=0, minute=0, timezone=tz_name),
            id='cashback_expiration',
            name='Expire overdue cashback',
            replace_existing=True
        )

        # Daily tick - 8 AM, before the 09:00 dispatch block
        _scheduler.add_job(
            run_daily_tick,
            trigger=CronTrigger(hour=8, minute=0, timezone=tz_name),
            id='daily_tick',
            name='Evaluate calendar campaigns',
            replace_existing=True
        )

        _scheduler.start()
        os.environ['SCHEDULER_RUNNING'] = 'true'

        print(f'[Scheduler] Started with 3 scheduled jobs ({tz_name}):')
        print('  - Interaction dispatch: every 3 hours from 0:00')
        print('  - Cashback expiration: Daily at 0:00')
        print('  - Daily tick: Daily at 8:00')

        # Register shutdown
        import atexit
        atexit.register(shutdown_scheduler)

    except Exception as e:
        print(f'[Scheduler] Failed to initialize: {e}')


def shutdown_scheduler():
    """Gracefully shutdown the scheduler."""
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info('[Scheduler] Shutdown complete')


def get_scheduler():
    return _scheduler


def run_interaction_dispatch():
    """
    Deliver due campaign interactions for every organization.
    Runs at each 3-hour block.
    """
    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return

    logger.info('[Scheduler] Dispatching interactions...')

    with _flask_app.app_context():
        try:
            from ..services.scheduled_tasks import scheduled_tasks_service

            result = scheduled_tasks_service.dispatch_interactions()
            logger.info(
                f"[Scheduler] Dispatch complete: {result['sent']} sent, "
                f"{result['failed']} failed, {result['unknown']} unknown"
            )
        except Exception as e:
            logger.error(f'[Scheduler] Interaction dispatch failed: {e}')


def run_cashback_expiration():
    """
    Expire overdue cashback for all organizations.
    Runs daily at midnight.
    """
    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return

    logger.info('[Scheduler] Processing cashback expirations...')

    with _flask_app.app_context():
        try:
            from ..services.scheduled_tasks import scheduled_tasks_service

            result = scheduled_tasks_service.expire_cashback()
            logger.info(
                f"[Scheduler] Cashback expiration complete: "
                f"{result['expired_entries']} lots, {result['total_expired']} expired"
            )
        except Exception as e:
            logger.error(f'[Scheduler] Cashback expiration failed: {e}')


def run_daily_tick():
    """
    Birthday, recurring, expiring-cashback and time-in-segment campaigns.
    Runs daily at 8 AM.
    """
    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return

    logger.info('[Scheduler] Running daily tick...')

    with _flask_app.app_context():
        try:
            from ..services.scheduled_tasks import scheduled_tasks_service

            result = scheduled_tasks_service.run_daily_tick()
            logger.info(
                f"[Scheduler] Daily tick complete: {result['organizations']} organizations, "
                f"{result['scheduled']} interactions scheduled"
            )
        except Exception as e:
            logger.error(f'[Scheduler] Daily tick failed: {e}')
