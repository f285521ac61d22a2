"""
Loyalty Core
Flask application factory
"""
import os
import logging
from flask import Flask
from flask_cors import CORS

from .extensions import db, migrate
from .config import get_config, validate_config
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def create_app(config_name: str = None, config_overrides: dict = None) -> Flask:
    """
    Application factory for creating Flask app instances.

    Args:
        config_name: Configuration environment (development, production, testing)
        config_overrides: Values applied on top of the config class (tests)

    Returns:
        Configured Flask application
    """
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    # Setup logging before anything else
    setup_logging()
    validate_config(config_name)

    app = Flask(__name__)
    app.config.from_object(get_config(config_name))
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Initialize caching (Redis with graceful fallback)
    from .utils.cache import init_cache
    init_cache(app)

    # Per-app lock registry and per-client event router
    from .utils.locks import init_locks
    from .utils.event_router import init_event_router
    init_locks(app)
    init_event_router(app)

    # Configure CORS for the API
    cors_origins = [o.strip() for o in os.getenv('CORS_ORIGINS', '').split(',') if o.strip()]
    CORS(
        app,
        resources={r'/api/*': {'origins': cors_origins or '*'}},
        allow_headers=['Content-Type', 'Authorization', 'X-Organization-Id', 'X-Cron-Secret'],
    )

    # Register blueprints
    register_blueprints(app)

    # Register CLI commands
    from .commands import init_app as init_commands
    init_commands(app)

    # Initialize background scheduler for automated tasks (production only)
    # Handles: interaction dispatch, cashback expiration, daily tick
    from .utils.scheduler import init_scheduler
    init_scheduler(app)

    # Register error handlers
    register_error_handlers(app)

    # Health check endpoint
    @app.route('/health')
    def health_check():
        return {'status': 'healthy', 'service': 'loyalty-core'}

    return app


def register_blueprints(app: Flask) -> None:
    """Register all API blueprints."""
    from .api.events import events_bp
    from .api.sales import sales_bp
    from .api.cashback import cashback_bp
    from .api.campaigns import campaigns_bp
    from .api.cron import cron_bp

    app.register_blueprint(events_bp, url_prefix='/api/events')
    app.register_blueprint(sales_bp, url_prefix='/api/sales')
    app.register_blueprint(cashback_bp, url_prefix='/api/cashback')
    app.register_blueprint(campaigns_bp, url_prefix='/api/campaigns')
    app.register_blueprint(cron_bp, url_prefix='/api/cron')


def register_error_handlers(app: Flask) -> None:
    """Register error handlers."""
    from .utils.errors import internal_error, loyalty_error_response
    from .utils.exceptions import LoyaltyError

    @app.errorhandler(LoyaltyError)
    def handle_loyalty_error(error):
        return loyalty_error_response(error)

    @app.errorhandler(400)
    def bad_request(error):
        return {'error': {'message': str(error), 'code': 'INVALID_REQUEST'}}, 400

    @app.errorhandler(404)
    def not_found(error):
        return {'error': {'message': str(error), 'code': 'NOT_FOUND'}}, 404

    @app.errorhandler(500)
    def server_error(error):
        return internal_error(details={'error': str(error)})
