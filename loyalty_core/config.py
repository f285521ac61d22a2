"""
Configuration management for the Loyalty Core service.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


class BaseConfig:
    """Base configuration."""
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Cache (Redis with in-memory fallback, see utils/cache.py)
    REDIS_URL = os.getenv('REDIS_URL')
    CAMPAIGN_CACHE_TIMEOUT = _env_int('CAMPAIGN_CACHE_TIMEOUT', 30)

    # Interactions are bucketed into 3-hour blocks in this timezone
    INTERACTIONS_TIMEZONE = os.getenv(
        'INTERACTIONS_TIMEZONE',
        os.getenv('INTERACTIONS_CRON_TIMEZONE', 'America/Sao_Paulo')
    )

    # Cron endpoints
    CRON_SECRET = os.getenv('CRON_SECRET', '')

    # Outbound messaging gateway
    MESSAGING_GATEWAY_URL = os.getenv('MESSAGING_GATEWAY_URL', '')
    MESSAGING_GATEWAY_TOKEN = os.getenv('MESSAGING_GATEWAY_TOKEN', '')
    MESSAGING_RATE_PER_SECOND = _env_float('MESSAGING_RATE_PER_SECOND', 5.0)
    MESSAGING_TIMEOUT_SECONDS = _env_int('MESSAGING_TIMEOUT_SECONDS', 10)

    # Dispatcher
    DISPATCH_CLAIM_TTL_SECONDS = _env_int('DISPATCH_CLAIM_TTL_SECONDS', 600)
    DISPATCH_BATCH_SIZE = _env_int('DISPATCH_BATCH_SIZE', 200)

    # Ledger
    LEDGER_MAX_RETRIES = _env_int('LEDGER_MAX_RETRIES', 3)

    # Attribution
    ATTRIBUTION_DORMANCY_DAYS = _env_int('ATTRIBUTION_DORMANCY_DAYS', 90)
    ATTRIBUTION_LATE_RATIO = _env_float('ATTRIBUTION_LATE_RATIO', 0.8)
    ATTRIBUTION_RELIABLE_CYCLE_MIN_PURCHASES = 3

    # Per-client ordered event processing
    EVENT_ROUTER_WORKERS = _env_int('EVENT_ROUTER_WORKERS', 4)


class DevelopmentConfig(BaseConfig):
    """Development configuration."""
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL',
        'sqlite:///loyalty_core_dev.db'  # SQLite fallback for local dev
    )


class ProductionConfig(BaseConfig):
    """Production configuration."""
    DEBUG = False

    _db_url = os.getenv('DATABASE_URL', '')
    if _db_url.startswith('postgres://'):
        # SQLAlchemy requires postgresql:// not postgres://
        _db_url = _db_url.replace('postgres://', 'postgresql://', 1)

    SQLALCHEMY_DATABASE_URI = _db_url

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 5,
        'pool_recycle': 300,
        'pool_pre_ping': True,  # Verify connections before using
    }

    _secret_key = os.getenv('SECRET_KEY', '')

    @classmethod
    def validate_secret_key(cls) -> str:
        """
        Validate SECRET_KEY in production environment.

        Raises:
            RuntimeError: If SECRET_KEY is missing or too short
        """
        if not cls._secret_key:
            raise RuntimeError(
                "CRITICAL: SECRET_KEY environment variable is not set!\n"
                "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )
        if len(cls._secret_key) < 32:
            raise RuntimeError(
                "CRITICAL: SECRET_KEY is too short (minimum 32 characters required)!"
            )
        return cls._secret_key

    @classmethod
    def validate_cron_secret(cls) -> str:
        """Cron endpoints stay closed in production without a secret."""
        secret = os.getenv('CRON_SECRET', '')
        if not secret:
            raise RuntimeError("CRITICAL: CRON_SECRET environment variable is not set!")
        return secret

    @classmethod
    def validate_messaging_gateway(cls) -> str:
        """Without a gateway, interactions would never leave the process."""
        url = os.getenv('MESSAGING_GATEWAY_URL', '')
        if not url:
            raise RuntimeError("CRITICAL: MESSAGING_GATEWAY_URL environment variable is not set!")
        return url

    SECRET_KEY = _secret_key


class TestingConfig(BaseConfig):
    """Testing configuration."""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    CACHE_TYPE = 'NullCache'
    CRON_SECRET = 'test-cron-secret'
    MESSAGING_RATE_PER_SECOND = 1000.0
    EVENT_ROUTER_WORKERS = 0  # run campaign side effects inline


config_map = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig
}


def get_config(config_name: str = 'development'):
    """Get configuration class by name."""
    return config_map.get(config_name, DevelopmentConfig)


def validate_config(config_name: str = 'development') -> None:
    """
    Validate configuration before app startup.

    Args:
        config_name: The configuration environment name

    Raises:
        RuntimeError: If validation fails in production
    """
    if config_name == 'production':
        ProductionConfig.validate_secret_key()
        ProductionConfig.validate_cron_secret()
        ProductionConfig.validate_messaging_gateway()
