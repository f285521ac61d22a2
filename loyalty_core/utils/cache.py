"""
Cache utilities for Loyalty Core.

Provides Redis-backed caching with graceful fallback to simple in-memory caching.
Uses Flask-Caching for integration with Flask app.

Campaign definitions are the main tenant: read on every business event,
written only through campaign CRUD, so they are cached per organization with
a short TTL and dropped on every write.

Usage:
    from loyalty_core.utils.cache import cache, cache_key

    cache.set(cache_key('campaigns', org_id, 'birthday'), rules, timeout=30)

Environment Variables:
    REDIS_URL: Redis connection URL (e.g., redis://localhost:6379/0)
              Falls back to simple cache if not set or unavailable.
"""
import logging
from flask_caching import Cache

logger = logging.getLogger(__name__)

# Global cache instance - initialized in init_cache()
cache = Cache()

DEFAULT_CACHE_TIMEOUT = 300


def init_cache(app):
    """
    Initialize Flask-Caching with Redis or fallback to simple cache.

    An explicit CACHE_TYPE in the app config (NullCache in tests) wins.

    Args:
        app: Flask application instance

    Returns:
        bool: True if Redis connected, False if using fallback
    """
    if app.config.get('CACHE_TYPE'):
        app.config.setdefault('CACHE_DEFAULT_TIMEOUT', DEFAULT_CACHE_TIMEOUT)
        cache.init_app(app)
        logger.info('[Cache] Using configured cache type %s', app.config['CACHE_TYPE'])
        return False

    redis_url = app.config.get('REDIS_URL')

    if redis_url:
        try:
            # Test Redis connection before configuring
            import redis
            r = redis.from_url(redis_url, socket_connect_timeout=2)
            r.ping()

            app.config['CACHE_TYPE'] = 'RedisCache'
            app.config['CACHE_REDIS_URL'] = redis_url
            app.config['CACHE_DEFAULT_TIMEOUT'] = DEFAULT_CACHE_TIMEOUT
            app.config['CACHE_KEY_PREFIX'] = 'loyalty:'

            cache.init_app(app)
            logger.info('[Cache] Redis cache connected: %s', redis_url.split('@')[-1])
            return True

        except Exception as e:
            logger.warning('[Cache] Redis unavailable (%s), using simple cache', str(e))

    app.config['CACHE_TYPE'] = 'SimpleCache'
    app.config['CACHE_DEFAULT_TIMEOUT'] = DEFAULT_CACHE_TIMEOUT

    cache.init_app(app)
    logger.info('[Cache] Using simple in-memory cache (no Redis)')
    return False


def cache_key(*args, **kwargs):
    """
    Generate a cache key from arguments.

        key = cache_key('campaigns', 12, 'birthday')  -> 'campaigns:12:birthday'
    """
    parts = list(args)
    for k, v in sorted(kwargs.items()):
        parts.append(f'{k}={v}')
    return ':'.join(str(p) for p in parts)


def delete_many(keys):
    """Delete a batch of keys, logging instead of failing on backend errors."""
    try:
        cache.delete_many(*keys)
    except Exception as e:
        logger.warning('Cache invalidation failed: %s', e)
