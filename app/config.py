"""
Configuration classes for the Overlay backend.
Supports Development, Testing, and Production environments.
"""
import os
from datetime import timedelta


class Config:
    """Base configuration with default settings."""

    # Security - SECRET_KEY is validated in production config
    # WARNING: Never use the fallback key in production!
    _secret_key = os.environ.get('SECRET_KEY')
    if not _secret_key:
        import warnings
        warnings.warn(
            "SECRET_KEY not set in environment. Using insecure default key. "
            "Set SECRET_KEY environment variable for production!",
            UserWarning
        )
        _secret_key = 'dev-secret-key-change-in-production'
    SECRET_KEY = _secret_key
    WTF_CSRF_ENABLED = True
    WTF_CSRF_TIME_LIMIT = 3600  # 1 hour

    # Session (holds the download-page CSRF token)
    PERMANENT_SESSION_LIFETIME = timedelta(days=7)
    SESSION_COOKIE_SECURE = os.environ.get('FLASK_ENV') == 'production'
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # Database
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # Engine options: PostgreSQL-specific settings only when not using SQLite
    SQLALCHEMY_ENGINE_OPTIONS = (
        {}
        if os.environ.get('DATABASE_URL', 'sqlite').startswith('sqlite')
        else {
            'pool_pre_ping': True,
            'pool_recycle': 300,
        }
    )

    # Endpoint rate limiting (Flask-Limiter)
    RATELIMIT_STORAGE_URL = 'memory://'
    RATELIMIT_DEFAULT = os.environ.get('RATE_LIMIT_GLOBAL', '100/minute')
    RATELIMIT_HEADERS_ENABLED = True

    # JWT (separate key for API tokens; falls back to SECRET_KEY if not set)
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY')
    JWT_EXPIRES_MINUTES = int(os.environ.get('JWT_EXPIRES_MINUTES', 60 * 24))

    # Stripe
    STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY')
    STRIPE_PUBLISHABLE_KEY = os.environ.get('STRIPE_PUBLISHABLE_KEY')
    STRIPE_WEBHOOK_SECRET = os.environ.get('STRIPE_WEBHOOK_SECRET')
    STRIPE_SUBSCRIPTION_PRICE_ID = os.environ.get('STRIPE_SUBSCRIPTION_PRICE_ID')
    SUBSCRIPTION_TRIAL_DAYS = int(os.environ.get('SUBSCRIPTION_TRIAL_DAYS', 7))
    PAYMENT_CURRENCY = os.environ.get('PAYMENT_CURRENCY', 'usd')

    # One-time game packs, prices in minor currency units
    GAME_CATALOG = {
        'elden_ring': {'name': 'Elden Ring', 'price': 1999},
        'baldurs_gate3': {'name': "Baldur's Gate 3", 'price': 1999},
    }

    # Download gate
    DOWNLOAD_ENTITLED_STATUSES = ('trial', 'active', 'admin')
    DOWNLOAD_GLOBAL_LIMIT = int(os.environ.get('DOWNLOAD_GLOBAL_LIMIT', 60))
    DOWNLOAD_GLOBAL_WINDOW = timedelta(minutes=1)
    DOWNLOAD_USER_LIMIT = int(os.environ.get('DOWNLOAD_USER_LIMIT', 10))
    DOWNLOAD_USER_WINDOW = timedelta(hours=1)
    DOWNLOAD_CONCURRENT_LIMIT = int(os.environ.get('DOWNLOAD_CONCURRENT_LIMIT', 2))
    DOWNLOAD_CONCURRENT_WINDOW = timedelta(minutes=5)
    DOWNLOAD_URL_TTL = 300  # seconds

    # Object storage for release builds
    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_REGION = os.environ.get('S3_REGION', 'us-east-1')
    S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL')

    # Sentry (error monitoring, production only)
    SENTRY_DSN = os.environ.get('SENTRY_DSN')


class DevelopmentConfig(Config):
    """Development configuration."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///overlay_dev.sqlite'

    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Testing configuration."""

    TESTING = True
    DEBUG = True
    WTF_CSRF_ENABLED = False

    # Use SQLite in-memory for tests (portable, no external DB required)
    SQLALCHEMY_DATABASE_URI = os.environ.get('TEST_DATABASE_URL') or \
        'sqlite:///:memory:'

    # SQLite-specific settings
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Disable endpoint rate limiting in tests (download limiter stays on)
    RATELIMIT_ENABLED = False

    # Stripe test values
    STRIPE_SECRET_KEY = 'sk_test_fake_key_for_testing'
    STRIPE_PUBLISHABLE_KEY = 'pk_test_fake_key_for_testing'
    STRIPE_WEBHOOK_SECRET = 'whsec_test_fake_secret'
    STRIPE_SUBSCRIPTION_PRICE_ID = 'price_test_monthly'

    S3_BUCKET = 'overlay-test-releases'


class ProductionConfig(Config):
    """Production configuration."""

    DEBUG = False

    # SECRET_KEY and DATABASE_URL - validated in init_app (not at import time)
    SECRET_KEY = os.environ.get('SECRET_KEY')
    # Fix postgres:// → postgresql:// (SQLAlchemy 2.x requires postgresql://)
    _db_url = os.environ.get('DATABASE_URL', '')
    if _db_url.startswith('postgres://'):
        _db_url = _db_url.replace('postgres://', 'postgresql://', 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    SESSION_COOKIE_SECURE = True

    # Redis for rate limiting (REQUIRED in production for multi-worker consistency)
    RATELIMIT_STORAGE_URL = os.environ.get('REDIS_URL', 'memory://')

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
        'pool_recycle': 300,
        'pool_size': 10,
        'max_overflow': 20,
    }

    @classmethod
    def init_app(cls, app):
        """Production-specific initialization with validation."""
        import logging
        logger = logging.getLogger(__name__)

        if not cls.SECRET_KEY:
            raise ValueError("SECRET_KEY environment variable is required in production")
        if not cls.SQLALCHEMY_DATABASE_URI:
            raise ValueError("DATABASE_URL environment variable is required in production")

        stripe_keys = [
            'STRIPE_SECRET_KEY', 'STRIPE_PUBLISHABLE_KEY',
            'STRIPE_WEBHOOK_SECRET', 'STRIPE_SUBSCRIPTION_PRICE_ID',
        ]
        set_keys = [k for k in stripe_keys if os.environ.get(k)]
        missing_keys = [k for k in stripe_keys if not os.environ.get(k)]
        if set_keys and missing_keys:
            raise ValueError(
                f"Stripe partially configured. Missing: {', '.join(missing_keys)}. "
                "Set all 4 Stripe keys or none."
            )

        if not os.environ.get('S3_BUCKET'):
            logger.warning("S3_BUCKET not set: downloads will return 500.")

        if not os.environ.get('REDIS_URL'):
            logger.warning(
                "REDIS_URL not set: endpoint rate limiter uses in-memory storage. "
                "Each Gunicorn worker has independent counters."
            )

        if not os.environ.get('SENTRY_DSN'):
            logger.warning(
                "SENTRY_DSN not set: error tracking disabled. "
                "Set SENTRY_DSN for production error monitoring."
            )

        if not os.environ.get('JWT_SECRET_KEY'):
            logger.warning(
                "JWT_SECRET_KEY not set: JWT tokens signed with SECRET_KEY. "
                "Set JWT_SECRET_KEY for key separation."
            )


# Configuration dictionary for easy access
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}
