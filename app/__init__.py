"""
Overlay Backend Application Factory.
Creates and configures the Flask application instance.
"""
import os
import json
import logging
import uuid
from datetime import datetime, timezone

import click
from flask import Flask, jsonify, request, g
from sqlalchemy import select

from app.config import config
from app.extensions import init_extensions, db


def _init_sentry(app):
    """Initialize Sentry error tracking for production."""
    dsn = app.config.get('SENTRY_DSN') or os.environ.get('SENTRY_DSN')
    if not dsn:
        app.logger.info('SENTRY_DSN not set: error tracking disabled.')
        return

    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=dsn,
        integrations=[FlaskIntegration(), SqlalchemyIntegration()],
        traces_sample_rate=float(os.environ.get('SENTRY_TRACES_RATE', '0.1')),
        environment=os.environ.get('FLASK_ENV', 'production'),
        send_default_pii=False,
    )
    app.logger.info('Sentry error tracking initialized.')


def create_app(config_name=None):
    """
    Application factory for creating Flask app instances.

    Args:
        config_name: Configuration to use (development, testing, production)

    Returns:
        Configured Flask application instance
    """
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'development')

    app = Flask(__name__)

    # Load configuration
    config_class = config[config_name]
    app.config.from_object(config_class)

    # Initialize Sentry (production only)
    if config_name == 'production':
        _init_sentry(app)

    # Call init_app if available (production validation happens here)
    if hasattr(config_class, 'init_app'):
        config_class.init_app(app)

    # Initialize extensions
    init_extensions(app)

    # Enable response compression (gzip)
    from flask_compress import Compress
    Compress(app)

    # Initialize Stripe API key
    if app.config.get('STRIPE_SECRET_KEY'):
        import stripe
        stripe.api_key = app.config['STRIPE_SECRET_KEY']

    # Per-process services sharing one ledger
    init_services(app)

    # Register blueprints
    register_blueprints(app)

    # Register error handlers
    register_error_handlers(app)

    # Register CLI commands
    register_cli_commands(app)

    # Configure logging
    configure_logging(app)

    # Add security headers
    register_security_headers(app)

    # Create database tables (development only)
    if config_name == 'development':
        with app.app_context():
            db.create_all()

    return app


def init_services(app):
    """Build the ledger and the services that write through it."""
    from app.services.download_limiter import DownloadLimits, DownloadRateLimiter
    from app.services.ledger import LedgerStore
    from app.services.payment_service import PaymentService
    from app.services.storage import S3Storage
    from app.services.stripe_webhooks import WebhookRouter

    ledger = LedgerStore(db)
    app.extensions['ledger'] = ledger
    app.extensions['webhook_router'] = WebhookRouter(ledger)
    app.extensions['payments'] = PaymentService.from_config(ledger, app.config)
    app.extensions['download_limiter'] = DownloadRateLimiter(
        ledger, DownloadLimits.from_config(app.config),
    )
    app.extensions['storage'] = S3Storage.from_config(app.config)


def register_blueprints(app):
    """Register all application blueprints."""
    from app.blueprints.api import api_bp

    app.register_blueprint(api_bp, url_prefix='/api')

    @app.route('/health')
    def health():
        return jsonify({'success': True, 'data': {'status': 'ok'}})


def register_error_handlers(app):
    """Register JSON error handlers for common HTTP errors."""

    def _error(message, status):
        return jsonify({'success': False, 'error': message}), status

    @app.errorhandler(400)
    def bad_request(error):
        return _error('Bad request.', 400)

    @app.errorhandler(403)
    def forbidden(error):
        return _error('Access denied.', 403)

    @app.errorhandler(404)
    def not_found(error):
        return _error('Resource not found.', 404)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return _error('Method not allowed', 405)

    @app.errorhandler(429)
    def ratelimit_error(error):
        return _error('Too many requests. Try again later.', 429)

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        request_id = g.get('request_id', '-')
        app.logger.error('500 Internal Server Error: %s (request_id=%s)', type(error).__name__, request_id, exc_info=True)
        return _error('Internal server error.', 500)


def register_cli_commands(app):
    """Register custom CLI commands."""

    @app.cli.command('init-db')
    def init_db():
        """Create all database tables."""
        db.create_all()
        click.echo('Database tables created.')

    @app.cli.command('grant-admin')
    @click.argument('email')
    def grant_admin(email):
        """Give a user admin download access."""
        from app.models.user import User, UserSubscriptionStatus

        user_id = db.session.execute(
            select(User.id).where(User.email == email.strip().lower())
        ).scalar_one_or_none()
        if user_id is None:
            raise click.ClickException(f'No user with email {email}')

        app.extensions['ledger'].set_subscription_status(user_id, UserSubscriptionStatus.ADMIN)
        click.echo(f'{email} is now admin.')


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production (cloud log aggregation)."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'message': record.getMessage(),
            'module': record.module,
            'line': record.lineno,
        }
        # Add request_id if available
        try:
            log_entry['request_id'] = g.get('request_id', '-')
        except RuntimeError:
            pass  # Outside request context
        # Add exception info
        if record.exc_info and record.exc_info[0]:
            log_entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False)


def configure_logging(app):
    """Configure application logging.

    Production: JSON to stdout.
    Development: plain text.
    """
    if app.testing:
        return

    # Request ID middleware
    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get('X-Request-ID', str(uuid.uuid4())[:8])

    @app.after_request
    def log_request(response):
        app.logger.info(
            '%s %s %s',
            request.method,
            request.path,
            response.status_code,
        )
        return response

    if not app.debug:
        # Production: JSON to stdout
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(JSONFormatter())
        stream_handler.setLevel(logging.INFO)

        # Clear existing handlers to avoid duplicates
        app.logger.handlers.clear()
        app.logger.addHandler(stream_handler)
        app.logger.setLevel(logging.INFO)
        app.logger.info('Overlay backend startup (JSON logging)')
    else:
        # Development: plain text
        app.logger.setLevel(logging.DEBUG)
        app.logger.info('Overlay backend startup (development)')


def register_security_headers(app):
    """Register security headers for all responses."""

    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers['X-Content-Type-Options'] = 'nosniff'

        # Clickjacking protection
        response.headers['X-Frame-Options'] = 'DENY'

        # Referrer policy
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'

        # HSTS - Force HTTPS (1 year, include subdomains)
        if not app.debug:
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'

        # Prevent cross-domain policy loading
        response.headers['X-Permitted-Cross-Domain-Policies'] = 'none'

        # JSON API: nothing to embed or script
        response.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none'"

        # Billing and download responses must not be cached
        if request.path.startswith('/api/'):
            response.headers['Cache-Control'] = 'no-store'

        return response
