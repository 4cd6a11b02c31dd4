# =============================================================================
# Overlay Backend - Pytest Fixtures Configuration
# =============================================================================

import hashlib
import hmac
import json
import time

import pytest

from app import create_app
from app.blueprints.api.decorators import create_access_token
from app.extensions import db
from app.models.user import User, UserSubscriptionStatus

WEBHOOK_SECRET = 'whsec_test_fake_secret'
BROWSER_UA = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/124.0 Safari/537.36'
)


# =============================================================================
# Application Fixtures
# =============================================================================

@pytest.fixture(scope='function')
def app():
    """Create and configure test application with SQLite in-memory database."""
    application = create_app('testing')

    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Test client for HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def ledger(app):
    return app.extensions['ledger']


# =============================================================================
# Storage Fixture
# =============================================================================

class FakeStorage:
    """In-memory stand-in for S3Storage."""

    def __init__(self, keys=()):
        self.keys = set(keys)
        self.presigned = []

    def exists(self, key):
        return key in self.keys

    def presign(self, key, ttl_seconds):
        self.presigned.append((key, ttl_seconds))
        return f'https://overlay-test-releases.s3.amazonaws.com/{key}?X-Amz-Expires={ttl_seconds}'


@pytest.fixture
def storage(app):
    """Fake storage holding every release build."""
    from app.blueprints.api.downloads import DOWNLOAD_OBJECT_KEYS

    fake = FakeStorage(
        key for versions in DOWNLOAD_OBJECT_KEYS.values() for key in versions.values()
    )
    app.extensions['storage'] = fake
    return fake


# =============================================================================
# User Fixtures
# =============================================================================

@pytest.fixture
def make_user(app):
    """Factory: create a user with a given subscription status."""
    counter = {'n': 0}

    def _make(status=UserSubscriptionStatus.NONE, email=None, **kwargs):
        counter['n'] += 1
        user = User(
            email=email or f'player{counter["n"]}@test.com',
            name=kwargs.pop('name', f'Player {counter["n"]}'),
            subscription_status=UserSubscriptionStatus(status),
            **kwargs,
        )
        user.set_password('Password123!')
        db.session.add(user)
        db.session.commit()
        user_id = user.id
        db.session.expire_all()
        return db.session.get(User, user_id)

    return _make


@pytest.fixture
def user(make_user):
    """User without any subscription."""
    return make_user(UserSubscriptionStatus.NONE, email='free@test.com')


@pytest.fixture
def active_user(make_user):
    """User with an active subscription."""
    return make_user(UserSubscriptionStatus.ACTIVE, email='active@test.com')


def auth_headers(user, **extra):
    headers = {
        'Authorization': f'Bearer {create_access_token(user.id)}',
        'User-Agent': BROWSER_UA,
    }
    headers.update(extra)
    return headers


# =============================================================================
# Webhook Helpers
# =============================================================================

def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Build a Stripe-Signature header for ``payload`` (bytes)."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f'{timestamp}.'.encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f't={timestamp},v1={signature}'


def make_event(event_type, obj, event_id='evt_test_1'):
    return {
        'id': event_id,
        'object': 'event',
        'type': event_type,
        'livemode': False,
        'data': {'object': obj},
    }


@pytest.fixture
def post_event(client):
    """Send a correctly signed webhook event and return the response."""

    def _post(event_type, obj, event_id='evt_test_1'):
        payload = json.dumps(make_event(event_type, obj, event_id)).encode()
        return client.post(
            '/api/webhook',
            data=payload,
            content_type='application/json',
            headers={'Stripe-Signature': sign_payload(payload)},
        )

    return _post
