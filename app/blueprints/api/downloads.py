"""
Download gate: entitlement, rate limits and presigned release URLs.
"""
import re

from flask import request, redirect, current_app
from flask_wtf.csrf import generate_csrf, validate_csrf
from sqlalchemy.exc import SQLAlchemyError
from wtforms.validators import ValidationError

from app.blueprints.api import api_bp
from app.blueprints.api.decorators import bearer_user_id
from app.blueprints.api.helpers import api_error, api_success, service
from app.services.storage import StorageError

# (platform, version) -> object key in the releases bucket
DOWNLOAD_OBJECT_KEYS = {
    'windows': {
        'latest': 'releases/windows/FridayAI-Win-latest.zip',
        'beta': 'releases/windows/FridayAI-Win-beta.zip',
    },
    'mac': {
        'latest': 'releases/mac/FridayAI-Mac-latest.dmg',
        'beta': 'releases/mac/FridayAI-Mac-beta.dmg',
    },
    'linux': {
        'latest': 'releases/linux/FridayAI-Linux-latest.tar.gz',
        'beta': 'releases/linux/FridayAI-Linux-beta.tar.gz',
    },
}

DOWNLOAD_VERSIONS = ('latest', 'beta')

AUTOMATED_AGENT_RE = re.compile(
    r'bot|crawl|spider|scrapy|curl|wget|httpie|python-requests|python-urllib|'
    r'aiohttp|go-http-client|java/|libwww|okhttp|headless',
    re.IGNORECASE,
)


def is_automated_agent(user_agent):
    """Heuristic filter for scripted clients. Empty agents count as automated."""
    return not user_agent or bool(AUTOMATED_AGENT_RE.search(user_agent))


def complete_download(app, attempt_id):
    """Mark a download attempt completed once the response is closed."""
    with app.app_context():
        try:
            app.extensions['ledger'].mark_download_completed(attempt_id)
        except SQLAlchemyError as e:
            app.logger.warning(f'Could not mark download {attempt_id} completed: {e}')


@api_bp.route('/download/csrf-token', methods=['GET'])
def download_csrf_token():
    """Issue the session-bound token the download page sends back."""
    return api_success({'csrf_token': generate_csrf()})


@api_bp.route('/download/<version>', methods=['GET'])
def download(version):
    """Redirect an entitled user to a short-lived URL for a release build.

    Query params:
        platform: windows (default), mac or linux
        csrf_token: optional, validated against the session when present
    """
    # Werkzeug adds HEAD to GET rules; only a real GET may issue a URL
    if request.method != 'GET':
        return api_error('Method not allowed', 405)

    csrf_token = request.args.get('csrf_token')
    if csrf_token:
        try:
            validate_csrf(csrf_token)
        except ValidationError:
            return api_error('Invalid CSRF token', 403)

    user_id = bearer_user_id()
    if user_id is None:
        return api_error('Invalid or expired token', 401)

    user = service('ledger').get_user(user_id)
    if user is None:
        return api_error('User not found', 404)
    if not user.has_download_access(current_app.config['DOWNLOAD_ENTITLED_STATUSES']):
        return api_error('Subscription required to download', 403)

    decision = service('download_limiter').check(user.id)
    if not decision.allowed:
        return api_error(decision.message, 429)

    platform = request.args.get('platform') or 'windows'
    if platform not in DOWNLOAD_OBJECT_KEYS:
        return api_error('Unsupported platform', 400)
    if version not in DOWNLOAD_VERSIONS:
        return api_error('Invalid version', 400)

    user_agent = request.headers.get('User-Agent', '')
    if is_automated_agent(user_agent):
        current_app.logger.warning(f'Blocked automated download for user {user.id}: {user_agent!r}')
        return api_error('Automated downloads are not allowed', 403)

    key = DOWNLOAD_OBJECT_KEYS[platform][version]
    storage = service('storage')
    try:
        if not storage.exists(key):
            return api_error('Download file not available', 404)
        url = storage.presign(key, current_app.config['DOWNLOAD_URL_TTL'])
    except StorageError:
        return api_error('Download service unavailable', 500)

    attempt_id = None
    try:
        attempt_id = service('ledger').record_download_attempt(
            user.id, platform, version,
            ip_address=request.remote_addr,
            user_agent=user_agent,
        )
    except SQLAlchemyError as e:
        current_app.logger.warning(f'Failed to log download for user {user.id}: {e}')

    current_app.logger.info(f'Download {platform}/{version} issued to user {user.id}')
    response = redirect(url, code=302)
    if attempt_id is not None:
        app = current_app._get_current_object()
        response.call_on_close(lambda: complete_download(app, attempt_id))
    return response
