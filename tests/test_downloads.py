# =============================================================================
# Overlay Backend - Download Gate Tests
# =============================================================================
#
# Storage is the FakeStorage from conftest; the downloads log is real.
# =============================================================================

from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.blueprints.api.downloads import complete_download, is_automated_agent
from app.blueprints.api.decorators import create_access_token
from app.extensions import db
from app.models.download import DownloadAttempt, DownloadStatus
from app.services.storage import StorageError
from tests.conftest import BROWSER_UA, auth_headers


def _attempts(user_id=None):
    db.session.expire_all()
    query = select(DownloadAttempt).order_by(DownloadAttempt.id)
    if user_id is not None:
        query = query.where(DownloadAttempt.user_id == user_id)
    return list(db.session.execute(query).scalars())


# =============================================================================
# Happy Path
# =============================================================================

class TestDownloadRedirect:

    def test_redirects_to_presigned_url(self, client, storage, active_user):
        response = client.get('/api/download/latest', headers=auth_headers(active_user))

        assert response.status_code == 302
        assert response.headers['Location'].startswith(
            'https://overlay-test-releases.s3.amazonaws.com/releases/windows/FridayAI-Win-latest.zip'
        )
        assert storage.presigned == [('releases/windows/FridayAI-Win-latest.zip', 300)]

        attempts = _attempts(active_user.id)
        assert len(attempts) == 1
        assert attempts[0].platform == 'windows'
        assert attempts[0].version == 'latest'
        assert attempts[0].user_agent == BROWSER_UA
        assert attempts[0].download_status in (DownloadStatus.IN_PROGRESS, DownloadStatus.COMPLETED)

    @pytest.mark.parametrize('platform,version,key', [
        ('mac', 'beta', 'releases/mac/FridayAI-Mac-beta.dmg'),
        ('linux', 'latest', 'releases/linux/FridayAI-Linux-latest.tar.gz'),
        ('windows', 'beta', 'releases/windows/FridayAI-Win-beta.zip'),
    ])
    def test_platform_and_version_select_object(self, client, storage, active_user, platform, version, key):
        response = client.get(
            f'/api/download/{version}?platform={platform}', headers=auth_headers(active_user),
        )
        assert response.status_code == 302
        assert storage.presigned[-1][0] == key

    @pytest.mark.parametrize('status', ['trial', 'active', 'admin'])
    def test_entitled_statuses(self, client, storage, make_user, status):
        player = make_user(status)
        response = client.get('/api/download/latest', headers=auth_headers(player))
        assert response.status_code == 302

    def test_complete_download_marks_attempt(self, app, ledger, active_user):
        attempt_id = ledger.record_download_attempt(active_user.id, 'windows', 'latest')

        complete_download(app, attempt_id)
        complete_download(app, attempt_id)

        attempt = _attempts(active_user.id)[0]
        assert attempt.download_status == DownloadStatus.COMPLETED
        assert attempt.completed_at is not None

    def test_complete_download_failure_is_logged(self, app, ledger, active_user):
        attempt_id = ledger.record_download_attempt(active_user.id, 'windows', 'latest')
        with patch.object(ledger, 'mark_download_completed',
                          side_effect=OperationalError('UPDATE', {}, Exception('db gone'))):
            complete_download(app, attempt_id)
        assert _attempts(active_user.id)[0].download_status == DownloadStatus.IN_PROGRESS


# =============================================================================
# Rejections
# =============================================================================

class TestDownloadRejections:

    def test_post_not_allowed(self, client, active_user):
        response = client.post('/api/download/latest', headers=auth_headers(active_user))
        assert response.status_code == 405
        assert response.get_json()['success'] is False

    def test_head_not_allowed(self, client, storage, active_user):
        response = client.head('/api/download/latest', headers=auth_headers(active_user))
        assert response.status_code == 405
        assert storage.presigned == []
        assert _attempts() == []

    def test_missing_token(self, client, storage):
        response = client.get('/api/download/latest', headers={'User-Agent': BROWSER_UA})
        assert response.status_code == 401

    def test_invalid_token(self, client, storage):
        response = client.get(
            '/api/download/latest',
            headers={'Authorization': 'Bearer not-a-jwt', 'User-Agent': BROWSER_UA},
        )
        assert response.status_code == 401

    def test_unknown_user(self, client, storage):
        response = client.get(
            '/api/download/latest',
            headers={'Authorization': f'Bearer {create_access_token(4242)}', 'User-Agent': BROWSER_UA},
        )
        assert response.status_code == 404
        assert response.get_json()['error'] == 'User not found'

    @pytest.mark.parametrize('status', ['none', 'trialing', 'cancelled', 'payment_failed', 'expired'])
    def test_not_entitled(self, client, storage, make_user, status):
        player = make_user(status)
        response = client.get('/api/download/latest', headers=auth_headers(player))
        assert response.status_code == 403
        assert response.get_json() == {'success': False, 'error': 'Subscription required to download'}
        assert _attempts(player.id) == []

    @pytest.mark.parametrize('window', ['global', 'user'])
    def test_not_entitled_while_limits_exhausted(self, client, ledger, storage, make_user, window):
        """Entitlement is refused before any limit is consulted."""
        player = make_user('none')
        if window == 'global':
            other = make_user('active')
            for _ in range(61):
                ledger.record_download_attempt(other.id, 'windows', 'latest')
        else:
            for _ in range(11):
                ledger.record_download_attempt(player.id, 'windows', 'latest')

        response = client.get('/api/download/latest', headers=auth_headers(player))

        assert response.status_code == 403
        assert response.get_json()['error'] == 'Subscription required to download'

    def test_unsupported_platform(self, client, storage, active_user):
        response = client.get('/api/download/latest?platform=android', headers=auth_headers(active_user))
        assert response.status_code == 400
        assert response.get_json()['error'] == 'Unsupported platform'

    def test_invalid_version(self, client, storage, active_user):
        response = client.get('/api/download/stable?platform=windows', headers=auth_headers(active_user))
        assert response.status_code == 400
        assert response.get_json()['error'] == 'Invalid version'

    @pytest.mark.parametrize('agent', ['', 'curl/8.4.0', 'Wget/1.21', 'python-requests/2.31', 'Googlebot/2.1'])
    def test_automated_agents(self, client, storage, active_user, agent):
        response = client.get('/api/download/latest', headers=auth_headers(active_user, **{'User-Agent': agent}))
        assert response.status_code == 403
        assert _attempts(active_user.id) == []

    def test_missing_object(self, client, storage, active_user):
        storage.keys.discard('releases/linux/FridayAI-Linux-beta.tar.gz')
        response = client.get('/api/download/beta?platform=linux', headers=auth_headers(active_user))
        assert response.status_code == 404
        assert response.get_json()['error'] == 'Download file not available'
        assert _attempts(active_user.id) == []

    def test_storage_failure(self, client, storage, active_user):
        with patch.object(storage, 'exists', side_effect=StorageError('AccessDenied')):
            response = client.get('/api/download/latest', headers=auth_headers(active_user))
        assert response.status_code == 500
        assert response.get_json()['success'] is False


# =============================================================================
# Rate Limits
# =============================================================================

class TestDownloadRateLimits:

    def test_eleventh_download_in_an_hour(self, client, ledger, storage, active_user):
        """Ten completed downloads in the hour; the eleventh is refused."""
        for _ in range(10):
            response = client.get('/api/download/latest', headers=auth_headers(active_user))
            assert response.status_code == 302
            ledger.mark_download_completed(_attempts(active_user.id)[-1].id)

        response = client.get('/api/download/latest', headers=auth_headers(active_user))
        assert response.status_code == 429
        assert response.get_json()['error'] == 'Download limit reached. Please try again later.'
        assert len(_attempts(active_user.id)) == 10

    def test_concurrent_downloads(self, client, ledger, storage, active_user):
        ledger.record_download_attempt(active_user.id, 'windows', 'latest')
        ledger.record_download_attempt(active_user.id, 'mac', 'latest')

        response = client.get('/api/download/latest', headers=auth_headers(active_user))
        assert response.status_code == 429
        assert 'in progress' in response.get_json()['error']

    def test_global_limit_checked_first(self, client, ledger, storage, make_user, active_user):
        """61 downloads by others in the last minute block a user with none of their own."""
        other = make_user('active')
        for _ in range(61):
            ledger.record_download_attempt(other.id, 'windows', 'latest')

        with patch.object(ledger, 'count_download_attempts', wraps=ledger.count_download_attempts) as counter:
            response = client.get('/api/download/latest', headers=auth_headers(active_user))

        assert response.status_code == 429
        assert response.get_json()['error'] == 'Download service is busy. Please try again in a minute.'
        assert counter.call_count == 1
        assert 'user_id' not in counter.call_args.kwargs

    def test_limiter_database_failure_allows_download(self, client, ledger, storage, active_user):
        with patch.object(ledger, 'count_download_attempts',
                          side_effect=OperationalError('SELECT', {}, Exception('db gone'))):
            response = client.get('/api/download/latest', headers=auth_headers(active_user))
        assert response.status_code == 302

    def test_attempt_logging_failure_still_redirects(self, client, ledger, storage, active_user):
        with patch.object(ledger, 'record_download_attempt',
                          side_effect=OperationalError('INSERT', {}, Exception('db gone'))):
            response = client.get('/api/download/latest', headers=auth_headers(active_user))
        assert response.status_code == 302
        assert _attempts(active_user.id) == []


# =============================================================================
# CSRF
# =============================================================================

class TestDownloadCsrf:

    def test_valid_session_token(self, client, storage, active_user):
        token = client.get('/api/download/csrf-token').get_json()['data']['csrf_token']
        response = client.get(
            f'/api/download/latest?csrf_token={token}', headers=auth_headers(active_user),
        )
        assert response.status_code == 302

    def test_mismatched_token(self, client, storage, active_user):
        client.get('/api/download/csrf-token')
        response = client.get(
            '/api/download/latest?csrf_token=forged', headers=auth_headers(active_user),
        )
        assert response.status_code == 403
        assert response.get_json()['error'] == 'Invalid CSRF token'

    def test_token_checked_before_auth(self, client, storage):
        response = client.get('/api/download/latest?csrf_token=forged', headers={'User-Agent': BROWSER_UA})
        assert response.status_code == 403

    def test_no_token_skips_check(self, client, storage, active_user):
        response = client.get('/api/download/latest', headers=auth_headers(active_user))
        assert response.status_code == 302


# =============================================================================
# Agent Filter
# =============================================================================

class TestAutomatedAgentFilter:

    @pytest.mark.parametrize('agent', [None, '', 'Scrapy/2.11', 'Go-http-client/1.1', 'HeadlessChrome/120'])
    def test_automated(self, agent):
        assert is_automated_agent(agent)

    @pytest.mark.parametrize('agent', [
        BROWSER_UA,
        'Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 Version/17.4 Safari/605.1.15',
        'Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0',
    ])
    def test_browsers(self, agent):
        assert not is_automated_agent(agent)
