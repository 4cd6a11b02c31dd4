# =============================================================================
# Overlay Backend - S3 Storage Tests
# =============================================================================

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from app.services.storage import S3Storage, StorageError


def _client_error(code, operation='HeadObject'):
    return ClientError({'Error': {'Code': code, 'Message': code}}, operation)


class TestS3Storage:

    def test_exists(self):
        client = MagicMock()
        storage = S3Storage('releases', client=client)

        assert storage.exists('a.zip') is True
        client.head_object.assert_called_once_with(Bucket='releases', Key='a.zip')

    @pytest.mark.parametrize('code', ['404', 'NoSuchKey', 'NotFound'])
    def test_missing_object(self, code):
        client = MagicMock()
        client.head_object.side_effect = _client_error(code)
        assert S3Storage('releases', client=client).exists('a.zip') is False

    def test_other_errors_raise(self):
        client = MagicMock()
        client.head_object.side_effect = _client_error('403')
        with pytest.raises(StorageError):
            S3Storage('releases', client=client).exists('a.zip')

    def test_presign(self):
        client = MagicMock()
        client.generate_presigned_url.return_value = 'https://signed'

        assert S3Storage('releases', client=client).presign('a.zip', 300) == 'https://signed'
        client.generate_presigned_url.assert_called_once_with(
            ClientMethod='get_object',
            Params={'Bucket': 'releases', 'Key': 'a.zip'},
            ExpiresIn=300,
        )

    def test_presign_error(self):
        client = MagicMock()
        client.generate_presigned_url.side_effect = _client_error('AccessDenied', 'GetObject')
        with pytest.raises(StorageError):
            S3Storage('releases', client=client).presign('a.zip', 300)

    def test_bucket_required(self):
        with pytest.raises(StorageError):
            S3Storage(None, client=MagicMock()).exists('a.zip')

    def test_from_config_builds_client(self):
        storage = S3Storage.from_config({
            'S3_BUCKET': 'releases',
            'S3_REGION': 'eu-west-3',
            'S3_ENDPOINT_URL': None,
        })
        assert storage.bucket == 'releases'
        assert storage.client.meta.region_name == 'eu-west-3'
