"""
S3 storage client for release builds.
Existence checks and presigned GET URLs for the download gate.
"""
import logging
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the object store cannot answer."""


class S3Storage:
    """Thin wrapper around a boto3 S3 client bound to one bucket."""

    def __init__(
        self,
        bucket: Optional[str],
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket
        if client is None:
            client = boto3.client(
                's3',
                config=Config(
                    region_name=region,
                    signature_version='s3v4',
                    retries={'max_attempts': 3, 'mode': 'standard'},
                    connect_timeout=5,
                    read_timeout=10,
                ),
                endpoint_url=endpoint_url,
            )
        self.client = client

    @classmethod
    def from_config(cls, config) -> 'S3Storage':
        return cls(
            bucket=config.get('S3_BUCKET'),
            region=config.get('S3_REGION'),
            endpoint_url=config.get('S3_ENDPOINT_URL'),
        )

    def _require_bucket(self) -> str:
        if not self.bucket:
            raise StorageError('S3_BUCKET is not configured')
        return self.bucket

    def exists(self, key: str) -> bool:
        """Check if an object exists.

        Raises:
            StorageError: On anything other than a not-found answer
        """
        bucket = self._require_bucket()
        try:
            self.client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in ('404', 'NoSuchKey', 'NotFound'):
                return False
            logger.error(f'S3 head_object failed for s3://{bucket}/{key}: {e}')
            raise StorageError(str(e)) from e

    def presign(self, key: str, ttl_seconds: int) -> str:
        """Generate a presigned GET URL valid for ``ttl_seconds``."""
        bucket = self._require_bucket()
        try:
            return self.client.generate_presigned_url(
                ClientMethod='get_object',
                Params={'Bucket': bucket, 'Key': key},
                ExpiresIn=ttl_seconds,
            )
        except ClientError as e:
            logger.error(f'Failed to presign s3://{bucket}/{key}: {e}', exc_info=True)
            raise StorageError(str(e)) from e
