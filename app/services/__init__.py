"""
Services package for the Overlay backend.
Contains business logic separated from routes.
"""

from app.services.download_limiter import DownloadLimits, DownloadRateLimiter
from app.services.ledger import LedgerStore
from app.services.payment_service import PaymentService
from app.services.storage import S3Storage, StorageError
from app.services.stripe_webhooks import WebhookRouter

__all__ = [
    'DownloadLimits',
    'DownloadRateLimiter',
    'LedgerStore',
    'PaymentService',
    'S3Storage',
    'StorageError',
    'WebhookRouter',
]
