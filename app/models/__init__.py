"""
SQLAlchemy models for the Overlay backend.
All models are imported here for easy access.
"""
from app.models.user import User, UserSubscriptionStatus
from app.models.subscription import Subscription, LIVE_SUBSCRIPTION_STATUSES
from app.models.purchase import Purchase, PurchaseStatus
from app.models.download import DownloadAttempt, DownloadStatus

__all__ = [
    'User',
    'UserSubscriptionStatus',
    'Subscription',
    'LIVE_SUBSCRIPTION_STATUSES',
    'Purchase',
    'PurchaseStatus',
    'DownloadAttempt',
    'DownloadStatus',
]
