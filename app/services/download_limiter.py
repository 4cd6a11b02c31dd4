"""
Sliding-window limits for the download gate.

Counts come from fresh queries against the downloads log on every request.
A database failure while counting lets the download through.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from app.models.download import DownloadStatus


@dataclass(frozen=True)
class DownloadLimits:
    """Immutable limit configuration (counts are inclusive maxima of prior attempts)."""
    global_limit: int = 60
    global_window: timedelta = timedelta(minutes=1)
    user_limit: int = 10
    user_window: timedelta = timedelta(hours=1)
    concurrent_limit: int = 2
    concurrent_window: timedelta = timedelta(minutes=5)

    @classmethod
    def from_config(cls, config) -> 'DownloadLimits':
        return cls(
            global_limit=config['DOWNLOAD_GLOBAL_LIMIT'],
            global_window=config['DOWNLOAD_GLOBAL_WINDOW'],
            user_limit=config['DOWNLOAD_USER_LIMIT'],
            user_window=config['DOWNLOAD_USER_WINDOW'],
            concurrent_limit=config['DOWNLOAD_CONCURRENT_LIMIT'],
            concurrent_window=config['DOWNLOAD_CONCURRENT_WINDOW'],
        )


@dataclass(frozen=True)
class LimitDecision:
    allowed: bool
    reason: Optional[str] = None
    message: Optional[str] = None


ALLOWED = LimitDecision(allowed=True)


class DownloadRateLimiter:
    """Checks global, per-user and per-user in-progress download counts."""

    def __init__(self, ledger, limits: DownloadLimits):
        self.ledger = ledger
        self.limits = limits

    def check(self, user_id, now: Optional[datetime] = None) -> LimitDecision:
        """Run the three checks in order and stop at the first breach.

        Args:
            user_id: Requesting user
            now: Reference time (defaults to utcnow)

        Returns:
            LimitDecision; ``allowed`` is True when every count is under its limit
            or when the counts could not be read.
        """
        now = now or datetime.utcnow()
        limits = self.limits

        try:
            global_count = self.ledger.count_download_attempts(now - limits.global_window)
            if global_count >= limits.global_limit:
                current_app.logger.warning(
                    f'Global download limit hit ({global_count}/{limits.global_limit})'
                )
                return LimitDecision(
                    allowed=False,
                    reason='global',
                    message='Download service is busy. Please try again in a minute.',
                )

            user_count = self.ledger.count_download_attempts(
                now - limits.user_window, user_id=user_id,
            )
            if user_count >= limits.user_limit:
                current_app.logger.warning(
                    f'Hourly download limit hit for user {user_id} ({user_count}/{limits.user_limit})'
                )
                return LimitDecision(
                    allowed=False,
                    reason='user',
                    message='Download limit reached. Please try again later.',
                )

            in_progress = self.ledger.count_download_attempts(
                now - limits.concurrent_window,
                user_id=user_id,
                status=DownloadStatus.IN_PROGRESS,
            )
            if in_progress >= limits.concurrent_limit:
                return LimitDecision(
                    allowed=False,
                    reason='concurrent',
                    message='Too many downloads in progress. Please wait for them to finish.',
                )
        except SQLAlchemyError as e:
            self.ledger.session.rollback()
            current_app.logger.warning(
                f'Download rate limit lookup failed, allowing download for user {user_id}: {e}'
            )
            return ALLOWED

        return ALLOWED
