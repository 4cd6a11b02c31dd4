"""
Download attempt log used by the download rate limiter.
"""
import enum
from datetime import datetime

from app.extensions import db


class DownloadStatus(str, enum.Enum):
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'


class DownloadAttempt(db.Model):
    """Append-only row per issued download link."""

    __tablename__ = 'downloads'
    __table_args__ = (
        db.Index('ix_downloads_user_created', 'user_id', 'created_at'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    platform = db.Column(db.String(20), nullable=False)
    version = db.Column(db.String(20), nullable=False)
    download_status = db.Column(
        db.Enum(
            DownloadStatus,
            values_callable=lambda x: [e.value for e in x],
            native_enum=False,
            length=20,
        ),
        nullable=False,
        default=DownloadStatus.IN_PROGRESS,
    )
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f'<DownloadAttempt user={self.user_id} {self.platform}/{self.version}>'
