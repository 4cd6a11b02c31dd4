"""
User model with billing entitlement state.
"""
import enum
from datetime import datetime

from werkzeug.security import generate_password_hash, check_password_hash

from app.extensions import db


class UserSubscriptionStatus(str, enum.Enum):
    """Entitlement state stored on the user row."""
    NONE = 'none'
    TRIAL = 'trial'
    ACTIVE = 'active'
    TRIALING = 'trialing'
    CANCELLED = 'cancelled'
    PAYMENT_FAILED = 'payment_failed'
    EXPIRED = 'expired'
    ADMIN = 'admin'


class User(db.Model):
    """Registered user. Created at registration or first OAuth login."""

    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name = db.Column(db.String(100), nullable=True)
    # Null for OAuth-only accounts
    password_hash = db.Column(db.String(256), nullable=True)

    stripe_customer_id = db.Column(
        db.String(255), unique=True, nullable=True, index=True,
    )
    subscription_status = db.Column(
        db.Enum(
            UserSubscriptionStatus,
            values_callable=lambda x: [e.value for e in x],
            native_enum=False,
            length=20,
        ),
        nullable=False,
        default=UserSubscriptionStatus.NONE,
    )
    subscription_end = db.Column(db.DateTime, nullable=True)

    # Timestamps
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    last_login = db.Column(db.DateTime, nullable=True)

    # Relationships
    subscriptions = db.relationship(
        'Subscription', back_populates='user', lazy='dynamic',
        order_by='Subscription.created_at.desc()',
    )
    purchases = db.relationship(
        'Purchase', back_populates='user', lazy='dynamic',
        order_by='Purchase.created_at.desc()',
    )

    def __repr__(self):
        return f'<User {self.email} status={self.subscription_status.value}>'

    def set_password(self, password):
        """Hash and set user password."""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        """Verify password against hash. OAuth-only accounts never match."""
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self):
        return self.subscription_status == UserSubscriptionStatus.ADMIN

    def has_download_access(self, entitled_statuses):
        """Check whether the current status is one of ``entitled_statuses``."""
        return self.subscription_status.value in entitled_statuses
