"""
Subscription model mirroring Stripe subscription objects.
The status column is a verbatim copy of the last provider status seen.
"""
from datetime import datetime, date

from app.extensions import db

# Statuses that count as a live subscription for the account page
LIVE_SUBSCRIPTION_STATUSES = ('active', 'trialing')


class Subscription(db.Model):
    """Stripe subscription owned by a user. Rows are kept after cancellation."""

    __tablename__ = 'subscriptions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )

    stripe_subscription_id = db.Column(
        db.String(255), unique=True, nullable=False, index=True,
    )
    status = db.Column(db.String(30), nullable=False)

    # Billing period
    current_period_end = db.Column(db.DateTime, nullable=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)

    # Timestamps
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=datetime.utcnow)

    # Relationships
    user = db.relationship('User', back_populates='subscriptions')

    def __repr__(self):
        return f'<Subscription {self.stripe_subscription_id} status={self.status}>'

    @property
    def is_live(self):
        return self.status in LIVE_SUBSCRIPTION_STATUSES

    @property
    def days_remaining(self):
        """Days remaining in current billing period. None without a period end."""
        if not self.current_period_end:
            return None
        delta = self.current_period_end.date() - date.today()
        return max(0, delta.days)
