"""
One-time purchase model (game packs paid through a PaymentIntent).
"""
import enum
from datetime import datetime

from app.extensions import db


class PurchaseStatus(str, enum.Enum):
    """Purchase lifecycle. COMPLETED is terminal."""
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'
    EXPIRED = 'expired'


class Purchase(db.Model):
    """A game pack purchase keyed by its Stripe PaymentIntent id."""

    __tablename__ = 'purchases'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    game_id = db.Column(db.String(64), nullable=True)
    payment_intent_id = db.Column(
        db.String(255), unique=True, nullable=False, index=True,
    )
    status = db.Column(
        db.Enum(
            PurchaseStatus,
            values_callable=lambda x: [e.value for e in x],
            native_enum=False,
            length=20,
        ),
        nullable=False,
        default=PurchaseStatus.PENDING,
    )
    amount = db.Column(db.Integer, nullable=True)  # minor currency units

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    user = db.relationship('User', back_populates='purchases')

    def __repr__(self):
        return f'<Purchase {self.payment_intent_id} {self.status.value}>'
