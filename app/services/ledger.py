"""
Ledger store for billing and download state.

One instance per process, built by the app factory and shared by the
webhook router, the payment orchestrator and the download gate. Every
write is a keyed overwrite committed on its own, so replaying the same
write leaves the table unchanged.
"""
from datetime import datetime
from typing import List, Optional

from flask import current_app
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.models.download import DownloadAttempt, DownloadStatus
from app.models.purchase import Purchase, PurchaseStatus
from app.models.subscription import Subscription, LIVE_SUBSCRIPTION_STATUSES
from app.models.user import User, UserSubscriptionStatus


class LedgerStore:
    """Keyed reads and writes over users, subscriptions, purchases and downloads."""

    def __init__(self, db):
        self._db = db

    @property
    def session(self):
        return self._db.session

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _commit(self) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def _execute(self, statement) -> int:
        """Run a single UPDATE and commit. Returns the affected row count."""
        try:
            result = self.session.execute(
                statement.execution_options(synchronize_session='fetch')
            )
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        return result.rowcount

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_user(self, user_id) -> Optional[User]:
        return self.session.get(User, user_id)

    def get_user_by_customer_id(self, customer_id: str) -> Optional[User]:
        return self.session.execute(
            select(User).where(User.stripe_customer_id == customer_id)
        ).scalar_one_or_none()

    def upsert_stripe_customer_id(self, user_id, customer_id: str) -> bool:
        """Store ``customer_id`` on the user. Unknown user is a no-op."""
        return self._execute(
            update(User)
            .where(User.id == user_id)
            .values(stripe_customer_id=customer_id)
        ) > 0

    def remove_stripe_customer_id(self, customer_id: str) -> bool:
        """Clear the column on whichever user holds ``customer_id``."""
        return self._execute(
            update(User)
            .where(User.stripe_customer_id == customer_id)
            .values(stripe_customer_id=None)
        ) > 0

    def set_subscription_status(self, user_id, status, period_end: Optional[datetime] = None) -> bool:
        """Overwrite the user's entitlement status (and period end when given).

        Raises:
            ValueError: If ``status`` is not a known user status
        """
        values = {'subscription_status': UserSubscriptionStatus(status)}
        if period_end is not None:
            values['subscription_end'] = period_end
        return self._execute(
            update(User).where(User.id == user_id).values(**values)
        ) > 0

    def update_customer_details(self, user_id, email: Optional[str], name: Optional[str]) -> bool:
        """Mirror name/email changes made on the Stripe customer.

        The email is skipped when another account already uses it.
        """
        values = {}
        if name:
            values['name'] = name
        if email:
            email = email.strip().lower()
            owner_id = self.session.execute(
                select(User.id).where(User.email == email)
            ).scalar_one_or_none()
            if owner_id is None or owner_id == int(user_id):
                values['email'] = email
            else:
                current_app.logger.warning(
                    f'Customer email {email} already belongs to user {owner_id}; '
                    f'not copied to user {user_id}'
                )
        if not values:
            return False
        return self._execute(
            update(User).where(User.id == user_id).values(**values)
        ) > 0

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def record_subscription(
        self,
        user_id,
        stripe_subscription_id: str,
        status: str,
        period_end: Optional[datetime] = None,
    ) -> None:
        """Insert or overwrite the subscription keyed by its Stripe id."""
        subscription = self.session.execute(
            select(Subscription).where(
                Subscription.stripe_subscription_id == stripe_subscription_id
            )
        ).scalar_one_or_none()

        if subscription is None:
            subscription = Subscription(
                user_id=user_id,
                stripe_subscription_id=stripe_subscription_id,
                status=status,
                current_period_end=period_end,
            )
            self.session.add(subscription)
        else:
            subscription.user_id = user_id
            subscription.status = status
            if period_end is not None:
                subscription.current_period_end = period_end

        try:
            self.session.commit()
        except IntegrityError:
            # A concurrent delivery inserted the same subscription first
            self.session.rollback()
            self.update_subscription_status(stripe_subscription_id, status, period_end)
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def update_subscription_status(
        self,
        stripe_subscription_id: str,
        status: str,
        period_end: Optional[datetime] = None,
    ) -> bool:
        """Overwrite the mirrored status. Unknown subscription id is a no-op."""
        values = {'status': status}
        if period_end is not None:
            values['current_period_end'] = period_end
        return self._execute(
            update(Subscription)
            .where(Subscription.stripe_subscription_id == stripe_subscription_id)
            .values(**values)
        ) > 0

    def mark_cancel_at_period_end(self, stripe_subscription_id: str) -> bool:
        return self._execute(
            update(Subscription)
            .where(Subscription.stripe_subscription_id == stripe_subscription_id)
            .values(cancel_at_period_end=True)
        ) > 0

    def user_id_for_subscription(self, stripe_subscription_id: str) -> Optional[int]:
        return self.session.execute(
            select(Subscription.user_id).where(
                Subscription.stripe_subscription_id == stripe_subscription_id
            )
        ).scalar_one_or_none()

    def active_subscription_for_user(self, user_id) -> Optional[Subscription]:
        """Most recent active or trialing subscription, if any."""
        return self.session.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
            )
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    def get_purchase(self, payment_intent_id: str) -> Optional[Purchase]:
        return self.session.execute(
            select(Purchase).where(Purchase.payment_intent_id == payment_intent_id)
        ).scalar_one_or_none()

    def record_purchase(
        self,
        user_id,
        game_id: Optional[str],
        payment_intent_id: str,
        status,
        amount: Optional[int],
    ) -> Purchase:
        """Insert or overwrite a purchase keyed by its PaymentIntent id.

        A completed purchase keeps its status whatever ``status`` says.
        """
        status = PurchaseStatus(status)
        purchase = self.get_purchase(payment_intent_id)

        if purchase is None:
            purchase = Purchase(
                user_id=user_id,
                game_id=game_id,
                payment_intent_id=payment_intent_id,
                status=status,
                amount=amount,
                completed_at=datetime.utcnow() if status == PurchaseStatus.COMPLETED else None,
            )
            self.session.add(purchase)
        elif purchase.status == PurchaseStatus.COMPLETED and status != PurchaseStatus.COMPLETED:
            current_app.logger.info(
                f'Purchase {payment_intent_id} already completed; ignoring {status.value}'
            )
            return purchase
        else:
            purchase.user_id = user_id
            if game_id:
                purchase.game_id = game_id
            if amount is not None:
                purchase.amount = amount
            if status == PurchaseStatus.COMPLETED and purchase.status != PurchaseStatus.COMPLETED:
                purchase.completed_at = datetime.utcnow()
            purchase.status = status

        self._commit()
        return purchase

    def update_purchase_status_by_payment_intent(self, payment_intent_id: str, status) -> bool:
        """Move a purchase to ``status`` unless it is already completed.

        Unknown PaymentIntent id is a no-op.
        """
        status = PurchaseStatus(status)
        values = {'status': status}
        if status == PurchaseStatus.COMPLETED:
            values['completed_at'] = datetime.utcnow()
        return self._execute(
            update(Purchase)
            .where(
                Purchase.payment_intent_id == payment_intent_id,
                Purchase.status != PurchaseStatus.COMPLETED,
            )
            .values(**values)
        ) > 0

    def purchases_for_user(self, user_id) -> List[Purchase]:
        return list(self.session.execute(
            select(Purchase)
            .where(Purchase.user_id == user_id)
            .order_by(Purchase.created_at.desc(), Purchase.id.desc())
        ).scalars())

    # ------------------------------------------------------------------
    # Download attempts
    # ------------------------------------------------------------------

    def record_download_attempt(
        self,
        user_id,
        platform: str,
        version: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        attempt = DownloadAttempt(
            user_id=user_id,
            platform=platform,
            version=version,
            ip_address=ip_address,
            user_agent=(user_agent or '')[:512] or None,
            download_status=DownloadStatus.IN_PROGRESS,
        )
        self.session.add(attempt)
        self._commit()
        return attempt.id

    def mark_download_completed(self, attempt_id: int) -> bool:
        return self._execute(
            update(DownloadAttempt)
            .where(
                DownloadAttempt.id == attempt_id,
                DownloadAttempt.download_status == DownloadStatus.IN_PROGRESS,
            )
            .values(
                download_status=DownloadStatus.COMPLETED,
                completed_at=datetime.utcnow(),
            )
        ) > 0

    def count_download_attempts(self, since: datetime, user_id=None, status=None) -> int:
        """Count attempts created at or after ``since``."""
        query = select(func.count(DownloadAttempt.id)).where(
            DownloadAttempt.created_at >= since
        )
        if user_id is not None:
            query = query.where(DownloadAttempt.user_id == user_id)
        if status is not None:
            query = query.where(DownloadAttempt.download_status == DownloadStatus(status))
        return self.session.execute(query).scalar_one()
