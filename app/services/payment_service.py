"""
Payment orchestration for subscriptions and one-off game purchases.
Talks to Stripe and records the local side in the ledger.
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Optional

import stripe
from flask import current_app

from app.models.purchase import PurchaseStatus
from app.models.user import User, UserSubscriptionStatus


class PaymentError(Exception):
    """Base class for payment failures that map to an HTTP status."""

    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class UnknownProductError(PaymentError):
    """Raised when a game id is not in the catalog."""


class SubscriptionOwnershipError(PaymentError):
    """Raised when a user acts on a subscription they do not own."""

    status_code = 403


class PaymentProviderError(PaymentError):
    """Raised when a Stripe call fails."""

    status_code = 500


@contextmanager
def provider_errors(action: str):
    """Wrap Stripe errors in PaymentProviderError (400 for 4xx upstream, else 500)."""
    try:
        yield
    except stripe.StripeError as e:
        http_status = getattr(e, 'http_status', None) or 500
        status = 400 if 400 <= http_status < 500 else 500
        current_app.logger.error(f'Stripe error while trying to {action}: {e}')
        raise PaymentProviderError(e.user_message or str(e), status) from e


def _from_unix(value) -> Optional[datetime]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def _attr(obj, *names):
    """Walk attributes on a Stripe object, returning None at the first gap."""
    for name in names:
        if obj is None or isinstance(obj, str):
            return None
        obj = getattr(obj, name, None)
    return obj


class PaymentService:
    """Creates Stripe subscriptions and payment intents for users."""

    def __init__(
        self,
        ledger,
        catalog: Dict[str, dict],
        subscription_price_id: Optional[str],
        trial_days: int = 7,
        currency: str = 'usd',
    ):
        self.ledger = ledger
        self.catalog = catalog
        self.subscription_price_id = subscription_price_id
        self.trial_days = trial_days
        self.currency = currency

    @classmethod
    def from_config(cls, ledger, config) -> 'PaymentService':
        return cls(
            ledger,
            catalog=config['GAME_CATALOG'],
            subscription_price_id=config.get('STRIPE_SUBSCRIPTION_PRICE_ID'),
            trial_days=config['SUBSCRIPTION_TRIAL_DAYS'],
            currency=config['PAYMENT_CURRENCY'],
        )

    def get_or_create_customer(self, user: User) -> str:
        """Get or create a Stripe customer for the user.

        Looks at the stored id first, then searches Stripe by the user_id
        metadata (search failures are ignored), and only then creates a new
        customer. The id is stored on the user before returning.

        Args:
            user: User to get/create customer for

        Returns:
            Stripe customer ID
        """
        if user.stripe_customer_id:
            return user.stripe_customer_id

        customer_id = None
        try:
            found = stripe.Customer.search(
                query=f"metadata['user_id']:'{user.id}'",
                limit=1,
            )
            if found.data:
                customer_id = found.data[0].id
                current_app.logger.info(f'Reusing Stripe customer {customer_id} for user {user.id}')
        except stripe.StripeError as e:
            current_app.logger.warning(f'Stripe customer search failed for user {user.id}: {e}')

        if customer_id is None:
            params = {'email': user.email, 'metadata': {'user_id': str(user.id)}}
            if user.name:
                params['name'] = user.name
            with provider_errors('create customer'):
                customer = stripe.Customer.create(**params)
            customer_id = customer.id
            current_app.logger.info(f'Created Stripe customer {customer_id} for user {user.id}')

        self.ledger.upsert_stripe_customer_id(user.id, customer_id)
        return customer_id

    def create_subscription(self, user: User) -> dict:
        """Start a trial subscription for the user.

        Returns:
            Dict with subscription_id, client_secret and status
        """
        if not self.subscription_price_id:
            raise PaymentError('Subscription price is not configured', 500)

        customer_id = self.get_or_create_customer(user)

        with provider_errors('create subscription'):
            subscription = stripe.Subscription.create(
                customer=customer_id,
                items=[{'price': self.subscription_price_id}],
                trial_period_days=self.trial_days,
                payment_behavior='default_incomplete',
                payment_settings={'save_default_payment_method': 'on_subscription'},
                expand=['latest_invoice.payment_intent', 'pending_setup_intent'],
                metadata={'user_id': str(user.id)},
            )

        client_secret = (
            _attr(subscription, 'pending_setup_intent', 'client_secret')
            or _attr(subscription, 'latest_invoice', 'payment_intent', 'client_secret')
            or _attr(subscription, 'latest_invoice', 'confirmation_secret', 'client_secret')
        )
        trial_end = _from_unix(_attr(subscription, 'trial_end'))

        status = UserSubscriptionStatus.TRIALING.value
        self.ledger.record_subscription(user.id, subscription.id, status, trial_end)
        self.ledger.set_subscription_status(user.id, UserSubscriptionStatus.TRIALING, trial_end)
        current_app.logger.info(f'Subscription {subscription.id} created for user {user.id}')

        return {
            'subscription_id': subscription.id,
            'client_secret': client_secret,
            'status': status,
        }

    def purchase_game(self, user: User, game_id: str) -> str:
        """Create a PaymentIntent for a catalog game.

        Returns:
            PaymentIntent client secret

        Raises:
            UnknownProductError: If ``game_id`` is not in the catalog
        """
        product = self.catalog.get(game_id)
        if product is None:
            raise UnknownProductError(f'Unknown game: {game_id}')

        customer_id = self.get_or_create_customer(user)

        with provider_errors('create payment intent'):
            intent = stripe.PaymentIntent.create(
                amount=product['price'],
                currency=self.currency,
                customer=customer_id,
                automatic_payment_methods={'enabled': True},
                description=product['name'],
                metadata={
                    'user_id': str(user.id),
                    'product_id': game_id,
                    'product_type': 'game',
                },
            )

        self.ledger.record_purchase(
            user.id, game_id, intent.id, PurchaseStatus.PENDING, product['price'],
        )
        current_app.logger.info(f'Purchase {intent.id} of {game_id} started by user {user.id}')
        return intent.client_secret

    def cancel_subscription(self, user: User, subscription_id: str) -> None:
        """Cancel at period end after checking the subscription belongs to ``user``.

        Raises:
            SubscriptionOwnershipError: If metadata.user_id is not the user's id
        """
        with provider_errors('retrieve subscription'):
            subscription = stripe.Subscription.retrieve(subscription_id)

        metadata = _attr(subscription, 'metadata') or {}
        if str(metadata.get('user_id')) != str(user.id):
            current_app.logger.warning(
                f'User {user.id} tried to cancel subscription {subscription_id} they do not own'
            )
            raise SubscriptionOwnershipError('Unauthorized')

        with provider_errors('cancel subscription'):
            stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)

        self.ledger.mark_cancel_at_period_end(subscription_id)
        self.ledger.set_subscription_status(user.id, UserSubscriptionStatus.CANCELLED)
        current_app.logger.info(f'Subscription {subscription_id} set to cancel for user {user.id}')
