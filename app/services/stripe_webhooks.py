"""
Stripe webhook verification and event routing.

The router verifies the Stripe-Signature header over the raw request body,
decodes the event into plain dicts and hands ``data.object`` to the handler
registered for the event type. Handlers only perform keyed overwrites
through the ledger, so a redelivered event leaves the same final state.
"""
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import stripe
from flask import current_app

from app.models.purchase import PurchaseStatus
from app.models.user import UserSubscriptionStatus

SUCCESS = {'status': 'success'}


class WebhookVerificationError(ValueError):
    """Raised when a webhook request cannot be authenticated or decoded."""


class EventObject:
    """Read-only accessors over an event's ``data.object`` payload."""

    def __init__(self, data: Dict[str, Any]):
        self._data = data

    def __repr__(self):
        return f'<EventObject {self.get("object")} {self.id}>'

    @property
    def id(self) -> Optional[str]:
        return self.string('id')

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def string(self, key: str) -> Optional[str]:
        value = self._data.get(key)
        if isinstance(value, str) and value:
            return value
        return None

    def integer(self, key: str) -> Optional[int]:
        value = self._data.get(key)
        if isinstance(value, bool) or not isinstance(value, int):
            return None
        return value

    def timestamp(self, key: str) -> Optional[datetime]:
        """Unix seconds → naive UTC datetime (the ledger stores naive UTC)."""
        value = self.integer(key)
        if value is None:
            return None
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)

    def ref(self, key: str) -> Optional[str]:
        """Id of a related object, whether expanded or not."""
        value = self._data.get(key)
        if isinstance(value, dict):
            value = value.get('id')
        if isinstance(value, str) and value:
            return value
        return None

    def child(self, *keys: str) -> 'EventObject':
        """Nested object along ``keys``; empty when any step is missing."""
        node = self._data
        for key in keys:
            node = node.get(key) if isinstance(node, dict) else None
        return EventObject(node if isinstance(node, dict) else {})

    def meta(self, key: str) -> Optional[str]:
        metadata = self._data.get('metadata')
        if not isinstance(metadata, dict):
            return None
        value = metadata.get(key)
        if value is None or value == '':
            return None
        return str(value)

    def meta_int(self, key: str) -> Optional[int]:
        value = self.meta(key)
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None


@dataclass(frozen=True)
class WebhookEvent:
    id: Optional[str]
    type: str
    object: EventObject
    livemode: bool = False


class WebhookRouter:
    """Maps Stripe event types to ledger writes."""

    def __init__(self, ledger, tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE):
        self.ledger = ledger
        self.tolerance = tolerance
        self.handlers: Dict[str, Callable[[EventObject], dict]] = {
            # Account
            'account.external_account.created': self._log_only,
            'account.external_account.deleted': self._log_only,
            # Checkout
            'checkout.session.completed': self._checkout_session_completed,
            'checkout.session.async_payment_succeeded': self._checkout_session_async_payment_succeeded,
            'checkout.session.async_payment_failed': self._checkout_session_async_payment_failed,
            'checkout.session.expired': self._checkout_session_expired,
            # Customer
            'customer.created': self._customer_created,
            'customer.updated': self._customer_updated,
            'customer.deleted': self._customer_deleted,
            # Subscription
            'customer.subscription.created': self._subscription_created,
            'customer.subscription.updated': self._subscription_updated,
            'customer.subscription.deleted': self._subscription_deleted,
            'customer.subscription.trial_will_end': self._subscription_trial_will_end,
            # Invoice
            'invoice.paid': self._invoice_paid,
            'invoice.payment_failed': self._invoice_payment_failed,
            'invoice.upcoming': self._invoice_upcoming,
            # Payment intent
            'payment_intent.succeeded': self._payment_intent_succeeded,
            'payment_intent.payment_failed': self._payment_intent_payment_failed,
            # Catalog
            'product.created': self._log_only,
            'product.updated': self._log_only,
            'product.deleted': self._log_only,
            'price.created': self._log_only,
            'price.updated': self._log_only,
            'price.deleted': self._log_only,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def verify(self, payload: bytes, sig_header: str, secret: Optional[str]) -> WebhookEvent:
        """Authenticate ``payload`` and decode it into a WebhookEvent.

        Args:
            payload: Raw request body, exactly as received
            sig_header: Stripe-Signature header value
            secret: Endpoint signing secret

        Raises:
            WebhookVerificationError: On missing input, bad signature or bad JSON
        """
        if not secret:
            raise WebhookVerificationError('Webhook secret not configured')
        if not payload:
            raise WebhookVerificationError('Empty payload')
        if not sig_header:
            raise WebhookVerificationError('Missing signature')

        try:
            text = payload.decode('utf-8') if isinstance(payload, bytes) else payload
        except UnicodeDecodeError:
            raise WebhookVerificationError('Invalid payload')

        try:
            stripe.WebhookSignature.verify_header(text, sig_header, secret, self.tolerance)
        except stripe.SignatureVerificationError:
            raise WebhookVerificationError('Invalid signature')

        try:
            body = json.loads(text)
        except ValueError:
            raise WebhookVerificationError('Invalid payload')

        if not isinstance(body, dict) or not isinstance(body.get('type'), str):
            raise WebhookVerificationError('Invalid payload')
        data = body.get('data')
        obj = data.get('object') if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            raise WebhookVerificationError('Invalid payload')

        return WebhookEvent(
            id=body.get('id'),
            type=body['type'],
            object=EventObject(obj),
            livemode=bool(body.get('livemode', False)),
        )

    def dispatch(self, event: WebhookEvent) -> dict:
        """Run the handler for ``event.type``; unknown types are acknowledged."""
        handler = self.handlers.get(event.type)
        if handler is None:
            current_app.logger.info(f'Unhandled Stripe event type: {event.type} ({event.id})')
            return {'status': f'Unhandled event type: {event.type}'}
        current_app.logger.info(f'Processing Stripe event {event.type} ({event.id})')
        return handler(event.object)

    def handle(self, payload: bytes, sig_header: str, secret: Optional[str]) -> dict:
        return self.dispatch(self.verify(payload, sig_header, secret))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _known_user(self, user_id: Optional[int], context: str) -> Optional[int]:
        if user_id is None:
            current_app.logger.warning(f'{context}: no user_id metadata, skipping')
            return None
        if self.ledger.get_user(user_id) is None:
            current_app.logger.warning(f'{context}: unknown user_id={user_id}, skipping')
            return None
        return user_id

    @staticmethod
    def _invoice_subscription_id(invoice: EventObject) -> Optional[str]:
        # Newer API versions moved the field under parent.subscription_details
        return (
            invoice.ref('subscription')
            or invoice.child('parent', 'subscription_details').ref('subscription')
        )

    @staticmethod
    def _subscription_period_end(subscription: EventObject) -> Optional[datetime]:
        period_end = subscription.timestamp('current_period_end')
        if period_end is None:
            items = subscription.child('items').get('data') or []
            if items and isinstance(items[0], dict):
                period_end = EventObject(items[0]).timestamp('current_period_end')
        return period_end

    def _log_only(self, obj: EventObject) -> dict:
        current_app.logger.info(f'Stripe {obj.get("object", "object")} event for {obj.id}')
        return SUCCESS

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def _checkout_session_completed(self, session: EventObject) -> dict:
        context = f'checkout.session.completed {session.id}'
        payment_intent_id = session.ref('payment_intent')
        if not payment_intent_id:
            current_app.logger.info(f'{context}: no payment intent, nothing to record')
            return SUCCESS

        user_id = self._known_user(session.meta_int('user_id'), context)
        if user_id is None:
            return SUCCESS

        self.ledger.record_purchase(
            user_id,
            session.meta('product_id'),
            payment_intent_id,
            PurchaseStatus.COMPLETED,
            session.integer('amount_total'),
        )
        return SUCCESS

    def _set_checkout_purchase_status(self, session: EventObject, status: PurchaseStatus) -> dict:
        payment_intent_id = session.ref('payment_intent')
        if payment_intent_id:
            self.ledger.update_purchase_status_by_payment_intent(payment_intent_id, status)
        return SUCCESS

    def _checkout_session_async_payment_succeeded(self, session: EventObject) -> dict:
        return self._set_checkout_purchase_status(session, PurchaseStatus.COMPLETED)

    def _checkout_session_async_payment_failed(self, session: EventObject) -> dict:
        return self._set_checkout_purchase_status(session, PurchaseStatus.FAILED)

    def _checkout_session_expired(self, session: EventObject) -> dict:
        return self._set_checkout_purchase_status(session, PurchaseStatus.EXPIRED)

    # ------------------------------------------------------------------
    # Customer
    # ------------------------------------------------------------------

    def _customer_created(self, customer: EventObject) -> dict:
        if not customer.id:
            return SUCCESS
        user_id = self._known_user(customer.meta_int('user_id'), 'customer.created')
        if user_id is None:
            return SUCCESS

        owner = self.ledger.get_user_by_customer_id(customer.id)
        if owner is not None and owner.id != user_id:
            current_app.logger.warning(
                f'customer.created: {customer.id} already linked to user {owner.id}, '
                f'not moving it to user {user_id}'
            )
            return SUCCESS

        self.ledger.upsert_stripe_customer_id(user_id, customer.id)
        return SUCCESS

    def _customer_updated(self, customer: EventObject) -> dict:
        user_id = customer.meta_int('user_id')
        if user_id is not None:
            self.ledger.update_customer_details(
                user_id, customer.string('email'), customer.string('name'),
            )
        return SUCCESS

    def _customer_deleted(self, customer: EventObject) -> dict:
        if customer.id:
            self.ledger.remove_stripe_customer_id(customer.id)
        return SUCCESS

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def _subscription_created(self, subscription: EventObject) -> dict:
        context = f'customer.subscription.created {subscription.id}'
        user_id = self._known_user(subscription.meta_int('user_id'), context)
        if user_id is None or not subscription.id:
            return SUCCESS

        self.ledger.record_subscription(
            user_id,
            subscription.id,
            subscription.string('status') or 'incomplete',
            self._subscription_period_end(subscription),
        )
        return SUCCESS

    def _subscription_updated(self, subscription: EventObject) -> dict:
        status = subscription.string('status')
        if not subscription.id or not status:
            return SUCCESS

        updated = self.ledger.update_subscription_status(
            subscription.id, status, self._subscription_period_end(subscription),
        )
        if not updated:
            current_app.logger.info(f'Subscription {subscription.id} not in ledger, update skipped')
        return SUCCESS

    def _subscription_deleted(self, subscription: EventObject) -> dict:
        if not subscription.id:
            return SUCCESS

        user_id = self.ledger.user_id_for_subscription(subscription.id)
        if user_id:
            self.ledger.set_subscription_status(user_id, UserSubscriptionStatus.CANCELLED)
            self.ledger.update_subscription_status(subscription.id, 'cancelled')
            current_app.logger.info(f'Subscription {subscription.id} cancelled for user {user_id}')
        else:
            current_app.logger.warning(f'Deleted subscription {subscription.id} has no owner in ledger')
        return SUCCESS

    def _subscription_trial_will_end(self, subscription: EventObject) -> dict:
        user_id = subscription.meta('user_id')
        if user_id:
            current_app.logger.info(f'Trial ending soon for user {user_id} ({subscription.id})')
        return SUCCESS

    # ------------------------------------------------------------------
    # Invoice
    # ------------------------------------------------------------------

    def _invoice_paid(self, invoice: EventObject) -> dict:
        subscription_id = self._invoice_subscription_id(invoice)
        if not subscription_id:
            return SUCCESS

        self.ledger.update_subscription_status(subscription_id, 'active')
        user_id = self.ledger.user_id_for_subscription(subscription_id)
        if user_id:
            self.ledger.set_subscription_status(user_id, UserSubscriptionStatus.ACTIVE)
        return SUCCESS

    def _invoice_payment_failed(self, invoice: EventObject) -> dict:
        subscription_id = self._invoice_subscription_id(invoice)
        if not subscription_id:
            return SUCCESS

        user_id = self.ledger.user_id_for_subscription(subscription_id)
        if user_id:
            self.ledger.set_subscription_status(user_id, UserSubscriptionStatus.PAYMENT_FAILED)
            current_app.logger.warning(f'Payment failed for user {user_id} ({subscription_id})')
        else:
            current_app.logger.warning(f'Payment failed for unknown subscription {subscription_id}')
        return SUCCESS

    def _invoice_upcoming(self, invoice: EventObject) -> dict:
        customer_id = invoice.ref('customer')
        if customer_id:
            current_app.logger.info(f'Upcoming invoice for customer {customer_id}')
        return SUCCESS

    # ------------------------------------------------------------------
    # Payment intent
    # ------------------------------------------------------------------

    def _payment_intent_succeeded(self, intent: EventObject) -> dict:
        if intent.id:
            self.ledger.update_purchase_status_by_payment_intent(intent.id, PurchaseStatus.COMPLETED)
        return SUCCESS

    def _payment_intent_payment_failed(self, intent: EventObject) -> dict:
        if intent.id:
            self.ledger.update_purchase_status_by_payment_intent(intent.id, PurchaseStatus.FAILED)
        return SUCCESS
