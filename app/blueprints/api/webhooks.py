"""
Stripe webhook endpoint.
"""
from flask import request, current_app

from app.blueprints.api import api_bp
from app.blueprints.api.helpers import api_error, api_success, service
from app.extensions import db, limiter
from app.services.stripe_webhooks import WebhookVerificationError


@api_bp.route('/webhook', methods=['POST'])
@limiter.limit('100 per minute')
def stripe_webhook():
    """Handle Stripe webhook events.

    CSRF exempt (whole API blueprint), verified via Stripe signature instead.
    Handler failures return 500 so Stripe redelivers the event.
    """
    payload = request.get_data()
    sig_header = request.headers.get('Stripe-Signature', '')
    router = service('webhook_router')

    try:
        event = router.verify(payload, sig_header, current_app.config.get('STRIPE_WEBHOOK_SECRET'))
    except WebhookVerificationError as e:
        current_app.logger.warning(f'Webhook rejected: {e}')
        return api_error(str(e), 400)

    try:
        result = router.dispatch(event)
    except Exception:
        db.session.rollback()
        current_app.logger.exception(f'Webhook handler failed for {event.type} ({event.id})')
        return api_error('Webhook processing failed', 500)

    return api_success(result)
