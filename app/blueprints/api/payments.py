"""
Payment endpoints: subscription checkout, game purchases and billing state.
"""
from flask import request, g, current_app

from app.blueprints.api import api_bp
from app.blueprints.api.decorators import jwt_required
from app.blueprints.api.helpers import api_error, api_success, service
from app.blueprints.api.schemas import PurchaseSchema, SubscriptionSchema
from app.extensions import limiter
from app.services.payment_service import PaymentError


def _json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@api_bp.route('/payments/create-subscription', methods=['POST'])
@limiter.limit('5 per hour')
@jwt_required
def create_subscription():
    """Start a trial subscription and return the client secret for the payment form."""
    try:
        result = service('payments').create_subscription(g.api_user)
    except PaymentError as e:
        return api_error(e.message, e.status_code)
    return api_success(result)


@api_bp.route('/payments/purchase-game', methods=['POST'])
@limiter.limit('10 per hour')
@jwt_required
def purchase_game():
    """Create a PaymentIntent for a catalog game.

    Request body:
        {"game_id": "elden_ring"}
    """
    game_id = _json_body().get('game_id')
    if not game_id or not isinstance(game_id, str):
        return api_error('Game ID is required', 400)

    try:
        client_secret = service('payments').purchase_game(g.api_user, game_id)
    except PaymentError as e:
        return api_error(e.message, e.status_code)
    return api_success({'client_secret': client_secret})


@api_bp.route('/payments/cancel', methods=['POST'])
@jwt_required
def cancel_subscription():
    """Cancel a subscription at the end of the current period."""
    subscription_id = _json_body().get('subscription_id')
    if not subscription_id or not isinstance(subscription_id, str):
        return api_error('Subscription ID is required', 400)

    try:
        service('payments').cancel_subscription(g.api_user, subscription_id)
    except PaymentError as e:
        return api_error(e.message, e.status_code)
    return api_success({'message': 'Subscription will be cancelled at the end of the billing period'})


@api_bp.route('/payments/subscription', methods=['GET'])
@jwt_required
def current_subscription():
    """Most recent active or trialing subscription, or null."""
    subscription = service('ledger').active_subscription_for_user(g.api_user.id)
    return api_success({
        'subscription': SubscriptionSchema().dump(subscription) if subscription else None,
    })


@api_bp.route('/payments/purchases', methods=['GET'])
@jwt_required
def list_purchases():
    purchases = service('ledger').purchases_for_user(g.api_user.id)
    return api_success({'purchases': PurchaseSchema(many=True).dump(purchases)})


@api_bp.route('/payments/config', methods=['GET'])
def payment_config():
    """Publishable key for the client-side Stripe SDK."""
    return api_success({'publishable_key': current_app.config.get('STRIPE_PUBLISHABLE_KEY')})
