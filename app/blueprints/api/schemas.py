"""
Marshmallow schemas for API serialization.
Converts SQLAlchemy models to JSON-safe dictionaries.
"""
from marshmallow import Schema, fields, validate


# ── Shared helpers ──────────────────────────────────────────

class BaseSchema(Schema):
    """Base schema with common config."""
    class Meta:
        ordered = True


def _enum_value(attr):
    def getter(obj):
        value = getattr(obj, attr)
        return value.value if value is not None else None
    return getter


# ── User ────────────────────────────────────────────────────

class UserSchema(BaseSchema):
    """User representation (for /auth endpoints)."""
    id = fields.Int(dump_only=True)
    email = fields.Email()
    name = fields.Str(allow_none=True)
    subscription_status = fields.Function(_enum_value('subscription_status'))
    subscription_end = fields.DateTime(format='iso', allow_none=True)
    created_at = fields.DateTime(format='iso')


class RegisterSchema(BaseSchema):
    """Registration request body."""
    email = fields.Email(required=True)
    password = fields.Str(required=True, validate=validate.Length(min=8, max=128))
    name = fields.Str(load_default=None, validate=validate.Length(max=100))


# ── Billing ─────────────────────────────────────────────────

class SubscriptionSchema(BaseSchema):
    """Mirrored Stripe subscription."""
    id = fields.Int(dump_only=True)
    stripe_subscription_id = fields.Str()
    status = fields.Str()
    current_period_end = fields.DateTime(format='iso', allow_none=True)
    cancel_at_period_end = fields.Bool()
    days_remaining = fields.Int(dump_only=True, allow_none=True)
    created_at = fields.DateTime(format='iso')


class PurchaseSchema(BaseSchema):
    """One-off game purchase."""
    id = fields.Int(dump_only=True)
    game_id = fields.Str(allow_none=True)
    payment_intent_id = fields.Str()
    status = fields.Function(_enum_value('status'))
    amount = fields.Int(allow_none=True)
    created_at = fields.DateTime(format='iso')
    completed_at = fields.DateTime(format='iso', allow_none=True)
