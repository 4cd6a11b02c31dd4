"""
JWT authentication decorators for the REST API.
"""
from functools import wraps
from datetime import datetime, timedelta, timezone

import jwt
from flask import request, current_app, g

from app.blueprints.api.helpers import api_error
from app.extensions import db
from app.models.user import User


def _jwt_secret():
    return current_app.config.get('JWT_SECRET_KEY') or current_app.config['SECRET_KEY']


def create_access_token(user_id, expires_minutes=None):
    """Create a JWT access token."""
    if expires_minutes is None:
        expires_minutes = current_app.config.get('JWT_EXPIRES_MINUTES', 1440)
    payload = {
        'sub': str(user_id),
        'type': 'access',
        'iat': datetime.now(timezone.utc),
        'exp': datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, _jwt_secret(), algorithm='HS256')


def decode_token(token):
    """Decode and validate a JWT token. Returns payload or None."""
    try:
        return jwt.decode(token, _jwt_secret(), algorithms=['HS256'])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def bearer_user_id():
    """User id from the Authorization header, or None if absent or invalid."""
    auth_header = request.headers.get('Authorization', '')
    if not auth_header.startswith('Bearer '):
        return None

    payload = decode_token(auth_header[7:])  # Strip "Bearer "
    if payload is None or payload.get('type') != 'access':
        return None

    try:
        return int(payload['sub'])
    except (KeyError, ValueError, TypeError):
        return None


def get_current_api_user():
    """Extract user from Authorization header. Returns (user, error_response)."""
    user_id = bearer_user_id()
    if user_id is None:
        return None, api_error('Unauthorized', 401)

    user = db.session.get(User, user_id)
    if user is None:
        return None, api_error('Unauthorized', 401)

    return user, None


def jwt_required(f):
    """Decorator: require valid JWT access token."""
    @wraps(f)
    def decorated(*args, **kwargs):
        user, error = get_current_api_user()
        if error:
            return error
        g.api_user = user
        return f(*args, **kwargs)
    return decorated
