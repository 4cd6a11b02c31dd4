"""
API Authentication endpoints: registration, JWT login, and user info.
"""
from datetime import datetime

from flask import request, g, current_app
from marshmallow import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.blueprints.api import api_bp
from app.blueprints.api.decorators import create_access_token, jwt_required
from app.blueprints.api.helpers import api_error, api_success
from app.blueprints.api.schemas import RegisterSchema, UserSchema
from app.extensions import db, limiter
from app.models.user import User


def _token_response(user, status=200):
    return api_success({
        'token': create_access_token(user.id),
        'user': UserSchema().dump(user),
    }, status)


@api_bp.route('/auth/register', methods=['POST'])
@limiter.limit('5 per hour')
def api_register():
    """Create an account and return a JWT.

    Request body:
        {"email": "...", "password": "...", "name": "..."}
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error('Request body must be valid JSON.', 400)

    try:
        fields = RegisterSchema().load(data)
    except ValidationError as e:
        field, messages = next(iter(e.messages.items()))
        return api_error(f'{field}: {messages[0]}', 400)

    email = fields['email'].strip().lower()
    if db.session.execute(select(User.id).where(User.email == email)).first():
        return api_error('Email already registered', 409)

    user = User(email=email, name=fields.get('name'))
    user.set_password(fields['password'])
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return api_error('Email already registered', 409)

    current_app.logger.info(f'User {user.id} registered')
    return _token_response(user, 201)


@api_bp.route('/auth/login', methods=['POST'])
@limiter.limit('10 per minute')
def api_login():
    """Authenticate user and return a JWT.

    Request body:
        {"email": "...", "password": "..."}

    Returns:
        {"success": true, "data": {"token": "...", "user": {...}}}
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error('Request body must be valid JSON.', 400)

    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    if not email or not password:
        return api_error('Email and password are required.', 400)

    user = db.session.execute(
        select(User).where(User.email == email)
    ).scalar_one_or_none()
    if user is None or not user.check_password(password):
        return api_error('Invalid email or password.', 401)

    user.last_login = datetime.utcnow()
    db.session.commit()

    return _token_response(user)


@api_bp.route('/auth/me', methods=['GET'])
@jwt_required
def api_me():
    """Get current authenticated user profile."""
    return api_success({'user': UserSchema().dump(g.api_user)})
