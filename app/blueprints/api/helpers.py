"""
API helper functions: response envelope builders and service lookups.
"""
from flask import current_app, jsonify


def api_error(message, status=400):
    """Build a standard API error response."""
    return jsonify({'success': False, 'error': message}), status


def api_success(data=None, status=200):
    """Build a standard API success response."""
    return jsonify({'success': True, 'data': data}), status


def service(name):
    """Fetch a per-process service built by the app factory."""
    return current_app.extensions[name]
