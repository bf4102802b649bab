"""Helper functions for the application."""
from datetime import datetime
from typing import Any, Optional

from flask import jsonify, request

from attendiq.utils.errors import InvalidRequest

def handle_error(error, status_code: int):
    """Handle application errors with consistent format."""
    return jsonify({
        'error': True,
        'message': str(error),
        'status_code': status_code
    }), status_code

def success_response(data: Any = None, message: str = "Success", status_code: int = 200, **extra):
    """Return consistent success response."""
    response = {
        'error': False,
        'message': message
    }

    if data is not None:
        response['data'] = data
    response.update(extra)

    return jsonify(response), status_code

def error_response(message: str, status_code: int = 400, reason: Optional[str] = None, **extra):
    """Return consistent error response."""
    response = {
        'error': True,
        'message': message,
        'status_code': status_code
    }
    if reason:
        response['reason'] = reason
    response.update(extra)

    return jsonify(response), status_code

def isoformat(value: Optional[datetime]) -> Optional[str]:
    """Serialize an optional datetime."""
    return value.isoformat() if value else None

def json_body() -> dict:
    """Request JSON as a dict; missing or non-object bodies are rejected."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidRequest("Request body must be a JSON object", reason='invalid_body')
    return data
