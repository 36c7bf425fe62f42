"""Helper functions for the application."""
from typing import Any, Mapping

from flask import jsonify, request


def handle_error(error, status_code: int):
    """Handle application errors with consistent format."""
    message = getattr(error, 'description', None) or str(error)
    return jsonify({
        'error': True,
        'message': message,
        'status_code': status_code
    }), status_code


def success_response(data: Any = None, message: str = "Success", status_code: int = 200):
    """Return consistent success response."""
    response = {
        'error': False,
        'message': message
    }

    if data is not None:
        response['data'] = data

    return jsonify(response), status_code


def error_response(message: str, status_code: int = 400, **extra: Any):
    """Return consistent error response, with optional extra fields."""
    response = {
        'error': True,
        'message': message,
        'status_code': status_code
    }
    response.update(extra)
    return jsonify(response), status_code


def get_client_ip() -> str:
    """Address of the caller for the current request."""
    from qr_attendance.services.network_service import NetworkService
    return NetworkService.client_ip(request.headers, request.remote_addr)


def get_json_payload() -> Mapping:
    """Request JSON body, or an empty dict when it is missing or not an object."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}
