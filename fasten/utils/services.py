from __future__ import annotations
from typing import Any, Dict, Tuple

from flask import current_app, jsonify

from ..gateways.data_gateway import (
    AuthenticationFailed,
    AuthExpired,
    GatewayError,
    MalformedResponse,
    NetworkFailure,
    ServerRejected,
)
from ..services.record_service import RecordService
from ..services.storage import ClientPreferences, MemoryKeyValueStore


def _registry() -> Dict[str, Any]:
    return current_app.extensions['fasten']


def get_preferences() -> ClientPreferences:
    return _registry()['preferences']


def get_record_service() -> RecordService:
    return _registry()['records']


def get_gateway():
    """Gateway for the currently stored domain; raises GatewayError when none is set."""
    return _registry()['gateway_factory'](get_preferences())


def get_gateway_for(domain: str):
    """Gateway for a domain that has not been stored yet."""
    scratch = ClientPreferences(MemoryKeyValueStore())
    scratch.change_domain(domain)
    return _registry()['gateway_factory'](scratch)


def status_for(exc: Exception) -> int:
    if isinstance(exc, ServerRejected) and exc.status_code and 400 <= exc.status_code < 500:
        # the server refused the request itself
        return 400
    if isinstance(exc, (AuthExpired, AuthenticationFailed)):
        return 401
    if isinstance(exc, (NetworkFailure, MalformedResponse, ServerRejected)):
        return 502
    if isinstance(exc, GatewayError):
        return 400
    return 500


def error_response(exc: Exception) -> Tuple[Any, int]:
    status = status_for(exc)
    if status >= 500 and not isinstance(exc, GatewayError):
        current_app.logger.exception("Unhandled error: %s", exc)
    return jsonify({'error': str(exc)}), status
