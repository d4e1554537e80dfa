from __future__ import annotations
import logging
from flask import Blueprint, jsonify, request

from ..gateways.data_gateway import AuthExpired, GatewayError
from ..gateways.factory import resolve_domain
from ..gateways.fasten_api_gateway import normalize_domain
from ..utils.context import merge_context
from ..utils.services import error_response, get_gateway, get_gateway_for, get_preferences, get_record_service

bp = Blueprint('auth_api', __name__)

logger = logging.getLogger(__name__)


@bp.get('/api/domain')
def get_domain():
    prefs = get_preferences()
    return jsonify(merge_context({
        'domain': resolve_domain(prefs),
        'stored': bool(prefs.domain),
    }))


@bp.post('/api/domain')
def set_domain():
    """Point the client at a reachable server. Everything stored for the previous server is dropped."""
    data = request.get_json(silent=True) or {}
    raw = str(data.get('domain') or '').strip()
    if not raw:
        return jsonify({'error': 'domain required'}), 400
    try:
        domain = normalize_domain(raw)
        get_gateway_for(domain).check_reachable()
    except GatewayError as e:
        logger.warning("Rejected server domain %s: %s", raw, e)
        return error_response(e)
    get_preferences().change_domain(domain)
    get_record_service().reset()
    logger.info("Server domain set to %s", domain)
    return jsonify(merge_context({'ok': True, 'domain': domain}))


@bp.post('/api/login')
def login():
    data = request.get_json(silent=True) or {}
    username = str(data.get('username') or '').strip()
    password = str(data.get('password') or '')
    if not username or not password:
        return jsonify({'error': 'username and password are required'}), 400
    try:
        token = get_gateway().sign_in(username, password)
    except GatewayError as e:
        return error_response(e)
    prefs = get_preferences()
    prefs.auth_token = token
    prefs.username = username
    get_record_service().reset()
    return jsonify(merge_context({'ok': True, 'username': username}, username=username))


@bp.post('/api/register')
def register():
    data = request.get_json(silent=True) or {}
    username = str(data.get('username') or '').strip()
    password = str(data.get('password') or '')
    email = str(data.get('email') or '').strip()
    if not username or not password or not email:
        return jsonify({'error': 'username, password and email are required'}), 400
    try:
        get_gateway().register(username, password, email)
    except GatewayError as e:
        return error_response(e)
    return jsonify(merge_context({'ok': True, 'username': username}))


@bp.post('/api/logout')
def logout():
    get_preferences().sign_out()
    get_record_service().reset()
    return jsonify({'ok': True})


@bp.post('/api/token/refresh')
def refresh_token():
    prefs = get_preferences()
    token = prefs.auth_token
    if not token:
        return error_response(AuthExpired('Not signed in'))
    try:
        fresh = get_gateway().refresh_token(token)
    except GatewayError as e:
        return error_response(e)
    if not fresh:
        return error_response(AuthExpired('Token refresh failed'))
    prefs.auth_token = fresh
    return jsonify(merge_context({'ok': True}))
