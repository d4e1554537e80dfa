from flask import Blueprint, jsonify

from ..utils.services import get_preferences, get_record_service

bp = Blueprint('general', __name__)


@bp.route('/')
def index():
    # Also primes the session and the csrf_token cookie for API clients
    return jsonify({'service': 'fasten-records', 'ok': True})


@bp.route('/healthz')
def healthz():
    prefs = get_preferences()
    return jsonify({
        'ok': True,
        'storage': type(prefs.store).__name__,
        'domainConfigured': bool(prefs.domain),
        'signedIn': bool(prefs.auth_token),
        'generation': get_record_service().snapshot.generation,
    })
