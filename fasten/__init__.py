import os
from flask import Flask
from flask_session import Session
from dotenv import load_dotenv


def create_app(*, gateway_factory=None, store=None):
    """Build the Flask app.

    ``gateway_factory`` maps ClientPreferences to a gateway (defaults to the
    HTTP gateway for the stored domain); ``store`` overrides the key-value
    store picked from FASTEN_STORAGE. Both exist so tests can inject fakes.
    """
    load_dotenv()

    app = Flask(__name__)
    app.secret_key = os.getenv('FLASK_SECRET_KEY', 'dev-secret')

    from datetime import timedelta
    from .services.storage import ClientPreferences, _truthy, build_store, make_redis_client

    # Session config (Redis or FakeRedis)
    app.config['SESSION_TYPE'] = 'redis'
    app.config['SESSION_PERMANENT'] = False
    app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(seconds=int(os.getenv('SESSION_LIFETIME_SECONDS', '1800')))
    app.config['SESSION_USE_SIGNER'] = True
    app.config['SESSION_COOKIE_SECURE'] = _truthy(os.getenv('SESSION_COOKIE_SECURE', '0'))
    app.config['SESSION_COOKIE_HTTPONLY'] = True
    app.config['SESSION_COOKIE_SAMESITE'] = os.getenv('SESSION_COOKIE_SAMESITE', 'Strict')

    redis_client = make_redis_client()
    if not _truthy(os.getenv('USE_FAKEREDIS', '1')):
        try:
            redis_client.ping()
        except Exception as e:
            app.logger.warning("Redis unreachable (%s); falling back to FakeRedis", e)
            import fakeredis
            redis_client = fakeredis.FakeRedis(decode_responses=False)
    app.config['SESSION_REDIS'] = redis_client
    Session(app)

    # Client state and record pipeline
    from .gateways.factory import get_gateway
    from .services.record_service import RecordService

    preferences = ClientPreferences(store if store is not None else build_store(client=redis_client))
    factory = gateway_factory or get_gateway
    app.extensions['fasten'] = {
        'preferences': preferences,
        'gateway_factory': factory,
        'records': RecordService(preferences, factory),
    }

    # Security headers + CSRF double-submit cookie
    from flask import request, session as flask_session, jsonify
    import secrets

    @app.before_request
    def _csrf_before_request():
        if 'csrf_token' not in flask_session:
            flask_session['csrf_token'] = secrets.token_urlsafe(32)
        if request.method in ('GET', 'HEAD', 'OPTIONS'):
            return None
        h = request.headers.get('X-CSRF-Token')
        c = request.cookies.get('csrf_token')
        s = flask_session.get('csrf_token')
        if not h or not c or not s or h != c or h != s:
            return jsonify({'error': 'CSRF token invalid'}), 403
        return None

    @app.after_request
    def _security_headers(resp):
        resp.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate'
        resp.headers['Pragma'] = 'no-cache'
        resp.headers['Expires'] = '0'
        resp.headers['Vary'] = 'Cookie'
        resp.headers['Referrer-Policy'] = 'no-referrer'
        resp.headers['X-Content-Type-Options'] = 'nosniff'
        resp.headers['X-Frame-Options'] = 'DENY'
        resp.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none'"
        tok = flask_session.get('csrf_token')
        if tok:
            resp.set_cookie('csrf_token', tok, secure=app.config.get('SESSION_COOKIE_SECURE', False),
                            httponly=False, samesite=app.config.get('SESSION_COOKIE_SAMESITE', 'Strict'), path='/')
        return resp

    # Blueprints
    from .blueprints.general import bp as general_bp
    from .blueprints.auth_api import bp as auth_bp
    from .blueprints.records_api import bp as records_bp
    from .blueprints.settings_api import bp as settings_bp

    app.register_blueprint(general_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(records_bp, url_prefix='/api')
    app.register_blueprint(settings_bp, url_prefix='/api')

    app.logger.info("create_app ready (storage=%s)", type(preferences.store).__name__)
    return app
