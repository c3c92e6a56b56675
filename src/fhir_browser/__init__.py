import logging
import os
import secrets
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, jsonify, request, session as flask_session
from flask_session import Session


def _truthy(v, default: str = '0') -> bool:
    s = v if v is not None else default
    return str(s).strip().lower() in ('1', 'true', 'yes', 'on')


def _configure_logging(app: Flask) -> None:
    level_name = str(os.getenv('LOG_LEVEL', 'INFO')).strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format='%(asctime)s %(levelname)s [%(name)s] %(message)s')
    logging.getLogger('fhir_browser').setLevel(level)
    app.logger.setLevel(level)


def _redis_client():
    if _truthy(os.getenv('USE_FAKEREDIS', '1')):
        import fakeredis
        return fakeredis.FakeRedis(decode_responses=False)
    from redis import Redis
    client = Redis(
        host=os.getenv('REDIS_HOST', '127.0.0.1'),
        port=int(os.getenv('REDIS_PORT', '6379')),
        db=int(os.getenv('REDIS_DB', '0')),
        password=os.getenv('REDIS_PASSWORD') or None,
        ssl=_truthy(os.getenv('REDIS_SSL', '0')),
        decode_responses=False,
    )
    client.ping()
    return client


def create_app():
    load_dotenv()

    pkg_dir = os.path.dirname(__file__)
    app = Flask(__name__, template_folder=os.path.join(pkg_dir, 'templates'),
                static_folder=os.path.join(pkg_dir, 'static'))
    app.secret_key = os.getenv('FLASK_SECRET_KEY', 'dev-secret')
    _configure_logging(app)

    # Default expand state for sequences in the resource viewer
    app.config['FHIR_TREE_EXPANDED'] = _truthy(os.getenv('FHIR_TREE_EXPANDED'), '1')

    # Server-side session (Redis or FakeRedis); only ids and view state live here
    app.config['SESSION_TYPE'] = 'redis'
    app.config['SESSION_PERMANENT'] = False
    app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(seconds=int(os.getenv('SESSION_LIFETIME_SECONDS', '1800')))
    app.config['SESSION_USE_SIGNER'] = True
    app.config['SESSION_COOKIE_SECURE'] = _truthy(os.getenv('SESSION_COOKIE_SECURE', '0'))
    app.config['SESSION_COOKIE_HTTPONLY'] = True
    app.config['SESSION_COOKIE_SAMESITE'] = os.getenv('SESSION_COOKIE_SAMESITE', 'Strict')
    app.config['SESSION_REDIS'] = _redis_client()
    Session(app)

    @app.context_processor
    def _inject_globals():
        from .gateways.factory import get_client
        from .gateways.servers import FHIR_SERVERS, auth_label
        from .services.resource_display import resource_icon
        current = get_client().get_server_config()
        return {
            'csrf_token': flask_session.get('csrf_token', ''),
            'current_server': current,
            'current_auth_label': auth_label(current.auth),
            'servers': FHIR_SERVERS,
            'resource_icon': resource_icon,
        }

    # CSRF double-submit: header (fetch) or form field (HTML forms) must match cookie and session
    @app.before_request
    def _csrf_before_request():
        if 'csrf_token' not in flask_session:
            flask_session['csrf_token'] = secrets.token_urlsafe(32)
        if request.method in ('GET', 'HEAD', 'OPTIONS'):
            return None
        sent = request.headers.get('X-CSRF-Token') or request.form.get('csrf_token')
        cookie = request.cookies.get('csrf_token')
        stored = flask_session.get('csrf_token')
        if not sent or not cookie or not stored or sent != cookie or sent != stored:
            app.logger.warning('CSRF token rejected for %s %s', request.method, request.path)
            return jsonify({'error': 'CSRF token invalid'}), 403
        return None

    @app.after_request
    def _security_headers(resp):
        if not request.path.startswith('/static'):
            resp.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate'
            resp.headers['Pragma'] = 'no-cache'
            resp.headers['Expires'] = '0'
            resp.headers['Vary'] = 'Cookie'
        resp.headers['Referrer-Policy'] = 'no-referrer'
        resp.headers['X-Content-Type-Options'] = 'nosniff'
        resp.headers['X-Frame-Options'] = 'DENY'
        resp.headers['Content-Security-Policy'] = " ".join([
            "default-src 'self'",
            "script-src 'self' 'unsafe-inline'",
            "style-src 'self' 'unsafe-inline'",
            "img-src 'self' data:",
            "connect-src 'self'",
            "frame-ancestors 'none'",
        ])
        tok = flask_session.get('csrf_token')
        if tok:
            resp.set_cookie('csrf_token', tok, secure=app.config.get('SESSION_COOKIE_SECURE', False),
                            httponly=False, samesite=app.config.get('SESSION_COOKIE_SAMESITE', 'Strict'), path='/')
        return resp

    @app.after_request
    def _trace_after(resp):
        if not request.path.startswith('/static'):
            app.logger.info('%s %s %s', request.method, request.path, resp.status_code)
        return resp

    # Blueprints
    from .blueprints.general import bp as general_bp
    from .blueprints.servers import bp as servers_bp
    from .blueprints.resources import bp as resources_bp
    from .blueprints.fhir_api import bp as fhir_api_bp

    app.register_blueprint(general_bp)
    app.register_blueprint(servers_bp)
    app.register_blueprint(resources_bp)
    app.register_blueprint(fhir_api_bp, url_prefix='/api/fhir')

    return app
