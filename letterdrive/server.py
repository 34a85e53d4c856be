import logging
import os
from contextlib import contextmanager
from functools import wraps

from cachelib import FileSystemCache
import flask
from flask import current_app, g, jsonify, redirect, request, session, url_for
from flask_cors import CORS
from flask_session import Session
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError

from letterdrive.auth import AuthError, GoogleAuthGateway, Principal
from letterdrive.config import get_settings
from letterdrive.drive import DriveError, FolderLocks, FolderProvisioner, LetterStore, build_drive_service
from letterdrive.logging_setup import configure_logging
from letterdrive.roles import ADMIN

logger = logging.getLogger(__name__)

bp = flask.Blueprint('letters', __name__)


def _ext():
    return current_app.extensions['letterdrive']


def current_principal():
    data = session.get('principal')
    if not data:
        return None
    return Principal.model_validate(data)


def login_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        principal = current_principal()
        if principal is None:
            return jsonify(message="Not authenticated"), 401
        g.principal = principal
        return view(*args, **kwargs)
    return wrapper


def role_required(role):
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            if g.principal.role != role:
                return jsonify(message="Access denied. Insufficient permissions."), 403
            return view(*args, **kwargs)
        return wrapper
    return decorator


@contextmanager
def letter_store():
    """A LetterStore bound to the signed-in user's Drive."""
    ext = _ext()
    principal = g.principal
    credentials = ext['auth'].credentials_for(principal)
    service = ext['drive_factory'](credentials)
    try:
        yield LetterStore(service, FolderProvisioner(service, ext['folder_locks']))
    finally:
        # Save credentials back to session in case the access token was refreshed.
        if credentials.token and credentials.token != principal.accessToken:
            refreshed = principal.model_copy(update={'accessToken': credentials.token})
            session['principal'] = refreshed.model_dump()


def _login_view():
    return _ext()['settings'].login_url or url_for('letters.index')


def _dashboard_view():
    return _ext()['settings'].dashboard_url or url_for('letters.dashboard')


@bp.route('/auth/google')
def google_login():
    url, state = _ext()['auth'].authorization_url()
    # Store the state so the callback can verify the auth server response.
    session['state'] = state
    return redirect(url)


@bp.route('/auth/google/callback')
def google_callback():
    state = session.pop('state', None)
    if request.args.get('error'):
        logger.warning("OAuth provider reported: %s", request.args['error'])
        return redirect(_login_view())
    if not state or request.args.get('state') != state:
        logger.warning("OAuth callback with missing or mismatched state")
        return redirect(_login_view())

    try:
        principal = _ext()['auth'].exchange(request.url, state)
    except AuthError:
        return redirect(_login_view())

    session['principal'] = principal.model_dump()
    # New session id on sign-in; the pre-login id is dropped from the store.
    current_app.session_interface.regenerate(session)
    return redirect(_dashboard_view())


@bp.route('/api/user')
@login_required
def get_user():
    return jsonify(g.principal.public())


@bp.route('/api/save-letter', methods=['POST'])
@login_required
def save_letter():
    data = request.get_json(silent=True) or {}
    content = data.get('content')
    content = '' if content is None else str(content)

    with letter_store() as store:
        result = store.save_letter(content, g.principal.email)
    return jsonify(result)


@bp.route('/api/letters')
@login_required
@role_required(ADMIN)
def list_letters():
    with letter_store() as store:
        letters = store.list_letters()
    return jsonify(letters=letters)


@bp.route('/api/letters/<file_id>', methods=['DELETE'])
@login_required
@role_required(ADMIN)
def delete_letter(file_id):
    with letter_store() as store:
        store.delete_letter(file_id)
    return jsonify(message="Letter deleted successfully")


@bp.route('/api/logout', methods=['POST'])
def logout():
    ext = _ext()
    try:
        principal = current_principal()
        if principal and ext['settings'].revoke_on_logout:
            ext['auth'].revoke(principal.accessToken)
        # An emptied session is deleted from the store and its cookie expired.
        session.clear()
    except Exception:
        logger.exception("Logout error")
        return jsonify(message="Failed to logout"), 500
    if principal:
        logger.info("Signed out %s", principal.email)
    return jsonify(message="Logged out successfully")


@bp.route('/')
def index():
    return flask.render_template('login.html', principal=current_principal())


@bp.route('/dashboard')
def dashboard():
    principal = current_principal()
    if principal is None:
        return redirect(url_for('letters.index'))
    return flask.render_template('dashboard.html', principal=principal, is_admin=principal.role == ADMIN)


def _upstream_error(exc):
    logger.error("Upstream failure: %s", exc)
    return jsonify(error=str(exc)), 500


def create_app(settings=None, auth_gateway=None, drive_factory=None, folder_locks=None):
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = flask.Flask('letterdrive')
    app.secret_key = settings.session_secret
    app.config.update(
        SESSION_TYPE='cachelib',
        SESSION_CACHELIB=FileSystemCache(
            settings.session_cache_dir, threshold=settings.session_cache_threshold),
        SESSION_COOKIE_NAME=settings.session_cookie_name,
        SESSION_COOKIE_SECURE=settings.session_cookie_secure,
        # A frontend on another site needs cross-site cookies, which require https.
        SESSION_COOKIE_SAMESITE='None' if settings.session_cookie_secure else 'Lax',
    )
    Session(app)
    CORS(app, origins=[settings.allowed_origin], supports_credentials=True)

    app.extensions['letterdrive'] = {
        'settings': settings,
        'auth': auth_gateway or GoogleAuthGateway(settings),
        'drive_factory': drive_factory or build_drive_service,
        'folder_locks': folder_locks or FolderLocks(),
    }

    app.register_blueprint(bp)
    for exc_type in (DriveError, HttpError, RefreshError):
        app.register_error_handler(exc_type, _upstream_error)
    return app


def main():
    settings = get_settings()
    if settings.oauthlib_insecure_transport:
        # When running locally, disable OAuthlib's HTTPs verification.
        # Never enable this in production.
        os.environ['OAUTHLIB_INSECURE_TRANSPORT'] = '1'

    app = create_app(settings)
    app.run(settings.host, settings.port, debug=settings.debug)


if __name__ == '__main__':
    main()
