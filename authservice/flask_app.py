"""Flask application factory and bootstrap.

This module provides the create_app() factory function for initializing
the Flask application with all blueprints, middleware, and configuration.
"""
from __future__ import annotations
import hmac
import os
import secrets
from tempfile import gettempdir

from flask import Flask, abort, current_app, g, request, session
from flask_session import Session
from werkzeug.middleware.proxy_fix import ProxyFix

from authservice.config import AppConfig, load_settings
from authservice.core.audit import AuditDispatcher, AuditLogWriter
from authservice.store import IdentityStore, build_engine, build_session_factory, init_db


# ─────────────────────────────────────────────────────────────────────────────
# Application Factory
# ─────────────────────────────────────────────────────────────────────────────
def create_app(cfg: AppConfig | None = None, directory=None, audit_dispatcher=None) -> Flask:
    """Create and configure Flask application.

    Args:
        cfg: Settings (loaded from the environment when omitted)
        directory: Remote group directory (Keycloak when omitted and sync is on)
        audit_dispatcher: Pool for audit writes (bounded thread pool when omitted)
    """
    cfg = cfg or load_settings()

    app = Flask(__name__)

    # Store config for easy access in routes
    app.config["APP_CONFIG"] = cfg
    app.config["DEMO_MODE"] = cfg.demo_mode

    # Flask session configuration
    app.config["SECRET_KEY"] = cfg.secret_key
    if cfg.secret_key_fallbacks:
        app.config["SECRET_KEY_FALLBACKS"] = cfg.secret_key_fallbacks

    app.config["SESSION_TYPE"] = os.environ.get("FLASK_SESSION_TYPE", "filesystem")
    if app.config["SESSION_TYPE"] == "filesystem":
        session_dir = os.environ.get("FLASK_SESSION_DIR") or os.path.join(gettempdir(), "staff_auth_flask_session")
        os.makedirs(session_dir, exist_ok=True)
        app.config["SESSION_FILE_DIR"] = session_dir

    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["SESSION_COOKIE_SECURE"] = cfg.session_cookie_secure
    app.config["CSRF_SESSION_KEY"] = "_csrf_token"

    # Initialize session
    Session(app)

    # Trust X-Forwarded-* headers from proxy (nginx)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)  # type: ignore

    # Identity store
    engine = build_engine(cfg.database_url)
    init_db(engine)
    session_factory = build_session_factory(engine)
    _seed_roles(session_factory, cfg)
    app.config["DB_ENGINE"] = engine
    app.config["SESSION_FACTORY"] = session_factory

    # Audit writer (one bounded pool per worker process)
    dispatcher = audit_dispatcher or AuditDispatcher(cfg.audit_max_workers, cfg.audit_max_pending)
    app.config["AUDIT_WRITER"] = AuditLogWriter(session_factory, dispatcher)

    # Remote group directory
    if directory is None and cfg.authz.sync_groups:
        from authservice.directory import build_directory
        directory = build_directory(cfg)
    app.config["GROUP_DIRECTORY"] = directory

    # Initialize OIDC
    from authservice.api import auth
    auth.init_oauth(app, cfg)

    # Register blueprints
    from authservice.api import admin, errors, health

    app.register_blueprint(auth.bp)
    app.register_blueprint(health.bp)
    app.register_blueprint(admin.bp, url_prefix="/api/v1/admin")

    # Register error handlers
    errors.register_error_handlers(app)

    # Register middleware/before_request handlers
    _register_middleware(app)

    mode_label = "DEMO" if cfg.demo_mode else "PRODUCTION"
    print(f"[flask_app] Mode={mode_label}")
    print(f"[flask_app] Admin API registered at /api/v1/admin; group sync={'on' if directory else 'off'}")

    if cfg.demo_mode:
        print("[flask_app] WARNING: Demo mode active - do not deploy with demo credentials")

    return app


def _seed_roles(session_factory, cfg: AppConfig) -> None:
    """Ensure the default roles (and the configured default role) exist."""
    store = IdentityStore(session_factory())
    try:
        with store.transaction():
            store.seed_default_roles()
            store.ensure_role(cfg.authz.default_role, "Default role for new users")
    finally:
        store.close()


def _register_middleware(app: Flask):
    """Register before_request and teardown handlers."""

    @app.before_request
    def issue_csrf_token() -> None:
        if (request.endpoint or "").startswith("health."):
            return
        g.csrf_token = _generate_csrf_token()

    @app.before_request
    def enforce_csrf() -> None:
        """Validate CSRF token for state-changing admin requests."""
        if request.method not in {"POST", "PUT", "PATCH", "DELETE"}:
            return
        if not request.path.startswith("/api/"):
            return

        submitted_token = request.headers.get("X-CSRF-Token", "")
        session_token = session.get(app.config["CSRF_SESSION_KEY"], "")

        if not session_token or not submitted_token or not hmac.compare_digest(session_token, submitted_token):
            abort(400, description="CSRF validation failed")

    @app.after_request
    def expose_csrf_token(response):
        token = g.get("csrf_token")
        if token:
            response.headers["X-CSRF-Token"] = token
        return response

    @app.teardown_appcontext
    def release_store(exc=None) -> None:
        from authservice.api.context import close_store
        close_store(exc)


# ─────────────────────────────────────────────────────────────────────────────
# Helper Functions
# ─────────────────────────────────────────────────────────────────────────────
def _generate_csrf_token() -> str:
    """Generate or retrieve CSRF token for current session."""
    csrf_session_key = current_app.config["CSRF_SESSION_KEY"]
    token = session.get(csrf_session_key)
    if not token:
        token = secrets.token_urlsafe(32)
        session[csrf_session_key] = token
    return token
