"""Authentication routes: OIDC login with PKCE, callback gate, logout."""
from __future__ import annotations
import base64
import hashlib
import secrets
import string
from urllib.parse import urlencode

from authlib.integrations.flask_client import OAuth
from flask import Blueprint, current_app, jsonify, redirect, request, session, url_for

from authservice.api.context import (
    client_ip,
    current_user,
    get_audit_writer,
    get_gate,
    user_agent,
)
from authservice.core.gate import MOBILE_CHANNEL

bp = Blueprint("auth", __name__)

# Module-level OAuth instance (will be initialized by create_app)
oauth: OAuth = None
_client = None

SUPPORTED_CHANNELS = {"web", MOBILE_CHANNEL}


def init_oauth(app, cfg):
    """Initialize the Keycloak OIDC client."""
    global oauth, _client

    oauth = OAuth(app)
    _client = oauth.register(
        name="keycloak",
        server_metadata_url=f"{cfg.keycloak_server_url}/.well-known/openid-configuration",
        client_id=cfg.oidc_client_id,
        client_secret=cfg.oidc_client_secret or None,
        client_kwargs={"scope": "openid profile email"},
        fetch_token=lambda: session.get("token"),
    )
    return oauth


def get_oidc_client():
    """Get the registered OIDC client."""
    if _client is None:
        raise RuntimeError("OIDC client not initialized. Call init_oauth first.")
    return _client


# ─────────────────────────────────────────────────────────────────────────────
# PKCE Helpers
# ─────────────────────────────────────────────────────────────────────────────
def _generate_code_verifier(length: int = 64) -> str:
    """Generate PKCE code verifier."""
    alphabet = string.ascii_letters + string.digits + "-._~"
    return "".join(secrets.choice(alphabet) for _ in range(length))


def _build_code_challenge(code_verifier: str) -> str:
    """Build PKCE code challenge from verifier."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def _collect_claims(client, token: dict) -> dict:
    """Merge userinfo endpoint claims with the validated ID token claims."""
    claims = {}
    try:
        claims.update(client.userinfo(token=token) or {})
    except Exception as exc:
        current_app.logger.warning(f"Userinfo fetch failed: {exc}")
    claims.update(token.get("userinfo") or {})
    return claims


def establish_session(claims: dict, channel: str = "web"):
    """Run the authorization gate and populate or clear the session.

    Returns:
        Flask response: redirect on allow, 403 JSON on deny
    """
    cfg = current_app.config["APP_CONFIG"]
    decision = get_gate().evaluate_login(
        claims,
        ip_address=client_ip(),
        user_agent=user_agent(),
        channel=channel,
    )
    if not decision.allow:
        session.clear()
        return jsonify({"error": "Forbidden", "message": decision.reason}), 403

    session["user"] = {
        "id": decision.user_id,
        "sub": claims.get("sub"),
        "email": claims.get("email") or claims.get("preferred_username"),
    }
    session["authorities"] = list(decision.authorities)
    current_app.logger.info(f"[Auth] Session established for user {decision.user_id}: {list(decision.authorities)}")
    return redirect(cfg.post_login_redirect_uri)


# ─────────────────────────────────────────────────────────────────────────────
# Routes
# ─────────────────────────────────────────────────────────────────────────────
@bp.route("/login")
def login():
    """Initiate OIDC login flow with PKCE.

    Query params:
        channel: ``web`` (default) or ``mobile``; recorded on the audit trail
    """
    cfg = current_app.config["APP_CONFIG"]
    client = get_oidc_client()

    channel = request.args.get("channel", "web").lower()
    session["login_channel"] = channel if channel in SUPPORTED_CHANNELS else "web"

    code_verifier = _generate_code_verifier()
    session["pkce_code_verifier"] = code_verifier

    return client.authorize_redirect(
        redirect_uri=cfg.oidc_redirect_uri,
        code_challenge=_build_code_challenge(code_verifier),
        code_challenge_method="S256",
    )


@bp.route("/callback")
def callback():
    """Handle OIDC callback: authorize the principal before any session exists."""
    client = get_oidc_client()

    code_verifier = session.pop("pkce_code_verifier", None)
    if not code_verifier:
        return redirect(url_for("auth.login"))
    channel = session.pop("login_channel", "web")

    token = client.authorize_access_token(code_verifier=code_verifier)
    claims = _collect_claims(client, token)

    response = establish_session(claims, channel)
    if session.get("user"):
        session["token"] = token
    return response


@bp.route("/logout", methods=["GET", "POST"])
def logout():
    """Record the logout, clear the session and end the IdP session."""
    cfg = current_app.config["APP_CONFIG"]

    user = current_user()
    if user:
        get_audit_writer().log_logout(user.get("sub"), user.get("email"), client_ip(), user_agent())

    token = session.get("token") or {}
    id_token = token.get("id_token")
    session.clear()

    end_session_endpoint = f"{cfg.keycloak_public_issuer.rstrip('/')}/protocol/openid-connect/logout"
    params = {"post_logout_redirect_uri": cfg.post_logout_redirect_uri}
    if id_token:
        params["id_token_hint"] = id_token
    else:
        params["client_id"] = cfg.oidc_client_id

    return redirect(f"{end_session_endpoint}?{urlencode(params)}")
