"""Settings loader with environment variable and Docker secrets integration."""
from __future__ import annotations
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from tempfile import gettempdir
from typing import Iterable, Optional, Union


def _load_secret_from_file(secret_name: str, env_var: str | None = None) -> str | None:
    """
    Load secret from /run/secrets (Docker secrets pattern).

    Priority:
    1. /run/secrets/{secret_name} (Docker secrets mount)
    2. Environment variable (fallback)

    Args:
        secret_name: Name of the secret file in /run/secrets
        env_var: Optional environment variable name to check as fallback

    Returns:
        Secret value or None if not found
    """
    secret_file = Path("/run/secrets") / secret_name

    if secret_file.exists() and secret_file.is_file():
        try:
            secret_value = secret_file.read_text().strip()
            if secret_value:
                print(f"[settings] ✓ Loaded {secret_name} from /run/secrets")
                return secret_value
        except OSError as e:
            print(f"[settings] ✗ Failed to read /run/secrets/{secret_name}: {e}")

    if env_var:
        secret_value = os.getenv(env_var)
        if secret_value:
            return secret_value

    return None


def parse_name_list(value: Union[str, Iterable[str], None]) -> frozenset[str]:
    """Parse a comma-separated list (or iterable) into a set of trimmed names.

    Empty entries are discarded and order is irrelevant:

        >>> sorted(parse_name_list(" ADMIN, USER,, "))
        ['ADMIN', 'USER']
    """
    if value is None:
        return frozenset()
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = value
    return frozenset(str(item).strip() for item in items if item is not None and str(item).strip())


@dataclass(frozen=True)
class AuthzConfig:
    """Authorization settings shared by the login gate and the role reconciler.

    Attributes:
        allowed_groups: Groups permitted to establish a session (empty denies everyone)
        admin_group: Administrative group that elevated roles converge on
        elevated_roles: Roles that map to ``admin_group`` instead of their own group
        sync_groups: Push role changes to the remote group directory
        default_role: Role assigned to users created at first login
        authority_prefix: Prefix applied when presenting roles downstream
        groups_claims: Token claims that may carry group names
    """
    allowed_groups: frozenset[str] = frozenset()
    admin_group: str = "ADMIN"
    elevated_roles: frozenset[str] = frozenset({"MANAGER_L1", "MANAGER_L2", "MANAGER_L3", "HR"})
    sync_groups: bool = True
    default_role: str = "USER"
    authority_prefix: str = "ROLE_"
    groups_claims: tuple[str, ...] = ("groups", "cognito:groups")

    def __post_init__(self):
        object.__setattr__(self, "allowed_groups", parse_name_list(self.allowed_groups))
        object.__setattr__(self, "elevated_roles", parse_name_list(self.elevated_roles))
        claims = self.groups_claims
        if isinstance(claims, str):
            claims = [c.strip() for c in claims.split(",")]
        object.__setattr__(self, "groups_claims", tuple(c for c in claims if c))


@dataclass
class AppConfig:
    """Application configuration container."""
    # Mode
    demo_mode: bool

    # Flask
    secret_key: str
    secret_key_fallbacks: list[str] = field(default_factory=list)
    session_cookie_secure: bool = True

    # Keycloak/OIDC
    keycloak_url: str = ""
    keycloak_realm: str = "staff"
    keycloak_service_realm: str = "staff"
    keycloak_issuer: str = ""
    keycloak_server_url: str = ""
    keycloak_public_issuer: str = ""

    # OIDC Client
    oidc_client_id: str = "staff-auth"
    oidc_client_secret: str = ""
    oidc_redirect_uri: str = ""
    post_logout_redirect_uri: str = ""
    post_login_redirect_uri: str = "/"

    # Service Account (group directory)
    keycloak_service_client_id: str = "automation-cli"
    keycloak_service_client_secret: str = ""

    # Identity store
    database_url: str = ""

    # Audit dispatcher bounds
    audit_max_workers: int = 2
    audit_max_pending: int = 1000

    # Authorization
    authz: AuthzConfig = field(default_factory=AuthzConfig)


def _get_or_generate(var_name: str, demo_default: Optional[str] = None, required: bool = True, demo_mode: bool = False) -> str:
    """Get environment variable or use demo default."""
    value = os.environ.get(var_name)
    if value:
        return value

    if demo_mode and demo_default is not None:
        print(f"[demo-mode] Using default for {var_name}")
        os.environ[var_name] = demo_default
        return demo_default

    if not required:
        return ""

    raise RuntimeError(f"Environment variable {var_name} is required in production mode.")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}")


def load_authz_settings() -> AuthzConfig:
    """Build the authorization value object from environment variables."""
    defaults = AuthzConfig()
    return AuthzConfig(
        allowed_groups=os.environ.get("ALLOWED_GROUPS", ""),
        admin_group=os.environ.get("ADMIN_GROUP", defaults.admin_group).strip() or defaults.admin_group,
        elevated_roles=os.environ.get("ELEVATED_ROLES", ",".join(sorted(defaults.elevated_roles))),
        sync_groups=_env_flag("DIRECTORY_SYNC_GROUPS", True),
        default_role=os.environ.get("DEFAULT_ROLE", defaults.default_role).strip() or defaults.default_role,
        authority_prefix=os.environ.get("ROLE_AUTHORITY_PREFIX", defaults.authority_prefix),
        groups_claims=os.environ.get("GROUPS_CLAIMS", ",".join(defaults.groups_claims)),
    )


def load_settings() -> AppConfig:
    """Load application settings from environment and /run/secrets."""
    demo_mode = os.environ.get("DEMO_MODE", "false").lower() == "true"

    # Flask secret key
    secret_key = _load_secret_from_file("flask_secret_key", "FLASK_SECRET_KEY")
    if not secret_key:
        if demo_mode:
            secret_key = secrets.token_urlsafe(48)
            os.environ["FLASK_SECRET_KEY"] = secret_key
            print("[demo-mode] Generated temporary FLASK_SECRET_KEY")
        else:
            raise RuntimeError("FLASK_SECRET_KEY not found in /run/secrets or environment")

    secret_key_fallbacks = [
        key.strip()
        for key in os.environ.get("FLASK_SECRET_KEY_FALLBACKS", "").split(",")
        if key.strip()
    ]

    session_secure_str = os.environ.get("FLASK_SESSION_COOKIE_SECURE")
    session_cookie_secure = (session_secure_str or "true").lower() == "true"

    # Keycloak URLs
    keycloak_url = os.environ.get("KEYCLOAK_URL", "http://127.0.0.1:8080" if demo_mode else "")
    keycloak_realm = os.environ.get("KEYCLOAK_REALM", "staff")
    keycloak_service_realm = os.environ.get("KEYCLOAK_SERVICE_REALM", keycloak_realm)

    keycloak_issuer = _get_or_generate(
        "KEYCLOAK_ISSUER",
        demo_default=f"http://localhost:8080/realms/{keycloak_realm}" if demo_mode else None,
        demo_mode=demo_mode
    )
    keycloak_server_url = os.environ.get("KEYCLOAK_SERVER_URL", keycloak_issuer)
    keycloak_public_issuer = os.environ.get("KEYCLOAK_PUBLIC_ISSUER", keycloak_issuer)
    if not keycloak_url and "/realms/" in keycloak_server_url:
        keycloak_url = keycloak_server_url.split("/realms/")[0]

    # OIDC
    oidc_client_id = _get_or_generate("OIDC_CLIENT_ID", demo_default="staff-auth", demo_mode=demo_mode)
    oidc_client_secret = _load_secret_from_file("oidc_client_secret", "OIDC_CLIENT_SECRET") or ""
    oidc_redirect_uri = _get_or_generate(
        "OIDC_REDIRECT_URI",
        demo_default="http://localhost:5000/callback" if demo_mode else None,
        demo_mode=demo_mode
    )
    post_logout_redirect_uri = _get_or_generate(
        "POST_LOGOUT_REDIRECT_URI",
        demo_default="http://localhost:5000/" if demo_mode else None,
        demo_mode=demo_mode
    )
    post_login_redirect_uri = os.environ.get("POST_LOGIN_REDIRECT_URI", "/")

    # Service account for the group directory
    keycloak_service_client_id = _get_or_generate(
        "KEYCLOAK_SERVICE_CLIENT_ID",
        demo_default="automation-cli",
        demo_mode=demo_mode
    )
    keycloak_service_client_secret = _load_secret_from_file(
        "keycloak_service_client_secret",
        "KEYCLOAK_SERVICE_CLIENT_SECRET"
    )
    if not keycloak_service_client_secret:
        keycloak_service_client_secret = _get_or_generate(
            "KEYCLOAK_SERVICE_CLIENT_SECRET",
            demo_default="demo-service-secret",
            demo_mode=demo_mode
        )

    # Identity store
    database_url = _load_secret_from_file("database_url", "DATABASE_URL")
    if not database_url:
        if demo_mode:
            database_url = f"sqlite:///{Path(gettempdir()) / 'staff_auth_demo.db'}"
            print(f"[demo-mode] Using local sqlite database {database_url}")
        else:
            raise RuntimeError("DATABASE_URL not found in /run/secrets or environment")

    authz = load_authz_settings()
    if not authz.allowed_groups:
        print("[settings] WARNING: ALLOWED_GROUPS is empty; every login will be denied")

    mode_label = "DEMO" if demo_mode else "PRODUCTION"
    print(
        f"[settings] Mode={mode_label}; realm={keycloak_realm}; client_id={oidc_client_id}; "
        f"allowed_groups={sorted(authz.allowed_groups)}; sync_groups={authz.sync_groups}"
    )

    if demo_mode:
        print("[settings] WARNING: Demo credentials in use. Do not deploy with these defaults.")

    return AppConfig(
        demo_mode=demo_mode,
        secret_key=secret_key,
        secret_key_fallbacks=secret_key_fallbacks,
        session_cookie_secure=session_cookie_secure,
        keycloak_url=keycloak_url,
        keycloak_realm=keycloak_realm,
        keycloak_service_realm=keycloak_service_realm,
        keycloak_issuer=keycloak_issuer,
        keycloak_server_url=keycloak_server_url,
        keycloak_public_issuer=keycloak_public_issuer,
        oidc_client_id=oidc_client_id,
        oidc_client_secret=oidc_client_secret,
        oidc_redirect_uri=oidc_redirect_uri,
        post_logout_redirect_uri=post_logout_redirect_uri,
        post_login_redirect_uri=post_login_redirect_uri,
        keycloak_service_client_id=keycloak_service_client_id,
        keycloak_service_client_secret=keycloak_service_client_secret,
        database_url=database_url,
        audit_max_workers=_env_int("AUDIT_MAX_WORKERS", 2),
        audit_max_pending=_env_int("AUDIT_MAX_PENDING", 1000),
        authz=authz,
    )
