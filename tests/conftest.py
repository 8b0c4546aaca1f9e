"""Pytest shared fixtures."""
import os
import pathlib
import sys
from datetime import datetime, timezone

# Add project root to Python path
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Configure test environment BEFORE any app imports
os.environ.setdefault("DEMO_MODE", "true")
os.environ.setdefault("ALLOWED_GROUPS", "ADMIN,USER")

import pytest
import requests

from authservice.config import AppConfig, AuthzConfig
from authservice.core.audit import AuditLogWriter, InlineDispatcher
from authservice.directory.exceptions import IdentityNotFoundError
from authservice.store import IdentityStore, build_engine, build_session_factory, init_db


# ─────────────────────────────────────────────────────────────────────────────
# Network Guard Rails
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture(autouse=True)
def _block_network(monkeypatch, request):
    """
    Prevent unit tests from hitting live Keycloak endpoints.

    Integration tests are explicitly marked with @pytest.mark.integration and
    are allowed to perform real HTTP calls by skipping this fixture.
    """
    if request.node.get_closest_marker("integration"):
        return

    def _blocked(method):
        def _call(url, *args, **kwargs):
            raise RuntimeError(f"Unexpected HTTP {method} in unit test: {url}")
        return _call

    for method in ("get", "post", "put", "delete"):
        monkeypatch.setattr(requests, method, _blocked(method.upper()))


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────
def naive_utc(value: datetime) -> datetime:
    """sqlite drops tzinfo; compare timestamps as naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def audit_events(session_factory, **filters):
    """Audit rows read through a fresh session, oldest first."""
    store = IdentityStore(session_factory())
    try:
        return store.list_audit_events(newest_first=False, **filters)
    finally:
        store.close()


class FakeDirectory:
    """In-memory group directory recording every call.

    Args:
        memberships: identity key -> set of group names
        known_keys: keys the directory recognises (None means every key)
        aliases: (attribute, value) -> identity key, for alternate-key lookups
    """

    def __init__(self, memberships=None, known_keys=None, aliases=None):
        self.memberships = {key: set(groups) for key, groups in (memberships or {}).items()}
        self.known_keys = set(known_keys) if known_keys is not None else None
        self.aliases = dict(aliases or {})
        self.failures = {}
        self.calls = []

    def fail(self, operation, group, exc):
        self.failures[(operation, group)] = exc

    def _check(self, operation, key, group):
        if self.known_keys is not None and key not in self.known_keys:
            raise IdentityNotFoundError(key)
        exc = self.failures.get((operation, group))
        if exc is not None:
            raise exc

    def add_member_to_group(self, identity_key, group_name):
        self.calls.append(("add", identity_key, group_name))
        self._check("add", identity_key, group_name)
        self.memberships.setdefault(identity_key, set()).add(group_name)
        return True

    def remove_member_from_group(self, identity_key, group_name):
        self.calls.append(("remove", identity_key, group_name))
        self._check("remove", identity_key, group_name)
        self.memberships.setdefault(identity_key, set()).discard(group_name)
        return True

    def list_member_groups(self, identity_key):
        self.calls.append(("list", identity_key, None))
        self._check("list", identity_key, None)
        return set(self.memberships.get(identity_key, set()))

    def find_identity_key_by_attribute(self, attribute_name, value):
        self.calls.append(("find", attribute_name, value))
        return self.aliases.get((attribute_name, value))

    @property
    def mutating_calls(self):
        return [call for call in self.calls if call[0] in ("add", "remove")]


# ─────────────────────────────────────────────────────────────────────────────
# Identity store
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture()
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'identity.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture()
def store(session_factory):
    """Store seeded with ADMIN, USER and a few elevated roles."""
    store = IdentityStore(session_factory())
    with store.transaction():
        store.seed_default_roles()
        for name in ("HR", "MANAGER_L1", "MANAGER_L2", "MANAGER_L3"):
            store.ensure_role(name)
    yield store
    store.close()


@pytest.fixture()
def make_user(store):
    """Create a user with exactly the given roles."""
    counter = {"n": 0}

    def _make(external_id=None, email=None, roles=("USER",), username=None):
        counter["n"] += 1
        external_id = external_id or f"sub-{counter['n']}"
        email = email or f"user{counter['n']}@example.com"
        with store.transaction():
            user, _ = store.upsert_user(external_id, email, username=username, default_role=None)
            for name in roles:
                store.create_role_assignment(user, store.find_role_by_name(name), "fixture")
        return user

    return _make


@pytest.fixture()
def authz():
    """Factory for authorization settings (allow-list ADMIN, USER by default)."""
    def _make(**overrides):
        overrides.setdefault("allowed_groups", {"ADMIN", "USER"})
        return AuthzConfig(**overrides)

    return _make


@pytest.fixture()
def audit_writer(session_factory):
    return AuditLogWriter(session_factory, InlineDispatcher())


@pytest.fixture()
def directory():
    return FakeDirectory()


# ─────────────────────────────────────────────────────────────────────────────
# Flask Test Client
# ─────────────────────────────────────────────────────────────────────────────
def make_app_config(tmp_path, **overrides) -> AppConfig:
    base = dict(
        demo_mode=True,
        secret_key="test-secret",
        session_cookie_secure=False,
        keycloak_url="http://localhost:8080",
        keycloak_realm="staff",
        keycloak_service_realm="staff",
        keycloak_issuer="http://localhost:8080/realms/staff",
        keycloak_server_url="http://localhost:8080/realms/staff",
        keycloak_public_issuer="http://localhost:8080/realms/staff",
        oidc_client_id="staff-auth",
        oidc_redirect_uri="http://localhost:5000/callback",
        post_logout_redirect_uri="http://localhost:5000/",
        post_login_redirect_uri="/",
        database_url=f"sqlite:///{tmp_path / 'app.db'}",
        authz=AuthzConfig(allowed_groups={"ADMIN", "USER"}),
    )
    base.update(overrides)
    return AppConfig(**base)


@pytest.fixture()
def flask_app(tmp_path, monkeypatch, directory):
    from authservice.flask_app import create_app

    monkeypatch.setenv("FLASK_SESSION_DIR", str(tmp_path / "sessions"))
    app = create_app(make_app_config(tmp_path), directory=directory, audit_dispatcher=InlineDispatcher())
    app.config.update(TESTING=True)
    yield app
    app.config["DB_ENGINE"].dispose()


@pytest.fixture()
def client(flask_app):
    with flask_app.test_client() as client:
        yield client


CSRF_TOKEN = "test-csrf-token"


@pytest.fixture()
def admin_client(client):
    """Client with an authenticated admin session and a known CSRF token."""
    with client.session_transaction() as sess:
        sess["user"] = {"id": 1, "sub": "admin-sub", "email": "admin@example.com"}
        sess["authorities"] = ["ROLE_ADMIN", "ROLE_USER"]
        sess["_csrf_token"] = CSRF_TOKEN
    return client


@pytest.fixture()
def app_store(flask_app):
    """Identity store bound to the Flask app's database."""
    store = IdentityStore(flask_app.config["SESSION_FACTORY"]())
    yield store
    store.close()
