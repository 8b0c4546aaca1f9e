"""Request-scoped access to the identity store and core services.

One SQLAlchemy session per request, opened lazily on first use and closed
in the app-context teardown registered by ``create_app``.
"""
from __future__ import annotations

from flask import current_app, g, request, session

from authservice.core.audit import AuditLogWriter
from authservice.core.gate import AuthorizationGate
from authservice.core.reconciler import RoleReconciler
from authservice.store.identity_store import IdentityStore


def get_store() -> IdentityStore:
    store = g.get("identity_store")
    if store is None:
        store = IdentityStore(current_app.config["SESSION_FACTORY"]())
        g.identity_store = store
    return store


def close_store(exc=None) -> None:
    store = g.pop("identity_store", None)
    if store is not None:
        if exc is not None:
            store.session.rollback()
        store.close()


def get_audit_writer() -> AuditLogWriter:
    return current_app.config["AUDIT_WRITER"]


def get_reconciler() -> RoleReconciler:
    cfg = current_app.config["APP_CONFIG"]
    return RoleReconciler(get_store(), current_app.config.get("GROUP_DIRECTORY"), cfg.authz)


def get_gate() -> AuthorizationGate:
    cfg = current_app.config["APP_CONFIG"]
    return AuthorizationGate(get_store(), get_audit_writer(), cfg.authz, reconciler=get_reconciler())


def client_ip() -> str | None:
    return request.remote_addr


def user_agent() -> str | None:
    return request.headers.get("User-Agent")


def is_authenticated() -> bool:
    return bool(session.get("user"))


def current_user() -> dict:
    return session.get("user") or {}


def current_authorities() -> list[str]:
    return list(session.get("authorities") or [])


def acting_identity() -> str | None:
    user = current_user()
    return user.get("email") or user.get("sub")
