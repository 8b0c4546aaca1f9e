"""Identity Store: persisted users, roles, role assignments and audit events."""
from .database import Base, build_engine, build_session_factory, init_db
from .identity_store import DEFAULT_ROLES, EmailConflictError, IdentityStore
from .models import AuditEvent, AuditEventType, Role, RoleAssignment, User

__all__ = [
    "Base",
    "build_engine",
    "build_session_factory",
    "init_db",
    "DEFAULT_ROLES",
    "EmailConflictError",
    "IdentityStore",
    "AuditEvent",
    "AuditEventType",
    "Role",
    "RoleAssignment",
    "User",
]
