"""Decision logic: authorization gate, role reconciler and audit log writer."""
from .audit import AuditDispatcher, AuditLogWriter, InlineDispatcher
from .exceptions import (
    AuditWriteError,
    AuthServiceError,
    ConflictError,
    NotFoundError,
    RemoteSyncError,
    RoleNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from .gate import AuthorizationGate, Decision
from .reconciler import ReconcileResult, RoleReconciler

__all__ = [
    "AuditDispatcher",
    "AuditLogWriter",
    "InlineDispatcher",
    "AuthorizationGate",
    "Decision",
    "ReconcileResult",
    "RoleReconciler",
    "AuthServiceError",
    "ConflictError",
    "ValidationError",
    "NotFoundError",
    "UserNotFoundError",
    "RoleNotFoundError",
    "RemoteSyncError",
    "AuditWriteError",
]
