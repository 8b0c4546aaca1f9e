"""Error taxonomy for the authorization gate, role reconciler and audit writer.

``ValidationError`` and ``NotFoundError`` are raised to callers and abort the
operation before anything is committed. ``RemoteSyncError`` and
``AuditWriteError`` describe best-effort failures: they are logged (and, for
remote sync, collected on the result) but never raised to callers.
"""
from __future__ import annotations

from typing import Optional


class AuthServiceError(Exception):
    """Base exception for the auth service core."""

    status = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "message": self.message}


class ValidationError(AuthServiceError):
    """Request rejected before any mutation (missing or malformed input)."""

    status = 400


class NotFoundError(AuthServiceError):
    """Referenced user or role does not exist."""

    status = 404


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id):
        self.user_id = user_id
        super().__init__(f"User not found with ID: {user_id}")


class RoleNotFoundError(NotFoundError):
    def __init__(self, role_names):
        if isinstance(role_names, str):
            role_names = [role_names]
        self.role_names = sorted(role_names)
        super().__init__(f"Role not found: {', '.join(self.role_names)}")


class ConflictError(AuthServiceError):
    """A concurrent change won the race; nothing from this request was committed."""

    status = 409


class RemoteSyncError(AuthServiceError):
    """A call to the remote group directory failed for one group."""

    def __init__(self, operation: str, group_name: Optional[str], identity_key: Optional[str], cause: BaseException):
        self.operation = operation
        self.group_name = group_name
        self.identity_key = identity_key
        self.cause = cause
        target = f" group {group_name}" if group_name else ""
        super().__init__(f"{operation}{target} for {identity_key} failed: {cause}")


class AuditWriteError(AuthServiceError):
    """Persisting an audit event failed."""

    def __init__(self, event_type: str, email: Optional[str], cause: BaseException):
        self.event_type = event_type
        self.email = email
        self.cause = cause
        super().__init__(f"Failed to save {event_type} audit for {email}: {cause}")
