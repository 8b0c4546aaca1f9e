"""Identity Store: data access for users, roles, role assignments and audit events.

Pure data access. Callers own transaction boundaries through
``IdentityStore.transaction()``; nothing here commits on its own.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from authservice.store.models import AuditEvent, Role, RoleAssignment, User, utcnow

logger = logging.getLogger(__name__)

DEFAULT_ROLES = (
    ("ADMIN", "Administrator role", True),
    ("USER", "Regular user role", False),
)


class EmailConflictError(Exception):
    """The email is already linked to a user with a different external id."""

    def __init__(self, email: str, external_id: str, owner: User):
        self.email = email
        self.external_id = external_id
        self.owner_id = owner.id
        self.owner_external_id = owner.external_id
        super().__init__(
            f"Email {email} already belongs to user {owner.id} (subject {owner.external_id}); "
            f"cannot link it to subject {external_id}"
        )


class IdentityStore:
    """Repository over one SQLAlchemy session."""

    def __init__(self, session: Session):
        self.session = session

    # ─────────────────────────────────────────────────────────────────────
    # Transactions
    # ─────────────────────────────────────────────────────────────────────
    @contextmanager
    def transaction(self) -> Iterator["IdentityStore"]:
        """Commit on success, roll back everything on any exception."""
        try:
            yield self
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def close(self) -> None:
        self.session.close()

    # ─────────────────────────────────────────────────────────────────────
    # Users
    # ─────────────────────────────────────────────────────────────────────
    def get_user(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def find_user_by_external_id(self, external_id: str) -> Optional[User]:
        if not external_id:
            return None
        return self.session.scalars(select(User).where(User.external_id == external_id)).first()

    def find_user_by_email(self, email: str) -> Optional[User]:
        if not email:
            return None
        return self.session.scalars(select(User).where(User.email == email)).first()

    def find_user_by_username(self, username: str) -> Optional[User]:
        if not username:
            return None
        return self.session.scalars(select(User).where(User.username == username)).first()

    def upsert_user(
        self,
        external_id: str,
        email: str,
        *,
        username: Optional[str] = None,
        display_name: Optional[str] = None,
        email_verified: bool = False,
        default_role: Optional[str] = "USER",
        acting_identity: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> tuple[User, bool]:
        """Create or refresh the user keyed by ``external_id``.

        New users get ``default_role`` when that role exists. Existing users
        have their email, verification flag and (when given) display name
        refreshed from the latest claims.

        Returns:
            Tuple of (user, created)

        Raises:
            EmailConflictError: ``email`` belongs to a user with another external id
        """
        now = now or utcnow()
        user = self.find_user_by_external_id(external_id)
        if user is None or user.email != email:
            self._ensure_email_free(email, external_id)

        if user is not None:
            user.email = email
            user.email_verified = bool(email_verified)
            if display_name:
                user.display_name = display_name
            user.updated_at = now
            user.updated_by = acting_identity or email
            self.session.flush()
            logger.debug("User synced: %s", email)
            return user, False

        if username and self.find_user_by_username(username) is not None:
            # Username is unique; keep the new user reachable by sub/email only.
            logger.warning("Username %s already taken; creating user %s without username", username, email)
            username = None

        user = User(
            external_id=external_id,
            email=email,
            username=username,
            display_name=display_name,
            email_verified=bool(email_verified),
            is_active=True,
            created_at=now,
            updated_at=now,
            created_by=acting_identity or email,
        )
        self.session.add(user)
        self.session.flush()
        logger.info("Created user %s for subject %s", email, external_id)

        if default_role:
            role = self.find_role_by_name(default_role)
            if role is None:
                logger.warning("Default role %s does not exist; user %s created without roles", default_role, email)
            else:
                self.create_role_assignment(user, role, acting_identity or email, now)

        return user, True

    def _ensure_email_free(self, email: str, external_id: str) -> None:
        owner = self.find_user_by_email(email)
        if owner is not None and owner.external_id != external_id:
            logger.error(
                "Email collision: %s belongs to user %s (subject %s), rejected for subject %s",
                email, owner.id, owner.external_id, external_id,
            )
            raise EmailConflictError(email, external_id, owner)

    # ─────────────────────────────────────────────────────────────────────
    # Roles
    # ─────────────────────────────────────────────────────────────────────
    def find_role_by_name(self, name: str) -> Optional[Role]:
        if not name:
            return None
        return self.session.scalars(select(Role).where(Role.name == name)).first()

    def list_roles(self) -> list[Role]:
        return list(self.session.scalars(select(Role).order_by(Role.name)))

    def ensure_role(self, name: str, description: str = "", is_system_role: bool = False) -> Role:
        """Idempotently create a role and return it."""
        role = self.find_role_by_name(name)
        if role is not None:
            return role
        role = Role(name=name, description=description, is_system_role=is_system_role)
        self.session.add(role)
        self.session.flush()
        logger.info("Role %s created", name)
        return role

    def seed_default_roles(self) -> list[Role]:
        return [self.ensure_role(name, description, system) for name, description, system in DEFAULT_ROLES]

    # ─────────────────────────────────────────────────────────────────────
    # Role assignments
    # ─────────────────────────────────────────────────────────────────────
    def list_role_assignments_for_user(self, user_id: int) -> list[RoleAssignment]:
        stmt = (
            select(RoleAssignment)
            .join(Role, RoleAssignment.role_id == Role.id)
            .where(RoleAssignment.user_id == user_id)
            .order_by(Role.name)
        )
        return list(self.session.scalars(stmt).unique())

    def role_names_for_user(self, user_id: int) -> list[str]:
        return [assignment.role.name for assignment in self.list_role_assignments_for_user(user_id)]

    def create_role_assignment(
        self,
        user: User,
        role: Role,
        assigned_by: Optional[str],
        assigned_at: Optional[datetime] = None,
    ) -> RoleAssignment:
        assignment = RoleAssignment(
            user=user,
            role=role,
            assigned_by=assigned_by,
            assigned_at=assigned_at or utcnow(),
        )
        self.session.add(assignment)
        self.session.flush()
        return assignment

    def delete_role_assignment(self, assignment: RoleAssignment) -> None:
        user = assignment.user
        if user is not None and assignment in user.assignments:
            user.assignments.remove(assignment)
        self.session.delete(assignment)
        self.session.flush()

    # ─────────────────────────────────────────────────────────────────────
    # Audit events (append-only)
    # ─────────────────────────────────────────────────────────────────────
    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        self.session.add(event)
        self.session.flush()
        return event

    def list_audit_events(
        self,
        *,
        user_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        newest_first: bool = True,
        limit: Optional[int] = None,
    ) -> list[AuditEvent]:
        """Audit events ordered by the time they logically occurred."""
        stmt = select(AuditEvent)
        if user_id is not None:
            stmt = stmt.where(AuditEvent.user_id == user_id)
        if start is not None:
            stmt = stmt.where(AuditEvent.event_time >= start)
        if end is not None:
            stmt = stmt.where(AuditEvent.event_time <= end)
        if newest_first:
            stmt = stmt.order_by(AuditEvent.event_time.desc(), AuditEvent.id.desc())
        else:
            stmt = stmt.order_by(AuditEvent.event_time.asc(), AuditEvent.id.asc())
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt))
