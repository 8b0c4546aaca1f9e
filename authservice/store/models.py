"""SQLAlchemy models for users, roles, role assignments and the login audit trail."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from authservice.store.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEventType:
    """Event types recorded in the login audit trail."""

    LOGIN = "LOGIN"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    PROFILE_FETCH = "PROFILE_FETCH"
    PROFILE_UPDATE = "PROFILE_UPDATE"
    MOBILE_LOGIN = "MOBILE_LOGIN"
    MOBILE_LOGIN_FAILED = "MOBILE_LOGIN_FAILED"

    # Successful events of these types refresh the user's last-login timestamp
    AUTHENTICATION = frozenset({LOGIN, MOBILE_LOGIN})


class User(Base):
    """Federated identity known to the staff-management application."""

    __tablename__ = "app_users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_id = Column(String(255), nullable=False, unique=True, index=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    username = Column(String(100), nullable=True, unique=True)
    display_name = Column(String(255), nullable=True)
    phone_number = Column(String(20), nullable=True)
    locale = Column(String(10), nullable=False, default="en")
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    email_verified = Column(Boolean, nullable=False, default=False)
    phone_verified = Column(Boolean, nullable=False, default=False)
    mfa_enabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String(255), nullable=True)
    updated_by = Column(String(255), nullable=True)

    assignments = relationship(
        "RoleAssignment",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} external_id={self.external_id!r} email={self.email!r}>"


class Role(Base):
    """Local authorization role, stored under its canonical (unprefixed) name."""

    __tablename__ = "roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column("role_name", String(50), nullable=False, unique=True)
    description = Column(String(255), nullable=True)
    is_system_role = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Role {self.name}>"


class RoleAssignment(Base):
    """(User, Role) link; owned by the user."""

    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role_id", name="uk_user_role"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("app_users.id", ondelete="CASCADE"), nullable=False, index=True)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False)
    assigned_by = Column(String(255), nullable=True)
    assigned_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    user = relationship("User", back_populates="assignments")
    role = relationship("Role", lazy="joined")


class AuditEvent(Base):
    """Append-only security event.

    ``user_id`` is a weak link: it is resolved best-effort at write time and
    nulled if the user is later deleted. ``email`` keeps the value observed
    when the event happened. ``event_time`` is supplied by the caller and is
    the ordering key; ``created_at`` is only the persistence time.
    """

    __tablename__ = "login_audit"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("app_users.id", ondelete="SET NULL"), nullable=True, index=True)
    external_id = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    event_type = Column(String(50), nullable=False)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    success = Column(Boolean, nullable=False, default=True)
    failure_reason = Column(String(255), nullable=True)
    session_id = Column(String(255), nullable=True)
    event_time = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


__all__ = ["AuditEvent", "AuditEventType", "Role", "RoleAssignment", "User", "utcnow"]
