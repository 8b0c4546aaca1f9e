"""Authorization Gate: allow or deny a freshly authenticated principal.

Runs once per login, after the identity provider has authenticated the user
and before the application establishes a session.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from authservice.config.settings import AuthzConfig
from authservice.core.audit import AuditLogWriter
from authservice.core.claims import LoginIdentity, extract_groups
from authservice.core.groups import group_for_role, present_authorities
from authservice.store.identity_store import IdentityStore
from authservice.store.models import AuditEventType, utcnow

logger = logging.getLogger(__name__)

NOT_IN_ALLOWED_GROUP = "NOT_IN_ALLOWED_GROUP"
ALLOWED = "ALLOWED"

MOBILE_CHANNEL = "mobile"


@dataclass(frozen=True)
class Decision:
    """Outcome of a login evaluation."""

    allow: bool
    reason: str
    user_id: Optional[int] = None
    authorities: tuple[str, ...] = field(default_factory=tuple)


class AuthorizationGate:
    def __init__(
        self,
        store: IdentityStore,
        audit_writer: AuditLogWriter,
        config: AuthzConfig,
        reconciler=None,
    ):
        self.store = store
        self.audit = audit_writer
        self.config = config
        self.reconciler = reconciler

    def evaluate_login(
        self,
        claims: Mapping[str, Any],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        channel: str = "web",
    ) -> Decision:
        """Decide whether the authenticated principal may get a session.

        Exactly one audit event is submitted per evaluation that gets past
        claim validation.

        Raises:
            ValidationError: Subject or email claim missing (nothing written)
            Exception: The user upsert failed (after a failure audit event)
        """
        event_time = utcnow()
        identity = LoginIdentity.from_claims(claims)
        mobile = channel == MOBILE_CHANNEL

        groups = extract_groups(claims, self.config.groups_claims, self.config.authority_prefix)
        if not groups:
            groups = self._stored_groups(identity.subject)

        if not (groups & self.config.allowed_groups):
            logger.warning(
                "Login denied for %s: groups %s not in allow-list", identity.email, sorted(groups)
            )
            self._submit_audit(
                identity,
                AuditEventType.MOBILE_LOGIN_FAILED if mobile else AuditEventType.LOGIN,
                ip_address,
                user_agent,
                success=False,
                failure_reason=NOT_IN_ALLOWED_GROUP,
                event_time=event_time,
            )
            return Decision(False, NOT_IN_ALLOWED_GROUP)

        try:
            with self.store.transaction():
                user, created = self.store.upsert_user(
                    identity.subject,
                    identity.email,
                    username=identity.username,
                    display_name=identity.display_name,
                    email_verified=identity.email_verified,
                    default_role=self.config.default_role,
                    acting_identity=identity.email,
                    now=event_time,
                )
            role_names = self.store.role_names_for_user(user.id)
        except Exception as exc:
            logger.error("Failed to sync user %s at login: %s", identity.email, exc)
            self._submit_audit(
                identity,
                AuditEventType.MOBILE_LOGIN_FAILED if mobile else AuditEventType.LOGIN_FAILED,
                ip_address,
                user_agent,
                success=False,
                failure_reason=str(exc)[:255],
                event_time=event_time,
            )
            raise

        if created and self.config.sync_groups and self.reconciler is not None:
            self._push_new_user(user.id)

        self._submit_audit(
            identity,
            AuditEventType.MOBILE_LOGIN if mobile else AuditEventType.LOGIN,
            ip_address,
            user_agent,
            success=True,
            failure_reason=None,
            event_time=event_time,
        )
        logger.info("Login allowed for %s (user %s)", identity.email, user.id)
        return Decision(True, ALLOWED, user.id, tuple(present_authorities(role_names, self.config)))

    def _stored_groups(self, subject: str) -> frozenset[str]:
        """Groups implied by the locally stored roles of the user with ``subject``."""
        try:
            user = self.store.find_user_by_external_id(subject)
            if user is None:
                return frozenset()
            names = self.store.role_names_for_user(user.id)
        except Exception as exc:
            logger.debug("Stored role lookup failed for %s: %s", subject, exc)
            self.store.session.rollback()
            return frozenset()
        return frozenset(names) | {group_for_role(name, self.config) for name in names}

    def _push_new_user(self, user_id: int) -> None:
        try:
            result = self.reconciler.push_initial_groups(user_id)
        except Exception as exc:
            logger.error("Initial group push failed for user %s: %s", user_id, exc)
            return
        if result.remote_failures:
            logger.warning("Initial group push for user %s had %d failure(s)", user_id, len(result.remote_failures))

    def _submit_audit(
        self,
        identity: LoginIdentity,
        event_type: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        *,
        success: bool,
        failure_reason: Optional[str],
        event_time,
    ) -> None:
        try:
            self.audit.submit(
                identity.subject,
                identity.email,
                event_type,
                ip_address,
                user_agent,
                success,
                failure_reason,
                event_time,
            )
        except Exception as exc:
            logger.error("Failed to submit %s audit for %s: %s", event_type, identity.email, exc)
