"""Role Reconciler: apply local role changes and mirror them as remote groups.

Local state is authoritative. A change is validated, then committed to the
Identity Store in one transaction, then pushed to the remote group directory
best-effort. Remote failures are logged and reported on the result; they
never undo the local commit. ``resync`` repairs whatever drift is left.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError

from authservice.config.settings import AuthzConfig
from authservice.core.exceptions import (
    ConflictError,
    RemoteSyncError,
    RoleNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from authservice.core.groups import implied_groups, plan_group_changes
from authservice.core.identity import call_with_identity_fallback, remote_identity_key
from authservice.directory.base import GroupDirectory
from authservice.store.identity_store import IdentityStore
from authservice.store.models import Role, User, utcnow

logger = logging.getLogger(__name__)

ADD = "add"
REMOVE = "remove"
LIST = "list"


@dataclass
class ReconcileResult:
    """What a reconcile operation changed, locally and remotely."""

    user_id: int
    roles: list[str] = field(default_factory=list)
    local_added: list[str] = field(default_factory=list)
    local_removed: list[str] = field(default_factory=list)
    remote_added: list[str] = field(default_factory=list)
    remote_removed: list[str] = field(default_factory=list)
    remote_failures: list[RemoteSyncError] = field(default_factory=list)

    @property
    def remote_in_sync(self) -> bool:
        return not self.remote_failures

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "roles": list(self.roles),
            "added": list(self.local_added),
            "removed": list(self.local_removed),
            "groupsAdded": list(self.remote_added),
            "groupsRemoved": list(self.remote_removed),
            "remoteFailures": len(self.remote_failures),
            "remoteErrors": [err.message for err in self.remote_failures],
        }


def _clean_role_names(names: Optional[Iterable[str]], field_name: str) -> set[str]:
    """Trimmed, de-duplicated role names; blank or non-string entries are rejected."""
    if names is None:
        return set()
    if isinstance(names, str):
        raise ValidationError(f"{field_name} must be a list of role names")
    cleaned = set()
    for name in names:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(f"{field_name} contains a blank role name")
        cleaned.add(name.strip())
    return cleaned


class RoleReconciler:
    def __init__(self, store: IdentityStore, directory: Optional[GroupDirectory], config: AuthzConfig):
        self.store = store
        self.directory = directory
        self.config = config

    # ─────────────────────────────────────────────────────────────────────
    # Validation helpers (run before any mutation)
    # ─────────────────────────────────────────────────────────────────────
    def _require_user(self, user_id) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def _require_roles(self, names: Iterable[str]) -> dict[str, Role]:
        roles = {}
        missing = []
        for name in sorted(set(names)):
            role = self.store.find_role_by_name(name)
            if role is None:
                missing.append(name)
            else:
                roles[name] = role
        if missing:
            raise RoleNotFoundError(missing)
        return roles

    @contextmanager
    def _local_commit(self, user: User):
        """One local transaction; a lost race on a unique constraint becomes a conflict."""
        try:
            with self.store.transaction():
                yield
        except IntegrityError as exc:
            logger.warning("Concurrent role change for user %s rolled back: %s", user.id, exc.orig)
            raise ConflictError(
                f"Roles for user {user.id} were changed concurrently; retry the request"
            ) from exc

    # ─────────────────────────────────────────────────────────────────────
    # Operations
    # ─────────────────────────────────────────────────────────────────────
    def replace_all(self, user_id, requested_role_names: Iterable[str], acting_identity: Optional[str]) -> ReconcileResult:
        """Make the user's role set exactly ``requested_role_names``.

        Raises:
            ValidationError: Empty request or blank role name
            UserNotFoundError: Unknown user
            RoleNotFoundError: Any requested role does not exist
        """
        requested = _clean_role_names(requested_role_names, "roleNames")
        if not requested:
            raise ValidationError("At least one role is required")
        user = self._require_user(user_id)
        roles = self._require_roles(requested)

        now = utcnow()
        with self._local_commit(user):
            assignments = self.store.list_role_assignments_for_user(user.id)
            before = {assignment.role.name for assignment in assignments}
            removed = []
            for assignment in assignments:
                if assignment.role.name not in requested:
                    removed.append(assignment.role.name)
                    self.store.delete_role_assignment(assignment)
            added = sorted(requested - before)
            for name in added:
                self.store.create_role_assignment(user, roles[name], acting_identity, now)

        logger.info("Replaced roles for user %s by %s: %s", user.id, acting_identity, sorted(requested))
        result = ReconcileResult(
            user_id=user.id,
            roles=sorted(requested),
            local_added=added,
            local_removed=sorted(removed),
        )
        self._push_changes(user, before, requested, result)
        return result

    def apply_incremental(
        self,
        user_id,
        add_roles: Optional[Iterable[str]],
        remove_roles: Optional[Iterable[str]],
        acting_identity: Optional[str],
    ) -> ReconcileResult:
        """Add and remove the listed roles; roles not mentioned are untouched.

        Raises:
            ValidationError: Both lists empty, blank name, or a role in both lists
            UserNotFoundError: Unknown user
            RoleNotFoundError: Any listed role does not exist
        """
        to_add = _clean_role_names(add_roles, "add")
        to_remove = _clean_role_names(remove_roles, "remove")
        if not to_add and not to_remove:
            raise ValidationError("At least one role to add or remove is required")
        conflicting = to_add & to_remove
        if conflicting:
            raise ValidationError(f"Roles cannot be both added and removed: {', '.join(sorted(conflicting))}")
        user = self._require_user(user_id)
        roles = self._require_roles(to_add | to_remove)

        now = utcnow()
        with self._local_commit(user):
            assignments = self.store.list_role_assignments_for_user(user.id)
            before = {assignment.role.name for assignment in assignments}
            removed = []
            for assignment in assignments:
                if assignment.role.name in to_remove:
                    removed.append(assignment.role.name)
                    self.store.delete_role_assignment(assignment)
            added = sorted(to_add - before)
            for name in added:
                self.store.create_role_assignment(user, roles[name], acting_identity, now)

        after = (before | to_add) - to_remove
        logger.info(
            "Updated roles for user %s by %s: +%s -%s", user.id, acting_identity, added, sorted(removed)
        )
        result = ReconcileResult(
            user_id=user.id,
            roles=sorted(after),
            local_added=added,
            local_removed=sorted(removed),
        )
        self._push_changes(user, before, after, result)
        return result

    def push_initial_groups(self, user_id) -> ReconcileResult:
        """Add a newly created user to the groups implied by their roles.

        Add-only: memberships the directory already holds are left alone,
        including allow-listed groups the local roles do not imply.

        Raises:
            UserNotFoundError: Unknown user
        """
        user = self._require_user(user_id)
        role_names = self.store.role_names_for_user(user.id)
        result = ReconcileResult(user_id=user.id, roles=sorted(role_names))
        if not self.config.sync_groups or self.directory is None:
            return result

        groups_to_add, _ = plan_group_changes(set(), role_names, self.config)
        for group in groups_to_add:
            self._remote_call(user, ADD, group, result)
        return result

    def resync(self, user_id) -> ReconcileResult:
        """Bring the user's allow-listed remote groups in line with local roles.

        Issues one corrective call per differing group; a second run right
        after a successful one makes no mutating calls.

        Raises:
            UserNotFoundError: Unknown user
        """
        user = self._require_user(user_id)
        role_names = self.store.role_names_for_user(user.id)
        result = ReconcileResult(user_id=user.id, roles=sorted(role_names))
        if not self.config.sync_groups or self.directory is None:
            return result

        desired = implied_groups(role_names, self.config)
        try:
            current = call_with_identity_fallback(
                self.directory, user, self.directory.list_member_groups, "list groups"
            )
        except Exception as exc:
            self._record_failure(result, RemoteSyncError(LIST, None, remote_identity_key(user), exc))
            return result

        current = set(current) & self.config.allowed_groups
        for group in sorted(desired - current):
            self._remote_call(user, ADD, group, result)
        for group in sorted(current - desired):
            self._remote_call(user, REMOVE, group, result)

        if result.remote_added or result.remote_removed:
            logger.info(
                "Resynced user %s: +%s -%s", user.id, result.remote_added, result.remote_removed
            )
        return result

    # ─────────────────────────────────────────────────────────────────────
    # Remote push
    # ─────────────────────────────────────────────────────────────────────
    def _push_changes(self, user: User, before: set[str], after: set[str], result: ReconcileResult) -> None:
        if not self.config.sync_groups or self.directory is None:
            return
        groups_to_add, groups_to_remove = plan_group_changes(before, after, self.config)
        for group in groups_to_add:
            self._remote_call(user, ADD, group, result)
        for group in groups_to_remove:
            self._remote_call(user, REMOVE, group, result)

    def _remote_call(self, user: User, operation: str, group: str, result: ReconcileResult) -> None:
        if operation == ADD:
            method = self.directory.add_member_to_group
        else:
            method = self.directory.remove_member_from_group

        try:
            changed = call_with_identity_fallback(
                self.directory, user, lambda key: method(key, group), f"{operation} group {group}"
            )
        except Exception as exc:
            self._record_failure(result, RemoteSyncError(operation, group, remote_identity_key(user), exc))
            return

        if changed is False:
            logger.warning("Directory reported no change for %s group %s on user %s", operation, group, user.id)
        if operation == ADD:
            result.remote_added.append(group)
        else:
            result.remote_removed.append(group)

    @staticmethod
    def _record_failure(result: ReconcileResult, error: RemoteSyncError) -> None:
        logger.error("%s", error)
        result.remote_failures.append(error)
