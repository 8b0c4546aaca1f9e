"""Keycloak-backed group directory.

Identity keys are Keycloak user ids. For users federated through Keycloak
the OIDC ``sub`` claim is that id, so the subject identifier stored locally
works as a key directly; username and email are resolved through
``find_identity_key_by_attribute``.
"""
from __future__ import annotations
import logging
import threading
from typing import Optional
from urllib.parse import quote

from .client import KeycloakClient
from .exceptions import DirectoryAPIError, GroupNotFoundError, IdentityNotFoundError

logger = logging.getLogger(__name__)

SEARCHABLE_ATTRIBUTES = {"username", "email", "id"}


class KeycloakGroupDirectory:
    """Group membership operations against one Keycloak realm."""

    def __init__(self, client: KeycloakClient, realm: str):
        """Initialize group directory.

        Args:
            client: Keycloak client with service-account credentials configured
            realm: Realm holding the users and groups
        """
        self.client = client
        self.realm = realm
        self._group_ids: dict[str, str] = {}
        self._lock = threading.Lock()

    # ─────────────────────────────────────────────────────────────────────
    # Groups
    # ─────────────────────────────────────────────────────────────────────
    def get_group_by_path(self, group_path: str) -> Optional[dict]:
        """Retrieve a group by its path (e.g., '/ADMIN').

        Returns:
            Group representation or None if not found
        """
        resp = self.client.get(f"/admin/realms/{self.realm}/groups", params={"search": group_path.strip("/")})
        groups = resp.json() or []
        for group in groups:
            if group.get("path") == group_path:
                return group
        return None

    def _group_id(self, group_name: str) -> str:
        with self._lock:
            cached = self._group_ids.get(group_name)
        if cached:
            return cached

        group = self.get_group_by_path(f"/{group_name}")
        if not group:
            raise GroupNotFoundError(group_name)

        with self._lock:
            self._group_ids[group_name] = group["id"]
        return group["id"]

    # ─────────────────────────────────────────────────────────────────────
    # Membership
    # ─────────────────────────────────────────────────────────────────────
    def _membership_path(self, identity_key: str, group_id: str) -> str:
        return f"/admin/realms/{self.realm}/users/{quote(identity_key, safe='')}/groups/{group_id}"

    def add_member_to_group(self, identity_key: str, group_name: str) -> bool:
        """Add a user to a group (idempotent).

        Keycloak answers 204 whether or not the user already was a member.

        Raises:
            IdentityNotFoundError: User id unknown to Keycloak
            GroupNotFoundError: Group does not exist
            DirectoryAPIError: Any other HTTP failure
        """
        group_id = self._group_id(group_name)
        try:
            resp = self.client.put(self._membership_path(identity_key, group_id))
        except DirectoryAPIError as exc:
            if exc.status_code == 404:
                raise IdentityNotFoundError(identity_key, exc.message) from exc
            raise
        logger.info("Added directory user %s to group %s", identity_key, group_name)
        return resp.status_code in (200, 204)

    def remove_member_from_group(self, identity_key: str, group_name: str) -> bool:
        """Remove a user from a group (idempotent).

        Raises:
            IdentityNotFoundError: User id unknown to Keycloak
            GroupNotFoundError: Group does not exist
            DirectoryAPIError: Any other HTTP failure
        """
        group_id = self._group_id(group_name)
        try:
            resp = self.client.delete(self._membership_path(identity_key, group_id))
        except DirectoryAPIError as exc:
            if exc.status_code == 404:
                raise IdentityNotFoundError(identity_key, exc.message) from exc
            raise
        logger.info("Removed directory user %s from group %s", identity_key, group_name)
        return resp.status_code in (200, 204)

    def list_member_groups(self, identity_key: str) -> set[str]:
        """Return the names of the groups the user currently belongs to."""
        try:
            resp = self.client.get(f"/admin/realms/{self.realm}/users/{quote(identity_key, safe='')}/groups")
        except DirectoryAPIError as exc:
            if exc.status_code == 404:
                raise IdentityNotFoundError(identity_key, exc.message) from exc
            raise
        return {group["name"] for group in resp.json() or [] if group.get("name")}

    # ─────────────────────────────────────────────────────────────────────
    # Identity resolution
    # ─────────────────────────────────────────────────────────────────────
    def find_identity_key_by_attribute(self, attribute_name: str, value: str) -> Optional[str]:
        """Look up a user by ``username``, ``email`` or ``id`` and return its id.

        Returns:
            Keycloak user id, or None if no user matches exactly
        """
        if attribute_name not in SEARCHABLE_ATTRIBUTES:
            raise ValueError(f"Unsupported lookup attribute '{attribute_name}'")
        if not value:
            return None

        if attribute_name == "id":
            try:
                resp = self.client.get(f"/admin/realms/{self.realm}/users/{quote(value, safe='')}")
            except DirectoryAPIError as exc:
                if exc.status_code == 404:
                    return None
                raise
            return (resp.json() or {}).get("id")

        resp = self.client.get(
            f"/admin/realms/{self.realm}/users",
            params={attribute_name: value, "exact": "true"},
        )
        for user in resp.json() or []:
            if str(user.get(attribute_name, "")).lower() == value.lower():
                return user.get("id")
        return None
