"""Role-to-group mapping.

A pure function of the role name and the authorization settings, never a
data lookup: a role maps to the identically named group, except elevated
roles (tiered managers, HR, ...) which all converge on the administrative
group. Only allow-listed groups are ever pushed to the remote directory.
"""
from __future__ import annotations

from typing import Iterable

from authservice.config.settings import AuthzConfig


def group_for_role(role_name: str, config: AuthzConfig) -> str:
    if role_name in config.elevated_roles:
        return config.admin_group
    return role_name


def implied_groups(role_names: Iterable[str], config: AuthzConfig) -> frozenset[str]:
    """Allow-listed remote groups implied by a set of local roles."""
    return frozenset(
        group
        for group in (group_for_role(name, config) for name in role_names)
        if group in config.allowed_groups
    )


def plan_group_changes(
    before_roles: Iterable[str],
    after_roles: Iterable[str],
    config: AuthzConfig,
) -> tuple[list[str], list[str]]:
    """Groups to add and to remove when local roles go from ``before`` to ``after``.

    Each group appears at most once, however many roles map to it.

    Returns:
        Tuple of (groups_to_add, groups_to_remove), each sorted
    """
    before = implied_groups(before_roles, config)
    after = implied_groups(after_roles, config)
    return sorted(after - before), sorted(before - after)


def present_authorities(role_names: Iterable[str], config: AuthzConfig) -> list[str]:
    """Role names as presented to downstream authorization checks (``ROLE_ADMIN``)."""
    return sorted(f"{config.authority_prefix}{name}" for name in set(role_names))
