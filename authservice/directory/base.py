"""Contract for the remote group-membership directory."""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class GroupDirectory(Protocol):
    """Remote group directory operations.

    All mutating calls must be safe to repeat: adding an existing member or
    removing an absent one is a no-op from the caller's point of view.
    Implementations raise ``IdentityNotFoundError`` when the identity key is
    not recognized so callers can resolve an alternate key and retry.
    """

    def add_member_to_group(self, identity_key: str, group_name: str) -> bool:
        ...

    def remove_member_from_group(self, identity_key: str, group_name: str) -> bool:
        ...

    def find_identity_key_by_attribute(self, attribute_name: str, value: str) -> Optional[str]:
        ...

    def list_member_groups(self, identity_key: str) -> set[str]:
        ...
