"""Local-to-remote identity resolution for group directory calls."""
from __future__ import annotations

import logging
from typing import Callable, Optional, TypeVar

from authservice.directory.base import GroupDirectory
from authservice.directory.exceptions import IdentityNotFoundError
from authservice.store.models import User

logger = logging.getLogger(__name__)

T = TypeVar("T")


def remote_identity_key(user: User) -> Optional[str]:
    """Best available remote key: subject identifier, then username, then email."""
    for candidate in (user.external_id, user.username, user.email):
        if candidate and candidate.strip():
            return candidate.strip()
    return None


def resolve_alternate_key(directory: GroupDirectory, user: User, failed_key: str) -> Optional[str]:
    """Look the user up by an alternate attribute after ``failed_key`` was rejected.

    Tries username, then email. Lookup errors count as "not resolved".
    """
    for attribute, value in (("username", user.username), ("email", user.email)):
        if not value:
            continue
        try:
            resolved = directory.find_identity_key_by_attribute(attribute, value)
        except Exception as exc:
            logger.debug("Directory lookup by %s failed for %s: %s", attribute, value, exc)
            continue
        if resolved and resolved != failed_key:
            return resolved
    return None


def call_with_identity_fallback(
    directory: GroupDirectory,
    user: User,
    operation: Callable[[str], T],
    description: str,
) -> T:
    """Run ``operation(identity_key)`` with at most one resolve-and-retry.

    If the directory does not recognise the key, one alternate-key lookup is
    made and the operation retried once with the resolved key. Any other
    failure, or a failure of the retry, propagates to the caller.

    Raises:
        IdentityNotFoundError: No key for the user, or the key could not be resolved
    """
    key = remote_identity_key(user)
    if key is None:
        raise IdentityNotFoundError("", f"User {user.id} has no usable remote identity key")

    try:
        return operation(key)
    except IdentityNotFoundError as exc:
        logger.warning("Initial attempt to %s failed for %s: %s", description, key, exc)
        resolved = resolve_alternate_key(directory, user, key)
        if resolved is None:
            raise
        result = operation(resolved)
        logger.info("Completed %s for %s (resolved from %s)", description, resolved, key)
        return result
