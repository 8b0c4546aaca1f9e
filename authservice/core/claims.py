"""Normalisation of federated login claims.

Group claims arrive in several shapes depending on the identity provider and
the token (JSON array, comma-joined string, absent). They are normalised here,
once, into a ``frozenset`` of trimmed names before any decision logic runs.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from authservice.core.exceptions import ValidationError

EMAIL_CLAIMS = ("email", "cognito:username", "username", "preferred_username")
USERNAME_CLAIMS = ("username", "cognito:username", "preferred_username")


def strip_authority_prefix(name: str, prefix: str) -> str:
    if prefix and name.startswith(prefix):
        return name[len(prefix):]
    return name


def normalize_groups(value: Any, authority_prefix: str = "") -> frozenset[str]:
    """Normalise a groups claim value to a set of canonical names.

        >>> sorted(normalize_groups("ADMIN, USER"))
        ['ADMIN', 'USER']
        >>> sorted(normalize_groups(["ROLE_ADMIN", " ", None], "ROLE_"))
        ['ADMIN']
    """
    if value is None:
        return frozenset()
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = value
    else:
        items = [value]

    names = set()
    for item in items:
        if item is None:
            continue
        # A list element may itself be comma-joined
        for part in str(item).split(","):
            part = strip_authority_prefix(part.strip(), authority_prefix)
            if part:
                names.add(part)
    return frozenset(names)


def extract_groups(claims: Mapping[str, Any], claim_names: Iterable[str], authority_prefix: str = "") -> frozenset[str]:
    """Union of all groups asserted by the token under any of ``claim_names``."""
    groups: set[str] = set()
    for claim in claim_names:
        groups |= normalize_groups(claims.get(claim), authority_prefix)
    return frozenset(groups)


def _first_claim(claims: Mapping[str, Any], names: Iterable[str]) -> Optional[str]:
    for name in names:
        value = claims.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


@dataclass(frozen=True)
class LoginIdentity:
    """Identity attributes of a freshly authenticated principal."""

    subject: str
    email: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    email_verified: bool = False

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "LoginIdentity":
        """Build the identity from ID-token / userinfo claims.

        Raises:
            ValidationError: ``sub`` or every email-like claim is missing
        """
        subject = _first_claim(claims, ("sub",))
        if not subject:
            raise ValidationError("Missing required claim: sub")

        email = _first_claim(claims, EMAIL_CLAIMS)
        if not email:
            raise ValidationError(f"Missing required claim: email. Available claims: {sorted(claims.keys())}")

        username = _first_claim(claims, USERNAME_CLAIMS) or email
        return cls(
            subject=subject,
            email=email,
            username=username,
            display_name=_first_claim(claims, ("name",)),
            email_verified=_as_bool(claims.get("email_verified")),
        )
