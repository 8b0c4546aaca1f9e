"""Remote group directory (Keycloak Admin API).

Architecture:
- base.py: GroupDirectory protocol consumed by the role reconciler
- client.py: HTTP client with service-account authentication and auto-refresh
- groups.py: Keycloak implementation of the directory operations
- exceptions.py: Typed exceptions for error handling

Usage:
    from authservice.directory import KeycloakClient, KeycloakGroupDirectory

    client = KeycloakClient("http://keycloak:8080")
    client.configure_service_account("staff", "automation-cli", "secret")
    directory = KeycloakGroupDirectory(client, "staff")
    directory.add_member_to_group(user_id, "ADMIN")
"""
from .base import GroupDirectory
from .client import KeycloakClient, REQUEST_TIMEOUT
from .exceptions import (
    DirectoryError,
    DirectoryAPIError,
    IdentityNotFoundError,
    GroupNotFoundError,
)
from .groups import KeycloakGroupDirectory


def build_directory(cfg) -> KeycloakGroupDirectory:
    """Create the Keycloak directory from application settings."""
    client = KeycloakClient(cfg.keycloak_url)
    client.configure_service_account(
        cfg.keycloak_service_realm,
        cfg.keycloak_service_client_id,
        cfg.keycloak_service_client_secret,
    )
    return KeycloakGroupDirectory(client, cfg.keycloak_realm)


__all__ = [
    "GroupDirectory",
    "KeycloakClient",
    "KeycloakGroupDirectory",
    "REQUEST_TIMEOUT",
    "build_directory",
    "DirectoryError",
    "DirectoryAPIError",
    "IdentityNotFoundError",
    "GroupNotFoundError",
]
