"""Low-level HTTP client for the Keycloak Admin API.

Handles service-account authentication, token management, and HTTP operations.
"""
from __future__ import annotations
from typing import Optional, Dict, Any
from datetime import datetime, timedelta

import requests

from .exceptions import DirectoryAPIError

REQUEST_TIMEOUT = 5


class KeycloakClient:
    """HTTP client for the Keycloak Admin API with automatic token management.

    Features:
    - Lazy authentication on first request once credentials are configured
    - Automatic token refresh when expired
    - Centralized error handling

    Usage:
        client = KeycloakClient("http://keycloak:8080")
        client.configure_service_account("staff", "automation-cli", "secret")
        response = client.get("/admin/realms/staff/groups")
    """

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")
        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None
        self._auth_params: Dict[str, Any] = {}

    def configure_service_account(self, auth_realm: str, client_id: str, client_secret: str) -> None:
        """Store client-credentials parameters; the token is fetched on first use."""
        self._auth_params = {
            "auth_realm": auth_realm,
            "client_id": client_id,
            "client_secret": client_secret,
        }
        self._token = None
        self._token_expires_at = None

    def authenticate_service_account(self, auth_realm: str, client_id: str, client_secret: str) -> str:
        """Authenticate as service account and store credentials for auto-refresh.

        Returns:
            Access token
        """
        self.configure_service_account(auth_realm, client_id, client_secret)
        self._refresh_token()
        return self._token

    def _refresh_token(self) -> None:
        token, expires_in = self._get_service_account_token(
            self._auth_params["auth_realm"],
            self._auth_params["client_id"],
            self._auth_params["client_secret"],
        )
        self._token = token
        # Refresh 10 seconds ahead of the advertised expiry
        self._token_expires_at = datetime.now() + timedelta(seconds=max(int(expires_in) - 10, 5))

    def _ensure_authenticated(self) -> None:
        """Ensure we have a valid token, fetching or refreshing it if necessary."""
        if not self._auth_params:
            raise DirectoryAPIError(401, "Not authenticated - call configure_service_account first", "")

        if not self._token or not self._token_expires_at or datetime.now() >= self._token_expires_at:
            self._refresh_token()

    def _headers(self, kwargs: dict) -> dict:
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def get(self, path: str, params: Optional[Dict] = None, **kwargs) -> requests.Response:
        """Execute GET request with automatic authentication.

        Raises:
            DirectoryAPIError: On HTTP error
        """
        self._ensure_authenticated()
        headers = self._headers(kwargs)
        resp = requests.get(f"{self.base_url}{path}", params=params, headers=headers, timeout=REQUEST_TIMEOUT, **kwargs)
        self._handle_error(resp)
        return resp

    def put(self, path: str, json: Optional[Dict] = None, **kwargs) -> requests.Response:
        """Execute PUT request with automatic authentication.

        Raises:
            DirectoryAPIError: On HTTP error
        """
        self._ensure_authenticated()
        headers = self._headers(kwargs)
        resp = requests.put(f"{self.base_url}{path}", json=json, headers=headers, timeout=REQUEST_TIMEOUT, **kwargs)
        self._handle_error(resp)
        return resp

    def delete(self, path: str, **kwargs) -> requests.Response:
        """Execute DELETE request with automatic authentication.

        Raises:
            DirectoryAPIError: On HTTP error
        """
        self._ensure_authenticated()
        headers = self._headers(kwargs)
        resp = requests.delete(f"{self.base_url}{path}", headers=headers, timeout=REQUEST_TIMEOUT, **kwargs)
        self._handle_error(resp)
        return resp

    def _get_service_account_token(self, auth_realm: str, client_id: str, client_secret: str) -> tuple[str, int]:
        """Fetch a service account token using client credentials flow."""
        url = f"{self.base_url}/realms/{auth_realm}/protocol/openid-connect/token"
        data = {
            "grant_type": "client_credentials",
            "client_id": client_id,
            "client_secret": client_secret,
        }
        resp = requests.post(url, data=data, timeout=REQUEST_TIMEOUT)
        if resp.status_code != 200:
            raise DirectoryAPIError(resp.status_code, resp.text, url)
        payload = resp.json()
        return payload["access_token"], payload.get("expires_in", 60)

    def _handle_error(self, resp: requests.Response) -> None:
        """Centralized error handling for HTTP responses.

        Raises:
            DirectoryAPIError: If response status indicates error
        """
        if resp.status_code >= 400:
            raise DirectoryAPIError(resp.status_code, resp.text, resp.url)
