"""Group-directory exceptions for error handling."""


class DirectoryError(Exception):
    """Base exception for all remote group directory operations."""
    pass


class DirectoryAPIError(DirectoryError):
    """HTTP error from the directory's admin API.

    Attributes:
        status_code: HTTP status code
        message: Error message from response
        endpoint: API endpoint that failed
    """

    def __init__(self, status_code: int, message: str, endpoint: str):
        self.status_code = status_code
        self.message = message
        self.endpoint = endpoint
        super().__init__(f"[{status_code}] {endpoint}: {message}")


class IdentityNotFoundError(DirectoryError):
    """The identity key used for a call is not recognized by the directory."""

    def __init__(self, identity_key: str, message: str = ""):
        self.identity_key = identity_key
        super().__init__(message or f"Identity '{identity_key}' not found in directory")


class GroupNotFoundError(DirectoryError):
    """Group does not exist in the directory."""

    def __init__(self, group_name: str):
        self.group_name = group_name
        super().__init__(f"Group '{group_name}' not found in directory")
