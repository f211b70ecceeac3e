"""
Exception hierarchy for the novelsync client.

Two families: ``ClientError`` for anything the authenticated HTTP client
raises, and ``SyncError`` for failures specific to progress reconciliation.
"""

from typing import Optional


# =============================================================================
# HTTP Client Errors
# =============================================================================

class ClientError(Exception):
    """Base exception for authenticated client requests."""
    pass


class InvalidURLError(ClientError):
    """The request URL could not be built."""

    def __init__(self, message: str = "Invalid URL"):
        super().__init__(message)


class NoDataError(ClientError):
    """The server answered successfully but sent no body."""

    def __init__(self, message: str = "No data received from server"):
        super().__init__(message)


class DecodingError(ClientError):
    """A 2xx body could not be decoded into the expected type."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(f"Failed to decode response: {message}")
        self.raw = raw


class EncodingError(ClientError):
    """The request body could not be serialized."""

    def __init__(self, message: str):
        super().__init__(f"Failed to encode request: {message}")


class ServerError(ClientError):
    """The server rejected the request with a 4xx/5xx status (not 401)."""

    def __init__(self, status_code: int, message: Optional[str] = None):
        super().__init__(message or f"Server error with status code: {status_code}")
        self.status_code = status_code
        self.message = message


class UnauthorizedError(ClientError):
    """Credentials were rejected and could not be refreshed."""

    def __init__(self, message: str = "Unauthorized. Please login again."):
        super().__init__(message)


class NetworkFailureError(ClientError):
    """Transport-level failure (DNS, connect, timeout, ...)."""

    def __init__(self, message: str):
        super().__init__(f"Network failure: {message}")


class MaxRetriesExceededError(ClientError):
    """The 401 -> refresh -> retry loop hit its bound."""

    def __init__(self, attempts: int):
        super().__init__(
            f"Maximum retry attempts exceeded ({attempts}). Please try again later."
        )
        self.attempts = attempts


class UnknownResponseError(ClientError):
    """Status code outside the handled classes."""

    def __init__(self, status_code: Optional[int] = None):
        super().__init__("An unknown error occurred")
        self.status_code = status_code


# =============================================================================
# Sync Errors
# =============================================================================

class SyncError(Exception):
    """Base exception for progress sync operations."""
    pass


class NotAuthenticatedError(SyncError):
    """No valid access token; sync was not attempted."""

    def __init__(self, message: str = "You must log in to sync your reading progress"):
        super().__init__(message)


class SyncNetworkError(SyncError):
    """A network failure interrupted the sync."""

    def __init__(self, cause: Exception):
        super().__init__(f"Network error: {cause}")
        self.cause = cause


class InvalidResponseError(SyncError):
    """The server envelope reported failure or was malformed."""

    def __init__(self, message: str = "Invalid response from server"):
        super().__init__(message)


class SyncInProgressError(SyncError):
    """Another full sync is already running."""

    def __init__(self, message: str = "A sync is already in progress"):
        super().__init__(message)
