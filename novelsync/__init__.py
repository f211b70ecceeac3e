"""
novelsync - Reading Progress Sync Client

Authenticated API client with transparent token refresh and an
offline-first sync engine that reconciles local reading progress with
the reading backend.
"""

from .cache import CachedEntry, ContentCache, chapter_fetcher, estimate_cost
from .client import AuthenticatedClient
from .config import ClientSettings, get_settings
from .errors import (
    ClientError,
    DecodingError,
    EncodingError,
    InvalidResponseError,
    InvalidURLError,
    MaxRetriesExceededError,
    NetworkFailureError,
    NoDataError,
    NotAuthenticatedError,
    ServerError,
    SyncError,
    SyncInProgressError,
    SyncNetworkError,
    UnauthorizedError,
    UnknownResponseError,
)
from .models import (
    ProgressRecord,
    SessionExpired,
    SessionExpiredReason,
    SyncResult,
    SyncState,
    SyncStatus,
)
from .refresh import RefreshCoordinator
from .repository import ProgressRepository
from .storage import BackupStore, LocalStore, ProgressStore
from .sync import ProgressSyncEngine, merge_remote
from .tokens import CredentialStore, MemoryCredentialStore, decode_claims, is_token_valid
from .tracker import SessionTimeTracker, TrackerState, validate_reading_speed

__version__ = "0.1.0"
__all__ = [
    # Main classes
    "AuthenticatedClient",
    "RefreshCoordinator",
    "ProgressSyncEngine",
    "ProgressRepository",
    "ContentCache",
    "SessionTimeTracker",
    "LocalStore",
    "MemoryCredentialStore",

    # Configuration
    "ClientSettings",
    "get_settings",

    # Storage interfaces
    "CredentialStore",
    "ProgressStore",
    "BackupStore",

    # Data models
    "ProgressRecord",
    "CachedEntry",
    "SyncResult",
    "SyncState",
    "SyncStatus",
    "SessionExpired",
    "SessionExpiredReason",
    "TrackerState",

    # Exceptions
    "ClientError",
    "InvalidURLError",
    "NoDataError",
    "DecodingError",
    "EncodingError",
    "ServerError",
    "UnauthorizedError",
    "NetworkFailureError",
    "MaxRetriesExceededError",
    "UnknownResponseError",
    "SyncError",
    "NotAuthenticatedError",
    "SyncNetworkError",
    "InvalidResponseError",
    "SyncInProgressError",

    # Functions
    "merge_remote",
    "estimate_cost",
    "chapter_fetcher",
    "validate_reading_speed",
    "decode_claims",
    "is_token_valid",
]
