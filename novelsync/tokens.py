"""
Credential storage contract and JWT claim inspection.

The client never verifies token signatures; it only reads the ``exp`` claim
to decide whether a token is still usable or close to expiry.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from jose import JWTError, jwt

logger = logging.getLogger(__name__)


# =============================================================================
# Claims
# =============================================================================

@dataclass(frozen=True)
class TokenClaims:
    """Subset of JWT claims the client cares about."""
    exp: float
    iat: Optional[float] = None
    id: Optional[str] = None
    email: Optional[str] = None
    roles: tuple[str, ...] = ()

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


def decode_claims(token: str) -> Optional[TokenClaims]:
    """
    Decode a JWT payload without verifying the signature.

    Returns:
        The claims, or None if the token is malformed or has no ``exp``.
    """
    try:
        payload = jwt.get_unverified_claims(token)
    except JWTError:
        return None

    exp = payload.get("exp")
    if not isinstance(exp, (int, float)):
        return None

    roles = payload.get("roles") or ()
    return TokenClaims(
        exp=float(exp),
        iat=payload.get("iat"),
        id=payload.get("id") or payload.get("sub"),
        email=payload.get("email"),
        roles=tuple(roles),
    )


def token_expiry(token: Optional[str]) -> Optional[datetime]:
    """Expiry instant of a token, or None if it cannot be decoded."""
    if not token:
        return None
    claims = decode_claims(token)
    return claims.expires_at if claims else None


def seconds_until_expiry(token: Optional[str]) -> Optional[float]:
    """Remaining lifetime in seconds (never negative), None if undecodable."""
    expiry = token_expiry(token)
    if expiry is None:
        return None
    remaining = (expiry - datetime.now(timezone.utc)).total_seconds()
    return max(0.0, remaining)


def is_token_valid(token: Optional[str]) -> bool:
    """True if the token decodes and has not expired. Invalid counts as expired."""
    expiry = token_expiry(token)
    if expiry is None:
        return False
    return expiry > datetime.now(timezone.utc)


# =============================================================================
# Credential Store
# =============================================================================

@dataclass
class CredentialState:
    """Snapshot of the stored credentials."""
    access_token: Optional[str]
    refresh_token: Optional[str]

    @property
    def expires_at(self) -> Optional[datetime]:
        return token_expiry(self.access_token)


class CredentialStore(Protocol):
    """Secure get/set/delete of the access and refresh tokens."""

    def get_access_token(self) -> Optional[str]: ...

    def get_refresh_token(self) -> Optional[str]: ...

    def save_tokens(self, access_token: str, refresh_token: Optional[str] = None) -> None: ...

    def clear_tokens(self) -> None: ...


def credential_state(store: CredentialStore) -> CredentialState:
    """Read both tokens from a store."""
    return CredentialState(
        access_token=store.get_access_token(),
        refresh_token=store.get_refresh_token(),
    )


class MemoryCredentialStore:
    """Process-local credential store (tests, short-lived scripts)."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ):
        self._lock = threading.Lock()
        self._access_token = access_token
        self._refresh_token = refresh_token

    def get_access_token(self) -> Optional[str]:
        with self._lock:
            return self._access_token

    def get_refresh_token(self) -> Optional[str]:
        with self._lock:
            return self._refresh_token

    def save_tokens(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        """Save the access token; keep the current refresh token unless rotated."""
        with self._lock:
            self._access_token = access_token
            if refresh_token is not None:
                self._refresh_token = refresh_token

    def clear_tokens(self) -> None:
        with self._lock:
            self._access_token = None
            self._refresh_token = None
        logger.debug("Cleared in-memory credentials")
