"""
Authenticated HTTP client for the reading backend.

Features:
- Async httpx client with connection pooling
- Bearer credentials attached from the credential store
- Proactive refresh shortly before the access token expires
- Reactive refresh on 401 through the shared RefreshCoordinator
- Bounded retries so a permanently bad refresh token cannot loop forever
- Session-expired events when the session cannot be recovered
"""

import json
import logging
from typing import Any, Callable, Optional, TypeVar

import httpx
from pydantic import TypeAdapter, ValidationError

from . import endpoints
from .config import ClientSettings, get_settings
from .endpoints import Endpoint
from .errors import (
    ClientError,
    DecodingError,
    EncodingError,
    InvalidURLError,
    MaxRetriesExceededError,
    NetworkFailureError,
    NoDataError,
    ServerError,
    UnauthorizedError,
    UnknownResponseError,
)
from .models import SessionExpired, SessionExpiredReason
from .refresh import RefreshCoordinator
from .schemas import ApiResponse, AuthResponse, ErrorEnvelope
from .tokens import CredentialStore, decode_claims, is_token_valid, seconds_until_expiry

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionListener = Callable[[SessionExpired], None]


class AuthenticatedClient:
    """Issues API requests with credentials and transparent token refresh."""

    def __init__(
        self,
        credentials: CredentialStore,
        settings: Optional[ClientSettings] = None,
        coordinator: Optional[RefreshCoordinator] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.credentials = credentials
        self.coordinator = coordinator or RefreshCoordinator(
            min_interval=self.settings.refresh_min_interval_seconds,
        )
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None
        self._session_listeners: list[SessionListener] = []

    async def __aenter__(self) -> "AuthenticatedClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self.settings.api_base_url,
                timeout=httpx.Timeout(self.settings.request_timeout),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    # === Session Events ===

    def on_session_expired(self, handler: SessionListener) -> Callable[[], None]:
        """
        Register a handler for session-expired events.

        Returns:
            A callable that unregisters the handler.
        """
        self._session_listeners.append(handler)

        def unsubscribe() -> None:
            if handler in self._session_listeners:
                self._session_listeners.remove(handler)

        return unsubscribe

    def _expire_session(self, reason: SessionExpiredReason) -> None:
        """Purge credentials and notify listeners."""
        self.credentials.clear_tokens()
        event = SessionExpired(reason=reason)
        logger.warning(f"Session expired ({reason.value}); credentials purged")
        for handler in list(self._session_listeners):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Session-expired handler failed: {e}")

    # === Requests ===

    async def request(
        self,
        endpoint: Endpoint,
        response_type: Optional[type[T]] = None,
        retry_count: int = 0,
    ) -> Optional[T]:
        """
        Make an API request, refreshing credentials on 401.

        Args:
            endpoint: The request description
            response_type: Type to decode a 2xx body into; None discards the body
            retry_count: Internal retry counter (callers leave it at 0)

        Returns:
            The decoded body, or None when no response_type was given.

        Raises:
            ClientError: One of the client error subclasses.
        """
        max_attempts = self.settings.max_retry_attempts
        if retry_count >= max_attempts:
            logger.error(f"Giving up on {endpoint.method} {endpoint.path} after {retry_count} retries")
            raise MaxRetriesExceededError(max_attempts)

        if retry_count == 0 and endpoint.authenticated:
            await self._refresh_proactively()

        response = await self._send(endpoint)
        status_code = response.status_code

        if 200 <= status_code < 300:
            return self._decode(response, response_type)

        if status_code == 401:
            if not endpoint.authenticated:
                raise UnauthorizedError()
            logger.info(f"401 from {endpoint.path}, attempting token refresh")
            if await self.coordinator.perform_refresh(self._refresh_tokens):
                return await self.request(endpoint, response_type, retry_count + 1)
            raise UnauthorizedError()

        if 400 <= status_code < 600:
            raise ServerError(status_code, self._error_message(response))

        raise UnknownResponseError(status_code)

    async def _send(self, endpoint: Endpoint) -> httpx.Response:
        """Build and send one HTTP request, mapping transport failures."""
        headers = {"Accept": "application/json"}
        content: Optional[bytes] = None

        body = endpoint.json_body()
        if body is not None:
            try:
                content = json.dumps(body).encode("utf-8")
            except (TypeError, ValueError) as e:
                raise EncodingError(str(e)) from e
            headers["Content-Type"] = "application/json"

        if endpoint.authenticated:
            token = self.credentials.get_access_token()
            if token:
                headers["Authorization"] = f"Bearer {token}"

        client = await self._get_http_client()
        try:
            return await client.request(
                endpoint.method,
                endpoint.path,
                params=endpoint.params or None,
                content=content,
                headers=headers,
            )
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise InvalidURLError(f"Invalid URL for {endpoint.path}: {e}") from e
        except httpx.RequestError as e:
            logger.warning(f"Network error on {endpoint.method} {endpoint.path}: {e}")
            raise NetworkFailureError(str(e)) from e

    def _decode(self, response: httpx.Response, response_type: Optional[type[T]]) -> Optional[T]:
        if response_type is None:
            return None

        raw = response.content
        if not raw or not raw.strip():
            raise NoDataError()

        try:
            return TypeAdapter(response_type).validate_json(raw)
        except (ValidationError, ValueError) as e:
            text = response.text
            logger.error(f"Failed to decode response: {text[:500]}")
            raise DecodingError(str(e), raw=text) from e

    @staticmethod
    def _error_message(response: httpx.Response) -> Optional[str]:
        """Pull a message from an optional error envelope."""
        try:
            envelope = ErrorEnvelope.model_validate_json(response.content)
        except (ValidationError, ValueError):
            return None
        return envelope.message or envelope.error

    # === Token Refresh ===

    async def _refresh_proactively(self) -> None:
        """Best-effort refresh when the access token is close to expiry."""
        if not self.settings.proactive_refresh_enabled:
            return
        await self._refresh_if_expiring(
            self.settings.proactive_refresh_buffer_seconds, trigger="proactive",
        )

    async def refresh_if_needed(self, trigger: str = "app_foreground") -> bool:
        """
        Lifecycle check (launch, return to foreground) with the wider buffer.

        Returns:
            True if a refresh ran and succeeded. Failures are only logged;
            the reactive path will retry on the next 401.
        """
        return await self._refresh_if_expiring(
            self.settings.lifecycle_refresh_buffer_seconds, trigger=trigger,
        )

    async def _refresh_if_expiring(self, buffer_seconds: float, trigger: str) -> bool:
        remaining = seconds_until_expiry(self.credentials.get_access_token())
        if remaining is None or remaining >= buffer_seconds:
            return False
        if not self.credentials.get_refresh_token():
            return False

        logger.info(f"Token expires in {remaining:.0f}s, refreshing ({trigger})")
        refreshed = await self.coordinator.perform_refresh(self._refresh_tokens)
        if not refreshed:
            logger.info(f"Refresh ({trigger}) did not succeed; continuing with current token")
        return refreshed

    async def _refresh_tokens(self) -> bool:
        """Exchange the refresh token for a new access token."""
        refresh_token = self.credentials.get_refresh_token()
        if not refresh_token:
            self._expire_session(SessionExpiredReason.NO_REFRESH_TOKEN)
            return False

        claims = decode_claims(refresh_token)
        if claims is not None and not is_token_valid(refresh_token):
            self._expire_session(SessionExpiredReason.REFRESH_TOKEN_EXPIRED)
            return False

        logger.info("Refreshing authentication token...")
        try:
            response = await self._send(endpoints.auth_refresh(refresh_token))
        except ClientError as e:
            logger.error(f"Token refresh failed: {e}")
            self._expire_session(SessionExpiredReason.REFRESH_ERROR)
            return False

        if response.status_code in (401, 403):
            self._expire_session(SessionExpiredReason.REFRESH_TOKEN_INVALID)
            return False
        if not 200 <= response.status_code < 300:
            logger.error(f"Token refresh failed with status {response.status_code}")
            self._expire_session(SessionExpiredReason.REFRESH_ERROR)
            return False

        try:
            envelope = self._decode(response, ApiResponse[AuthResponse])
        except ClientError:
            self._expire_session(SessionExpiredReason.INVALID_RESPONSE)
            return False
        if not envelope.ok or envelope.data is None:
            self._expire_session(SessionExpiredReason.INVALID_RESPONSE)
            return False

        auth = envelope.data
        if not auth.refresh_token:
            logger.warning("Refresh response did not rotate the refresh token; reusing the old one")
        self.credentials.save_tokens(auth.access_token, auth.refresh_token)
        logger.info("Token refreshed successfully")
        return True

    # === Login / Logout ===

    async def login(self, email: str, password: str) -> AuthResponse:
        """Authenticate with email and password and store the tokens."""
        logger.info(f"Logging in user: {email}")
        envelope = await self.request(
            endpoints.auth_login(email, password),
            ApiResponse[AuthResponse],
        )
        if not envelope.ok or envelope.data is None:
            raise UnauthorizedError(envelope.message or "Login rejected")
        auth = envelope.data
        self.credentials.save_tokens(auth.access_token, auth.refresh_token)
        self.coordinator.reset()
        logger.info("Login successful")
        return auth

    def logout(self) -> None:
        """Forget the stored credentials."""
        self.credentials.clear_tokens()
        logger.info("Logged out successfully")

    def is_authenticated(self) -> bool:
        return is_token_valid(self.credentials.get_access_token())
