"""Async HTTP client with token lifecycle and retry handling.

Every outbound call from ShipDesk (order source, carrier backends, token
refresh) goes through ResilientApiClient. It owns three recovery paths:

- Proactive refresh: a token within the refresh margin of expiry is
  refreshed before the call (failure is logged, the call proceeds).
- Reactive refresh-and-retry: a 401, or an HTML page where JSON was
  expected (a sign-in redirect), triggers exactly one refresh and one
  retry. A second auth failure ends the session.
- Transient retry: timeouts, connection errors, 429 and 5xx are retried
  up to ``max_retries`` times with capped exponential backoff.

Example:
    async with ResilientApiClient(base_url, token_manager) as api:
        label = await api.request("/carriers/ups/labels", "POST", body=payload)
"""

import asyncio
import inspect
import logging
from typing import Any, Callable

import httpx

from shipdesk.services.errors import (
    ApiError,
    ApiValidationError,
    AuthExpiredError,
    TokenRefreshError,
    TransientNetworkError,
)
from shipdesk.services.token_manager import TokenGrant, TokenManager
from shipdesk.utils.redaction import redact_for_logging

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 20.0
REFRESH_ENDPOINT = "/auth/refresh"


def _is_transient_status(status_code: int) -> bool:
    """Classify HTTP statuses that are worth retrying.

    Args:
        status_code: HTTP status of the response.

    Returns:
        True for rate limiting and server-side failures.
    """
    return status_code == 429 or status_code >= 500


def _is_html(response: httpx.Response) -> bool:
    """True when the server answered with an HTML page instead of JSON."""
    content_type = response.headers.get("content-type", "").lower()
    return "text/html" in content_type


class ResilientApiClient:
    """Async API client with token refresh, auth retry and backoff.

    Attributes:
        _base_url: API base URL.
        _tokens: Shared TokenManager for the session.
        _max_retries: Extra attempts for transient failures.
        _base_delay: Base delay in seconds for exponential backoff.
        _max_delay: Backoff cap in seconds.
        _on_session_expired: Callback invoked once when the session ends.
    """

    def __init__(
        self,
        base_url: str,
        token_manager: TokenManager,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = 1,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        on_session_expired: Callable[[], Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: API base URL.
            token_manager: Shared token holder; the client installs its
                refresh exchange on it when none is configured.
            timeout: Per-request timeout in seconds.
            max_retries: Extra attempts for transient failures.
            base_delay: Base backoff delay in seconds (doubles each retry).
            max_delay: Maximum backoff delay in seconds.
            on_session_expired: Sync or async callback forcing re-authentication.
            transport: Optional httpx transport (tests use MockTransport).
        """
        self._base_url = base_url.rstrip("/")
        self._tokens = token_manager
        self._timeout = timeout
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._on_session_expired = on_session_expired
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._session_expired = False
        self._retry_attempts_total = 0

    async def __aenter__(self) -> "ResilientApiClient":
        """Open the underlying httpx client."""
        await self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Close the underlying httpx client."""
        await self.close()

    async def open(self) -> None:
        """Create the httpx client if it is not already open."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )
        if not self._tokens.has_refresh_fn:
            self._tokens.set_refresh_fn(self._exchange_refresh_token)

    async def close(self) -> None:
        """Close the httpx client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def session_expired(self) -> bool:
        """Whether the session ended and re-authentication is required."""
        return self._session_expired

    @property
    def retry_attempts_total(self) -> int:
        """Total transient-retry sleeps performed by this client."""
        return self._retry_attempts_total

    def reset_session(self, access_token: str, refresh_token: str | None = None) -> None:
        """Resume after the operator signed in again."""
        self._tokens.set_tokens(access_token, refresh_token)
        self._session_expired = False

    # ── Public API ─────────────────────────────────────────────────────

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Issue an API call and return its parsed JSON body.

        Args:
            endpoint: Path relative to the base URL.
            method: HTTP method.
            body: Optional JSON body.
            params: Optional query parameters.

        Returns:
            Parsed JSON body (empty dict for an empty 2xx response).

        Raises:
            AuthExpiredError: Session could not be recovered by a refresh.
            TransientNetworkError: Transient failure after all retries.
            ApiValidationError: The API rejected the request (400/422).
            ApiError: Any other non-2xx response or unreadable body.
        """
        if self._client is None:
            await self.open()
        if self._session_expired:
            raise AuthExpiredError()

        token = await self._tokens.get_valid_token()
        auth_retried = False
        attempt = 0

        while True:
            try:
                response = await self._send(method, endpoint, token, body, params)
            except httpx.TransportError as e:
                if attempt < self._max_retries:
                    await self._backoff(endpoint, attempt, f"{type(e).__name__}: {e}")
                    attempt += 1
                    continue
                raise TransientNetworkError(
                    f"Network error calling {method} {endpoint}: {type(e).__name__}: {e}",
                ) from e

            if response.status_code == 401 or _is_html(response):
                if auth_retried:
                    logger.warning(
                        "Auth failure persisted after refresh on %s %s, ending session",
                        method, endpoint,
                    )
                    await self._expire_session()
                    raise AuthExpiredError()
                auth_retried = True
                logger.info(
                    "Auth failure on %s %s (status=%d), refreshing token and retrying once",
                    method, endpoint, response.status_code,
                )
                try:
                    token = await self._tokens.refresh(stale_token=token)
                except TokenRefreshError as e:
                    logger.warning("Reactive token refresh failed: %s", e.message)
                    await self._expire_session()
                    raise AuthExpiredError() from e
                continue

            if _is_transient_status(response.status_code):
                if attempt < self._max_retries:
                    await self._backoff(endpoint, attempt, f"HTTP {response.status_code}")
                    attempt += 1
                    continue
                raise TransientNetworkError(
                    f"{method} {endpoint} failed with HTTP {response.status_code}",
                    status_code=response.status_code,
                    body=self._safe_body(response),
                )

            if response.status_code in (400, 422):
                body_data = self._safe_body(response)
                raise ApiValidationError(
                    self._error_message(body_data, response),
                    status_code=response.status_code,
                    body=body_data,
                )

            if response.status_code >= 400:
                body_data = self._safe_body(response)
                raise ApiError(
                    self._error_message(body_data, response),
                    status_code=response.status_code,
                    body=body_data,
                )

            return self._parse_json(endpoint, response)

    # ── Internal helpers ───────────────────────────────────────────────

    async def _send(
        self,
        method: str,
        endpoint: str,
        token: str,
        body: dict[str, Any] | None,
        params: dict[str, Any] | None,
    ) -> httpx.Response:
        """Send one HTTP request with the given bearer token."""
        assert self._client is not None
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        if body is not None:
            logger.debug(
                "%s %s body=%s", method, endpoint, redact_for_logging(body),
            )
        return await self._client.request(
            method,
            endpoint,
            json=body,
            params=params,
            headers=headers,
        )

    async def _backoff(self, endpoint: str, attempt: int, reason: str) -> None:
        """Sleep before the next transient retry."""
        delay = min(self._base_delay * (2 ** attempt), self._max_delay)
        logger.warning(
            "Transient failure on %s (attempt %d/%d), retrying in %.1fs: %s",
            endpoint, attempt + 1, self._max_retries + 1, delay, reason,
        )
        self._retry_attempts_total += 1
        await asyncio.sleep(delay)

    async def _expire_session(self) -> None:
        """Mark the session dead and fire the sign-out callback once."""
        if self._session_expired:
            return
        self._session_expired = True
        if self._on_session_expired is None:
            return
        result = self._on_session_expired()
        if inspect.isawaitable(result):
            await result

    async def _exchange_refresh_token(self, refresh_token: str) -> TokenGrant:
        """POST the refresh token and return the new token pair.

        Raises:
            TokenRefreshError: Transport failure, non-2xx, or no token in body.
        """
        assert self._client is not None
        try:
            response = await self._client.post(
                REFRESH_ENDPOINT, json={"refreshToken": refresh_token},
            )
        except httpx.HTTPError as e:
            raise TokenRefreshError(f"Refresh request failed: {e}") from e

        if response.status_code >= 400 or _is_html(response):
            raise TokenRefreshError(
                f"Refresh endpoint returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise TokenRefreshError("Refresh endpoint returned invalid JSON") from e

        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise TokenRefreshError("Refresh response did not include a token")
        return TokenGrant(access_token=token, refresh_token=data.get("refreshToken"))

    def _parse_json(self, endpoint: str, response: httpx.Response) -> Any:
        """Parse a successful response body."""
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ApiError(
                f"{endpoint} returned invalid JSON: {e}",
                status_code=response.status_code,
                body=response.text[:500],
            ) from e

    @staticmethod
    def _safe_body(response: httpx.Response) -> Any:
        """Return the parsed body of an error response, or its raw text."""
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _error_message(body: Any, response: httpx.Response) -> str:
        """Pull a human-readable message out of an error body."""
        if isinstance(body, dict):
            for key in ("message", "detail", "error"):
                value = body.get(key)
                if isinstance(value, str) and value:
                    return value
        return f"HTTP {response.status_code}"
