"""Access-token lifecycle shared by every outbound API call.

A single TokenManager owns the bearer token for the current session.
Every concurrent request reads it through ``get_valid_token()``; refreshes
are serialised behind one asyncio.Lock so that many callers noticing the
same stale token trigger exactly one call to the refresh endpoint.

Example:
    manager = TokenManager(access_token=tok, refresh_token=rt, refresh_fn=fn)
    token = await manager.get_valid_token()
    ...
    token = await manager.refresh(stale_token=token)  # after a 401
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import jwt

from shipdesk.services.errors import TokenRefreshError

logger = logging.getLogger(__name__)

# Proactive refresh low-water mark (seconds before expiry)
DEFAULT_REFRESH_MARGIN_SECONDS = 300


@dataclass
class TokenGrant:
    """Tokens returned by the refresh endpoint."""

    access_token: str
    refresh_token: str | None = None


RefreshFn = Callable[[str], Awaitable[TokenGrant]]


def decode_expiry(token: str | None) -> float | None:
    """Read the ``exp`` claim from a JWT without verifying its signature.

    Args:
        token: Bearer token, possibly opaque.

    Returns:
        Expiry as a UNIX timestamp, or None when the token carries no
        readable expiry claim.
    """
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            options={"verify_signature": False, "verify_exp": False},
        )
    except jwt.PyJWTError:
        return None
    exp = payload.get("exp")
    if isinstance(exp, (int, float)):
        return float(exp)
    return None


class TokenManager:
    """Single-writer guard around the session's access token.

    Attributes:
        _access_token: Current bearer token.
        _refresh_token: Credential exchanged for a new access token.
        _refresh_fn: Coroutine performing the refresh exchange.
        _refresh_margin: Seconds before expiry at which to refresh proactively.
        _lock: Serialises refreshes so concurrent callers coalesce.
    """

    def __init__(
        self,
        access_token: str,
        refresh_token: str | None = None,
        refresh_fn: RefreshFn | None = None,
        refresh_margin_seconds: float = DEFAULT_REFRESH_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the manager.

        Args:
            access_token: Current bearer token.
            refresh_token: Refresh credential, if the session has one.
            refresh_fn: Coroutine exchanging a refresh token for a TokenGrant.
            refresh_margin_seconds: Proactive refresh low-water mark.
            clock: Time source returning UNIX seconds.
        """
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._refresh_fn = refresh_fn
        self._refresh_margin = refresh_margin_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._refresh_count = 0
        self._refresh_attempts = 0
        self._last_refresh_error: TokenRefreshError | None = None
        self._proactive_failed_for: str | None = None

    @property
    def access_token(self) -> str:
        """The current bearer token (may be stale)."""
        return self._access_token

    @property
    def refresh_count(self) -> int:
        """Number of successful refreshes performed by this manager."""
        return self._refresh_count

    def set_refresh_fn(self, refresh_fn: RefreshFn) -> None:
        """Install the refresh exchange (done by the API client on open)."""
        self._refresh_fn = refresh_fn

    def seconds_remaining(self, token: str | None = None) -> float | None:
        """Seconds until the token expires, or None if it has no expiry claim."""
        exp = decode_expiry(token if token is not None else self._access_token)
        if exp is None:
            return None
        return exp - self._clock()

    def needs_proactive_refresh(self, token: str | None = None) -> bool:
        """True when 0 < time remaining < the refresh margin."""
        remaining = self.seconds_remaining(token)
        if remaining is None:
            return False
        return 0 < remaining < self._refresh_margin

    async def get_valid_token(self) -> str:
        """Return a token to send, refreshing it first if it is about to expire.

        A failed proactive refresh is logged and the current token is
        returned; the request is not aborted.
        """
        token = self._access_token
        if not self.needs_proactive_refresh(token):
            return token
        if self._proactive_failed_for == token:
            return token

        try:
            return await self.refresh(stale_token=token)
        except TokenRefreshError as e:
            logger.warning(
                "Proactive token refresh failed, continuing with current token: %s",
                e.message,
            )
            self._proactive_failed_for = token
            return self._access_token

    async def refresh(self, stale_token: str | None = None) -> str:
        """Refresh the access token, coalescing concurrent callers.

        Args:
            stale_token: The token the caller found to be stale. If another
                caller already replaced it, the new token is returned
                without another refresh call.

        Returns:
            The new (or already refreshed) access token.

        Raises:
            TokenRefreshError: No refresh path available or the exchange
                failed. Callers that queued behind a failed exchange get
                the same failure without another call.
        """
        attempts_seen = self._refresh_attempts
        async with self._lock:
            if stale_token is not None and self._access_token != stale_token:
                return self._access_token
            if attempts_seen != self._refresh_attempts and self._last_refresh_error is not None:
                raise TokenRefreshError(self._last_refresh_error.message)

            if self._refresh_fn is None:
                raise TokenRefreshError("No refresh handler configured")
            if not self._refresh_token:
                raise TokenRefreshError("No refresh token available")

            logger.info("Refreshing access token")
            try:
                grant = await self._refresh_fn(self._refresh_token)
                if not grant.access_token:
                    raise TokenRefreshError("Refresh response did not include a token")
            except TokenRefreshError as e:
                self._last_refresh_error = e
                raise
            finally:
                # Counted on completion so callers queued during the exchange see it.
                self._refresh_attempts += 1

            self._last_refresh_error = None
            self._access_token = grant.access_token
            if grant.refresh_token:
                self._refresh_token = grant.refresh_token
            self._refresh_count += 1
            self._proactive_failed_for = None
            return self._access_token

    def set_tokens(self, access_token: str, refresh_token: str | None = None) -> None:
        """Replace both tokens after the operator signs in again."""
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._proactive_failed_for = None
        self._last_refresh_error = None

    @property
    def has_refresh_fn(self) -> bool:
        """Whether a refresh exchange has been installed."""
        return self._refresh_fn is not None

    def clear(self) -> None:
        """Drop both tokens (forced sign-out)."""
        self._access_token = ""
        self._refresh_token = None
