"""
OAuth token management for Microsoft Graph.

Owns the per-user token state used to authenticate provider calls:
- Authorization URL construction and authorization-code exchange at login
- ``get_valid_access_token``: cached token when fresh, single-flight refresh
  otherwise
- Clearing token state when a refresh is rejected, forcing re-authentication

Refresh policy:
- A token is fresh while ``now + buffer < expires_at`` (buffer defaults to
  5 minutes); fresh tokens are returned without contacting the identity provider
- Refreshes for one user are serialized; the second caller reuses the first
  caller's result instead of refreshing again
- Any refresh failure clears the user's token state and raises AuthExpiredError
"""

import time
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
import structlog

from webhook_renewal.config import Settings
from webhook_renewal.db.repositories import TokenState, TokenStore
from webhook_renewal.errors import AuthExpiredError, TokenExchangeError
from webhook_renewal.utils.locks import KeyedLocks
from webhook_renewal.utils.time import Clock, utcnow

logger = structlog.get_logger(__name__)


class RefreshMetrics:
    """Counters for token refresh activity, exposed through health checks."""

    def __init__(self):
        self.refresh_attempts_total = 0
        self.refresh_success_total = 0
        self.refresh_failures_total = 0
        self.cache_hits_total = 0
        self.refresh_latencies: list[float] = []

    def record_success(self, latency_ms: float) -> None:
        self.refresh_attempts_total += 1
        self.refresh_success_total += 1
        self.refresh_latencies.append(latency_ms)
        # Keep only last 100 latencies to prevent memory growth
        if len(self.refresh_latencies) > 100:
            self.refresh_latencies = self.refresh_latencies[-100:]

    def record_failure(self) -> None:
        self.refresh_attempts_total += 1
        self.refresh_failures_total += 1

    def get_metrics_summary(self) -> Dict[str, Any]:
        return {
            "refresh_attempts_total": self.refresh_attempts_total,
            "refresh_success_total": self.refresh_success_total,
            "refresh_failures_total": self.refresh_failures_total,
            "cache_hits_total": self.cache_hits_total,
            "avg_latency_ms": (
                sum(self.refresh_latencies) / max(1, len(self.refresh_latencies))
            ),
        }


class TokenManager:
    """
    Token refresher and login helper for the identity provider.

    Args:
        settings: Application settings (client credentials, scopes, buffer)
        token_store: Where token state lives
        clock: Source of "now", injectable for tests
        transport: Optional httpx transport, used by tests to stub the token endpoint
    """

    def __init__(
        self,
        settings: Settings,
        token_store: TokenStore,
        clock: Clock = utcnow,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.token_store = token_store
        self.clock = clock
        self.refresh_buffer: timedelta = settings.token_refresh_buffer

        self.http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.provider_timeout_seconds),
            follow_redirects=False,  # OAuth requires manual redirect handling
            transport=transport,
        )

        self._refresh_locks = KeyedLocks()
        self.refresh_metrics = RefreshMetrics()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.http_client.aclose()

    # ===== Token state =====

    def is_token_fresh(self, state: TokenState) -> bool:
        """True while the access token outlives the refresh buffer."""
        if state.expires_at is None:
            return False
        return self.clock() + self.refresh_buffer < state.expires_at

    async def set_token_state(self, user_id: str, state: TokenState) -> None:
        """Store a user's token state (login callback, tests)."""
        async with self._refresh_locks.hold(user_id):
            await self.token_store.set(user_id, state)

        logger.info(
            "Token state stored",
            user_id=user_id,
            has_refresh=bool(state.refresh_token),
            expires_at=state.expires_at.isoformat() if state.expires_at else None,
        )

    async def clear_token_state(self, user_id: str) -> None:
        async with self._refresh_locks.hold(user_id):
            await self.token_store.clear(user_id)
        logger.info("Token state cleared", user_id=user_id)

    async def get_valid_access_token(self, user_id: str) -> str:
        """
        Return an access token that stays valid beyond the refresh buffer.

        Raises:
            AuthExpiredError: No usable refresh token, or the refresh failed
            PersistenceError: The token store could not be read or written
        """
        state = await self.token_store.get(user_id)
        if state is not None and self.is_token_fresh(state):
            self.refresh_metrics.cache_hits_total += 1
            return state.access_token

        async with self._refresh_locks.hold(user_id):
            # Double-check under lock, a concurrent caller may have refreshed already
            state = await self.token_store.get(user_id)
            if state is None:
                raise AuthExpiredError(user_id, "No tokens on record")
            if self.is_token_fresh(state):
                logger.debug(
                    "Token already refreshed by concurrent request", user_id=user_id
                )
                self.refresh_metrics.cache_hits_total += 1
                return state.access_token
            if not state.refresh_token:
                logger.warning("No refresh token available", user_id=user_id)
                await self.token_store.clear(user_id)
                raise AuthExpiredError(user_id, "No refresh token available")

            refreshed = await self._refresh(user_id, state)
            await self.token_store.set(user_id, refreshed)
            return refreshed.access_token

    async def _refresh(self, user_id: str, state: TokenState) -> TokenState:
        """Exchange the refresh token. Clears token state on any failure."""
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": state.refresh_token,
            "client_id": self.settings.graph_client_id or "",
            "client_secret": self.settings.graph_client_secret or "",
            "scope": " ".join(self.settings.graph_scopes),
        }

        logger.info("Attempting token refresh", user_id=user_id)
        start_time = time.monotonic()

        try:
            response = await self.http_client.post(self.settings.token_url, data=payload)
        except httpx.HTTPError as e:
            reason = (
                "Token refresh timed out"
                if isinstance(e, httpx.TimeoutException)
                else "Token refresh network error"
            )
            await self._expire(user_id, reason, error=str(e))
            raise AuthExpiredError(user_id, reason) from e

        if response.status_code != 200:
            error_code, description = self._oauth_error(response)
            reason = f"Token refresh rejected ({error_code or response.status_code})"
            await self._expire(
                user_id,
                reason,
                status_code=response.status_code,
                error_code=error_code,
                error_description=description,
            )
            raise AuthExpiredError(user_id, reason)

        try:
            token_response = response.json()
            access_token = token_response["access_token"]
            expires_in = token_response.get("expires_in")
            expires_in = int(float(expires_in)) if expires_in else None
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            reason = "Malformed token refresh response"
            await self._expire(user_id, reason, error=str(e))
            raise AuthExpiredError(user_id, reason) from e

        refresh_token = token_response.get("refresh_token")
        if not refresh_token:
            logger.warning(
                "Refresh response carried no refresh token, keeping the previous one",
                user_id=user_id,
            )
            refresh_token = state.refresh_token

        expires_at = None
        if expires_in:
            expires_at = self.clock() + timedelta(seconds=expires_in)
        else:
            logger.warning(
                "Refresh response carried no expires_in, token will be refreshed on next use",
                user_id=user_id,
            )

        latency_ms = (time.monotonic() - start_time) * 1000
        self.refresh_metrics.record_success(latency_ms)
        logger.info(
            "Token refresh successful",
            user_id=user_id,
            latency_ms=round(latency_ms, 2),
            expires_at=expires_at.isoformat() if expires_at else None,
        )

        return TokenState(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )

    async def _expire(self, user_id: str, reason: str, **context: Any) -> None:
        """Record a failed refresh and drop the user's tokens."""
        self.refresh_metrics.record_failure()
        logger.warning("Token refresh failed", user_id=user_id, reason=reason, **context)
        await self.token_store.clear(user_id)

    @staticmethod
    def _oauth_error(response: httpx.Response) -> tuple[Optional[str], Optional[str]]:
        try:
            body = response.json()
        except ValueError:
            return None, response.text[:200] or None
        if not isinstance(body, dict):
            return None, None
        return body.get("error"), body.get("error_description")

    # ===== Login flow =====

    def build_authorization_url(self, state_token: str) -> str:
        """Build the authorize URL the browser is redirected to at login."""
        if not self.settings.graph_client_id:
            raise TokenExchangeError("Graph client ID not configured")

        params = {
            "client_id": self.settings.graph_client_id,
            "response_type": "code",
            "redirect_uri": self.settings.redirect_uri,
            "response_mode": "query",
            "scope": " ".join(self.settings.graph_scopes),
            "state": state_token,
        }
        return f"{self.settings.authorize_url}?{urlencode(params)}"

    async def exchange_authorization_code(self, authorization_code: str) -> TokenState:
        """
        Redeem an authorization code for a token pair.

        Raises:
            TokenExchangeError: If the identity provider rejects the code or is unreachable
        """
        if not self.settings.graph_client_id or not self.settings.graph_client_secret:
            raise TokenExchangeError("Graph OAuth credentials not configured")

        payload = {
            "grant_type": "authorization_code",
            "code": authorization_code,
            "redirect_uri": self.settings.redirect_uri,
            "client_id": self.settings.graph_client_id,
            "client_secret": self.settings.graph_client_secret,
            "scope": " ".join(self.settings.graph_scopes),
        }

        try:
            response = await self.http_client.post(self.settings.token_url, data=payload)
        except httpx.HTTPError as e:
            logger.error("Token exchange network error", error=str(e))
            raise TokenExchangeError(f"Network error during token exchange: {e}") from e

        if response.status_code != 200:
            error_code, description = self._oauth_error(response)
            logger.error(
                "Token exchange failed",
                status_code=response.status_code,
                error_code=error_code,
                error_description=description,
            )
            raise TokenExchangeError(
                f"Token exchange failed with status {response.status_code}"
            )

        try:
            token_response = response.json()
            access_token = token_response["access_token"]
            expires_in = token_response.get("expires_in")
            expires_in = int(float(expires_in)) if expires_in else None
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise TokenExchangeError("Malformed token response") from e

        refresh_token = token_response.get("refresh_token")
        if not refresh_token:
            logger.warning(
                "No refresh token received, renewals will need a fresh login once the access token expires"
            )

        expires_at = self.clock() + timedelta(seconds=expires_in) if expires_in else None

        logger.info(
            "Token exchange successful",
            has_refresh=bool(refresh_token),
            expires_in=expires_in,
        )

        return TokenState(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.refresh_metrics.get_metrics_summary(),
            "refresh_buffer_seconds": int(self.refresh_buffer.total_seconds()),
        }
