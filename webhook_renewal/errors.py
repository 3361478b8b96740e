"""
Error taxonomy for the subscription lifecycle.

Callers branch on these types to decide between "send the user to login",
"show retry" and "try again on the next renewal pass":

- AuthExpiredError: refresh token missing or rejected, user must re-authenticate
- ProviderRejectedError: 4xx from the provider, carries the provider error code
- SubscriptionNotFoundError: 404 on a subscription that no longer exists
- TransientNetworkError: timeouts, connection failures, 5xx and 429
- PersistenceError: repository or token store failure
- TokenExchangeError: login callback could not redeem the authorization code
"""

from typing import Optional


class RenewalServiceError(Exception):
    """Base exception for subscription lifecycle operations."""

    pass


class AuthExpiredError(RenewalServiceError):
    """Raised when a user's tokens can no longer be used or refreshed."""

    def __init__(self, user_id: str, reason: str = "Authentication expired"):
        super().__init__(f"{reason} (user {user_id}). Please log in again.")
        self.user_id = user_id
        self.reason = reason


class ProviderRejectedError(RenewalServiceError):
    """Raised when the provider answers a request with a 4xx status."""

    def __init__(
        self,
        status_code: int,
        code: Optional[str] = None,
        message: Optional[str] = None,
    ):
        detail = message or "Provider rejected the request"
        super().__init__(f"HTTP {status_code} {code or 'UnknownError'}: {detail}")
        self.status_code = status_code
        self.code = code
        self.message = detail


class SubscriptionNotFoundError(ProviderRejectedError):
    """Raised when the provider reports that a subscription no longer exists."""

    pass


class TransientNetworkError(RenewalServiceError):
    """Raised for timeouts, connection errors and 5xx/429 responses."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(RenewalServiceError):
    """Raised when the subscription repository or token store fails."""

    pass


class TokenExchangeError(RenewalServiceError):
    """Raised when an authorization code cannot be exchanged for tokens."""

    pass
