"""
Microsoft Graph client for subscription management.

Wraps the provider's ``/subscriptions``, ``/me`` and ``/me/messages``
endpoints with bounded timeouts and maps every failure onto the service
error taxonomy:

- 404 on a subscription id -> SubscriptionNotFoundError
- other 4xx (except 429) -> ProviderRejectedError
- 429, 5xx, timeouts, connection errors, malformed 2xx bodies -> TransientNetworkError

No call is retried here; failed renewals are picked up by the next pass.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
import structlog

from webhook_renewal.config import Settings
from webhook_renewal.errors import (
    ProviderRejectedError,
    SubscriptionNotFoundError,
    TransientNetworkError,
)
from webhook_renewal.utils.time import parse_provider_datetime, to_provider_datetime

logger = structlog.get_logger(__name__)

MESSAGE_FIELDS = "subject,receivedDateTime,from,isRead"


@dataclass(frozen=True)
class ProviderSubscription:
    """Subscription as confirmed by the provider."""

    id: str
    expiration_date_time: datetime
    resource: Optional[str] = None
    change_type: Optional[str] = None


def _error_details(response: httpx.Response) -> tuple[Optional[str], Optional[str]]:
    """Extract ``(code, message)`` from a Graph error body, if any."""
    try:
        body = response.json()
    except ValueError:
        return None, response.text[:200] or None

    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("code"), error.get("message")
    if isinstance(error, str):
        return error, body.get("error_description")
    return None, None


class GraphClient:
    """
    Async client for the provider API.

    Args:
        settings: Application settings (API base URL, timeout)
        transport: Optional httpx transport, used by tests to stub the provider
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.http_client = httpx.AsyncClient(
            base_url=settings.graph_api_url,
            timeout=httpx.Timeout(settings.provider_timeout_seconds),
            follow_redirects=False,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.http_client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        subscription_id: Optional[str] = None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {access_token}"}

        try:
            response = await self.http_client.request(
                method, path, json=json, params=params, headers=headers
            )
        except httpx.TimeoutException as e:
            logger.warning(
                "Provider request timed out",
                method=method,
                path=path,
                subscription_id=subscription_id,
            )
            raise TransientNetworkError(f"{method} {path} timed out") from e
        except httpx.RequestError as e:
            logger.warning(
                "Provider request failed",
                method=method,
                path=path,
                subscription_id=subscription_id,
                error=str(e),
            )
            raise TransientNetworkError(f"{method} {path} failed: {e}") from e

        if response.is_success:
            return response

        code, message = _error_details(response)
        logger.warning(
            "Provider returned an error",
            method=method,
            path=path,
            subscription_id=subscription_id,
            status_code=response.status_code,
            provider_code=code,
            error_message=message,
        )

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientNetworkError(
                f"{method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code == 404 and subscription_id is not None:
            raise SubscriptionNotFoundError(response.status_code, code, message)
        raise ProviderRejectedError(response.status_code, code, message)

    def _parse_subscription(self, response: httpx.Response) -> ProviderSubscription:
        try:
            body = response.json()
            return ProviderSubscription(
                id=body["id"],
                expiration_date_time=parse_provider_datetime(
                    body["expirationDateTime"]
                ),
                resource=body.get("resource"),
                change_type=body.get("changeType"),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise TransientNetworkError(
                f"Malformed subscription response from provider: {e}",
                status_code=response.status_code,
            ) from e

    async def create_subscription(
        self,
        access_token: str,
        *,
        change_type: str,
        notification_url: str,
        resource: str,
        expiration: datetime,
        client_state: str,
    ) -> ProviderSubscription:
        """POST /subscriptions and return the provider-confirmed subscription."""
        payload = {
            "changeType": change_type,
            "notificationUrl": notification_url,
            "resource": resource,
            "expirationDateTime": to_provider_datetime(expiration),
            "clientState": client_state,
        }
        response = await self._request("POST", "/subscriptions", access_token, json=payload)
        subscription = self._parse_subscription(response)

        logger.info(
            "Provider subscription created",
            subscription_id=subscription.id,
            resource=resource,
            expiration=subscription.expiration_date_time.isoformat(),
        )
        return subscription

    async def update_subscription(
        self, access_token: str, subscription_id: str, expiration: datetime
    ) -> ProviderSubscription:
        """PATCH /subscriptions/{id} with a new expiration."""
        response = await self._request(
            "PATCH",
            f"/subscriptions/{subscription_id}",
            access_token,
            json={"expirationDateTime": to_provider_datetime(expiration)},
            subscription_id=subscription_id,
        )
        subscription = self._parse_subscription(response)

        logger.info(
            "Provider subscription renewed",
            subscription_id=subscription_id,
            expiration=subscription.expiration_date_time.isoformat(),
        )
        return subscription

    async def delete_subscription(self, access_token: str, subscription_id: str) -> None:
        """DELETE /subscriptions/{id}."""
        await self._request(
            "DELETE",
            f"/subscriptions/{subscription_id}",
            access_token,
            subscription_id=subscription_id,
        )
        logger.info("Provider subscription deleted", subscription_id=subscription_id)

    async def get_me(self, access_token: str) -> Dict[str, Any]:
        """GET /me, the signed-in user's profile."""
        response = await self._request("GET", "/me", access_token)
        try:
            profile = response.json()
        except ValueError as e:
            raise TransientNetworkError("Malformed /me response from provider") from e
        if not isinstance(profile, dict) or not profile.get("id"):
            raise TransientNetworkError("Provider /me response has no user id")
        return profile

    async def list_messages(
        self, access_token: str, top: int = 10
    ) -> List[Dict[str, Any]]:
        """GET /me/messages, newest first."""
        response = await self._request(
            "GET",
            "/me/messages",
            access_token,
            params={
                "$select": MESSAGE_FIELDS,
                "$top": top,
                "$orderby": "receivedDateTime desc",
            },
        )
        try:
            messages = response.json()["value"]
        except (ValueError, KeyError, TypeError) as e:
            raise TransientNetworkError(
                "Malformed /me/messages response from provider",
                status_code=response.status_code,
            ) from e
        if not isinstance(messages, list):
            raise TransientNetworkError("Provider /me/messages value is not a list")

        logger.debug("Provider messages listed", count=len(messages))
        return messages
