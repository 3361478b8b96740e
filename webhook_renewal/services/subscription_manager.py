"""
Subscription admission for user-initiated subscribe and unsubscribe.

``ensure_subscription`` keeps at most one live provider subscription per user:
- No local record: create one with the provider and persist it
- Local record: extend it in place with the provider and persist the
  provider-confirmed expiration
- Provider rejects the extension (4xx): drop the stale local record and create
  a fresh subscription, at most once per call

All work for one user runs under the per-user lock shared with the renewal
engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from webhook_renewal.config import Settings
from webhook_renewal.db.repositories import SubscriptionRecord, SubscriptionRepository
from webhook_renewal.errors import ProviderRejectedError, SubscriptionNotFoundError
from webhook_renewal.services.graph_client import GraphClient
from webhook_renewal.services.token_manager import TokenManager
from webhook_renewal.utils.locks import KeyedLocks
from webhook_renewal.utils.time import Clock, utcnow

logger = structlog.get_logger(__name__)


class AdmissionAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"


class AdmissionStep(str, Enum):
    """Transitions taken by one admission call, in order."""

    CREATED = "created"
    UPDATED = "updated"
    UPDATE_FAILED = "update_failed"
    DELETED = "deleted"
    RECREATED = "recreated"


@dataclass
class AdmissionResult:
    subscription_id: str
    expiration_date_time: datetime
    action: AdmissionAction
    steps: List[AdmissionStep] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscriptionId": self.subscription_id,
            "expirationDateTime": self.expiration_date_time.isoformat(),
            "action": self.action.value,
            "steps": [step.value for step in self.steps],
        }


class SubscriptionManager:
    """
    Admission controller for provider subscriptions.

    Args:
        settings: Lease, resource, change type, notification URL and clientState
        repository: Subscription records
        token_manager: Supplies valid access tokens
        graph_client: Provider API
        locks: Per-user locks shared with the renewal engine
        clock: Source of "now", injectable for tests
    """

    def __init__(
        self,
        settings: Settings,
        repository: SubscriptionRepository,
        token_manager: TokenManager,
        graph_client: GraphClient,
        locks: KeyedLocks,
        clock: Clock = utcnow,
    ):
        self.settings = settings
        self.repository = repository
        self.token_manager = token_manager
        self.graph_client = graph_client
        self.locks = locks
        self.clock = clock

    def _lease_expiration(self) -> datetime:
        return self.clock() + self.settings.lease_duration

    async def get_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        return await self.repository.find_by_user(user_id)

    async def ensure_subscription(self, user_id: str) -> AdmissionResult:
        """
        Create or extend the user's subscription.

        Raises:
            AuthExpiredError: The user must log in again
            ProviderRejectedError: The provider refused to create the subscription
            TransientNetworkError: The provider was unreachable, retry later
            PersistenceError: The repository failed
        """
        async with self.locks.hold(user_id):
            access_token = await self.token_manager.get_valid_access_token(user_id)
            existing = await self.repository.find_by_user(user_id)

            if existing is None:
                return await self._create(user_id, access_token, steps=[])

            return await self._update_or_recreate(user_id, access_token, existing)

    async def _update_or_recreate(
        self, user_id: str, access_token: str, existing: SubscriptionRecord
    ) -> AdmissionResult:
        steps: List[AdmissionStep] = []

        try:
            confirmed = await self.graph_client.update_subscription(
                access_token, existing.subscription_id, self._lease_expiration()
            )
        except ProviderRejectedError as e:
            steps.append(AdmissionStep.UPDATE_FAILED)
            logger.warning(
                "Subscription update rejected, recreating",
                user_id=user_id,
                subscription_id=existing.subscription_id,
                status_code=e.status_code,
                provider_code=e.code,
            )

            await self.repository.delete(existing.subscription_id)
            steps.append(AdmissionStep.DELETED)

            return await self._create(user_id, access_token, steps=steps)

        updated = await self.repository.update_expiration(
            existing.subscription_id, confirmed.expiration_date_time
        )
        if not updated:
            # Record vanished between lookup and write; the provider still has it
            await self.repository.create(
                SubscriptionRecord(
                    subscription_id=existing.subscription_id,
                    user_id=user_id,
                    expiration_date_time=confirmed.expiration_date_time,
                )
            )
        steps.append(AdmissionStep.UPDATED)

        logger.info(
            "Subscription updated",
            user_id=user_id,
            subscription_id=existing.subscription_id,
            expiration=confirmed.expiration_date_time.isoformat(),
        )

        return AdmissionResult(
            subscription_id=existing.subscription_id,
            expiration_date_time=confirmed.expiration_date_time,
            action=AdmissionAction.UPDATED,
            steps=steps,
        )

    async def _create(
        self, user_id: str, access_token: str, steps: List[AdmissionStep]
    ) -> AdmissionResult:
        recreating = AdmissionStep.DELETED in steps

        confirmed = await self.graph_client.create_subscription(
            access_token,
            change_type=self.settings.subscription_change_type,
            notification_url=self.settings.notification_url,
            resource=self.settings.subscription_resource,
            expiration=self._lease_expiration(),
            client_state=self.settings.webhook_secret,
        )

        await self.repository.create(
            SubscriptionRecord(
                subscription_id=confirmed.id,
                user_id=user_id,
                expiration_date_time=confirmed.expiration_date_time,
            )
        )
        steps.append(AdmissionStep.RECREATED if recreating else AdmissionStep.CREATED)

        logger.info(
            "Subscription recreated" if recreating else "Subscription created",
            user_id=user_id,
            subscription_id=confirmed.id,
            expiration=confirmed.expiration_date_time.isoformat(),
        )

        return AdmissionResult(
            subscription_id=confirmed.id,
            expiration_date_time=confirmed.expiration_date_time,
            action=AdmissionAction.CREATED,
            steps=steps,
        )

    async def unsubscribe(self, user_id: str) -> Optional[str]:
        """
        Delete the user's subscription with the provider and locally.

        A provider 404 counts as already deleted. Returns the removed
        subscription id, or None if the user had no subscription.
        """
        async with self.locks.hold(user_id):
            existing = await self.repository.find_by_user(user_id)
            if existing is None:
                return None

            access_token = await self.token_manager.get_valid_access_token(user_id)
            try:
                await self.graph_client.delete_subscription(
                    access_token, existing.subscription_id
                )
            except SubscriptionNotFoundError:
                logger.info(
                    "Subscription already gone at provider",
                    user_id=user_id,
                    subscription_id=existing.subscription_id,
                )

            await self.repository.delete(existing.subscription_id)

        logger.info(
            "Subscription removed",
            user_id=user_id,
            subscription_id=existing.subscription_id,
        )
        return existing.subscription_id
