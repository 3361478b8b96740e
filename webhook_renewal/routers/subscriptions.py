"""
Subscription endpoints for the signed-in user.

Failures from the admission controller are rendered by the application's
error handlers (401 re-authenticate, 502 provider rejected, 503 transient,
500 persistence).
"""

from typing import Optional

import structlog
from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from webhook_renewal.dependencies import Container, OptionalUser, RequiredUser

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api", tags=["subscriptions"])


class SubscriptionInfo(BaseModel):
    subscription_id: str = Field(..., serialization_alias="subscriptionId")
    expiration_date_time: str = Field(..., serialization_alias="expirationDateTime")


class SubscriptionResponse(BaseModel):
    success: bool = True
    action: str
    subscription: SubscriptionInfo
    steps: list[str] = Field(default_factory=list)


class UnsubscribeResponse(BaseModel):
    success: bool = True
    removed: bool
    subscription_id: Optional[str] = Field(None, serialization_alias="subscriptionId")


class UserStatusResponse(BaseModel):
    authenticated: bool
    user_id: Optional[str] = Field(None, serialization_alias="userId")
    subscription: Optional[SubscriptionInfo] = None


@router.get(
    "/user/status",
    response_model=UserStatusResponse,
    response_model_by_alias=True,
    summary="Session and subscription status",
)
async def user_status(user_id: OptionalUser, container: Container) -> UserStatusResponse:
    if not user_id:
        return UserStatusResponse(authenticated=False)

    record = await container.subscription_manager.get_subscription(user_id)
    subscription = (
        SubscriptionInfo(
            subscription_id=record.subscription_id,
            expiration_date_time=record.expiration_date_time.isoformat(),
        )
        if record
        else None
    )
    return UserStatusResponse(
        authenticated=True, user_id=user_id, subscription=subscription
    )


@router.post(
    "/subscriptions",
    response_model=SubscriptionResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_200_OK,
    summary="Create or renew the user's mail subscription",
)
async def create_subscription(
    user_id: RequiredUser, container: Container
) -> SubscriptionResponse:
    result = await container.subscription_manager.ensure_subscription(user_id)

    return SubscriptionResponse(
        action=result.action.value,
        subscription=SubscriptionInfo(
            subscription_id=result.subscription_id,
            expiration_date_time=result.expiration_date_time.isoformat(),
        ),
        steps=[step.value for step in result.steps],
    )


@router.delete(
    "/subscriptions",
    response_model=UnsubscribeResponse,
    response_model_by_alias=True,
    summary="Remove the user's mail subscription",
)
async def delete_subscription(
    user_id: RequiredUser, container: Container
) -> UnsubscribeResponse:
    removed_id = await container.subscription_manager.unsubscribe(user_id)
    return UnsubscribeResponse(removed=removed_id is not None, subscription_id=removed_id)
