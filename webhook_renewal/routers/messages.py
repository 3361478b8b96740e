"""Manual mail fetch for the signed-in user."""

from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Query
from pydantic import BaseModel, ConfigDict, Field

from webhook_renewal.dependencies import Container, RequiredUser

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api", tags=["messages"])


class MessageSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject: Optional[str] = None
    received_date_time: Optional[str] = Field(None, alias="receivedDateTime")
    sender: str = Field("Unknown", alias="from")
    is_read: Optional[bool] = Field(None, alias="isRead")

    @classmethod
    def from_provider(cls, message: Dict[str, Any]) -> "MessageSummary":
        sender = (message.get("from") or {}).get("emailAddress") or {}
        return cls(
            subject=message.get("subject"),
            received_date_time=message.get("receivedDateTime"),
            sender=sender.get("name") or "Unknown",
            is_read=message.get("isRead"),
        )


class MessagesResponse(BaseModel):
    success: bool = True
    emails: list[MessageSummary]


@router.get(
    "/messages",
    response_model=MessagesResponse,
    response_model_by_alias=True,
    summary="Latest messages in the user's mailbox",
)
async def list_messages(
    user_id: RequiredUser,
    container: Container,
    top: int = Query(10, ge=1, le=50),
) -> MessagesResponse:
    access_token = await container.token_manager.get_valid_access_token(user_id)
    messages = await container.graph_client.list_messages(access_token, top=top)

    logger.info("Messages fetched", user_id=user_id, count=len(messages))
    return MessagesResponse(
        emails=[
            MessageSummary.from_provider(m) for m in messages if isinstance(m, dict)
        ]
    )
