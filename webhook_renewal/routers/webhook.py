"""
Change notification endpoint registered with the provider.

The provider validates the endpoint by sending ``validationToken`` and expects
it echoed back as text/plain within a few seconds; real notifications arrive
as a JSON ``value`` array.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from webhook_renewal.dependencies import Container
from webhook_renewal.services.notifications import InvalidNotificationPayload
from webhook_renewal.utils.time import utcnow

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["webhook"])


@router.get("/webhook", summary="Provider endpoint validation")
async def validate_webhook(
    validation_token: Optional[str] = Query(None, alias="validationToken"),
):
    if validation_token is None:
        # Plain GET doubles as a reachability check for operators
        return {
            "status": "webhook_endpoint_ready",
            "message": "Webhook endpoint is accessible and ready to receive notifications",
            "timestamp": utcnow().isoformat(),
        }

    logger.info("Webhook validation request answered")
    return PlainTextResponse(validation_token, status_code=status.HTTP_200_OK)


@router.post("/webhook", summary="Receive change notifications")
async def receive_notifications(
    request: Request,
    container: Container,
    validation_token: Optional[str] = Query(None, alias="validationToken"),
):
    if validation_token is not None:
        logger.info("Webhook validation request answered")
        return PlainTextResponse(validation_token, status_code=status.HTTP_200_OK)

    try:
        payload = await request.json()
        result = container.notification_processor.process(payload)
    except (ValueError, InvalidNotificationPayload):
        logger.warning("Malformed notification payload")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "Invalid notification format"},
        )

    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"success": True, **result.to_dict()},
    )
