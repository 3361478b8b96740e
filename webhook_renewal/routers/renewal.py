"""Operational trigger for the renewal engine."""

from typing import Any, Dict

import structlog
from fastapi import APIRouter

from webhook_renewal.dependencies import Container

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/renewal", tags=["renewal"])


@router.post("/manual", summary="Run one renewal pass now")
async def manual_renewal(container: Container) -> Dict[str, Any]:
    """
    Run a renewal pass immediately and return its report.

    Uses the same pass as the scheduler; a failed selection surfaces as a
    persistence error.
    """
    report = await container.renewal_engine.manual_check()
    return {
        "success": True,
        "message": "Manual renewal check completed",
        "report": report.to_dict(),
    }
