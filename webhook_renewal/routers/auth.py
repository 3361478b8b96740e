"""
Login endpoints for Microsoft identity.

- /auth/login - Generate state, set the state cookie, redirect to the authorize URL
- /auth/callback - Validate state, exchange the code, store tokens, start a session
- /auth/logout - Drop the session cookie

Security features:
- CSRF protection with a random state bound to an encrypted, short-lived cookie
- Tokens are stored server-side; the session cookie only names the user
"""

from typing import Optional

import structlog
from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from webhook_renewal.dependencies import Container, OptionalUser
from webhook_renewal.services.sessions import SESSION_COOKIE, STATE_COOKIE, STATE_TTL_SECONDS

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

# Identity provider error codes surfaced on the callback
OAUTH_ERROR_MAPPING = {
    "access_denied": ("AUTH-ACCESS-DENIED", "User denied authorization"),
    "invalid_request": ("AUTH-EXCHANGE-FAIL", "Invalid OAuth request"),
    "invalid_client": ("AUTH-EXCHANGE-FAIL", "Invalid client credentials"),
    "invalid_grant": ("AUTH-EXCHANGE-FAIL", "Invalid or expired authorization grant"),
    "invalid_scope": ("AUTH-EXCHANGE-FAIL", "Invalid or unauthorized scope"),
    "server_error": ("AUTH-EXCHANGE-FAIL", "Identity provider server error"),
    "temporarily_unavailable": (
        "AUTH-EXCHANGE-FAIL",
        "Identity provider temporarily unavailable",
    ),
}


def create_error_response(
    error_code: str, message: str, request_id: Optional[str] = None
) -> dict:
    return {
        "success": False,
        "error": error_code,
        "message": message,
        "origin": "auth",
        "requestId": request_id or "unknown",
    }


@router.get("/login", summary="Start Microsoft login")
async def login(container: Container) -> RedirectResponse:
    settings = container.settings
    if not settings.graph_client_id or not settings.graph_client_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Microsoft OAuth is not configured",
        )

    state_token = container.sessions.new_state_token()
    authorization_url = container.token_manager.build_authorization_url(state_token)

    response = RedirectResponse(authorization_url, status_code=status.HTTP_302_FOUND)
    response.set_cookie(
        STATE_COOKIE,
        container.sessions.issue_state(state_token),
        max_age=STATE_TTL_SECONDS,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )

    logger.info("Redirecting to Microsoft login")
    return response


@router.get("/callback", summary="Microsoft login callback")
async def callback(
    request: Request,
    container: Container,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
):
    request_id = getattr(request.state, "request_id", None)

    if error:
        error_code, message = OAUTH_ERROR_MAPPING.get(
            error, ("AUTH-EXCHANGE-FAIL", "Authorization failed")
        )
        logger.warning(
            "Authorization returned an error",
            error=error,
            error_description=error_description,
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=create_error_response(error_code, message, request_id),
        )

    if not code:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=create_error_response(
                "AUTH-MISSING-CODE", "Authorization code missing", request_id
            ),
        )

    if not container.sessions.validate_state(request.cookies.get(STATE_COOKIE), state):
        logger.warning("OAuth state validation failed")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=create_error_response(
                "AUTH-STATE-INVALID", "Invalid or expired login state", request_id
            ),
        )

    token_state = await container.token_manager.exchange_authorization_code(code)
    profile = await container.graph_client.get_me(token_state.access_token)
    user_id = profile["id"]

    await container.token_manager.set_token_state(user_id, token_state)

    logger.info("User logged in", user_id=user_id)

    response = RedirectResponse("/", status_code=status.HTTP_302_FOUND)
    response.delete_cookie(STATE_COOKIE)
    response.set_cookie(
        SESSION_COOKIE,
        container.sessions.issue_session(user_id),
        max_age=container.settings.session_max_age_seconds,
        httponly=True,
        secure=container.settings.session_cookie_secure,
        samesite="lax",
    )
    return response


@router.post("/logout", summary="End the browser session")
async def logout(user_id: OptionalUser) -> JSONResponse:
    response = JSONResponse({"success": True, "message": "Logged out"})
    response.delete_cookie(SESSION_COOKIE)
    if user_id:
        logger.info("User logged out", user_id=user_id)
    return response
