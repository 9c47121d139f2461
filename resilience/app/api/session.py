"""Session identity endpoints.

Credential checks happen in the upstream auth service; once it has
verified a user it calls this endpoint (with the service token) to bind the
user id to the browser's signed session cookie. The identity is then used
for rate limit keys and for the realtime auth handshake.

Binding is limited per user being bound, not per caller: every request
comes from the same upstream service.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from resilience.app.api.dependencies import enforce_auth_rate_limit, require_service_token
from resilience.app.core.logging import get_log_context, get_logger
from resilience.app.middleware.identity import SESSION_USER_KEY

logger = get_logger(__name__)

router = APIRouter(
    prefix="/api/session",
    tags=["session"],
    dependencies=[Depends(require_service_token)],
)


class SessionBindRequest(BaseModel):
    user_id: int = Field(..., ge=1)


class SessionResponse(BaseModel):
    user_id: int


@router.post("", response_model=SessionResponse)
async def bind_session(data: SessionBindRequest, request: Request) -> SessionResponse:
    enforce_auth_rate_limit(request, f"user:{data.user_id}")
    request.session[SESSION_USER_KEY] = data.user_id
    logger.info("Session identity bound", extra=get_log_context(user_id=data.user_id))
    return SessionResponse(user_id=data.user_id)


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
async def clear_session(request: Request) -> None:
    user_id = request.session.pop(SESSION_USER_KEY, None)
    if user_id is not None:
        logger.info("Session identity cleared", extra=get_log_context(user_id=user_id))
