"""Shared FastAPI dependencies."""

import hmac
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from resilience.app.core.config import settings
from resilience.app.exceptions import AuthenticationError
from resilience.app.middleware.rate_limit import enforce_rate_limit
from resilience.app.realtime.registry import ConnectionRegistry


def get_connection_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.registry


def require_service_token(
    x_service_token: Annotated[str | None, Header()] = None,
) -> None:
    """Allow only internal producers holding SERVICE_TOKEN.

    Disabled by default: without a configured token the endpoints report 404.
    """
    expected = settings.service_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Internal endpoints are disabled",
        )
    if not x_service_token or not hmac.compare_digest(x_service_token.strip(), expected):
        raise AuthenticationError("Invalid or missing service token")


def enforce_auth_rate_limit(request: Request, client_key: str) -> None:
    """Apply the app's strict authentication limiter to ``client_key``.

    Server-to-server routes pass the key of the end user they act for;
    keying on the caller would make every user share one budget.
    """
    enforce_rate_limit(request.app.state.auth_rate_limiter, request, client_key)


RegistryDep = Annotated[ConnectionRegistry, Depends(get_connection_registry)]
