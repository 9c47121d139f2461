"""Request identity helpers.

Identity is opaque to this service: an upstream component (the session
cookie written by ``/api/session``, or a host application's own auth
middleware setting ``request.state.user_id``) decides who the caller is.
"""

from typing import Optional

from starlette.requests import HTTPConnection

SESSION_USER_KEY = "user_id"
ANONYMOUS_KEY = "anonymous"


def get_identity(conn: HTTPConnection) -> Optional[str]:
    """Return the authenticated identity for a request or WebSocket, if any."""
    user_id = getattr(conn.state, "user_id", None)
    if user_id is None and "session" in conn.scope:
        user_id = conn.session.get(SESSION_USER_KEY)
    if user_id is None or str(user_id).strip() == "":
        return None
    return str(user_id).strip()


def get_client_address(conn: HTTPConnection) -> Optional[str]:
    """Return the network address of the caller.

    Only the socket peer is used. Forwarded headers are resolved earlier by
    uvicorn's ``ProxyHeadersMiddleware``, and only for peers listed in
    ``TRUSTED_PROXIES``, so a client cannot pick its own address.
    """
    if conn.client and conn.client.host:
        return conn.client.host
    return None


def get_client_key(conn: HTTPConnection) -> str:
    """Derive the rate limit key: identity, then address, then anonymous."""
    identity = get_identity(conn)
    if identity is not None:
        return f"user:{identity}"
    address = get_client_address(conn)
    if address is not None:
        return f"ip:{address}"
    return ANONYMOUS_KEY
