"""WebSocket endpoint for realtime notifications."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from resilience.app.core.config import settings
from resilience.app.core.logging import get_log_context, get_logger
from resilience.app.exceptions import MessageParseError
from resilience.app.middleware.identity import get_identity
from resilience.app.realtime.messages import AUTH, PING, Message, pong_message
from resilience.app.realtime.registry import ConnectionInfo, ConnectionRegistry, now_ms

logger = get_logger(__name__)

router = APIRouter(tags=["realtime"])


def get_registry(websocket: WebSocket) -> ConnectionRegistry:
    return websocket.app.state.registry


def parse_user_id(value: Any) -> Optional[int]:
    """Accept a positive int or a string of digits; anything else is invalid."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isascii() and value.strip().isdigit():
        user_id = int(value.strip())
        return user_id if user_id > 0 else None
    return None


async def handle_frame(registry: ConnectionRegistry, info: ConnectionInfo, raw: str) -> None:
    """Apply one inbound client frame to the connection."""
    info.touch()
    try:
        message = Message.from_json(raw)
    except MessageParseError as e:
        logger.warning(
            f"Ignoring malformed WebSocket frame: {e}",
            extra=get_log_context(connection_id=info.connection_id),
        )
        return

    if message.type == AUTH:
        raw_user_id = message.payload.get("userId")
        user_id = parse_user_id(raw_user_id)
        if user_id is None:
            logger.warning(
                f"Ignoring auth frame with invalid userId: {raw_user_id!r}",
                extra=get_log_context(connection_id=info.connection_id),
            )
            return
        # A session cookie, when present, pins the identity of the socket
        session_identity = get_identity(info.websocket)
        if session_identity is not None and session_identity != str(user_id):
            logger.warning(
                f"Ignoring auth frame for user {user_id}: session belongs to another user",
                extra=get_log_context(user_id=session_identity, connection_id=info.connection_id),
            )
            return
        registry.authenticate(info, user_id)
    elif message.type == PING:
        await registry.send(info, pong_message(now_ms(), info.connection_id))


@router.websocket(settings.ws_path)
async def notifications_socket(websocket: WebSocket) -> None:
    registry = get_registry(websocket)
    await websocket.accept()
    info = registry.open(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            await handle_frame(registry, info, raw)
    except WebSocketDisconnect as e:
        logger.debug(f"WebSocket disconnected with code {e.code}")
    except Exception as e:
        registry.record_error(info, e)
    finally:
        registry.close(info)
