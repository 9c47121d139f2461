"""Notification push endpoints for internal producers.

Reminder jobs and therapist-side actions call these to deliver live
updates to connected clients. Delivery is best effort: users without an
open connection simply receive nothing here and pick the notification up
through the regular API.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator

from resilience.app.api.dependencies import RegistryDep, require_service_token
from resilience.app.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(
    prefix="/api/notifications",
    tags=["notifications"],
    dependencies=[Depends(require_service_token)],
)


class NotificationPushRequest(BaseModel):
    user_ids: list[int] = Field(..., min_length=1, max_length=1000)
    type: str = Field(default="system", min_length=1, max_length=64)
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1, max_length=4000)
    link_path: Optional[str] = Field(default=None, max_length=500)

    @field_validator("title", "content")
    @classmethod
    def normalize_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("cannot be empty")
        return v

    @field_validator("link_path")
    @classmethod
    def validate_link_path(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith("/"):
            raise ValueError("link_path must be an absolute path")
        return v


class NotificationPushResponse(BaseModel):
    delivered: int
    connected_users: int


@router.post("", response_model=NotificationPushResponse)
async def push_notification(
    data: NotificationPushRequest,
    registry: RegistryDep,
) -> NotificationPushResponse:
    """Push one notification to every open connection of the given users."""
    notification: dict[str, Any] = {
        "type": data.type,
        "title": data.title,
        "content": data.content,
        "linkPath": data.link_path,
        "isRead": False,
        "createdAt": datetime.now(timezone.utc).isoformat(),
    }
    delivered = await registry.send_to_users(data.user_ids, notification)
    logger.info(f"Pushed {data.type!r} notification to {len(data.user_ids)} users ({delivered} deliveries)")
    return NotificationPushResponse(
        delivered=delivered,
        connected_users=sum(1 for uid in set(data.user_ids) if registry.is_user_connected(uid)),
    )


@router.get("/stats")
async def connection_stats(registry: RegistryDep) -> dict[str, Any]:
    """Realtime connection statistics."""
    return registry.stats()
