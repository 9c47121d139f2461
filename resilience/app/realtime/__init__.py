"""Realtime notification channel and connection registry."""

from resilience.app.realtime.channel import (
    ChannelState,
    NotificationChannel,
    build_channel_url,
    create_channel,
)
from resilience.app.realtime.messages import Message
from resilience.app.realtime.registry import ConnectionRegistry

__all__ = [
    "ChannelState",
    "NotificationChannel",
    "build_channel_url",
    "create_channel",
    "Message",
    "ConnectionRegistry",
]
