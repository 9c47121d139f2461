"""Wire format of realtime messages.

Every frame is a JSON object with a ``type`` discriminator. Everything else
in the object is payload owned by producers and consumers; this layer does
not interpret it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

from resilience.app.exceptions import MessageParseError

AUTH = "auth"
PING = "ping"
PONG = "pong"
NOTIFICATION = "notification"


@dataclass(frozen=True)
class Message:
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, **self.payload}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        if not isinstance(data, Mapping):
            raise MessageParseError("message must be a JSON object")
        message_type = data.get("type")
        if not isinstance(message_type, str) or not message_type:
            raise MessageParseError("message is missing a 'type' field")
        payload = {k: v for k, v in data.items() if k != "type"}
        return cls(type=message_type, payload=payload)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Message":
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise MessageParseError(f"invalid JSON frame: {e}") from e
        return cls.from_dict(data)


def auth_message(user_id: Any) -> Message:
    return Message(AUTH, {"userId": user_id})


def ping_message() -> Message:
    return Message(PING)


def pong_message(timestamp_ms: int, connection_id: str) -> Message:
    return Message(PONG, {"timestamp": timestamp_ms, "connectionId": connection_id})


def notification_message(notification: Mapping[str, Any]) -> Message:
    return Message(NOTIFICATION, {"data": dict(notification)})
