"""Server-side registry of realtime connections.

Tracks which open WebSockets belong to which user so that producers
(reminder jobs, therapist actions) can push notifications, and runs a
periodic sweep that closes connections that went quiet.
"""

import asyncio
import random
import string
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional

from fastapi import WebSocket

from resilience.app.core.logging import get_log_context, get_logger
from resilience.app.realtime.messages import Message, notification_message

logger = get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_connection_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=13))
    return f"conn_{now_ms()}_{suffix}"


@dataclass
class ConnectionInfo:
    """One accepted WebSocket and what we know about it."""
    websocket: WebSocket
    connection_id: str = field(default_factory=generate_connection_id)
    user_id: Optional[int] = None
    last_activity: float = field(default_factory=time.monotonic)

    def touch(self) -> None:
        self.last_activity = time.monotonic()


@dataclass
class ConnectionStats:
    total_connections: int = 0
    active_connections: int = 0
    connection_errors: int = 0
    last_connection_error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "connection_errors": self.connection_errors,
            "last_connection_error": self.last_connection_error,
        }


class ConnectionRegistry:
    """Manages realtime connections for all users.

    Usage:
        registry = ConnectionRegistry()
        await registry.start()

        info = registry.open(websocket)
        registry.authenticate(info, user_id=42)
        await registry.send_to_user(42, {"title": "New assignment"})

        await registry.stop()
    """

    def __init__(self, sweep_interval: float = 30.0, inactivity_timeout: float = 300.0):
        """Initialize the registry.

        Args:
            sweep_interval: Seconds between inactivity sweeps
            inactivity_timeout: Seconds of silence after which a connection is closed
        """
        self._connections: Dict[str, ConnectionInfo] = {}
        self._by_user: Dict[int, Dict[str, ConnectionInfo]] = {}
        self._stats = ConnectionStats()
        self._sweep_interval = sweep_interval
        self._inactivity_timeout = inactivity_timeout
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    def open(self, websocket: WebSocket) -> ConnectionInfo:
        """Track a freshly accepted WebSocket."""
        info = ConnectionInfo(websocket=websocket)
        self._connections[info.connection_id] = info
        self._stats.total_connections += 1
        self._stats.active_connections += 1
        logger.info("WebSocket connection opened", extra=get_log_context(connection_id=info.connection_id))
        return info

    def authenticate(self, info: ConnectionInfo, user_id: int) -> None:
        """Attach a connection to a user; re-auth with another id moves it."""
        if info.user_id == user_id:
            return
        if info.user_id is not None:
            self._detach(info)
        info.user_id = user_id
        self._by_user.setdefault(user_id, {})[info.connection_id] = info
        logger.info(
            "WebSocket client authenticated",
            extra=get_log_context(user_id=user_id, connection_id=info.connection_id),
        )

    def close(self, info: ConnectionInfo) -> None:
        """Forget a connection after its socket went away."""
        if self._connections.pop(info.connection_id, None) is None:
            return
        self._stats.active_connections -= 1
        if info.user_id is not None:
            self._detach(info)
        logger.info(
            "WebSocket connection closed",
            extra=get_log_context(user_id=info.user_id, connection_id=info.connection_id),
        )

    def record_error(self, info: Optional[ConnectionInfo], error: BaseException) -> None:
        self._stats.connection_errors += 1
        self._stats.last_connection_error = str(error)[:200]
        connection_id = info.connection_id if info else None
        logger.error(f"WebSocket error: {error}", extra=get_log_context(connection_id=connection_id))

    def _detach(self, info: ConnectionInfo) -> None:
        user_connections = self._by_user.get(info.user_id)
        if user_connections is None:
            return
        user_connections.pop(info.connection_id, None)
        if not user_connections:
            del self._by_user[info.user_id]
            logger.debug(f"User {info.user_id} has no remaining connections")

    def is_user_connected(self, user_id: int) -> bool:
        return user_id in self._by_user

    def connected_users_count(self) -> int:
        return len(self._by_user)

    def stats(self) -> Dict[str, Any]:
        data = self._stats.as_dict()
        data["connected_users"] = self.connected_users_count()
        return data

    async def send(self, info: ConnectionInfo, message: Message) -> bool:
        """Send to one connection; a failed send drops the connection."""
        try:
            await info.websocket.send_text(message.to_json())
            return True
        except Exception as e:
            self.record_error(info, e)
            self.close(info)
            return False

    async def send_to_user(self, user_id: int, notification: Mapping[str, Any]) -> int:
        """Push a notification to every open connection of a user.

        Returns:
            Number of connections the notification was written to
        """
        connections = list(self._by_user.get(user_id, {}).values())
        if not connections:
            return 0
        message = notification_message(notification)
        delivered = 0
        for info in connections:
            if await self.send(info, message):
                delivered += 1
        return delivered

    async def send_to_users(self, user_ids: Iterable[int], notification: Mapping[str, Any]) -> int:
        delivered = 0
        for user_id in dict.fromkeys(user_ids):
            delivered += await self.send_to_user(user_id, notification)
        return delivered

    async def sweep(self) -> int:
        """Close connections that have been silent for too long.

        Returns:
            Number of connections terminated
        """
        cutoff = time.monotonic() - self._inactivity_timeout
        stale = [info for info in self._connections.values() if info.last_activity < cutoff]
        for info in stale:
            logger.info(
                "Terminating inactive connection",
                extra=get_log_context(user_id=info.user_id, connection_id=info.connection_id),
            )
            try:
                await info.websocket.close(code=1001, reason="Inactive")
            except Exception as e:
                logger.debug(f"Error closing inactive connection {info.connection_id}: {e}")
            self.close(info)
        return len(stale)

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._task is not None:
            logger.debug("Connection sweeper already running")
            return

        # Created here so the event belongs to the loop running the sweeper
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_sweeps())
        logger.info(f"Started connection sweeper (interval: {self._sweep_interval}s)")

    async def stop(self) -> None:
        """Stop the background sweep task."""
        if self._task is None:
            return

        self._stop_event.set()

        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Connection sweeper did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info("Stopped connection sweeper")

    async def _run_sweeps(self) -> None:
        stop_event = self._stop_event
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._sweep_interval)
            except asyncio.TimeoutError:
                pass
            else:
                break

            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Error during connection sweep: {e}")

            stats = self._stats
            logger.info(
                f"WebSocket stats: {stats.active_connections} active connections, "
                f"{stats.total_connections} total connections, {stats.connection_errors} errors"
            )
