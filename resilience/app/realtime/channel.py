"""Reconnecting realtime notification channel (client side).

A ``NotificationChannel`` keeps one authenticated WebSocket open to the
hub's ``/ws`` endpoint for one identity and hands every inbound message to
its registered consumers. Unexpected drops are followed by exactly one
reconnect attempt after a fixed delay; ``disconnect()`` stops all of it.

Usage:
    channel = NotificationChannel("https://app.example.com", identity=42)
    channel.add_consumer(lambda message: print(message.type))

    async with channel:
        await channel.send({"type": "mark_read", "id": 7})
"""

import asyncio
import inspect
from enum import Enum
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Protocol, Union

import httpx
import websockets
from websockets.exceptions import WebSocketException

from resilience.app.core.config import settings
from resilience.app.core.logging import get_log_context, get_logger
from resilience.app.exceptions import (
    AuthenticationError,
    ChannelError,
    ChannelNotOpenError,
    MessageParseError,
)
from resilience.app.realtime.messages import PONG, Message, auth_message, ping_message

logger = get_logger(__name__)

RECONNECT_DELAY_SECONDS = 5.0
HEARTBEAT_INTERVAL_SECONDS = 25.0
PONG_TIMEOUT_SECONDS = 60.0

_SCHEME_UPGRADES = {"http": "ws", "https": "wss", "ws": "ws", "wss": "wss"}

# Errors that mean "the transport is gone"; all of them lead to a reconnect
TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


class Transport(Protocol):
    """The part of a WebSocket client connection the channel relies on."""

    async def send(self, message: str) -> None: ...
    async def close(self, code: int = 1000, reason: str = "") -> None: ...
    def __aiter__(self) -> Any: ...


Connector = Callable[[str], Awaitable[Transport]]
Consumer = Callable[[Message], Union[None, Awaitable[None]]]


class ChannelState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


def build_channel_url(origin: str, path: str = "/ws") -> str:
    """Derive the WebSocket URL from a page origin.

    ``http`` becomes ``ws`` and ``https`` becomes ``wss`` so the channel
    matches the security level of the page.
    """
    url = httpx.URL(origin)
    scheme = _SCHEME_UPGRADES.get(url.scheme)
    if scheme is None:
        raise ValueError(f"Unsupported origin scheme: {url.scheme!r}")
    return str(url.copy_with(scheme=scheme, path=path))


async def _websockets_connector(url: str) -> Transport:
    return await websockets.connect(url)


class NotificationChannel:
    """Single-identity, self-healing duplex channel.

    All state lives on this object and is only touched from the event loop
    that owns it. A different identity needs a new channel; the current one
    must be torn down with ``disconnect()`` first.
    """

    def __init__(
        self,
        origin: str,
        identity: Any,
        *,
        path: str = "/ws",
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        heartbeat_interval: Optional[float] = HEARTBEAT_INTERVAL_SECONDS,
        pong_timeout: float = PONG_TIMEOUT_SECONDS,
        connector: Optional[Connector] = None,
    ):
        """Initialize the channel in the ``disconnected`` state.

        Args:
            origin: Page origin, e.g. ``https://app.example.com``
            identity: Authenticated user id sent in the auth handshake
            path: WebSocket path relative to the origin
            reconnect_delay: Seconds to wait before reconnecting after a drop
            heartbeat_interval: Seconds between application pings (None disables)
            pong_timeout: Seconds without a pong before the transport is recycled
            connector: Coroutine function opening a transport for a URL
        """
        self.url = build_channel_url(origin, path)
        self.reconnect_delay = reconnect_delay
        self.heartbeat_interval = heartbeat_interval
        self.pong_timeout = pong_timeout
        self.reconnect_attempts = 0

        self._identity = identity
        self._connector = connector or _websockets_connector
        self._state = ChannelState.DISCONNECTED
        self._transport: Optional[Transport] = None
        self._consumers: List[Consumer] = []
        self._last_message: Optional[Message] = None
        self._last_pong = 0.0

        # Bumped by disconnect() so in-flight attempts know they are stale
        self._generation = 0
        self._closed = False

        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def identity(self) -> Any:
        return self._identity

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ChannelState.OPEN

    @property
    def last_message(self) -> Optional[Message]:
        return self._last_message

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def add_consumer(self, consumer: Consumer) -> Callable[[], None]:
        """Register a consumer; returns a function that unregisters it."""
        self._consumers.append(consumer)

        def _remove() -> None:
            if consumer in self._consumers:
                self._consumers.remove(consumer)

        return _remove

    async def connect(self) -> None:
        """Open the transport and authenticate.

        Does nothing if an attempt is already in flight, the channel is open,
        or a ``disconnect()`` is still closing it. Transport failures are
        logged and followed by a reconnect.
        """
        if self._identity is None or str(self._identity) == "":
            raise AuthenticationError("Cannot open notification channel without an identity")
        if self._state in (ChannelState.CONNECTING, ChannelState.OPEN, ChannelState.CLOSING):
            logger.debug(f"Notification channel already {self._state.value}")
            return

        self._closed = False
        generation = self._generation
        self._state = ChannelState.CONNECTING

        try:
            transport = await self._connector(self.url)
        except asyncio.CancelledError:
            if generation == self._generation:
                self._state = ChannelState.DISCONNECTED
            raise
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Notification channel connect to {self.url} failed: {e}")
            if generation == self._generation:
                self._state = ChannelState.DISCONNECTED
                self._schedule_reconnect()
            return

        if generation != self._generation:
            # disconnect() ran while the transport was opening
            await self._close_transport(transport)
            return

        self._transport = transport
        try:
            await transport.send(auth_message(self._identity).to_json())
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Notification channel auth handshake failed: {e}")
            self._transport = None
            self._state = ChannelState.DISCONNECTED
            await self._close_transport(transport)
            self._schedule_reconnect()
            return

        self._state = ChannelState.OPEN
        self._last_pong = asyncio.get_running_loop().time()
        self._reader_task = asyncio.create_task(self._receive_loop(transport))
        if self.heartbeat_interval:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(transport))

        logger.info(
            "Notification channel open",
            extra=get_log_context(user_id=self._identity, url=self.url),
        )

    async def disconnect(self) -> None:
        """Tear the channel down; no reconnect is attempted afterwards."""
        self._closed = True
        self._generation += 1
        self._cancel_reconnect()

        transport = self._transport
        if transport is not None and self._state is ChannelState.OPEN:
            self._state = ChannelState.CLOSING
            await self._close_transport(transport, reason="User logged out")
        self._transport = None

        await self._cancel_task(self._heartbeat_task)
        self._heartbeat_task = None
        await self._cancel_task(self._reader_task)
        self._reader_task = None

        self._state = ChannelState.DISCONNECTED
        logger.info("Notification channel disconnected", extra=get_log_context(user_id=self._identity))

    async def send(self, message: Union[Message, Mapping[str, Any]]) -> None:
        """Send one message.

        Raises:
            ChannelNotOpenError: The channel is not open; nothing was written
            ChannelError: The transport failed while writing
        """
        if not isinstance(message, Message):
            message = Message.from_dict(message)

        transport = self._transport
        if self._state is not ChannelState.OPEN or transport is None:
            logger.error(f"Cannot send {message.type!r} message: channel is {self._state.value}")
            raise ChannelNotOpenError(self._state.value)

        try:
            await transport.send(message.to_json())
        except TRANSPORT_ERRORS as e:
            raise ChannelError(f"Failed to send {message.type!r} message: {e}") from e

    async def __aenter__(self) -> "NotificationChannel":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    async def _receive_loop(self, transport: Transport) -> None:
        try:
            async for raw in transport:
                await self._dispatch(raw)
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Notification channel transport error: {e}")
        self._handle_transport_closed(transport)

    async def _dispatch(self, raw: Union[str, bytes]) -> None:
        try:
            message = Message.from_json(raw)
        except MessageParseError as e:
            logger.error(f"Discarding notification frame: {e}")
            return

        if message.type == PONG:
            self._last_pong = asyncio.get_running_loop().time()

        self._last_message = message
        for consumer in list(self._consumers):
            try:
                result = consumer(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Notification consumer failed on {message.type!r} message")

    def _handle_transport_closed(self, transport: Transport) -> None:
        if transport is not self._transport:
            return
        self._transport = None
        self._reader_task = None
        heartbeat = self._heartbeat_task
        self._heartbeat_task = None
        if heartbeat is not None and heartbeat is not asyncio.current_task():
            heartbeat.cancel()

        if self._state is ChannelState.CLOSING:
            # disconnect() owns the final transition
            return
        if self._closed:
            self._state = ChannelState.DISCONNECTED
            return

        self._state = ChannelState.DISCONNECTED
        logger.info(f"Notification channel closed, reconnecting in {self.reconnect_delay}s")
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closed:
            return
        if self.reconnect_pending:
            logger.debug("Reconnect already scheduled")
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_after(self.reconnect_delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # Cleared before connecting so a failed attempt can schedule the next one
        self._reconnect_task = None
        if self._closed or self._state in (ChannelState.CONNECTING, ChannelState.OPEN):
            return
        self.reconnect_attempts += 1
        await self.connect()

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _heartbeat_loop(self, transport: Transport) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if self._transport is not transport or self._state is not ChannelState.OPEN:
                return
            if loop.time() - self._last_pong > self.pong_timeout:
                logger.warning(f"No pong in {self.pong_timeout}s, recycling notification channel")
                await self._close_transport(transport, code=4000, reason="Heartbeat timeout")
                return
            try:
                await transport.send(ping_message().to_json())
            except TRANSPORT_ERRORS as e:
                logger.warning(f"Error sending ping: {e}")
                return

    @staticmethod
    async def _close_transport(transport: Transport, code: int = 1000, reason: str = "") -> None:
        try:
            await transport.close(code=code, reason=reason)
        except TRANSPORT_ERRORS as e:
            logger.debug(f"Error closing notification transport: {e}")

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


def create_channel(origin: str, identity: Any, connector: Optional[Connector] = None) -> NotificationChannel:
    """Build a channel using the realtime settings."""
    return NotificationChannel(
        origin,
        identity,
        path=settings.ws_path,
        reconnect_delay=settings.ws_reconnect_delay_seconds,
        heartbeat_interval=settings.ws_heartbeat_interval_seconds,
        pong_timeout=settings.ws_pong_timeout_seconds,
        connector=connector,
    )
