"""
Transport Session Module

This module owns the single logical connection between the client and the
realtime relay.

Key responsibilities:
- Open the link with the user identity as ``userId`` query parameter
- Reconnect with exponential backoff (base * 2^attempt) up to a maximum
  attempt count, then stop permanently
- Send periodic ``ping`` frames while connected
- Parse inbound frames and dispatch them to per-type listeners

Connection lifecycle:
    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED (on close/error)
    -> RECONNECTING (scheduled) -> CONNECTING -> ...

``disconnect()`` cancels every timer and is terminal until ``connect()`` is
called again.

Connections are produced by a connector coroutine ``connector(url)``. The
returned object must support ``await send(text)``, ``await close()`` and
``async for frame in connection`` (iteration ends when the link closes).
The default connector is built on the ``websockets`` client.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx
import websockets

from ..errors import ConnectionFailedError, NotConnectedError, ValidationError
from ..models import WireModel
from ..scheduling import AsyncioScheduler, ScheduledTask, Scheduler
from .events import EventType, PingEvent, encode_event, parse_event

logger = logging.getLogger("chatsync.realtime.transport")

Listener = Callable[[Any], Any]
Connector = Callable[[str], Awaitable[Any]]


async def websockets_connector(url: str):
    """Open a websocket with the websockets client library."""
    return await websockets.connect(url)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class TransportSession:
    """
    Connection manager for the realtime relay.

    Holds at most one underlying connection and one set of timers at a
    time. Calling ``connect()`` while connected is a no-op; concurrent
    callers share the open already in flight. The session stays bound to
    the user it was opened for: connecting as another user while the link
    is open or opening raises ValidationError.

    Example:
        session = TransportSession("ws://localhost:3001/ws")
        await session.connect("user-1")
        unsubscribe = session.subscribe(EventType.USER_TYPING, on_typing)
        await session.send(typing_event("user-1", "c1", True))
    """

    def __init__(
        self,
        url: str,
        *,
        connector: Connector = websockets_connector,
        scheduler: Optional[Scheduler] = None,
        reconnect_base_delay: float = 1.0,
        max_reconnect_attempts: int = 5,
        heartbeat_interval: float = 30.0,
    ):
        """
        Initialize a disconnected session.

        Args:
            url: Relay websocket URL, without the userId parameter
            connector: Coroutine opening a connection for a URL
            scheduler: Timer source (defaults to AsyncioScheduler)
            reconnect_base_delay: Delay before the first reconnect, in seconds
            max_reconnect_attempts: Reconnects tried before giving up
            heartbeat_interval: Seconds between keep-alive pings
        """
        self._url = url
        self._connector = connector
        self._scheduler = scheduler or AsyncioScheduler()
        self._reconnect_base_delay = reconnect_base_delay
        self._max_reconnect_attempts = max_reconnect_attempts
        self._heartbeat_interval = heartbeat_interval

        self._state = ConnectionState.DISCONNECTED
        self._user_id: Optional[str] = None
        self._connection: Any = None
        self._opening: Optional[asyncio.Task] = None
        self._reader: Optional[asyncio.Task] = None
        self._reconnect_timer: Optional[ScheduledTask] = None
        self._heartbeat_timer: Optional[ScheduledTask] = None
        self._reconnect_attempts = 0
        self._closed = True

        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    # ========================================================================
    # Queries
    # ========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._connection is not None

    def connection_url(self, user_id: str) -> str:
        """Relay URL carrying the user identity."""
        return str(httpx.URL(self._url).copy_merge_params({"userId": user_id}))

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def connect(self, user_id: str) -> None:
        """
        Open the link for a user and wait until it is open.

        Raises:
            ValidationError: The link is open or opening for another user
            ConnectionFailedError: The connector failed (a reconnect is
                scheduled in the background)
        """
        if self.is_connected() or self._opening is not None:
            if user_id != self._user_id:
                raise ValidationError(
                    f"Transport is bound to user {self._user_id}; disconnect before switching users"
                )
            self._closed = False
            if self._opening is None:
                return
        else:
            self._user_id = user_id
            self._closed = False
            self._cancel_reconnect()
            self._reconnect_attempts = 0
            self._begin_open(user_id)

        await asyncio.shield(self._opening)

    async def disconnect(self) -> None:
        """Close the link and cancel reconnect and heartbeat timers."""
        self._closed = True
        self._cancel_reconnect()
        self._stop_heartbeat()
        self._reconnect_attempts = 0

        connection = self._connection
        reader = self._reader
        self._connection = None
        self._reader = None
        self._state = ConnectionState.DISCONNECTED

        if connection is not None:
            try:
                await connection.close()
            except Exception as e:
                logger.debug(f"Error while closing connection: {e}")
            logger.info("Disconnected from relay", extra={"user_id": self._user_id})

        # A listener may disconnect from inside the read loop; that loop ends
        # on its own once the link is closed
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()

    def _begin_open(self, user_id: str) -> None:
        self._opening = asyncio.ensure_future(self._open(user_id))
        self._opening.add_done_callback(self._open_finished)

    def _open_finished(self, task: asyncio.Task) -> None:
        if self._opening is task:
            self._opening = None
        # Failures are reported to every awaiting connect() caller
        if not task.cancelled():
            task.exception()

    async def _open(self, user_id: str) -> None:
        self._state = ConnectionState.CONNECTING
        url = self.connection_url(user_id)

        try:
            connection = await self._connector(url)
        except Exception as e:
            logger.warning(
                f"Relay connection failed: {e}",
                extra={"user_id": user_id, "attempt": self._reconnect_attempts}
            )
            self._state = ConnectionState.DISCONNECTED
            self._schedule_reconnect()
            raise ConnectionFailedError(f"Could not connect to relay: {e}") from e

        if self._closed:
            # disconnect() ran while the open was in flight
            await connection.close()
            self._state = ConnectionState.DISCONNECTED
            return

        self._connection = connection
        self._state = ConnectionState.CONNECTED
        self._reconnect_attempts = 0
        self._start_heartbeat()
        self._reader = asyncio.ensure_future(self._read_loop(connection))

        logger.info("Connected to relay", extra={"user_id": self._user_id})

    def _on_connection_lost(self) -> None:
        self._stop_heartbeat()
        self._connection = None
        self._reader = None
        self._state = ConnectionState.DISCONNECTED

        logger.info("Relay connection closed", extra={"user_id": self._user_id})
        self._schedule_reconnect()

    # ========================================================================
    # Reconnection
    # ========================================================================

    def _schedule_reconnect(self) -> None:
        if self._closed or self._user_id is None:
            return

        if self._reconnect_attempts >= self._max_reconnect_attempts:
            logger.error(
                f"Max reconnect attempts reached ({self._max_reconnect_attempts}), giving up",
                extra={"user_id": self._user_id}
            )
            self._state = ConnectionState.DISCONNECTED
            return

        delay = self._reconnect_base_delay * (2 ** self._reconnect_attempts)
        self._cancel_reconnect()
        self._state = ConnectionState.RECONNECTING
        self._reconnect_timer = self._scheduler.call_later(delay, self._reconnect)

        logger.info(
            f"Reconnecting in {delay}s (attempt {self._reconnect_attempts + 1})",
            extra={"user_id": self._user_id, "delay": delay}
        )

    async def _reconnect(self) -> None:
        self._reconnect_timer = None
        if self._closed or self._opening is not None or self.is_connected():
            return

        self._reconnect_attempts += 1
        self._begin_open(self._user_id)
        try:
            await asyncio.shield(self._opening)
        except ConnectionFailedError as e:
            logger.debug(f"Reconnect attempt {self._reconnect_attempts} failed: {e}")

    def _cancel_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    # ========================================================================
    # Heartbeat
    # ========================================================================

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        self._heartbeat_timer = self._scheduler.call_every(
            self._heartbeat_interval, self._send_heartbeat
        )

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_timer is not None:
            self._heartbeat_timer.cancel()
            self._heartbeat_timer = None

    async def _send_heartbeat(self) -> None:
        if not self.is_connected():
            return
        try:
            await self._connection.send(encode_event(PingEvent()))
        except Exception as e:
            # Dead links are detected by the read loop ending
            logger.debug(f"Heartbeat send failed: {e}")

    # ========================================================================
    # Sending
    # ========================================================================

    async def send(self, event: WireModel) -> None:
        """
        Send one event frame.

        Raises:
            NotConnectedError: The link is not open (frames are never queued)
        """
        if not self.is_connected():
            raise NotConnectedError()

        await self._connection.send(encode_event(event))
        logger.debug(f"Sent {event.type} frame")

    # ========================================================================
    # Subscription & Dispatch
    # ========================================================================

    def subscribe(
        self, event_type: Union[EventType, str], callback: Listener
    ) -> Callable[[], None]:
        """
        Register a listener for one event type.

        Returns:
            Handle that removes exactly this registration
        """
        key = EventType(event_type).value
        self._listeners[key].append(callback)

        def unsubscribe() -> None:
            bucket = self._listeners.get(key)
            if bucket is None or callback not in bucket:
                return
            bucket.remove(callback)
            if not bucket:
                del self._listeners[key]

        return unsubscribe

    def listener_count(self, event_type: Union[EventType, str]) -> int:
        return len(self._listeners.get(EventType(event_type).value, []))

    async def _read_loop(self, connection: Any) -> None:
        try:
            async for raw in connection:
                await self._dispatch(raw)
        except Exception as e:
            logger.warning(f"Relay connection error: {e}")

        if connection is self._connection:
            self._on_connection_lost()

    async def _dispatch(self, raw: Union[str, bytes]) -> None:
        event = parse_event(raw)
        if event is None:
            return

        for callback in list(self._listeners.get(event.type, [])):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Listener for {event.type} failed: {e}",
                    exc_info=True
                )
