"""
Peer Sync Channel Module

Best-effort publish/subscribe between synchronizers that show the same
user's state (browser tabs, windows, processes). The channel is a secondary
optimization; the remote service stays the source of truth, so decode and
listener failures are logged and swallowed.

Implementations:
- PeerSyncChannel: abstract contract
- InProcessBroadcastHub / InProcessChannel: channels sharing one event loop,
  delivering JSON-serialised messages asynchronously and never echoing to
  the publisher
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List

logger = logging.getLogger("chatsync.sync.broadcast")

PeerListener = Callable[[Dict[str, Any]], None]


class PeerSyncChannel(ABC):
    """Publish/subscribe of JSON-compatible messages between peers."""

    @abstractmethod
    def publish(self, message: Dict[str, Any]) -> None:
        """Send a message to every other peer on the channel."""

    @abstractmethod
    def subscribe(self, callback: PeerListener) -> Callable[[], None]:
        """Register a listener; returns its unsubscribe handle."""

    @abstractmethod
    def close(self) -> None:
        """Leave the channel and drop all listeners."""


class InProcessBroadcastHub:
    """
    Named broadcast medium shared by several in-process channels.

    Example:
        hub = InProcessBroadcastHub("chat-sync")
        tab_a, tab_b = hub.channel(), hub.channel()
    """

    def __init__(self, name: str = "chatsync"):
        self.name = name
        self._channels: List["InProcessChannel"] = []

    def channel(self) -> "InProcessChannel":
        channel = InProcessChannel(self)
        self._channels.append(channel)
        return channel

    @property
    def peer_count(self) -> int:
        return len(self._channels)

    def _detach(self, channel: "InProcessChannel") -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    def _broadcast(self, sender: "InProcessChannel", data: str) -> None:
        loop = asyncio.get_running_loop()
        for channel in list(self._channels):
            if channel is not sender:
                loop.call_soon(channel._deliver, data)


class InProcessChannel(PeerSyncChannel):
    """One peer's endpoint on an InProcessBroadcastHub."""

    def __init__(self, hub: InProcessBroadcastHub):
        self._hub = hub
        self._listeners: List[PeerListener] = []
        self._closed = False

    def publish(self, message: Dict[str, Any]) -> None:
        if self._closed:
            logger.debug("Publish on closed channel ignored")
            return
        self._hub._broadcast(self, json.dumps(message))

    def subscribe(self, callback: PeerListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def close(self) -> None:
        self._closed = True
        self._listeners.clear()
        self._hub._detach(self)

    def _deliver(self, data: str) -> None:
        if self._closed:
            return

        try:
            message = json.loads(data)
        except ValueError as e:
            logger.warning(f"Dropped undecodable peer message on {self._hub.name}: {e}")
            return

        for callback in list(self._listeners):
            try:
                callback(message)
            except Exception as e:
                logger.warning(
                    f"Peer listener failed on {self._hub.name}: {e}",
                    exc_info=True
                )
