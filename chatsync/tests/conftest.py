"""
Shared fixtures for the chatsync test suite.

Provides a virtual clock, an in-memory relay link (FakeConnector /
FakeConnection) and a helper that lets pending asyncio tasks run.
"""

import asyncio
import json
from typing import Any, List, Union

import pytest

from chatsync.realtime.transport import TransportSession
from chatsync.scheduling import VirtualScheduler


_CLOSED = object()


class FakeConnection:
    """In-memory relay link: frames fed by the test, frames sent recorded."""

    def __init__(self):
        self.sent: List[str] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, text: str) -> None:
        if self.closed:
            raise ConnectionError("connection closed")
        self.sent.append(text)

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(_CLOSED)

    def feed(self, frame: Union[str, dict]) -> None:
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        """Simulate the remote end closing the link."""
        self._inbox.put_nowait(_CLOSED)

    def sent_events(self) -> List[Any]:
        return [json.loads(frame) for frame in self.sent]

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is _CLOSED:
            self.closed = True
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Connector producing FakeConnections, optionally failing."""

    def __init__(self):
        self.urls: List[str] = []
        self.connections: List[FakeConnection] = []
        self.fail_next = 0
        self.always_fail = False
        self.connection_class = FakeConnection

    async def __call__(self, url: str) -> FakeConnection:
        self.urls.append(url)
        if self.always_fail or self.fail_next > 0:
            if self.fail_next > 0:
                self.fail_next -= 1
            raise OSError("connection refused")

        connection = self.connection_class()
        self.connections.append(connection)
        return connection

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]


async def _settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def scheduler():
    """Virtual clock starting at t=0"""
    return VirtualScheduler()


@pytest.fixture
def settle():
    """Coroutine function that lets pending tasks and callbacks run"""
    return _settle


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def transport(connector, scheduler):
    """Disconnected session over the fake connector"""
    return TransportSession(
        "ws://relay.test/ws",
        connector=connector,
        scheduler=scheduler,
        reconnect_base_delay=1.0,
        max_reconnect_attempts=3,
        heartbeat_interval=30.0,
    )
