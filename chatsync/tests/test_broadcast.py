"""
Unit Tests for Peer Sync
========================

Tests for chatsync/sync/broadcast.py and the peer handling of
chatsync/sync/messages.py

Test Coverage:
--------------
1. InProcessChannel: asynchronous delivery, no echo to the publisher,
   unsubscribe and close, listener and decode failures isolated
2. Two synchronizers on one hub (two tabs of the same user):
   optimistic, reconciled, failed and retried messages propagate,
   malformed peer updates are dropped, peers purge reconciled entries

Run tests:
----------
    pytest chatsync/tests/test_broadcast.py -v
"""

import logging
from unittest.mock import AsyncMock

import pytest

from chatsync.models import CreateMessagePayload, Message, MessageStatus
from chatsync.repositories.base import MessageRepository, RepoResult
from chatsync.sync.broadcast import InProcessBroadcastHub
from chatsync.sync.messages import TEMP_ID_PREFIX, MessageSynchronizer


# ============================================================================
# Channel
# ============================================================================

class TestInProcessChannel:
    """Hub and channel mechanics"""

    @pytest.mark.asyncio
    async def test_delivery_is_asynchronous_and_skips_sender(self, settle):
        hub = InProcessBroadcastHub("test")
        tab_a, tab_b = hub.channel(), hub.channel()
        received_a, received_b = [], []
        tab_a.subscribe(received_a.append)
        tab_b.subscribe(received_b.append)

        tab_a.publish({"type": "message:update", "payload": {"id": "m1"}})
        assert received_b == []

        await settle()

        assert received_b == [{"type": "message:update", "payload": {"id": "m1"}}]
        assert received_a == []

    @pytest.mark.asyncio
    async def test_unsubscribe_and_close(self, settle):
        hub = InProcessBroadcastHub()
        tab_a, tab_b, tab_c = hub.channel(), hub.channel(), hub.channel()
        received_b, received_c = [], []
        unsubscribe = tab_b.subscribe(received_b.append)
        tab_c.subscribe(received_c.append)

        unsubscribe()
        tab_c.close()
        tab_a.publish({"type": "ping"})
        await settle()

        assert received_b == []
        assert received_c == []
        assert hub.peer_count == 2

        tab_c.publish({"type": "ignored"})
        await settle()
        assert received_b == []

    @pytest.mark.asyncio
    async def test_listener_failure_is_isolated(self, settle, caplog):
        hub = InProcessBroadcastHub()
        tab_a, tab_b = hub.channel(), hub.channel()
        received = []

        def broken(message):
            raise RuntimeError("listener exploded")

        tab_b.subscribe(broken)
        tab_b.subscribe(received.append)

        with caplog.at_level(logging.WARNING, logger="chatsync.sync.broadcast"):
            tab_a.publish({"type": "message:remove"})
            await settle()

        assert len(received) == 1
        assert "listener exploded" in caplog.text

    @pytest.mark.asyncio
    async def test_undecodable_message_is_dropped(self, caplog):
        hub = InProcessBroadcastHub()
        tab = hub.channel()
        received = []
        tab.subscribe(received.append)

        with caplog.at_level(logging.WARNING, logger="chatsync.sync.broadcast"):
            tab._deliver("{not json")

        assert received == []
        assert "undecodable" in caplog.text


# ============================================================================
# Two Tabs
# ============================================================================

def server_message(message_id: str) -> Message:
    return Message(id=message_id, conversation_id="c1", sender_id="u1", content="hello")


@pytest.fixture
def hub():
    return InProcessBroadcastHub("chat-sync")


@pytest.fixture
def repo_a():
    repo = AsyncMock(spec=MessageRepository)
    repo.create_message.return_value = RepoResult.success(server_message("m1"))
    return repo


@pytest.fixture
def tab_a(hub, repo_a, scheduler):
    return MessageSynchronizer(repo_a, "u1", scheduler=scheduler, channel=hub.channel())


@pytest.fixture
def tab_b(hub, scheduler):
    repo = AsyncMock(spec=MessageRepository)
    return MessageSynchronizer(repo, "u1", scheduler=scheduler, channel=hub.channel())


class TestTwoTabs:
    """Overlay propagation between synchronizers"""

    @pytest.mark.asyncio
    async def test_reconciled_message_replaces_temp_in_peer(self, tab_a, tab_b, settle):
        confirmed = await tab_a.send_message(CreateMessagePayload(conversation_id="c1", content="hi"))
        await settle()

        assert [m.id for m in tab_b.get_pending_messages("c1")] == [confirmed.id]
        assert not any(m.id.startswith(TEMP_ID_PREFIX) for m in tab_b.get_pending_messages())

    @pytest.mark.asyncio
    async def test_peer_purges_reconciled_message_after_grace(
        self, tab_a, tab_b, scheduler, settle
    ):
        await tab_a.send_message(CreateMessagePayload(conversation_id="c1", content="hi"))
        await settle()

        await scheduler.advance(5.0)

        assert tab_b.get_pending_messages() == []
        assert tab_a.get_pending_messages() == []

    @pytest.mark.asyncio
    async def test_failed_message_propagates(self, tab_a, tab_b, repo_a, settle):
        repo_a.create_message.return_value = RepoResult.failure("Network error")

        failed = await tab_a.send_message(CreateMessagePayload(conversation_id="c1", content="hi"))
        await settle()

        [mirrored] = tab_b.get_pending_messages()
        assert mirrored.id == failed.id
        assert mirrored.status == MessageStatus.FAILED
        # Retry bookkeeping stays with the tab that sent
        assert tab_b.get_retry_metadata(failed.id) is None

    @pytest.mark.asyncio
    async def test_retry_removes_stale_failed_copy_in_peer(
        self, tab_a, tab_b, repo_a, scheduler, settle
    ):
        repo_a.create_message.return_value = RepoResult.failure("Network error")
        failed = await tab_a.send_message(CreateMessagePayload(conversation_id="c1", content="hi"))
        await settle()

        await scheduler.advance(1.0)
        repo_a.create_message.return_value = RepoResult.success(server_message("m2"))
        await tab_a.retry_failed_message(failed.id)
        await settle()

        assert [m.id for m in tab_b.get_pending_messages()] == ["m2"]

    @pytest.mark.asyncio
    async def test_malformed_peer_update_is_dropped(self, hub, tab_b, settle, caplog):
        intruder = hub.channel()

        with caplog.at_level(logging.WARNING, logger="chatsync.sync.messages"):
            intruder.publish({"type": "message:update", "payload": {"id": "m1"}})
            intruder.publish({"type": "message:unknown", "payload": {}})
            await settle()

        assert tab_b.get_pending_messages() == []
        assert "Dropped malformed peer update" in caplog.text

    @pytest.mark.asyncio
    async def test_peer_remove_drops_entry(self, hub, tab_b, settle):
        other = hub.channel()
        other.publish({
            "type": "message:update",
            "payload": server_message("temp_abc").model_copy(
                update={"status": MessageStatus.FAILED}
            ).model_dump(mode="json", by_alias=True),
        })
        await settle()
        assert [m.id for m in tab_b.get_pending_messages()] == ["temp_abc"]

        other.publish({
            "type": "message:remove",
            "payload": {"messageId": "temp_abc", "conversationId": "c1"},
        })
        await settle()

        assert tab_b.get_pending_messages() == []

    @pytest.mark.asyncio
    async def test_closed_tab_stops_receiving(self, tab_a, tab_b, hub, settle):
        tab_b.close()

        await tab_a.send_message(CreateMessagePayload(conversation_id="c1", content="hi"))
        await settle()

        assert tab_b.get_pending_messages() == []
