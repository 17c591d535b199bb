"""
Conversation Service Module

Cached conversation list plus the conversation-level operations of the
client: opening a conversation with a participant and marking a whole
conversation read.
"""

import logging
from typing import Callable, List, Optional

from ..errors import ValidationError
from ..models import Conversation, OpenedConversation
from ..realtime.events import EventType
from ..realtime.transport import TransportSession
from ..repositories.base import ConversationRepository, MessageRepository
from ..scheduling import AsyncioScheduler, Scheduler, call_remote

logger = logging.getLogger("chatsync.sync.conversations")


class ConversationService:
    """
    Conversation reads and writes over the remote repositories.

    The conversation list is cached for ``cache_ttl`` seconds and dropped
    whenever a write or a relay event may have changed it.
    """

    def __init__(
        self,
        conversation_repository: ConversationRepository,
        message_repository: MessageRepository,
        *,
        scheduler: Optional[Scheduler] = None,
        cache_ttl: float = 30.0,
        request_timeout: float = 10.0,
    ):
        self._conversations = conversation_repository
        self._messages = message_repository
        self._scheduler = scheduler or AsyncioScheduler()
        self._cache_ttl = cache_ttl
        self._request_timeout = request_timeout

        self._cached: Optional[List[Conversation]] = None
        self._cached_at: Optional[float] = None
        self._unsubscribers: List[Callable[[], None]] = []

    async def get_conversations(self) -> List[Conversation]:
        """
        List the user's conversations.

        Raises:
            NetworkError: Remote fetch failed or timed out
        """
        if self._cached is not None and self._scheduler.now() - self._cached_at < self._cache_ttl:
            return list(self._cached)

        conversations = await self._call(self._conversations.get_conversations(), "get_conversations")
        self._cached = conversations
        self._cached_at = self._scheduler.now()
        return list(conversations)

    async def get_conversation(self, conversation_id: str) -> Conversation:
        if not conversation_id:
            raise ValidationError("conversation_id is required")
        return await self._call(
            self._conversations.get_conversation(conversation_id), "get_conversation"
        )

    async def open_conversation(self, participant_id: str) -> OpenedConversation:
        """
        Reuse the conversation with a participant, or create it.

        Raises:
            ValidationError: participant_id missing
            NetworkError: Remote call failed or timed out
        """
        if not participant_id:
            raise ValidationError("participant_id is required")

        opened = await self._call(
            self._conversations.get_or_create_conversation(participant_id),
            "get_or_create_conversation",
        )
        self.invalidate()

        logger.info(
            f"{'Created' if opened.created else 'Opened'} conversation {opened.conversation.id}",
            extra={"participant_id": participant_id}
        )
        return opened

    async def mark_conversation_as_read(self, conversation_id: str) -> List[str]:
        """
        Mark every message of a conversation read and reset its unread count.

        Returns:
            Ids of the messages that were marked read
        """
        if not conversation_id:
            raise ValidationError("conversation_id is required")

        message_ids = await self._call(
            self._messages.mark_conversation_as_read(conversation_id),
            "mark_conversation_as_read",
        )
        await self._call(
            self._conversations.update_unread_count(conversation_id),
            "update_unread_count",
        )
        self.invalidate()
        return message_ids

    def invalidate(self) -> None:
        self._cached = None
        self._cached_at = None

    def bind_transport(self, transport: TransportSession) -> None:
        """Drop the cached list when the relay reports a change."""
        self._unsubscribers.extend([
            transport.subscribe(EventType.CONVERSATION_UPDATED, lambda event: self.invalidate()),
            transport.subscribe(EventType.MESSAGE_SENT, lambda event: self.invalidate()),
        ])

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self.invalidate()

    async def _call(self, awaitable, operation: str):
        return await call_remote(
            awaitable,
            timeout=self._request_timeout,
            scheduler=self._scheduler,
            operation=operation,
        )
