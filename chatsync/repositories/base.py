"""
Repository Contracts
====================

Abstract remote repositories consumed by the synchronization core.

Every call resolves to a RepoResult holding either a payload or an error
string. Expected failures (HTTP errors, unreachable backend) are returned as
error strings; unexpected exceptions propagate to the caller unchanged.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Generic, List, Optional, TypeVar

from ..models import (
    Conversation,
    CreateMessagePayload,
    Message,
    MessagePage,
    MessageStatus,
    OpenedConversation,
)

T = TypeVar("T")


@dataclass
class RepoResult(Generic[T]):
    """Success payload or error string of a repository call."""

    data: Optional[T] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, data: T) -> "RepoResult[T]":
        return cls(data=data)

    @classmethod
    def failure(cls, error: str, status_code: Optional[int] = None) -> "RepoResult[T]":
        return cls(error=error, status_code=status_code)


class MessageRepository(ABC):
    """Remote message store."""

    @abstractmethod
    async def get_messages(
        self,
        conversation_id: str,
        limit: int,
        cursor: Optional[str] = None,
    ) -> RepoResult[MessagePage]:
        """Fetch one page of a conversation, newest first."""

    @abstractmethod
    async def create_message(self, payload: CreateMessagePayload) -> RepoResult[Message]:
        """Create a message; the result carries the server id."""

    @abstractmethod
    async def update_message_status(
        self, message_id: str, status: MessageStatus
    ) -> RepoResult[Message]:
        """Set the delivery status of a message."""

    @abstractmethod
    async def delete_message(self, message_id: str) -> RepoResult[Message]:
        """Soft-delete a message."""

    @abstractmethod
    async def mark_conversation_as_read(self, conversation_id: str) -> RepoResult[List[str]]:
        """Mark every message of a conversation read; returns affected ids."""


class ConversationRepository(ABC):
    """Remote conversation store."""

    @abstractmethod
    async def get_conversations(self) -> RepoResult[List[Conversation]]:
        """List the current user's conversations."""

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> RepoResult[Conversation]:
        """Fetch one conversation."""

    @abstractmethod
    async def get_or_create_conversation(
        self, participant_id: str
    ) -> RepoResult[OpenedConversation]:
        """Reuse the conversation with a participant, or create it."""

    @abstractmethod
    async def update_unread_count(self, conversation_id: str) -> RepoResult[Conversation]:
        """Reset the unread counter of a conversation."""
