"""
Data Models Module

This module defines the Pydantic models shared by the synchronization core,
the repository adapters and the wire protocol.

Models are organized by functional area:
- Enumerations (message status, attachment type, presence)
- Messaging models (messages, attachments, send payloads, pages)
- Conversation models (users, conversations, get-or-create results)

Field names are snake_case in Python and camelCase on the wire. Both forms
are accepted when parsing, since the REST backend answers in snake_case and
the realtime relay speaks camelCase.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ============================================================================
# Enumerations
# ============================================================================

class MessageStatus(str, Enum):
    """Delivery lifecycle of a message."""
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class FileType(str, Enum):
    """Attachment kinds."""
    IMAGE = "image"
    PDF = "pdf"
    DOCUMENT = "document"
    OTHER = "other"


class PresenceStatus(str, Enum):
    """User presence states broadcast by the relay."""
    ONLINE = "online"
    OFFLINE = "offline"
    AWAY = "away"


# ============================================================================
# Base Model
# ============================================================================

class WireModel(BaseModel):
    """Base model with camelCase aliases and UTC datetime normalisation."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @field_validator("*", mode="after")
    @classmethod
    def normalise_datetimes(cls, v):
        # Naive timestamps from the backend are UTC
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


# ============================================================================
# Messaging Models
# ============================================================================

class MessageFile(WireModel):
    """Attachment carried by a message."""
    id: str = Field(..., description="Attachment identifier")
    name: str = Field(..., description="Original file name")
    type: FileType = Field(default=FileType.OTHER, description="Attachment kind")
    size: int = Field(default=0, ge=0, description="Size in bytes")
    url: str = Field(..., description="Download URL")


class Message(WireModel):
    """A chat message, either server-confirmed or locally synthesized."""
    id: str = Field(..., description="Server id, or a temp_ id while pending")
    conversation_id: str = Field(..., description="Owning conversation")
    sender_id: str = Field(..., description="Author user id")
    content: Optional[str] = Field(None, description="Text content")
    files: List[MessageFile] = Field(default_factory=list, description="Attachments")
    status: MessageStatus = Field(default=MessageStatus.SENT, description="Delivery status")
    created_at: datetime = Field(default_factory=utcnow, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=utcnow, description="Last update timestamp")
    read_at: Optional[datetime] = Field(None, description="Read timestamp")
    deleted_at: Optional[datetime] = Field(None, description="Soft delete timestamp")

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class CreateMessagePayload(WireModel):
    """Payload for creating a message."""
    conversation_id: str = Field(default="", description="Target conversation")
    content: Optional[str] = Field(None, description="Text content")
    files: List[MessageFile] = Field(default_factory=list, description="Attachments")


class MessageQuery(WireModel):
    """Parameters of a paginated message read."""
    conversation_id: str = Field(default="", description="Conversation to read")
    limit: Optional[int] = Field(None, gt=0, description="Page size")
    cursor: Optional[str] = Field(None, description="Pagination cursor (message id)")


class MessagePage(WireModel):
    """One page of messages, newest first."""
    items: List[Message] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False


# ============================================================================
# Conversation Models
# ============================================================================

class User(WireModel):
    """Conversation participant."""
    id: str
    name: str = ""
    avatar: Optional[str] = None
    presence_status: PresenceStatus = PresenceStatus.OFFLINE
    last_seen_at: Optional[datetime] = None


class Conversation(WireModel):
    """A conversation between participants."""
    id: str
    participants: List[User] = Field(default_factory=list)
    last_message: Optional[Message] = None
    unread_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def participant_ids(self) -> set:
        return {p.id for p in self.participants}


class OpenedConversation(BaseModel):
    """Result of get-or-create: the conversation and whether it was created."""
    conversation: Conversation
    created: bool = False
