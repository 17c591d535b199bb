"""
Realtime Events Module

This module defines the JSON wire protocol spoken between the client and the
realtime relay.

Every frame is one event: ``{"type": "<discriminant>", "payload": {...}}``.
Events are modelled as a pydantic discriminated union on ``type`` so the
dispatch site matches exhaustively on concrete classes.

Recognized types:
- message:sent / message:delivered / message:read / message:deleted
- user:typing
- user:presence
- conversation:updated
- ping / pong

Unknown or malformed frames are logged and dropped by ``parse_event``.
"""

import json
import logging
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import Field, TypeAdapter, ValidationError

from ..models import Message, PresenceStatus, WireModel, utcnow

logger = logging.getLogger("chatsync.realtime.events")


class EventType(str, Enum):
    """Wire discriminants of realtime events."""
    MESSAGE_SENT = "message:sent"
    MESSAGE_DELIVERED = "message:delivered"
    MESSAGE_READ = "message:read"
    MESSAGE_DELETED = "message:deleted"
    USER_TYPING = "user:typing"
    USER_PRESENCE = "user:presence"
    CONVERSATION_UPDATED = "conversation:updated"
    PING = "ping"
    PONG = "pong"


# ============================================================================
# Payload Models
# ============================================================================

class MessageDeliveredPayload(WireModel):
    message_id: str
    conversation_id: Optional[str] = None
    delivered_at: datetime = Field(default_factory=utcnow)


class MessageReadPayload(WireModel):
    message_id: str
    conversation_id: Optional[str] = None
    read_at: datetime = Field(default_factory=utcnow)


class MessageDeletedPayload(WireModel):
    message_id: str
    conversation_id: Optional[str] = None
    deleted_at: datetime = Field(default_factory=utcnow)


class TypingPayload(WireModel):
    user_id: str
    conversation_id: str
    is_typing: bool


class PresencePayload(WireModel):
    user_id: str
    status: PresenceStatus
    last_seen_at: Optional[datetime] = None


# ============================================================================
# Event Models
# ============================================================================

class MessageSentEvent(WireModel):
    type: Literal["message:sent"] = "message:sent"
    payload: Message


class MessageDeliveredEvent(WireModel):
    type: Literal["message:delivered"] = "message:delivered"
    payload: MessageDeliveredPayload


class MessageReadEvent(WireModel):
    type: Literal["message:read"] = "message:read"
    payload: MessageReadPayload


class MessageDeletedEvent(WireModel):
    type: Literal["message:deleted"] = "message:deleted"
    payload: MessageDeletedPayload


class TypingEvent(WireModel):
    type: Literal["user:typing"] = "user:typing"
    payload: TypingPayload


class PresenceEvent(WireModel):
    type: Literal["user:presence"] = "user:presence"
    payload: PresencePayload


class ConversationUpdatedEvent(WireModel):
    type: Literal["conversation:updated"] = "conversation:updated"
    payload: Dict[str, Any] = Field(default_factory=dict)


class PingEvent(WireModel):
    type: Literal["ping"] = "ping"
    payload: Optional[Dict[str, Any]] = None


class PongEvent(WireModel):
    type: Literal["pong"] = "pong"
    payload: Optional[Dict[str, Any]] = None


TransportEvent = Annotated[
    Union[
        MessageSentEvent,
        MessageDeliveredEvent,
        MessageReadEvent,
        MessageDeletedEvent,
        TypingEvent,
        PresenceEvent,
        ConversationUpdatedEvent,
        PingEvent,
        PongEvent,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter = TypeAdapter(TransportEvent)


# ============================================================================
# Codec
# ============================================================================

def parse_event(raw: Union[str, bytes, Dict[str, Any]]) -> Optional[WireModel]:
    """
    Parse one inbound frame into a typed event.

    Args:
        raw: JSON text, bytes, or an already-decoded object

    Returns:
        The event model, or None for malformed and unknown frames
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Dropped non-JSON frame: {e}")
            return None

    if not isinstance(raw, dict):
        logger.warning("Dropped frame that is not a JSON object")
        return None

    try:
        return _event_adapter.validate_python(raw)
    except ValidationError as e:
        logger.warning(
            f"Dropped invalid frame of type {raw.get('type')!r}",
            extra={"errors": e.error_count()}
        )
        return None


def encode_event(event: WireModel) -> str:
    """Serialize an event to its JSON frame."""
    return event.model_dump_json(by_alias=True, exclude_none=True)


def typing_event(user_id: str, conversation_id: str, is_typing: bool) -> TypingEvent:
    return TypingEvent(payload=TypingPayload(
        user_id=user_id,
        conversation_id=conversation_id,
        is_typing=is_typing,
    ))
