"""
Sync Package

Client-side state synchronization with the remote messaging service.

Modules:
- messages: MessageSynchronizer (optimistic send, retry, overlay, cache merge)
- conversations: ConversationService (cached conversation list, open, mark read)
- cache: TTL page cache
- broadcast: Peer sync channel between tabs of the same user
"""

from .broadcast import InProcessBroadcastHub, InProcessChannel, PeerSyncChannel
from .cache import PageCache
from .conversations import ConversationService
from .messages import MessageSynchronizer, RetryMetadata

__all__ = [
    "InProcessBroadcastHub",
    "InProcessChannel",
    "PeerSyncChannel",
    "PageCache",
    "ConversationService",
    "MessageSynchronizer",
    "RetryMetadata",
]
