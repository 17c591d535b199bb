"""
chatsync

Client-side real-time synchronization core for a chat application.

Subpackages:
- realtime: relay transport session, wire protocol, typing indicators
- sync: message synchronizer, conversation service, page cache, peer sync
- repositories: remote repository contracts and REST adapters
- relay: development relay server

The core keeps locally rendered conversation state consistent with the
remote messaging service across an unreliable connection:
- Optimistic sends with retry and server id reconciliation
- TTL page cache merged with a pending overlay
- Automatic reconnection with exponential backoff
- Throttled typing announces with auto-expiring remote indicators
"""

from .main import ChatSyncClient, create_client, open_client, setup_logging

__version__ = "1.0.0"

__all__ = [
    "ChatSyncClient",
    "create_client",
    "open_client",
    "setup_logging",
]
