"""
Page Cache Module

TTL cache of fetched message pages keyed by ``conversationId_limit_cursor``.
Stale entries are never served; they are evicted lazily when looked up.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..models import MessagePage, MessageQuery

logger = logging.getLogger("chatsync.sync.cache")


@dataclass
class CacheEntry:
    """A fetched page and the clock time it was stored at."""
    page: MessagePage
    timestamp: float
    conversation_id: str


class PageCache:
    """
    Message page cache with a fixed time-to-live.

    Args:
        ttl: Seconds an entry stays fresh
        clock: Returns the current time in seconds (usually Scheduler.now)
        default_limit: Page size assumed when a query has none
    """

    def __init__(self, ttl: float, clock: Callable[[], float], default_limit: int = 50):
        self._ttl = ttl
        self._clock = clock
        self._default_limit = default_limit
        self._entries: Dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def key(self, query: MessageQuery) -> str:
        limit = query.limit or self._default_limit
        return f"{query.conversation_id}_{limit}_{query.cursor or 'initial'}"

    def get(self, query: MessageQuery) -> Optional[MessagePage]:
        """Return the cached page if it is still fresh."""
        key = self.key(query)
        entry = self._entries.get(key)
        if entry is None:
            return None

        if self._clock() - entry.timestamp >= self._ttl:
            del self._entries[key]
            logger.debug(f"Evicted stale page {key}")
            return None

        logger.debug(f"Cache hit for {key}")
        return entry.page

    def put(self, query: MessageQuery, page: MessagePage) -> None:
        self._entries[self.key(query)] = CacheEntry(
            page=page,
            timestamp=self._clock(),
            conversation_id=query.conversation_id,
        )

    def invalidate_conversation(self, conversation_id: str) -> None:
        """Drop every cached page of a conversation."""
        stale = [k for k, e in self._entries.items() if e.conversation_id == conversation_id]
        for key in stale:
            del self._entries[key]

    def invalidate_message(self, message_id: str) -> None:
        """Drop every cached page containing a message."""
        stale = [
            k for k, e in self._entries.items()
            if any(m.id == message_id for m in e.page.items)
        ]
        for key in stale:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()
