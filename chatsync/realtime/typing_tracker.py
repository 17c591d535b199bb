"""
Typing Tracker Module

Typing indicators in both directions:

- Outbound: ``start_typing`` announces at most once per throttle window per
  conversation; ``stop_typing`` always announces immediately and closes the
  window.
- Inbound: remote ``user:typing`` events maintain a per-conversation set of
  typers. Each (conversation, user) pair has its own display-expiry timer so
  a lost stop event clears itself.
"""

import logging
from typing import Dict, List, Optional, Set, Tuple

from ..scheduling import AsyncioScheduler, ScheduledTask, Scheduler
from .events import EventType, TypingEvent, typing_event
from .transport import TransportSession

logger = logging.getLogger("chatsync.realtime.typing")


class TypingTracker:
    """
    Throttled typing announcer and remote typer registry.

    Args:
        transport: Session used to send announces and receive remote events
        current_user_id: Local user, whose echoes are ignored
        scheduler: Timer source (defaults to AsyncioScheduler)
        throttle: Minimum seconds between two typing=true announces
        display_timeout: Seconds a remote typer stays visible without a stop
    """

    def __init__(
        self,
        transport: TransportSession,
        current_user_id: str,
        *,
        scheduler: Optional[Scheduler] = None,
        throttle: float = 3.0,
        display_timeout: float = 5.0,
    ):
        self._transport = transport
        self._current_user_id = current_user_id
        self._scheduler = scheduler or AsyncioScheduler()
        self._throttle = throttle
        self._display_timeout = display_timeout

        self._typers: Dict[str, Set[str]] = {}
        self._expiry_timers: Dict[Tuple[str, str], ScheduledTask] = {}
        self._throttle_timers: Dict[str, ScheduledTask] = {}

        self._unsubscribe = transport.subscribe(EventType.USER_TYPING, self._on_typing_event)

    # ========================================================================
    # Outbound
    # ========================================================================

    async def start_typing(self, conversation_id: str) -> None:
        """
        Announce typing unless a throttle window is open for the conversation.

        Raises:
            NotConnectedError: Transport is down; no window is opened
        """
        if conversation_id in self._throttle_timers:
            return

        # Claimed before the send so a concurrent call sees the window
        self._throttle_timers[conversation_id] = self._scheduler.call_later(
            self._throttle, lambda: self._throttle_timers.pop(conversation_id, None)
        )

        try:
            await self._transport.send(
                typing_event(self._current_user_id, conversation_id, True)
            )
        except Exception:
            self._clear_throttle(conversation_id)
            raise

    async def stop_typing(self, conversation_id: str) -> None:
        """Close the throttle window and announce typing=false."""
        self._clear_throttle(conversation_id)
        await self._transport.send(
            typing_event(self._current_user_id, conversation_id, False)
        )

    def _clear_throttle(self, conversation_id: str) -> None:
        timer = self._throttle_timers.pop(conversation_id, None)
        if timer is not None:
            timer.cancel()

    # ========================================================================
    # Inbound
    # ========================================================================

    def get_typing_users(self, conversation_id: str) -> List[str]:
        """Snapshot of remote users currently typing in a conversation."""
        return sorted(self._typers.get(conversation_id, ()))

    def _on_typing_event(self, event: TypingEvent) -> None:
        payload = event.payload
        if payload.user_id == self._current_user_id:
            return

        if payload.is_typing:
            self._add_typer(payload.conversation_id, payload.user_id)
        else:
            self._remove_typer(payload.conversation_id, payload.user_id)

    def _add_typer(self, conversation_id: str, user_id: str) -> None:
        self._typers.setdefault(conversation_id, set()).add(user_id)

        key = (conversation_id, user_id)
        existing = self._expiry_timers.pop(key, None)
        if existing is not None:
            existing.cancel()

        self._expiry_timers[key] = self._scheduler.call_later(
            self._display_timeout,
            lambda: self._expire(conversation_id, user_id),
        )
        logger.debug(f"User {user_id} typing in {conversation_id}")

    def _expire(self, conversation_id: str, user_id: str) -> None:
        logger.debug(f"Typing indicator for {user_id} in {conversation_id} expired")
        self._remove_typer(conversation_id, user_id)

    def _remove_typer(self, conversation_id: str, user_id: str) -> None:
        users = self._typers.get(conversation_id)
        if users is not None:
            users.discard(user_id)
            if not users:
                del self._typers[conversation_id]

        timer = self._expiry_timers.pop((conversation_id, user_id), None)
        if timer is not None:
            timer.cancel()

    # ========================================================================
    # Teardown
    # ========================================================================

    def close(self) -> None:
        """Cancel every timer, forget all typers and stop listening."""
        for timer in list(self._throttle_timers.values()) + list(self._expiry_timers.values()):
            timer.cancel()
        self._throttle_timers.clear()
        self._expiry_timers.clear()
        self._typers.clear()
        self._unsubscribe()
