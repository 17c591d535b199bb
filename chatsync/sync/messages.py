"""
Message Synchronizer Module

Keeps the locally rendered message state of one user consistent with the
remote message service.

State owned here:
- Pending overlay: unconfirmed or locally mutated messages keyed by id
  (temporary ``temp_<hex>`` ids for optimistic sends)
- Page cache: fetched pages with a TTL (see cache.PageCache)
- Retry queue: at most one RetryMetadata per failed message id

Flows:
1. ``get_messages``: fresh cache page or remote fetch, merged with the
   overlay (overlay wins on id, newest first)
2. ``send_message``: validate, publish an optimistic ``sending`` message,
   create remotely under a timeout, then reconcile the temporary id with
   the server id (or flip to ``failed`` and queue a retry)
3. ``retry_failed_message``: backoff-gated resend of a failed message
4. ``mark_as_read`` / ``delete_message``: optimistic mutation with
   rollback on failure

Peers (other tabs) receive ``message:update`` / ``message:remove``
notifications over an optional PeerSyncChannel and merge them into their
own overlay. Transport echoes of ``message:*`` events are folded in through
``bind_transport``.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import ValidationError as ModelValidationError

from ..errors import (
    NetworkError,
    NotFoundError,
    RetryExhaustedError,
    RetryNotReadyError,
    ValidationError,
)
from ..models import (
    CreateMessagePayload,
    Message,
    MessagePage,
    MessageQuery,
    MessageStatus,
    utcnow,
)
from ..realtime.events import (
    EventType,
    MessageDeletedEvent,
    MessageDeliveredEvent,
    MessageReadEvent,
    MessageSentEvent,
)
from ..realtime.transport import TransportSession
from ..repositories.base import MessageRepository
from ..scheduling import AsyncioScheduler, ScheduledTask, Scheduler, call_remote
from .broadcast import PeerSyncChannel
from .cache import PageCache

logger = logging.getLogger("chatsync.sync.messages")

TEMP_ID_PREFIX = "temp_"
PEER_UPDATE = "message:update"
PEER_REMOVE = "message:remove"

# Purged ids remembered to recognise late echoes
PURGED_HISTORY_SIZE = 1000

ChangeListener = Callable[[str], Any]


@dataclass
class RetryMetadata:
    """Retry bookkeeping of one failed message."""
    message_id: str
    payload: CreateMessagePayload
    attempts: int
    next_retry_at: float


class MessageSynchronizer:
    """
    Optimistic, cached, retrying view over a MessageRepository.

    Args:
        repository: Remote message store
        current_user_id: Sender id of optimistic messages
        scheduler: Clock and timers (defaults to AsyncioScheduler)
        channel: Peer sync channel, or None for a single-process client
        optimistic_timeout: Deadline for the remote create behind a send
        request_timeout: Deadline for reads and mutations
        cache_ttl: Seconds a fetched page stays fresh
        max_retries: Manual retries allowed per failed message
        retry_base_delay: Backoff base; attempt n waits base * 2^n
        max_files: Attachment limit per message
        pending_cleanup_delay: Grace period before a reconciled message
            leaves the overlay
        delete_cleanup_delay: Delay before a deleted message leaves the overlay
        default_page_limit: Page size when a query has none
    """

    def __init__(
        self,
        repository: MessageRepository,
        current_user_id: str,
        *,
        scheduler: Optional[Scheduler] = None,
        channel: Optional[PeerSyncChannel] = None,
        optimistic_timeout: float = 5.0,
        request_timeout: float = 10.0,
        cache_ttl: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        max_files: int = 5,
        pending_cleanup_delay: float = 5.0,
        delete_cleanup_delay: float = 1.0,
        default_page_limit: int = 50,
    ):
        self._repository = repository
        self._current_user_id = current_user_id
        self._scheduler = scheduler or AsyncioScheduler()
        self._channel = channel

        self._optimistic_timeout = optimistic_timeout
        self._request_timeout = request_timeout
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._max_files = max_files
        self._pending_cleanup_delay = pending_cleanup_delay
        self._delete_cleanup_delay = delete_cleanup_delay
        self._default_page_limit = default_page_limit

        self._cache = PageCache(cache_ttl, self._scheduler.now, default_page_limit)
        self._pending: Dict[str, Message] = {}
        self._retry_queue: Dict[str, RetryMetadata] = {}
        self._purge_timers: Dict[str, ScheduledTask] = {}
        self._purged: "OrderedDict[str, None]" = OrderedDict()
        self._listeners: List[ChangeListener] = []
        self._unsubscribers: List[Callable[[], None]] = []

        if channel is not None:
            self._unsubscribers.append(channel.subscribe(self._on_peer_message))

    @property
    def cache(self) -> PageCache:
        return self._cache

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_messages(self, query: MessageQuery) -> MessagePage:
        """
        Read one page of a conversation merged with the pending overlay.

        Raises:
            ValidationError: conversation_id missing
            NetworkError: Remote fetch failed or timed out
        """
        if not query.conversation_id:
            raise ValidationError("conversation_id is required")

        cached = self._cache.get(query)
        if cached is not None:
            return self._merge_pending(cached, query.conversation_id)

        page = await call_remote(
            self._repository.get_messages(
                query.conversation_id,
                query.limit or self._default_page_limit,
                query.cursor,
            ),
            timeout=self._request_timeout,
            scheduler=self._scheduler,
            operation="get_messages",
        )
        self._cache.put(query, page)

        return self._merge_pending(page, query.conversation_id)

    def _merge_pending(self, page: MessagePage, conversation_id: str) -> MessagePage:
        merged: Dict[str, Message] = {m.id: m for m in page.items}
        for message in self._pending.values():
            if message.conversation_id == conversation_id:
                merged[message.id] = message

        items = sorted(merged.values(), key=lambda m: m.created_at, reverse=True)
        return MessagePage(items=items, next_cursor=page.next_cursor, has_more=page.has_more)

    # ========================================================================
    # Optimistic Send
    # ========================================================================

    async def send_message(self, payload: CreateMessagePayload) -> Message:
        """
        Send a message optimistically.

        Network failures and timeouts do not raise: the returned message has
        status ``failed`` and a retry entry is queued under its id.

        Returns:
            The server-confirmed message, or the failed optimistic copy

        Raises:
            ValidationError: Payload rejected before any network attempt
        """
        self._validate_payload(payload)
        return await self._send(payload)

    async def _send(
        self,
        payload: CreateMessagePayload,
        retry: Optional[RetryMetadata] = None,
    ) -> Message:
        now = utcnow()
        optimistic = Message(
            id=f"{TEMP_ID_PREFIX}{uuid4().hex}",
            conversation_id=payload.conversation_id,
            sender_id=self._current_user_id,
            content=payload.content,
            files=list(payload.files),
            status=MessageStatus.SENDING,
            created_at=now,
            updated_at=now,
        )

        self._store(optimistic)
        self._publish_update(optimistic)
        self._cache.invalidate_conversation(payload.conversation_id)

        try:
            confirmed = await call_remote(
                self._repository.create_message(payload),
                timeout=self._optimistic_timeout,
                scheduler=self._scheduler,
                operation="create_message",
            )
        except NetworkError as e:
            return self._fail_send(optimistic, payload, retry, e)
        except Exception as e:
            self._fail_send(optimistic, payload, retry, e)
            raise

        return self._reconcile(optimistic.id, confirmed)

    def _reconcile(self, temp_id: str, confirmed: Message) -> Message:
        if confirmed.status == MessageStatus.SENDING:
            confirmed = confirmed.model_copy(update={"status": MessageStatus.SENT})

        stale = self._pending.pop(temp_id, None)
        self._store(confirmed)
        self._publish_update(confirmed, replaces=temp_id)
        self._schedule_purge(confirmed.id, self._pending_cleanup_delay)

        logger.info(
            f"Message {temp_id} confirmed as {confirmed.id}",
            extra={"conversation_id": confirmed.conversation_id, "was_pending": stale is not None}
        )
        return confirmed

    def _fail_send(
        self,
        optimistic: Message,
        payload: CreateMessagePayload,
        retry: Optional[RetryMetadata],
        error: Exception,
    ) -> Message:
        failed = optimistic.model_copy(
            update={"status": MessageStatus.FAILED, "updated_at": utcnow()}
        )
        self._store(failed)
        self._publish_update(failed)

        if retry is None:
            metadata = RetryMetadata(
                message_id=failed.id,
                payload=payload,
                attempts=0,
                next_retry_at=self._scheduler.now() + self._retry_base_delay,
            )
        else:
            # Same logical message under its new temporary id
            metadata = RetryMetadata(
                message_id=failed.id,
                payload=payload,
                attempts=retry.attempts,
                next_retry_at=retry.next_retry_at,
            )
        self._retry_queue[failed.id] = metadata

        logger.warning(
            f"Send failed for {failed.id}: {error}",
            extra={
                "conversation_id": failed.conversation_id,
                "attempts": metadata.attempts,
                "error_type": type(error).__name__,
            }
        )
        return failed

    def _validate_payload(self, payload: CreateMessagePayload) -> None:
        if not payload.conversation_id:
            raise ValidationError("conversation_id is required")

        if not payload.content and not payload.files:
            raise ValidationError("content or files required")

        if len(payload.files) > self._max_files:
            raise ValidationError(f"max {self._max_files} files allowed")

    # ========================================================================
    # Retry
    # ========================================================================

    async def retry_failed_message(self, message_id: str) -> Message:
        """
        Resend a failed message once its backoff window has elapsed.

        Returns:
            The confirmed message, or a new failed copy (the retry entry
            follows it to its new temporary id)

        Raises:
            NotFoundError: No retry entry for this id
            RetryExhaustedError: Attempts used up; the entry is dropped
            RetryNotReadyError: Backoff window still open (carries retry_in)
        """
        metadata = self._retry_queue.get(message_id)
        if metadata is None:
            raise NotFoundError("Message", message_id)

        if metadata.attempts >= self._max_retries:
            del self._retry_queue[message_id]
            logger.warning(
                f"Retries exhausted for {message_id}",
                extra={"attempts": metadata.attempts}
            )
            raise RetryExhaustedError(message_id, metadata.attempts)

        now = self._scheduler.now()
        if now < metadata.next_retry_at:
            raise RetryNotReadyError(message_id, metadata.next_retry_at - now)

        metadata.attempts += 1
        metadata.next_retry_at = now + self._retry_base_delay * (2 ** metadata.attempts)
        del self._retry_queue[message_id]

        stale = self._pending.pop(message_id, None)
        if stale is not None:
            self._publish_remove(stale)
            self._notify(stale.conversation_id)

        logger.info(
            f"Retrying message {message_id}",
            extra={"attempt": metadata.attempts, "max_retries": self._max_retries}
        )
        return await self._send(metadata.payload, retry=metadata)

    # ========================================================================
    # Mutations
    # ========================================================================

    async def mark_as_read(self, message_id: str) -> Message:
        """
        Mark a message read, optimistically in the overlay.

        Raises:
            NetworkError: Remote update failed (overlay rolled back)
        """
        now = utcnow()
        return await self._mutate(
            message_id,
            {"status": MessageStatus.READ, "read_at": now, "updated_at": now},
            self._repository.update_message_status(message_id, MessageStatus.READ),
            operation="update_message_status",
        )

    async def delete_message(self, message_id: str) -> Message:
        """
        Soft-delete a message, optimistically in the overlay.

        Raises:
            NetworkError: Remote delete failed (overlay rolled back)
        """
        now = utcnow()
        result = await self._mutate(
            message_id,
            {"deleted_at": now, "updated_at": now},
            self._repository.delete_message(message_id),
            operation="delete_message",
        )

        if message_id in self._pending:
            self._schedule_purge(message_id, self._delete_cleanup_delay)
        return result

    async def _mutate(
        self,
        message_id: str,
        changes: Dict[str, Any],
        remote_call,
        *,
        operation: str,
    ) -> Message:
        original = self._pending.get(message_id)
        if original is not None:
            self._store(original.model_copy(update=changes))
            self._publish_update(self._pending[message_id])

        try:
            result = await call_remote(
                remote_call,
                timeout=self._request_timeout,
                scheduler=self._scheduler,
                operation=operation,
            )
        except Exception:
            if original is not None and message_id in self._pending:
                self._store(original)
                self._publish_update(original)
                logger.info(f"Rolled back {operation} on {message_id}")
            raise

        if message_id in self._pending:
            self._store(result)
            self._publish_update(result)

        self._cache.invalidate_message(message_id)
        self._cache.invalidate_conversation(result.conversation_id)
        return result

    # ========================================================================
    # Overlay Bookkeeping
    # ========================================================================

    def _store(self, message: Message) -> None:
        self._pending[message.id] = message
        self._notify(message.conversation_id)

    def _schedule_purge(self, message_id: str, delay: float) -> None:
        existing = self._purge_timers.pop(message_id, None)
        if existing is not None:
            existing.cancel()
        self._purge_timers[message_id] = self._scheduler.call_later(
            delay, lambda: self._purge(message_id)
        )

    def _purge(self, message_id: str) -> None:
        self._purge_timers.pop(message_id, None)
        message = self._pending.pop(message_id, None)
        if message is None:
            return

        self._remember_purged(message_id)
        self._cache.invalidate_conversation(message.conversation_id)
        self._notify(message.conversation_id)
        logger.debug(f"Purged {message_id} from pending overlay")

    def _remember_purged(self, message_id: str) -> None:
        self._purged[message_id] = None
        self._purged.move_to_end(message_id)
        while len(self._purged) > PURGED_HISTORY_SIZE:
            self._purged.popitem(last=False)

    def get_pending_messages(self, conversation_id: Optional[str] = None) -> List[Message]:
        """Overlay entries, newest first, optionally for one conversation."""
        messages = [
            m for m in self._pending.values()
            if conversation_id is None or m.conversation_id == conversation_id
        ]
        return sorted(messages, key=lambda m: m.created_at, reverse=True)

    def get_retry_metadata(self, message_id: str) -> Optional[RetryMetadata]:
        return self._retry_queue.get(message_id)

    # ========================================================================
    # Change Listeners
    # ========================================================================

    def add_listener(self, callback: ChangeListener) -> Callable[[], None]:
        """
        Register a callback fired with a conversation id on overlay changes.

        Returns:
            Unsubscribe handle
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, conversation_id: str) -> None:
        for callback in list(self._listeners):
            try:
                callback(conversation_id)
            except Exception as e:
                logger.error(f"Change listener failed: {e}", exc_info=True)

    # ========================================================================
    # Peer Sync
    # ========================================================================

    def _publish_update(self, message: Message, replaces: Optional[str] = None) -> None:
        if self._channel is None:
            return

        notification: Dict[str, Any] = {
            "type": PEER_UPDATE,
            "payload": message.model_dump(mode="json", by_alias=True),
        }
        if replaces is not None:
            notification["replaces"] = replaces
        self._channel.publish(notification)

    def _publish_remove(self, message: Message) -> None:
        if self._channel is None:
            return

        self._channel.publish({
            "type": PEER_REMOVE,
            "payload": {"messageId": message.id, "conversationId": message.conversation_id},
        })

    def _on_peer_message(self, notification: Dict[str, Any]) -> None:
        kind = notification.get("type")

        if kind == PEER_UPDATE:
            try:
                message = Message.model_validate(notification.get("payload"))
            except ModelValidationError as e:
                logger.warning(f"Dropped malformed peer update: {e.error_count()} errors")
                return
            self._apply_peer_update(message, notification.get("replaces"))

        elif kind == PEER_REMOVE:
            payload = notification.get("payload") or {}
            removed = self._pending.pop(payload.get("messageId", ""), None)
            if removed is not None:
                self._notify(removed.conversation_id)

        else:
            logger.debug(f"Ignored peer notification of type {kind!r}")

    def _apply_peer_update(self, message: Message, replaces: Optional[str]) -> None:
        if replaces:
            self._pending.pop(replaces, None)

        if message.id in self._purged:
            self._cache.invalidate_conversation(message.conversation_id)
            self._notify(message.conversation_id)
            return

        self._store(message)

        if message.is_deleted:
            self._schedule_purge(message.id, self._delete_cleanup_delay)
        elif message.status not in (MessageStatus.SENDING, MessageStatus.FAILED):
            self._schedule_purge(message.id, self._pending_cleanup_delay)

    # ========================================================================
    # Transport Echoes
    # ========================================================================

    def bind_transport(self, transport: TransportSession) -> None:
        """Fold relay ``message:*`` events into the overlay and cache."""
        self._unsubscribers.extend([
            transport.subscribe(EventType.MESSAGE_SENT, self._on_message_sent),
            transport.subscribe(EventType.MESSAGE_DELIVERED, self._on_message_status),
            transport.subscribe(EventType.MESSAGE_READ, self._on_message_status),
            transport.subscribe(EventType.MESSAGE_DELETED, self._on_message_status),
        ])

    def _on_message_sent(self, event: MessageSentEvent) -> None:
        message = event.payload

        if message.id in self._pending:
            self._store(message)
        elif message.id in self._purged:
            logger.debug(f"Late echo of purged message {message.id} ignored")
        else:
            self._cache.invalidate_conversation(message.conversation_id)
            self._notify(message.conversation_id)

    def _on_message_status(self, event) -> None:
        payload = event.payload
        message_id = payload.message_id

        pending = self._pending.get(message_id)
        if pending is not None:
            if isinstance(event, MessageDeliveredEvent):
                if pending.status != MessageStatus.READ:
                    pending = pending.model_copy(update={"status": MessageStatus.DELIVERED})
            elif isinstance(event, MessageReadEvent):
                pending = pending.model_copy(
                    update={"status": MessageStatus.READ, "read_at": payload.read_at}
                )
            elif isinstance(event, MessageDeletedEvent):
                pending = pending.model_copy(update={"deleted_at": payload.deleted_at})
            self._store(pending)

        self._cache.invalidate_message(message_id)

    # ========================================================================
    # Teardown
    # ========================================================================

    def close(self) -> None:
        """Cancel timers, unsubscribe from channel and transport, drop state."""
        for timer in self._purge_timers.values():
            timer.cancel()
        self._purge_timers.clear()

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        self._cache.clear()
        self._pending.clear()
        self._retry_queue.clear()
        self._purged.clear()
        self._listeners.clear()
