"""
Client Composition Root
=======================

Builds one fully wired chat client per user session.

A ChatSyncClient owns exactly one of each collaborator:
    - httpx.AsyncClient shared by the REST repositories
    - TransportSession (realtime relay link)
    - TypingTracker
    - MessageSynchronizer
    - ConversationService

Example:
    async with open_client(user_id="user-1") as client:
        await client.messages.send_message(
            CreateMessagePayload(conversation_id="c1", content="hi")
        )
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

import httpx

from .config import Settings, get_settings, validate_configuration
from .errors import ConnectionFailedError
from .realtime.transport import Connector, TransportSession, websockets_connector
from .realtime.typing_tracker import TypingTracker
from .repositories.http import HttpConversationRepository, HttpMessageRepository
from .scheduling import AsyncioScheduler, Scheduler
from .sync.broadcast import PeerSyncChannel
from .sync.conversations import ConversationService
from .sync.messages import MessageSynchronizer


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the client.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


logger = logging.getLogger("chatsync.main")


class ChatSyncClient:
    """
    Container for one user's client core.

    Attributes:
        user_id: Local user
        transport: Relay link
        typing: Typing indicators
        messages: Message synchronizer
        conversations: Conversation service
    """

    def __init__(
        self,
        settings: Settings,
        user_id: str,
        http_client: httpx.AsyncClient,
        transport: TransportSession,
        typing: TypingTracker,
        messages: MessageSynchronizer,
        conversations: ConversationService,
        owns_http_client: bool = True,
    ):
        self.settings = settings
        self.user_id = user_id
        self.http_client = http_client
        self.transport = transport
        self.typing = typing
        self.messages = messages
        self.conversations = conversations
        self._owns_http_client = owns_http_client

    async def start(self) -> None:
        """
        Connect the relay link.

        A failed first connect is logged; the session keeps reconnecting in
        the background and REST operations work meanwhile.
        """
        try:
            await self.transport.connect(self.user_id)
        except ConnectionFailedError as e:
            logger.warning(
                f"Relay unavailable at startup: {e}",
                extra={"user_id": self.user_id}
            )

    async def close(self) -> None:
        self.typing.close()
        self.messages.close()
        self.conversations.close()
        await self.transport.disconnect()
        if self._owns_http_client:
            await self.http_client.aclose()
        logger.info("Client closed", extra={"user_id": self.user_id})


def create_client(
    user_id: str,
    settings: Optional[Settings] = None,
    *,
    channel: Optional[PeerSyncChannel] = None,
    scheduler: Optional[Scheduler] = None,
    connector: Connector = websockets_connector,
    http_client: Optional[httpx.AsyncClient] = None,
    get_auth_token: Optional[Callable[[], Optional[str]]] = None,
) -> ChatSyncClient:
    """
    Wire a client for one user.

    Args:
        user_id: Local user id (sender of optimistic messages)
        settings: Configuration (defaults to get_settings())
        channel: Peer sync channel shared with other tabs, if any
        scheduler: Timer source (defaults to AsyncioScheduler)
        connector: Relay connection factory
        http_client: Pre-built httpx client (not closed by the client)
        get_auth_token: Optional bearer token provider for REST calls

    Returns:
        ChatSyncClient, not yet connected
    """
    settings = settings or get_settings()
    scheduler = scheduler or AsyncioScheduler()

    report = validate_configuration(settings)
    for warning in report["warnings"]:
        logger.warning(f"Configuration warning: {warning}")
    if not report["valid"]:
        logger.error(
            "Configuration errors found",
            extra={"errors": report["errors"]}
        )

    owns_http_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(
            base_url=settings.api_base_url_str,
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
        )

    message_repository = HttpMessageRepository(http_client, get_auth_token)
    conversation_repository = HttpConversationRepository(http_client, get_auth_token)

    transport = TransportSession(
        settings.RELAY_WS_URL,
        connector=connector,
        scheduler=scheduler,
        reconnect_base_delay=settings.RECONNECT_BASE_DELAY_SECONDS,
        max_reconnect_attempts=settings.MAX_RECONNECT_ATTEMPTS,
        heartbeat_interval=settings.HEARTBEAT_INTERVAL_SECONDS,
    )

    typing = TypingTracker(
        transport,
        user_id,
        scheduler=scheduler,
        throttle=settings.TYPING_THROTTLE_SECONDS,
        display_timeout=settings.TYPING_DISPLAY_TIMEOUT_SECONDS,
    )

    messages = MessageSynchronizer(
        message_repository,
        user_id,
        scheduler=scheduler,
        channel=channel,
        optimistic_timeout=settings.OPTIMISTIC_TIMEOUT_SECONDS,
        request_timeout=settings.REQUEST_TIMEOUT_SECONDS,
        cache_ttl=settings.CACHE_TTL_SECONDS,
        max_retries=settings.MAX_SEND_RETRIES,
        retry_base_delay=settings.RETRY_BASE_DELAY_SECONDS,
        max_files=settings.MAX_FILES_PER_MESSAGE,
        pending_cleanup_delay=settings.PENDING_CLEANUP_DELAY_SECONDS,
        delete_cleanup_delay=settings.DELETE_CLEANUP_DELAY_SECONDS,
        default_page_limit=settings.DEFAULT_PAGE_LIMIT,
    )
    messages.bind_transport(transport)

    conversations = ConversationService(
        conversation_repository,
        message_repository,
        scheduler=scheduler,
        cache_ttl=settings.CACHE_TTL_SECONDS,
        request_timeout=settings.REQUEST_TIMEOUT_SECONDS,
    )
    conversations.bind_transport(transport)

    return ChatSyncClient(
        settings=settings,
        user_id=user_id,
        http_client=http_client,
        transport=transport,
        typing=typing,
        messages=messages,
        conversations=conversations,
        owns_http_client=owns_http_client,
    )


@asynccontextmanager
async def open_client(user_id: str, settings: Optional[Settings] = None, **kwargs) -> AsyncIterator[ChatSyncClient]:
    """
    Create, connect and finally tear down a client.

    Keyword arguments are passed to create_client.
    """
    client = create_client(user_id, settings, **kwargs)
    await client.start()
    try:
        yield client
    finally:
        await client.close()
