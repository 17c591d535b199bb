"""
HTTP Repositories - REST Backend Adapters
=========================================

httpx implementations of the repository contracts against the messaging
REST API.

Error Model:
------------
1. 2xx responses are parsed into models and returned as success
2. Non-2xx responses become error strings (body ``error``/``message`` or
   ``HTTP <status>``)
3. Transport failures (DNS, refused connection, timeouts) become a
   connectivity error string
4. Anything else (malformed success bodies, programming errors) propagates

Endpoints:
----------
- GET    /messages?conversationId=&limit=&cursor=
- POST   /messages
- PATCH  /messages/{id}/status
- DELETE /messages/{id}
- POST   /conversations/{id}/mark-read
- GET    /conversations
- GET    /conversations/{id}
- POST   /conversations/with/{participantId}   (201 created, 200 reused)
- PATCH  /conversations/{id}/unread
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from ..models import (
    Conversation,
    CreateMessagePayload,
    Message,
    MessagePage,
    MessageStatus,
    OpenedConversation,
)
from .base import ConversationRepository, MessageRepository, RepoResult

logger = logging.getLogger("chatsync.repositories.http")

NETWORK_ERROR_MESSAGE = "Network error. Please check your connection."


class BaseHttpRepository:
    """
    Shared plumbing for the REST repositories.

    Args:
        client: httpx.AsyncClient with base_url set to the API root
        get_auth_token: Optional callable returning a bearer token
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        get_auth_token: Optional[Callable[[], Optional[str]]] = None,
    ):
        self._client = client
        self._get_auth_token = get_auth_token or (lambda: None)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = self._get_auth_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> RepoResult[httpx.Response]:
        """Perform a request, mapping expected failures to error strings."""
        try:
            response = await self._client.request(
                method, path, params=params, json=json, headers=self._headers()
            )
        except httpx.TransportError as e:
            logger.warning(
                f"Backend unreachable: {e}",
                extra={"method": method, "path": path}
            )
            return RepoResult.failure(NETWORK_ERROR_MESSAGE)

        if response.is_success:
            return RepoResult.success(response)

        error = self._extract_error(response)
        logger.warning(
            f"Backend error: {error}",
            extra={"method": method, "path": path, "status_code": response.status_code}
        )
        return RepoResult.failure(error, status_code=response.status_code)

    @staticmethod
    def _extract_error(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"HTTP {response.status_code}: {response.reason_phrase}"

        if isinstance(body, dict):
            return body.get("error") or body.get("message") or f"HTTP {response.status_code}"
        return f"HTTP {response.status_code}"


class HttpMessageRepository(BaseHttpRepository, MessageRepository):
    """Message repository over the REST API."""

    async def get_messages(
        self,
        conversation_id: str,
        limit: int,
        cursor: Optional[str] = None,
    ) -> RepoResult[MessagePage]:
        params: Dict[str, Any] = {"conversationId": conversation_id, "limit": limit}
        if cursor:
            params["cursor"] = cursor

        result = await self._request("GET", "/messages", params=params)
        if not result.ok:
            return RepoResult.failure(result.error, result.status_code)

        body = result.data.json()
        return RepoResult.success(MessagePage(
            items=[Message.model_validate(m) for m in body.get("data", [])],
            next_cursor=body.get("nextCursor"),
            has_more=bool(body.get("hasMore", False)),
        ))

    async def create_message(self, payload: CreateMessagePayload) -> RepoResult[Message]:
        result = await self._request(
            "POST", "/messages", json=payload.model_dump(mode="json", by_alias=True)
        )
        return self._parse_message(result)

    async def update_message_status(
        self, message_id: str, status: MessageStatus
    ) -> RepoResult[Message]:
        result = await self._request(
            "PATCH", f"/messages/{message_id}/status", json={"status": status.value}
        )
        return self._parse_message(result)

    async def delete_message(self, message_id: str) -> RepoResult[Message]:
        result = await self._request("DELETE", f"/messages/{message_id}")
        return self._parse_message(result)

    async def mark_conversation_as_read(self, conversation_id: str) -> RepoResult[List[str]]:
        result = await self._request("POST", f"/conversations/{conversation_id}/mark-read")
        if not result.ok:
            return RepoResult.failure(result.error, result.status_code)
        return RepoResult.success([str(i) for i in result.data.json().get("data", [])])

    @staticmethod
    def _parse_message(result: RepoResult[httpx.Response]) -> RepoResult[Message]:
        if not result.ok:
            return RepoResult.failure(result.error, result.status_code)
        return RepoResult.success(Message.model_validate(result.data.json()["data"]))


class HttpConversationRepository(BaseHttpRepository, ConversationRepository):
    """Conversation repository over the REST API."""

    async def get_conversations(self) -> RepoResult[List[Conversation]]:
        result = await self._request("GET", "/conversations")
        if not result.ok:
            return RepoResult.failure(result.error, result.status_code)
        return RepoResult.success(
            [Conversation.model_validate(c) for c in result.data.json().get("data", [])]
        )

    async def get_conversation(self, conversation_id: str) -> RepoResult[Conversation]:
        result = await self._request("GET", f"/conversations/{conversation_id}")
        return self._parse_conversation(result)

    async def get_or_create_conversation(
        self, participant_id: str
    ) -> RepoResult[OpenedConversation]:
        result = await self._request("POST", f"/conversations/with/{participant_id}")
        if not result.ok:
            return RepoResult.failure(result.error, result.status_code)

        response = result.data
        return RepoResult.success(OpenedConversation(
            conversation=Conversation.model_validate(response.json()["data"]),
            created=response.status_code == httpx.codes.CREATED,
        ))

    async def update_unread_count(self, conversation_id: str) -> RepoResult[Conversation]:
        result = await self._request("PATCH", f"/conversations/{conversation_id}/unread")
        return self._parse_conversation(result)

    @staticmethod
    def _parse_conversation(result: RepoResult[httpx.Response]) -> RepoResult[Conversation]:
        if not result.ok:
            return RepoResult.failure(result.error, result.status_code)
        return RepoResult.success(Conversation.model_validate(result.data.json()["data"]))
