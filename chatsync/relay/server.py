"""
Development Relay Server
========================

Minimal realtime relay for running the client end to end on a workstation.
It reproduces the messaging backend's naive fan-out: every connected user
receives every broadcast, keyed by the ``userId`` given at connect time.

Endpoints:
    - GET  /ws?userId=...        WebSocket link (missing userId closes with 1008)
    - POST /internal/events      Publish one event to everyone, or ?userId= one user
    - GET  /status               Connection statistics

Client Frames:
    - {"type": "ping"}                                   answered with {"type": "pong"}
    - {"type": "user:typing", "payload": {...}}          fanned out to all other users
    - anything unparsable                                answered with {"type": "error", ...}

Server Events:
    - {"type": "user:presence", "payload": {"userId": "...", "status": "online"}}
      on a user's first device connecting, "offline" when the last one leaves
    - any event published through /internal/events
"""

import asyncio
import json
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Set

import uvicorn
from fastapi import (
    APIRouter,
    Body,
    FastAPI,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse

from ..config import Settings, get_settings
from ..main import setup_logging
from ..models import PresenceStatus, utcnow
from ..realtime.events import (
    PingEvent,
    PongEvent,
    PresenceEvent,
    PresencePayload,
    TypingEvent,
    encode_event,
    parse_event,
)

logger = logging.getLogger("chatsync.relay.server")

relay_router = APIRouter()


class RelayConnectionManager:
    """
    Tracks relay connections per user (one user may have several devices).

    Attributes:
        clients: Dict mapping userId to the set of its WebSockets
        lock: Asyncio lock guarding the client map
    """

    def __init__(self):
        self.clients: Dict[str, Set[WebSocket]] = defaultdict(set)
        self.lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        return sum(len(sockets) for sockets in self.clients.values())

    async def connect(self, websocket: WebSocket, user_id: str) -> bool:
        """
        Accept and register a connection.

        Returns:
            bool: True if this is the user's first open device
        """
        await websocket.accept()

        async with self.lock:
            first = user_id not in self.clients
            self.clients[user_id].add(websocket)
            devices = len(self.clients[user_id])

        logger.info(
            f"User {user_id} connected ({devices} devices)",
            extra={"user_id": user_id, "total_connections": self.connection_count}
        )
        return first

    async def disconnect(self, websocket: WebSocket, user_id: str) -> bool:
        """
        Remove a connection.

        Returns:
            bool: True if the user has no device left
        """
        async with self.lock:
            sockets = self.clients.get(user_id)
            if sockets is None or websocket not in sockets:
                return False

            sockets.discard(websocket)
            last = not sockets
            if last:
                del self.clients[user_id]

        logger.info(
            f"User {user_id} disconnected",
            extra={"user_id": user_id, "total_connections": self.connection_count}
        )
        return last

    async def broadcast(self, message: str, exclude_user_id: Optional[str] = None) -> int:
        """
        Send a frame to every connected user except one.

        Returns:
            int: Number of sockets that received the frame
        """
        async with self.lock:
            targets = [
                (user_id, websocket)
                for user_id, sockets in self.clients.items()
                if user_id != exclude_user_id
                for websocket in sockets
            ]
        return await self._send_all(targets, message)

    async def send_to_user(self, user_id: str, message: str) -> int:
        async with self.lock:
            targets = [(user_id, websocket) for websocket in self.clients.get(user_id, ())]
        return await self._send_all(targets, message)

    async def _send_all(self, targets, message: str) -> int:
        sent_count = 0
        failed = []

        for user_id, websocket in targets:
            try:
                await websocket.send_text(message)
                sent_count += 1
            except Exception as e:
                logger.warning(
                    f"Failed to send to WebSocket: {str(e)}",
                    extra={"user_id": user_id}
                )
                failed.append((user_id, websocket))

        for user_id, websocket in failed:
            await self.disconnect(websocket, user_id)

        return sent_count

    async def disconnect_all(self) -> None:
        """Close every connection (used at shutdown)."""
        async with self.lock:
            targets = [
                (user_id, websocket)
                for user_id, sockets in self.clients.items()
                for websocket in sockets
            ]

        for user_id, websocket in targets:
            try:
                await websocket.close(code=status.WS_1001_GOING_AWAY, reason="Server shutdown")
            except Exception as e:
                logger.warning(f"Error closing WebSocket: {str(e)}")
            await self.disconnect(websocket, user_id)


def _presence_frame(user_id: str, presence: PresenceStatus) -> str:
    return encode_event(PresenceEvent(payload=PresencePayload(
        user_id=user_id,
        status=presence,
        last_seen_at=utcnow() if presence == PresenceStatus.OFFLINE else None,
    )))


# ============================================================================
# WebSocket Endpoint
# ============================================================================

@relay_router.websocket("/ws")
async def websocket_endpoint(
        websocket: WebSocket,
        user_id: Optional[str] = Query(None, alias="userId"),
):
    """
    Relay link for one device of one user.

    Args:
        websocket: WebSocket connection
        user_id: Identity used to key fan-out (userId query parameter)
    """
    if not user_id:
        logger.warning("WebSocket connection attempted without userId")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="userId required")
        return

    manager: RelayConnectionManager = websocket.app.state.connections

    if await manager.connect(websocket, user_id):
        await manager.broadcast(_presence_frame(user_id, PresenceStatus.ONLINE))

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", status.WS_1000_NORMAL_CLOSURE))

            # Binary frames are not part of the protocol
            data = message.get("text")
            event = parse_event(data) if data is not None else None

            if event is None:
                await websocket.send_text(json.dumps({
                    "type": "error",
                    "message": "Invalid event frame"
                }))

            elif isinstance(event, PingEvent):
                await websocket.send_text(encode_event(PongEvent()))

            elif isinstance(event, TypingEvent):
                await manager.broadcast(data, exclude_user_id=user_id)

            else:
                logger.debug(f"Ignored client event {event.type} from {user_id}")

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected by {user_id}")

    except Exception as e:
        logger.error(f"WebSocket error: {str(e)}", exc_info=True)

    finally:
        if await manager.disconnect(websocket, user_id):
            await manager.broadcast(_presence_frame(user_id, PresenceStatus.OFFLINE))


# ============================================================================
# Internal Event Endpoint
# ============================================================================

@relay_router.post("/internal/events")
async def publish_event(
    request: Request,
    event_body: Dict[str, Any] = Body(...),
    user_id: Optional[str] = Query(None, alias="userId"),
) -> Dict[str, Any]:
    """
    Publish an event on behalf of the backend.

    Args:
        event_body: Any recognised realtime event frame
        user_id: Deliver only to this user's devices when given

    Returns:
        Acknowledgment with the number of recipients

    Raises:
        HTTPException: 400 if the body is not a recognised event
    """
    event = parse_event(event_body)
    if event is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Body is not a recognised realtime event"
        )

    manager: RelayConnectionManager = request.app.state.connections
    frame = encode_event(event)

    if user_id:
        recipients = await manager.send_to_user(user_id, frame)
    else:
        recipients = await manager.broadcast(frame)

    logger.info(
        "Published internal event",
        extra={"event_type": event.type, "target_user": user_id, "recipients": recipients}
    )

    return {
        "status": "published",
        "event_type": event.type,
        "recipients": recipients,
    }


@relay_router.get("/status")
async def relay_status(request: Request):
    """
    Get relay statistics.

    Returns:
        dict: Connection statistics
    """
    manager: RelayConnectionManager = request.app.state.connections
    return {
        "status": "ok",
        "connected_users": len(manager.clients),
        "active_connections": manager.connection_count,
        "timestamp": utcnow().isoformat(),
    }


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Relay started")

    yield

    await app.state.connections.disconnect_all()
    logger.info("Relay stopped")


def create_relay_app() -> FastAPI:
    """
    Create the relay FastAPI application.

    Returns:
        FastAPI: Application with the relay routes mounted
    """
    app = FastAPI(
        title="chatsync relay",
        description="Development realtime relay for chatsync clients",
        lifespan=lifespan,
    )
    app.state.connections = RelayConnectionManager()
    app.include_router(relay_router)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled relay error: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"}
        )

    return app


def run(settings: Optional[Settings] = None) -> None:
    """Serve the relay with uvicorn."""
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    uvicorn.run(
        create_relay_app(),
        host=settings.RELAY_HOST,
        port=settings.RELAY_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
