"""Realtime router providing the WebSocket endpoint and HTTP helpers.

This module provides:
    - WebSocket /ws: the realtime event channel (token in ``?token=`` or an
      ``Authorization: Bearer`` header)
    - GET /rooms/{room_id}/messages: history page by sequence
    - DELETE /rooms/{room_id}/messages: administrative purge
    - GET /rooms/{room_id}/messages/{message_id}/receipts: per-member receipts
    - POST /rooms/{room_id}/membership-events: membership changed upstream
    - GET /presence: online count, and one user's status with ``?userId=``

Protocol:
    1. Client connects with a token. Invalid identity closes with 1008.
    2. Server sends {type: "connected", connectionId, userId, userName}.
    3. Client sends tagged events ({type: "join_room", roomId}, ...); see
       ``app.realtime.events`` for the full contract.
    4. Failures come back as {type: "error", code, error, event}.
"""
import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.auth.identity import Identity, get_identity_resolver, require_identity
from app.config import get_config

from .coordinator import RoomSessionCoordinator, get_coordinator
from .delivery import DEFAULT_BACKLOG_SIZE, MAX_PAGE_SIZE
from .errors import AuthenticationError, RealtimeError, to_http_exception
from .events import ErrorEvent

logger = logging.getLogger(__name__)

router = APIRouter()


def _require_coordinator() -> RoomSessionCoordinator:
    coordinator = get_coordinator()
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Realtime service is not running")
    return coordinator


def _origin_allowed(websocket: WebSocket) -> bool:
    origin = websocket.headers.get("origin")
    allowed = get_config().server.allowed_origins
    return origin is None or "*" in allowed or origin in allowed


def _token_from(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get("token")
    if token:
        return token
    scheme, _, value = websocket.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


@router.websocket("/ws")
async def realtime_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint carrying every realtime event of one client.

    Args:
        websocket: The WebSocket connection.
    """
    coordinator = get_coordinator()
    if coordinator is None:
        await websocket.close(code=1011)
        return

    if not _origin_allowed(websocket):
        logger.warning(f"[WS] Rejected connection from origin {websocket.headers.get('origin')}")
        await websocket.close(code=1008)
        return

    try:
        identity = get_identity_resolver().resolve(_token_from(websocket))
    except AuthenticationError as e:
        logger.info(f"[WS] Rejected connection: {e.message}")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    await websocket.accept()
    conn = await coordinator.connect(websocket, identity.userId, identity.userName)
    logger.info(f"[WS] Connection {conn.id} accepted for {identity.userId}")

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                conn.enqueue(ErrorEvent(code="invalid", error="Frame is not valid JSON"))
                continue
            if isinstance(data, dict):
                logger.debug("[WS] %s received: type=%s", conn.id, data.get("type", "?"))
            await coordinator.handle(conn, data)
    except WebSocketDisconnect:
        logger.info(f"[WS] Connection {conn.id} for {identity.userId} disconnected")
    finally:
        await coordinator.disconnect(conn)


@router.get("/rooms/{room_id}/messages")
async def get_room_messages(
    room_id: str,
    before: Optional[int] = Query(None, ge=1, description="Sequence cursor (messages before it)"),
    after: Optional[int] = Query(None, ge=0, description="Sequence cursor (messages after it)"),
    limit: int = Query(DEFAULT_BACKLOG_SIZE, ge=1, le=MAX_PAGE_SIZE, description="Number of messages to return"),
    identity: Identity = Depends(require_identity),
    coordinator: RoomSessionCoordinator = Depends(_require_coordinator),
) -> JSONResponse:
    """Get a page of a room's history, ordered by sequence.

    Example:
        GET /rooms/abc123/messages?limit=50
        GET /rooms/abc123/messages?before=120&limit=50
        GET /rooms/abc123/messages?after=97
    """
    try:
        page = await coordinator.engine.history(
            room_id, identity.userId, before_sequence=before, after_sequence=after, limit=limit
        )
    except RealtimeError as e:
        raise to_http_exception(e)
    return JSONResponse(page.model_dump(mode="json"))


@router.delete("/rooms/{room_id}/messages")
async def purge_room_messages(
    room_id: str,
    identity: Identity = Depends(require_identity),
    coordinator: RoomSessionCoordinator = Depends(_require_coordinator),
) -> JSONResponse:
    """Remove every message of a room. Admins, owners, or either side of a direct room."""
    try:
        removed = await coordinator.engine.purge(room_id, identity.userId)
    except RealtimeError as e:
        raise to_http_exception(e)
    return JSONResponse({"roomId": room_id, "purged": removed})


@router.get("/rooms/{room_id}/messages/{message_id}/receipts")
async def get_message_receipts(
    room_id: str,
    message_id: str,
    identity: Identity = Depends(require_identity),
    coordinator: RoomSessionCoordinator = Depends(_require_coordinator),
) -> JSONResponse:
    """Per-member delivery/read times and the aggregate status of a message."""
    try:
        report = await coordinator.engine.receipts(room_id, identity.userId, message_id)
    except RealtimeError as e:
        raise to_http_exception(e)
    return JSONResponse(report.model_dump(mode="json"))


class MembershipEvent(BaseModel):
    """Notification that a room's participants changed upstream."""
    userIds: List[str] = Field(default_factory=list, description="Users added or removed (informational)")
    reason: Optional[str] = Field(default=None, description="Free-form reason for logs")


@router.post("/rooms/{room_id}/membership-events")
async def post_membership_event(
    room_id: str,
    event: Optional[MembershipEvent] = None,
    identity: Identity = Depends(require_identity),
    coordinator: RoomSessionCoordinator = Depends(_require_coordinator),
) -> JSONResponse:
    """Invalidate the cached room and evict connections that lost access."""
    logger.info(
        f"[HTTP] Membership change for room {room_id} from {identity.userId}"
        f" (users={event.userIds if event else []}, reason={event.reason if event else None})"
    )
    evicted = await coordinator.membership_changed(room_id)
    return JSONResponse({"roomId": room_id, "evicted": evicted})


@router.get("/presence")
async def get_presence(
    userId: Optional[str] = Query(None, description="User to check"),
    identity: Identity = Depends(require_identity),
    coordinator: RoomSessionCoordinator = Depends(_require_coordinator),
) -> JSONResponse:
    """Online user count, plus one user's status when ``userId`` is given."""
    body = {"onlineCount": coordinator.presence.online_count()}
    if userId is not None:
        body["userId"] = userId
        body["online"] = coordinator.presence.is_online(userId)
    return JSONResponse(body)
