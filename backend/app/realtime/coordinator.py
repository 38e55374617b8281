"""Room session coordinator.

Binds each connection's intents to the messaging components:

    connect           register the connection, send ``connected``
    join_room         authorize READ, subscribe, send ``room_joined`` with the
                      backlog and the room's online members, tell peers
                      ``user_joined``
    leave_room        unsubscribe, tell peers ``user_left``, release the
                      cached room, stop typing
    <message events>  delegate to the delivery engine (which re-checks access)
    disconnect        leave every room and unregister

Every inbound frame is validated against the event contract. Errors become
``error`` frames on the offending connection; the connection is kept.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import status
from pydantic import ValidationError as SchemaValidationError

from app.config import RealtimeSettings

from .connection import Connection
from .delivery import MessageDeliveryEngine
from .dispatcher import BackgroundTasks, KeyedDispatcher
from .errors import RealtimeError, StoreUnavailableError, TransientDeliveryError, ValidationError
from .events import (
    Connected,
    DeleteMessage,
    EditMessage,
    ErrorEvent,
    FetchHistory,
    ForwardMessage,
    History,
    JoinRoom,
    LeaveRoom,
    LeftRoom,
    MarkDelivered,
    MarkRead,
    MessageForwarded,
    NewMessage,
    OnlineUsersCount,
    ReactToMessage,
    RoomJoined,
    SendMessage,
    ServerEvent,
    TypingStart,
    TypingStop,
    UserJoined,
    UserLeft,
    UserOffline,
    UserOnline,
    parse_client_event,
)
from .membership import AccessDecision, RoomAction, RoomMembershipIndex
from .presence import PresenceTracker
from .registry import ConnectionRegistry
from .schemas import HistoryPage
from .store import RoomStore
from .typing_indicator import TypingIndicator

logger = logging.getLogger(__name__)


def _describe(error: SchemaValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first['msg']}" if location else first["msg"]


class RoomSessionCoordinator:
    """Owns the messaging components and routes connection events to them."""

    def __init__(self, store: RoomStore, settings: Optional[RealtimeSettings] = None) -> None:
        settings = settings or RealtimeSettings()
        self.settings = settings
        self.store = store

        self.rooms = KeyedDispatcher("room")
        self.users = KeyedDispatcher("user")
        self.tasks = BackgroundTasks()

        self.presence = PresenceTracker(
            self.users, settings.presence_grace_seconds, notifier=self._announce_presence
        )
        self.registry = ConnectionRegistry(self.users, listener=self.presence.on_connection_change)
        self.membership = RoomMembershipIndex(store, settings.membership_cache_ttl_seconds)
        self.typing = TypingIndicator(
            self.rooms, self._broadcast_to_subscribers, settings.typing_timeout_seconds
        )
        self.engine = MessageDeliveryEngine(
            store,
            self.membership,
            self.registry,
            self.rooms,
            backlog_size=settings.backlog_size,
            max_page_size=settings.max_page_size,
            max_message_length=settings.max_message_length,
        )

        self._handlers: Dict[str, Callable[[Connection, Any], Awaitable[None]]] = {
            "join_room": self._on_join_room,
            "leave_room": self._on_leave_room,
            "send_message": self._on_send_message,
            "typing_start": self._on_typing_start,
            "typing_stop": self._on_typing_stop,
            "mark_delivered": self._on_mark_delivered,
            "mark_read": self._on_mark_read,
            "edit_message": self._on_edit_message,
            "delete_message": self._on_delete_message,
            "forward_message": self._on_forward_message,
            "react_to_message": self._on_react_to_message,
            "fetch_history": self._on_fetch_history,
        }

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, websocket: Any, user_id: str, user_name: str) -> Connection:
        """Bind a verified identity to *websocket* and register it."""
        conn = Connection(
            websocket,
            user_id,
            user_name,
            outbox_size=self.settings.outbox_size,
            on_delivered=self._on_delivered,
            on_failure=self._on_failure,
        )
        conn.start()
        conn.enqueue(Connected(connectionId=conn.id, userId=user_id, userName=user_name))
        await self.registry.register(conn)
        logger.info("[Coordinator] %s connected as %s", user_id, conn.id)
        return conn

    async def disconnect(self, conn: Connection) -> None:
        """Leave every room and unregister. Idempotent."""
        for room_id in list(conn.rooms):
            await self._leave(conn, room_id)
        await conn.close()
        await self.registry.unregister(conn)

    def _on_failure(self, conn: Connection, error: TransientDeliveryError) -> None:
        self.tasks.spawn(self._drop(conn), name=f"drop-{conn.id}")

    async def _drop(self, conn: Connection) -> None:
        await self.disconnect(conn)
        try:
            await conn.websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        except Exception as e:
            logger.debug("[Coordinator] Closing dropped connection %s failed: %s", conn.id, e)

    def _on_delivered(self, conn: Connection, event: NewMessage) -> None:
        if conn.user_id == event.message.senderId:
            return
        self.tasks.spawn(
            self.engine.record_delivered(event.roomId, conn.user_id, [event.message.id]),
            name=f"delivered-{event.message.id}-{conn.user_id}",
        )

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def handle(self, conn: Connection, data: Any) -> None:
        """Validate one decoded frame and run its handler."""
        event_type = data.get("type") if isinstance(data, dict) else None
        if not isinstance(event_type, str):
            event_type = None
        try:
            event = parse_client_event(data)
        except SchemaValidationError as e:
            self._send_error(conn, ValidationError(f"Malformed event: {_describe(e)}"), event_type)
            return

        handler = self._handlers[event.type]
        try:
            await handler(conn, event)
        except RealtimeError as e:
            logger.info(
                "[Coordinator] %s from %s failed: %s (%s)", event.type, conn.user_id, e.message, e.code
            )
            self._send_error(conn, e, event.type)
        except Exception:
            logger.exception("[Coordinator] Unexpected error handling %s from %s", event.type, conn.user_id)
            conn.enqueue(ErrorEvent(code="internal", error="Internal server error", event=event.type))

    def _send_error(self, conn: Connection, error: RealtimeError, event_type: Optional[str]) -> None:
        conn.enqueue(ErrorEvent(code=error.code, error=error.message, event=event_type))

    async def _on_join_room(self, conn: Connection, event: JoinRoom) -> None:
        room_id = event.roomId
        first_join = room_id not in conn.rooms
        if first_join:
            self.membership.retain(room_id)
        try:
            room = await self.membership.require(conn.user_id, room_id, RoomAction.READ)

            def deliver(page: HistoryPage, last_sequence: int) -> None:
                if first_join:
                    self.registry.subscribe(conn, room_id)
                    self._broadcast_to_subscribers(
                        room_id,
                        UserJoined(roomId=room_id, userId=conn.user_id, userName=conn.user_name),
                        exclude_user_id=conn.user_id,
                    )
                conn.enqueue(RoomJoined(
                    roomId=room_id,
                    room=room,
                    onlineUserIds=self.presence.online_among(room.member_ids()),
                    messages=page.messages,
                    hasMore=page.hasMore,
                    lastSequence=last_sequence,
                ))

            await self.engine.backlog(
                room_id, conn.user_id, after_sequence=event.lastSequence, deliver=deliver
            )
        except BaseException:
            if first_join and room_id not in conn.rooms:
                self.membership.release(room_id)
                self.engine.forget_room(room_id)
            raise
        logger.info("[Coordinator] %s joined room %s", conn.user_id, room_id)

    async def _on_leave_room(self, conn: Connection, event: LeaveRoom) -> None:
        await self._leave(conn, event.roomId)
        conn.enqueue(LeftRoom(roomId=event.roomId, reason="left"))

    async def _leave(self, conn: Connection, room_id: str) -> bool:
        if room_id not in conn.rooms:
            return False
        self.registry.unsubscribe(conn, room_id)
        self._broadcast_to_subscribers(
            room_id,
            UserLeft(roomId=room_id, userId=conn.user_id, userName=conn.user_name),
            exclude_user_id=conn.user_id,
        )
        self.membership.release(room_id)
        self.engine.forget_room(room_id)
        await self.typing.stop_typing(room_id, conn.user_id)
        logger.info("[Coordinator] %s left room %s", conn.user_id, room_id)
        return True

    async def _on_send_message(self, conn: Connection, event: SendMessage) -> None:
        await self.engine.send(
            event.roomId,
            conn.user_id,
            conn.user_name,
            event.content,
            event.messageType,
            attachments=event.attachments,
            reply_to=event.replyTo,
            client_id=event.clientId,
            origin=conn,
        )
        await self.typing.stop_typing(event.roomId, conn.user_id)

    async def _on_typing_start(self, conn: Connection, event: TypingStart) -> None:
        await self.membership.require(conn.user_id, event.roomId, RoomAction.READ)
        await self.typing.start_typing(event.roomId, conn.user_id, conn.user_name)

    async def _on_typing_stop(self, conn: Connection, event: TypingStop) -> None:
        await self.membership.require(conn.user_id, event.roomId, RoomAction.READ)
        await self.typing.stop_typing(event.roomId, conn.user_id)

    async def _on_mark_delivered(self, conn: Connection, event: MarkDelivered) -> None:
        await self.engine.mark_delivered(event.roomId, conn.user_id, event.messageIds)

    async def _on_mark_read(self, conn: Connection, event: MarkRead) -> None:
        await self.engine.mark_read(event.roomId, conn.user_id, event.messageIds or None)

    async def _on_edit_message(self, conn: Connection, event: EditMessage) -> None:
        await self.engine.edit(
            event.roomId, conn.user_id, event.messageId, event.content, event.messageType
        )

    async def _on_delete_message(self, conn: Connection, event: DeleteMessage) -> None:
        await self.engine.delete(event.roomId, conn.user_id, event.messageId)

    async def _on_forward_message(self, conn: Connection, event: ForwardMessage) -> None:
        message = await self.engine.forward(
            conn.user_id, conn.user_name, event.fromRoomId, event.messageId, event.targetRoomId
        )
        conn.enqueue(MessageForwarded(targetRoomId=event.targetRoomId, messageId=message.id))

    async def _on_react_to_message(self, conn: Connection, event: ReactToMessage) -> None:
        await self.engine.react(event.roomId, conn.user_id, event.messageId, event.emoji)

    async def _on_fetch_history(self, conn: Connection, event: FetchHistory) -> None:
        page = await self.engine.history(
            event.roomId,
            conn.user_id,
            before_sequence=event.beforeSequence,
            after_sequence=event.afterSequence,
            limit=event.limit,
        )
        conn.enqueue(History(roomId=event.roomId, messages=page.messages, hasMore=page.hasMore))

    # ------------------------------------------------------------------
    # Membership changes
    # ------------------------------------------------------------------

    async def membership_changed(self, room_id: str) -> List[str]:
        """Drop the cached room and evict subscribers who lost access.

        Returns:
            Sorted user IDs whose connections were removed from the room.
        """
        self.membership.invalidate(room_id)
        evicted = set()
        for conn in self.registry.subscribers(room_id):
            decision = await self.membership.authorize(conn.user_id, room_id, RoomAction.READ)
            if decision in (AccessDecision.DENIED, AccessDecision.NOT_FOUND):
                await self._leave(conn, room_id)
                conn.enqueue(LeftRoom(roomId=room_id, reason="removed"))
                evicted.add(conn.user_id)
            elif decision == AccessDecision.UNAVAILABLE:
                logger.warning(
                    "[Coordinator] Store unavailable while re-checking %s in room %s; keeping it",
                    conn.user_id, room_id,
                )
        if evicted:
            logger.info("[Coordinator] Evicted %s from room %s", sorted(evicted), room_id)
        return sorted(evicted)

    # ------------------------------------------------------------------
    # Broadcast helpers
    # ------------------------------------------------------------------

    def _broadcast_to_subscribers(
        self, room_id: str, event: ServerEvent, exclude_user_id: Optional[str] = None
    ) -> None:
        for conn in self.registry.subscribers(room_id):
            if conn.user_id != exclude_user_id:
                conn.enqueue(event)

    async def _announce_presence(self, user_id: str, online: bool) -> None:
        try:
            peers = await self.store.peers_of(user_id)
        except StoreUnavailableError as e:
            logger.error("[Coordinator] Cannot load peers of %s: %s", user_id, e.message)
            peers = set()
        event = UserOnline(userId=user_id) if online else UserOffline(userId=user_id)
        for peer in peers:
            for conn in self.registry.connections_for(peer):
                conn.enqueue(event)
        count = OnlineUsersCount(count=self.presence.online_count())
        for conn in self.registry.all_connections():
            conn.enqueue(count)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Stop timers, writers, background tasks and dispatchers."""
        self.typing.close()
        self.presence.close()
        for conn in self.registry.all_connections():
            await conn.close()
        await self.tasks.close()
        await self.rooms.close()
        await self.users.close()
        logger.info("[Coordinator] Closed")


_coordinator: Optional[RoomSessionCoordinator] = None


def get_coordinator() -> Optional[RoomSessionCoordinator]:
    """Get the global coordinator instance."""
    return _coordinator


def set_coordinator(coordinator: Optional[RoomSessionCoordinator]) -> None:
    """Set the global coordinator instance."""
    global _coordinator
    _coordinator = coordinator
