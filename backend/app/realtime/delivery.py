"""Message delivery engine.

Takes a message from ``sending`` to ``read``:

    sending    the client holds a provisional ``clientId``
    sent       validated, sequenced, persisted and fanned out
    delivered  a recipient's connection wrote it, the recipient fetched it, or
               the client acknowledged it with ``mark_delivered``
    read       the recipient acknowledged it with ``mark_read``

Every mutation of a room runs on the room-keyed dispatcher. Fan-out is a
non-blocking enqueue onto each connection's ordered outbox performed inside
that serialized step, so all members observe ``new_message`` in sequence
order. Persistence is the only awaited step before ``sent``; if it fails the
send is rejected and the sequence number is not consumed.

Aggregate status shown to the sender:
    - direct rooms: delivered/read once the other participant has it
    - group, course and announcement rooms: delivered once any member has it;
      read receipts are reported per member through ``receipts``.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .connection import Connection
from .dispatcher import KeyedDispatcher
from .errors import AuthorizationError, NotFoundError, ValidationError
from .events import (
    MessageDeleted,
    MessageEdited,
    MessageReaction,
    MessagesRead,
    MessageSent,
    MessageStatus,
    NewMessage,
    RoomPurged,
    ServerEvent,
)
from .membership import RoomAction, RoomMembershipIndex
from .registry import ConnectionRegistry
from .schemas import (
    DELETED_MESSAGE_CONTENT,
    MEDIA_TYPES,
    ChatMessage,
    DeliveryStatus,
    ForwardedFrom,
    HistoryPage,
    MessageType,
    Reaction,
    ReceiptEntry,
    ReceiptReport,
    Room,
    RoomType,
)
from .store import RECEIPT_DELIVERED, RECEIPT_READ, Receipt, RoomStore

logger = logging.getLogger(__name__)

# Default number of messages returned when joining a room
DEFAULT_BACKLOG_SIZE = 50

# Maximum page size to prevent abuse
MAX_PAGE_SIZE = 100

# Maximum message length in characters
MAX_MESSAGE_LENGTH = 5000

# deliver(page, last_sequence)
PageCallback = Callable[[HistoryPage, int], None]


def aggregate_status(room: Room, message: ChatMessage) -> DeliveryStatus:
    """Delivery badge of *message* as the sender sees it."""
    if room.type == RoomType.DIRECT:
        others = [uid for uid in room.member_ids() if uid != message.senderId]
        if others and all(uid in message.readBy for uid in others):
            return DeliveryStatus.READ
        if others and all(uid in message.deliveredTo for uid in others):
            return DeliveryStatus.DELIVERED
        return DeliveryStatus.SENT
    if message.deliveredTo:
        return DeliveryStatus.DELIVERED
    return DeliveryStatus.SENT


@dataclass
class _Draft:
    sender_id: str
    sender_name: str
    content: str
    type: MessageType
    attachments: List[str] = field(default_factory=list)
    reply_to: Optional[str] = None
    forwarded_from: Optional[ForwardedFrom] = None
    client_id: Optional[str] = None


class MessageDeliveryEngine:
    """Sequences, persists and fans out messages and tracks their receipts."""

    def __init__(
        self,
        store: RoomStore,
        membership: RoomMembershipIndex,
        registry: ConnectionRegistry,
        dispatcher: KeyedDispatcher,
        backlog_size: int = DEFAULT_BACKLOG_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
        max_message_length: int = MAX_MESSAGE_LENGTH,
    ) -> None:
        self._store = store
        self._membership = membership
        self._registry = registry
        self._dispatcher = dispatcher
        self.backlog_size = backlog_size
        self.max_page_size = max_page_size
        self.max_message_length = max_message_length
        # room_id -> last accepted sequence, kept only while the room is retained
        self._sequences: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate_body(self, content: str, message_type: MessageType, attachments: Sequence[str]) -> str:
        """Check a message body before acceptance. Returns the stripped text."""
        if message_type == MessageType.SYSTEM:
            raise ValidationError("System messages cannot be sent by clients")
        if len(content) > self.max_message_length:
            raise ValidationError(f"Message cannot exceed {self.max_message_length} characters")
        text = content.strip()
        if not text and not (message_type in MEDIA_TYPES and attachments):
            raise ValidationError("Message content is required")
        return text

    @staticmethod
    def _check_announcement(room: Room, user_id: str, message_type: MessageType) -> None:
        if message_type != MessageType.ANNOUNCEMENT:
            return
        participant = room.participant(user_id)
        if participant is None or not participant.is_admin:
            raise AuthorizationError("Only admins can post announcements")

    async def _load(self, room_id: str, message_id: str) -> ChatMessage:
        message = await self._store.get_message(message_id)
        if message is None or message.roomId != room_id:
            raise NotFoundError(f"Message {message_id} not found in room {room_id}")
        return message

    def _broadcast(self, room: Room, event: ServerEvent, exclude_user_id: Optional[str] = None) -> int:
        sent = 0
        for conn in self._registry.audience(room.id, room.member_ids()):
            if exclude_user_id is not None and conn.user_id == exclude_user_id:
                continue
            if conn.enqueue(event):
                sent += 1
        return sent

    def _notify_sender(self, room: Room, message: ChatMessage, status: DeliveryStatus) -> None:
        event = MessageStatus(roomId=room.id, messageId=message.id, status=status)
        for conn in self._registry.connections_for(message.senderId):
            conn.enqueue(event)

    def _remember_sequence(self, room_id: str, sequence: int) -> None:
        if self._membership.references(room_id):
            self._sequences[room_id] = sequence
        else:
            self._sequences.pop(room_id, None)

    def forget_room(self, room_id: str) -> None:
        """Drop the cached sequence once no connection references the room."""
        if not self._membership.references(room_id):
            self._sequences.pop(room_id, None)

    def cached_sequences(self) -> int:
        return len(self._sequences)

    async def last_sequence(self, room_id: str) -> int:
        """Sequence of the newest accepted message (0 if none)."""
        if room_id in self._sequences:
            return self._sequences[room_id]
        return await self._store.last_sequence(room_id)

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send(
        self,
        room_id: str,
        sender_id: str,
        sender_name: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        attachments: Optional[Sequence[str]] = None,
        reply_to: Optional[str] = None,
        client_id: Optional[str] = None,
        forwarded_from: Optional[ForwardedFrom] = None,
        origin: Optional[Connection] = None,
    ) -> ChatMessage:
        """Validate, sequence, persist and fan out a message.

        The *origin* connection receives ``message_sent`` (with *client_id*)
        instead of ``new_message``.

        Raises:
            ValidationError: Bad body, type or attachments.
            AuthorizationError: The sender may not write to the room.
            NotFoundError: Unknown room or ``replyTo`` outside the room.
            StoreUnavailableError: Persistence failed; nothing was sent.
        """
        attachments = list(attachments or [])
        text = self._validate_body(content, message_type, attachments)
        room = await self._membership.require(sender_id, room_id, RoomAction.WRITE)
        self._check_announcement(room, sender_id, message_type)
        draft = _Draft(
            sender_id=sender_id,
            sender_name=sender_name,
            content=text,
            type=message_type,
            attachments=attachments,
            reply_to=reply_to,
            forwarded_from=forwarded_from,
            client_id=client_id,
        )
        return await self._dispatcher.submit(room_id, self._accept, room, draft, origin)

    async def _accept(self, room: Room, draft: _Draft, origin: Optional[Connection]) -> ChatMessage:
        if draft.reply_to is not None:
            await self._load(room.id, draft.reply_to)
        sequence = await self.last_sequence(room.id) + 1
        message = ChatMessage(
            roomId=room.id,
            sequence=sequence,
            senderId=draft.sender_id,
            senderName=draft.sender_name,
            content=draft.content,
            type=draft.type,
            attachments=draft.attachments,
            replyTo=draft.reply_to,
            forwardedFrom=draft.forwarded_from,
        )
        await self._store.append_message(message)
        self._remember_sequence(room.id, sequence)
        logger.info(
            "[Engine] Accepted message %s seq=%d in room %s from %s",
            message.id, sequence, room.id, draft.sender_id,
        )

        event = NewMessage(roomId=room.id, message=message)
        recipients = 0
        for conn in self._registry.audience(room.id, room.member_ids()):
            if conn is origin:
                conn.enqueue(MessageSent(roomId=room.id, clientId=draft.client_id, message=message))
            elif conn.enqueue(event):
                recipients += 1
        logger.debug("[Engine] Fanned out message %s to %d connections", message.id, recipients)
        return message

    async def forward(
        self,
        user_id: str,
        user_name: str,
        from_room_id: str,
        message_id: str,
        target_room_id: str,
    ) -> ChatMessage:
        """Copy a readable message into a writable room, marking its origin."""
        source = await self._membership.require(user_id, from_room_id, RoomAction.READ)
        original = await self._load(from_room_id, message_id)
        if original.isDeleted:
            raise ValidationError("Deleted messages cannot be forwarded")
        return await self.send(
            target_room_id,
            user_id,
            user_name,
            original.content,
            original.type,
            attachments=original.attachments,
            forwarded_from=ForwardedFrom(
                messageId=original.id, roomId=source.id, roomName=source.name
            ),
        )

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    async def mark_delivered(self, room_id: str, user_id: str, message_ids: Sequence[str]) -> List[str]:
        """Record that *user_id* received the messages. Returns newly delivered IDs."""
        await self._membership.require(user_id, room_id, RoomAction.READ)
        return await self.record_delivered(room_id, user_id, message_ids)

    async def record_delivered(self, room_id: str, user_id: str, message_ids: Sequence[str]) -> List[str]:
        """Record deliveries observed by the server itself (socket writes)."""
        return await self._dispatcher.submit(room_id, self._record, room_id, user_id, list(message_ids), False)

    async def mark_read(
        self, room_id: str, user_id: str, message_ids: Optional[Sequence[str]] = None
    ) -> List[str]:
        """Record reads. No IDs means every unread message of the room.

        Idempotent: already-read messages are left untouched. Returns newly read IDs.
        """
        await self._membership.require(user_id, room_id, RoomAction.READ)
        ids = list(message_ids) if message_ids else None
        return await self._dispatcher.submit(room_id, self._record, room_id, user_id, ids, True)

    async def _record(
        self, room_id: str, user_id: str, message_ids: Optional[List[str]], read: bool
    ) -> List[str]:
        room = await self._membership.get_room(room_id)
        if message_ids is None:
            messages = await self._store.unread_messages(room_id, user_id)
        else:
            messages = await self._store.get_messages(room_id, message_ids)
        return await self._apply_receipts(room, user_id, messages, read)

    async def _apply_receipts(
        self, room: Room, user_id: str, messages: List[ChatMessage], read: bool
    ) -> List[str]:
        at = time.time()
        before = {m.id: aggregate_status(room, m) for m in messages}
        receipts: List[Receipt] = []
        changed: List[ChatMessage] = []
        for message in messages:
            had_delivery = user_id in message.deliveredTo
            if read:
                if not message.record_read(user_id, at):
                    continue
                if not had_delivery:
                    receipts.append((message.id, user_id, RECEIPT_DELIVERED, at))
                receipts.append((message.id, user_id, RECEIPT_READ, at))
            else:
                if not message.record_delivery(user_id, at):
                    continue
                receipts.append((message.id, user_id, RECEIPT_DELIVERED, at))
            changed.append(message)
        if not changed:
            return []

        await self._store.save_receipts(receipts)
        for message in changed:
            status = aggregate_status(room, message)
            if status != before[message.id]:
                self._notify_sender(room, message, status)
        changed_ids = [m.id for m in changed]
        if read:
            self._broadcast(
                room,
                MessagesRead(roomId=room.id, userId=user_id, messageIds=changed_ids, readAt=at),
                exclude_user_id=user_id,
            )
        logger.debug(
            "[Engine] %s %d messages in room %s for %s",
            "Read" if read else "Delivered", len(changed_ids), room.id, user_id,
        )
        return changed_ids

    async def receipts(self, room_id: str, user_id: str, message_id: str) -> ReceiptReport:
        """Per-member receipts and aggregate status of one message."""
        room = await self._membership.require(user_id, room_id, RoomAction.READ)
        message = await self._load(room_id, message_id)
        entries = [
            ReceiptEntry(
                userId=member,
                deliveredAt=message.deliveredTo.get(member),
                readAt=message.readBy.get(member),
            )
            for member in room.member_ids()
            if member != message.senderId
        ]
        return ReceiptReport(
            roomId=room_id,
            messageId=message_id,
            status=aggregate_status(room, message),
            receipts=entries,
        )

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def history(
        self,
        room_id: str,
        user_id: str,
        before_sequence: Optional[int] = None,
        after_sequence: Optional[int] = None,
        limit: Optional[int] = None,
        deliver: Optional[PageCallback] = None,
    ) -> HistoryPage:
        """Page through a room's messages in sequence order.

        With *after_sequence* the page starts right after it (resync); otherwise
        it holds the newest messages below *before_sequence* (or the newest
        overall). Returned messages are recorded as delivered to *user_id*.

        *deliver* is called with the page and the room's last sequence inside
        the room's serialized step, so nothing accepted afterwards can reach a
        connection ahead of the page.
        """
        await self._membership.require(user_id, room_id, RoomAction.READ)
        limit = max(1, min(limit or self.backlog_size, self.max_page_size))
        return await self._dispatcher.submit(
            room_id, self._page, room_id, user_id, before_sequence, after_sequence, limit, deliver
        )

    async def backlog(
        self,
        room_id: str,
        user_id: str,
        after_sequence: Optional[int] = None,
        deliver: Optional[PageCallback] = None,
    ) -> HistoryPage:
        """Messages handed to a connection joining the room."""
        return await self.history(
            room_id, user_id, after_sequence=after_sequence, limit=self.backlog_size, deliver=deliver
        )

    async def _page(
        self,
        room_id: str,
        user_id: str,
        before_sequence: Optional[int],
        after_sequence: Optional[int],
        limit: int,
        deliver: Optional[PageCallback],
    ) -> HistoryPage:
        if after_sequence is not None:
            rows = await self._store.messages_after(room_id, after_sequence, limit + 1)
            has_more = len(rows) > limit
            messages = rows[:limit]
        else:
            rows = await self._store.messages_before(room_id, before_sequence, limit + 1)
            has_more = len(rows) > limit
            messages = rows[-limit:]
        if messages:
            room = await self._membership.get_room(room_id)
            await self._apply_receipts(room, user_id, messages, read=False)
        page = HistoryPage(roomId=room_id, messages=messages, hasMore=has_more)
        if deliver is not None:
            deliver(page, await self.last_sequence(room_id))
        return page

    # ------------------------------------------------------------------
    # Edit, delete, react, purge
    # ------------------------------------------------------------------

    async def edit(
        self,
        room_id: str,
        user_id: str,
        message_id: str,
        content: str,
        message_type: Optional[MessageType] = None,
    ) -> ChatMessage:
        """Replace the body of the sender's own message.

        Sequence and receipts are unchanged; ``editedAt`` is stamped.
        """
        room = await self._membership.require(user_id, room_id, RoomAction.WRITE)
        return await self._dispatcher.submit(
            room_id, self._edit, room, user_id, message_id, content, message_type
        )

    async def _edit(
        self,
        room: Room,
        user_id: str,
        message_id: str,
        content: str,
        message_type: Optional[MessageType],
    ) -> ChatMessage:
        message = await self._load(room.id, message_id)
        if message.senderId != user_id:
            raise AuthorizationError("Only the sender can edit a message")
        if message.isDeleted:
            raise ValidationError("Deleted messages cannot be edited")
        new_type = message_type or message.type
        text = self._validate_body(content, new_type, message.attachments)
        self._check_announcement(room, user_id, new_type)

        message.content = text
        message.type = new_type
        message.editedAt = time.time()
        await self._store.update_message(message)
        logger.info("[Engine] Message %s edited in room %s", message.id, room.id)
        self._broadcast(room, MessageEdited(
            roomId=room.id,
            messageId=message.id,
            content=message.content,
            messageType=message.type,
            editedAt=message.editedAt,
        ))
        return message

    async def delete(self, room_id: str, user_id: str, message_id: str) -> ChatMessage:
        """Soft-delete the sender's own message for everyone. Idempotent."""
        room = await self._membership.require(user_id, room_id, RoomAction.WRITE)
        return await self._dispatcher.submit(room_id, self._delete, room, user_id, message_id)

    async def _delete(self, room: Room, user_id: str, message_id: str) -> ChatMessage:
        message = await self._load(room.id, message_id)
        if message.senderId != user_id:
            raise AuthorizationError("Only the sender can delete a message")
        if message.isDeleted:
            return message
        message.isDeleted = True
        message.deletedAt = time.time()
        message.content = DELETED_MESSAGE_CONTENT
        message.attachments = []
        await self._store.update_message(message)
        logger.info("[Engine] Message %s deleted in room %s", message.id, room.id)
        self._broadcast(room, MessageDeleted(roomId=room.id, messageId=message.id, deletedBy=user_id))
        return message

    async def react(self, room_id: str, user_id: str, message_id: str, emoji: str) -> List[Reaction]:
        """Toggle *emoji* by *user_id* on a message. Returns the full reaction list."""
        room = await self._membership.require(user_id, room_id, RoomAction.READ)
        return await self._dispatcher.submit(room_id, self._react, room, user_id, message_id, emoji)

    async def _react(self, room: Room, user_id: str, message_id: str, emoji: str) -> List[Reaction]:
        message = await self._load(room.id, message_id)
        if message.isDeleted:
            raise ValidationError("Cannot react to a deleted message")
        reactions = await self._store.toggle_reaction(message.id, user_id, emoji, time.time())
        self._broadcast(room, MessageReaction(roomId=room.id, messageId=message.id, reactions=reactions))
        return reactions

    async def purge(self, room_id: str, user_id: str) -> int:
        """Remove every message and receipt of the room. Idempotent.

        The room's sequence counter survives, so positions are never reused.
        """
        room = await self._membership.require(user_id, room_id, RoomAction.MODERATE)
        return await self._dispatcher.submit(room_id, self._purge, room, user_id)

    async def _purge(self, room: Room, user_id: str) -> int:
        removed = await self._store.purge_room(room.id)
        logger.info("[Engine] Room %s purged by %s (%d messages)", room.id, user_id, removed)
        self._broadcast(room, RoomPurged(roomId=room.id))
        return removed
