"""WebSocket event contract.

Frames are JSON objects tagged by ``type``. Inbound frames are validated
against the ``ClientEvent`` discriminated union; outbound frames are the
``ServerEvent`` models dumped to JSON.

Client → server:
    - join_room, leave_room
    - send_message, edit_message, delete_message, forward_message
    - react_to_message
    - typing_start, typing_stop
    - mark_delivered, mark_read
    - fetch_history

Server → client:
    - connected, room_joined, left_room
    - new_message, message_sent, message_status, messages_read
    - message_edited, message_deleted, message_reaction, message_forwarded
    - history, room_purged
    - user_joined, user_left
    - user_typing, user_stopped_typing
    - user_online, user_offline, online_users_count
    - error
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from .schemas import ChatMessage, DeliveryStatus, MessageType, Reaction, Room

RoomId = Annotated[str, Field(min_length=1, max_length=128)]
MessageId = Annotated[str, Field(min_length=1, max_length=128)]


# =============================================================================
# Client → server
# =============================================================================


class JoinRoom(BaseModel):
    type: Literal["join_room"]
    roomId: RoomId
    lastSequence: Optional[int] = Field(default=None, ge=0, description="Last sequence seen, for resync")


class LeaveRoom(BaseModel):
    type: Literal["leave_room"]
    roomId: RoomId


class SendMessage(BaseModel):
    type: Literal["send_message"]
    roomId: RoomId
    content: str = ""
    messageType: MessageType = MessageType.TEXT
    replyTo: Optional[MessageId] = None
    attachments: List[str] = Field(default_factory=list)
    clientId: Optional[str] = Field(default=None, max_length=128, description="Provisional client-side ID")


class TypingStart(BaseModel):
    type: Literal["typing_start"]
    roomId: RoomId


class TypingStop(BaseModel):
    type: Literal["typing_stop"]
    roomId: RoomId


class MarkDelivered(BaseModel):
    type: Literal["mark_delivered"]
    roomId: RoomId
    messageIds: List[MessageId] = Field(..., min_length=1)


class MarkRead(BaseModel):
    """Read acknowledgement. An empty ``messageIds`` marks everything unread."""
    type: Literal["mark_read"]
    roomId: RoomId
    messageIds: List[MessageId] = Field(default_factory=list)


class EditMessage(BaseModel):
    type: Literal["edit_message"]
    roomId: RoomId
    messageId: MessageId
    content: str
    messageType: Optional[MessageType] = None


class DeleteMessage(BaseModel):
    type: Literal["delete_message"]
    roomId: RoomId
    messageId: MessageId


class ForwardMessage(BaseModel):
    type: Literal["forward_message"]
    fromRoomId: RoomId
    messageId: MessageId
    targetRoomId: RoomId


class ReactToMessage(BaseModel):
    type: Literal["react_to_message"]
    roomId: RoomId
    messageId: MessageId
    emoji: str = Field(..., min_length=1, max_length=32)


class FetchHistory(BaseModel):
    type: Literal["fetch_history"]
    roomId: RoomId
    beforeSequence: Optional[int] = Field(default=None, ge=1)
    afterSequence: Optional[int] = Field(default=None, ge=0)
    limit: Optional[int] = Field(default=None, ge=1)


ClientEvent = Annotated[
    Union[
        JoinRoom,
        LeaveRoom,
        SendMessage,
        TypingStart,
        TypingStop,
        MarkDelivered,
        MarkRead,
        EditMessage,
        DeleteMessage,
        ForwardMessage,
        ReactToMessage,
        FetchHistory,
    ],
    Field(discriminator="type"),
]

client_event_adapter = TypeAdapter(ClientEvent)


def parse_client_event(data: Any) -> ClientEvent:
    """Validate a decoded frame. Raises ``pydantic.ValidationError``."""
    return client_event_adapter.validate_python(data)


# =============================================================================
# Server → client
# =============================================================================


class ServerEvent(BaseModel):
    """Base class of every outbound frame."""

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class Connected(ServerEvent):
    type: Literal["connected"] = "connected"
    connectionId: str
    userId: str
    userName: str


class RoomJoined(ServerEvent):
    type: Literal["room_joined"] = "room_joined"
    roomId: str
    room: Room
    onlineUserIds: List[str]
    messages: List[ChatMessage]
    hasMore: bool
    lastSequence: int


class LeftRoom(ServerEvent):
    type: Literal["left_room"] = "left_room"
    roomId: str
    reason: Literal["left", "removed"] = "left"


class NewMessage(ServerEvent):
    type: Literal["new_message"] = "new_message"
    roomId: str
    message: ChatMessage


class MessageSent(ServerEvent):
    type: Literal["message_sent"] = "message_sent"
    roomId: str
    clientId: Optional[str] = None
    message: ChatMessage


class MessageStatus(ServerEvent):
    type: Literal["message_status"] = "message_status"
    roomId: str
    messageId: str
    status: DeliveryStatus


class MessagesRead(ServerEvent):
    type: Literal["messages_read"] = "messages_read"
    roomId: str
    userId: str
    messageIds: List[str]
    readAt: float


class MessageEdited(ServerEvent):
    type: Literal["message_edited"] = "message_edited"
    roomId: str
    messageId: str
    content: str
    messageType: MessageType
    editedAt: float


class MessageDeleted(ServerEvent):
    type: Literal["message_deleted"] = "message_deleted"
    roomId: str
    messageId: str
    deletedBy: str


class MessageReaction(ServerEvent):
    type: Literal["message_reaction"] = "message_reaction"
    roomId: str
    messageId: str
    reactions: List[Reaction]


class MessageForwarded(ServerEvent):
    type: Literal["message_forwarded"] = "message_forwarded"
    targetRoomId: str
    messageId: str


class History(ServerEvent):
    type: Literal["history"] = "history"
    roomId: str
    messages: List[ChatMessage]
    hasMore: bool


class UserTyping(ServerEvent):
    type: Literal["user_typing"] = "user_typing"
    roomId: str
    userId: str
    userName: str


class UserStoppedTyping(ServerEvent):
    type: Literal["user_stopped_typing"] = "user_stopped_typing"
    roomId: str
    userId: str
    userName: str


class UserJoined(ServerEvent):
    type: Literal["user_joined"] = "user_joined"
    roomId: str
    userId: str
    userName: str


class UserLeft(ServerEvent):
    type: Literal["user_left"] = "user_left"
    roomId: str
    userId: str
    userName: str


class UserOnline(ServerEvent):
    type: Literal["user_online"] = "user_online"
    userId: str


class UserOffline(ServerEvent):
    type: Literal["user_offline"] = "user_offline"
    userId: str


class OnlineUsersCount(ServerEvent):
    type: Literal["online_users_count"] = "online_users_count"
    count: int


class RoomPurged(ServerEvent):
    type: Literal["room_purged"] = "room_purged"
    roomId: str


class ErrorEvent(ServerEvent):
    type: Literal["error"] = "error"
    code: str
    error: str
    event: Optional[str] = Field(default=None, description="Type of the inbound event that failed")
