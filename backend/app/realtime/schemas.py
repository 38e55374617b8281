"""Domain models for rooms, messages and receipts.

Timestamps are Unix epoch seconds as floats, like the ``ts`` field of every
chat payload.
"""
import time
import uuid
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

# Placeholder content of a message deleted for everyone
DELETED_MESSAGE_CONTENT = "This message was deleted"


class RoomType(str, Enum):
    """Kind of chat room.

    Attributes:
        DIRECT: One-to-one conversation with exactly two fixed participants.
        GROUP: Ad-hoc group chat.
        COURSE: Discussion room attached to a course.
        ANNOUNCEMENT: Readable by everyone, writable by admins only.
    """
    DIRECT = "direct"
    GROUP = "group"
    COURSE = "course"
    ANNOUNCEMENT = "announcement"


class ParticipantRole(str, Enum):
    MEMBER = "member"
    ADMIN = "admin"
    OWNER = "owner"


class MessageType(str, Enum):
    """Type of chat message.

    ``system`` messages are produced by the server only; ``announcement``
    requires an admin or owner.
    """
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    VIDEO = "video"
    AUDIO = "audio"
    SYSTEM = "system"
    ANNOUNCEMENT = "announcement"


# Message types that may carry attachments instead of text
MEDIA_TYPES = frozenset({MessageType.IMAGE, MessageType.FILE, MessageType.VIDEO, MessageType.AUDIO})


class DeliveryStatus(str, Enum):
    """Delivery state of a message from the sender's perspective."""
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class Participant(BaseModel):
    """Member of a room.

    Attributes:
        userId: Identifier of the participating user.
        role: Member, admin or owner.
        joinedAt: When the user joined the room.
    """
    userId: str = Field(..., description="Participant user ID")
    role: ParticipantRole = Field(default=ParticipantRole.MEMBER, description="Role in the room")
    joinedAt: float = Field(default_factory=time.time, description="Join time in seconds since epoch")

    @property
    def is_admin(self) -> bool:
        return self.role in (ParticipantRole.ADMIN, ParticipantRole.OWNER)


class Room(BaseModel):
    """Chat room with its ordered participant list.

    A direct room always has exactly two distinct participants.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Room ID")
    name: str = Field(..., max_length=100, description="Room display name")
    type: RoomType = Field(..., description="Room type")
    participants: List[Participant] = Field(default_factory=list, description="Participants in join order")
    createdBy: Optional[str] = Field(default=None, description="User ID of the creator")
    createdAt: float = Field(default_factory=time.time, description="Creation time in seconds since epoch")

    @model_validator(mode="after")
    def _check_direct_participants(self) -> "Room":
        if self.type == RoomType.DIRECT:
            user_ids = {p.userId for p in self.participants}
            if len(self.participants) != 2 or len(user_ids) != 2:
                raise ValueError("A direct room must have exactly two distinct participants")
        return self

    def member_ids(self) -> List[str]:
        """Participant user IDs in join order."""
        return [p.userId for p in self.participants]

    def participant(self, user_id: str) -> Optional[Participant]:
        for p in self.participants:
            if p.userId == user_id:
                return p
        return None


class ForwardedFrom(BaseModel):
    """Origin of a forwarded message."""
    messageId: str
    roomId: str
    roomName: str


class Reaction(BaseModel):
    userId: str
    emoji: str
    ts: float = Field(default_factory=time.time)


class ChatMessage(BaseModel):
    """Complete chat message with delivery progress.

    ``deliveredTo`` and ``readBy`` map user IDs to the time the event was
    recorded. Both only grow, a read implies a delivery, and the sender never
    appears in either map.

    Attributes:
        id: Unique message identifier (auto-generated UUID).
        roomId: Room this message belongs to.
        sequence: Per-room position assigned at acceptance.
        senderId: Sender's user ID.
        senderName: Sender's display name.
        content: Message text content.
        type: Message type.
        attachments: URIs produced by the file service.
        replyTo: ID of the message this one answers.
        forwardedFrom: Origin of a forwarded copy.
        ts: Acceptance time (seconds since epoch).
    """
    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique message ID"
    )
    roomId: str = Field(..., description="Room ID this message belongs to")
    sequence: int = Field(..., ge=1, description="Per-room sequence number")
    senderId: str = Field(..., description="User ID of the sender")
    senderName: str = Field(default="", description="Display name of the sender")
    content: str = Field(..., description="Message content")
    type: MessageType = Field(default=MessageType.TEXT, description="Message type")
    attachments: List[str] = Field(default_factory=list, description="Attachment URIs")
    replyTo: Optional[str] = Field(default=None, description="ID of the message replied to")
    forwardedFrom: Optional[ForwardedFrom] = Field(default=None, description="Forwarding origin")
    ts: float = Field(
        default_factory=time.time,
        description="Timestamp in seconds since epoch"
    )
    editedAt: Optional[float] = None
    isDeleted: bool = False
    deletedAt: Optional[float] = None
    reactions: List[Reaction] = Field(default_factory=list)
    deliveredTo: Dict[str, float] = Field(default_factory=dict)
    readBy: Dict[str, float] = Field(default_factory=dict)

    def record_delivery(self, user_id: str, at: Optional[float] = None) -> bool:
        """Mark the message delivered to *user_id*. Returns True if it changed."""
        if user_id == self.senderId or user_id in self.deliveredTo:
            return False
        self.deliveredTo[user_id] = at if at is not None else time.time()
        return True

    def record_read(self, user_id: str, at: Optional[float] = None) -> bool:
        """Mark the message read by *user_id*, recording a delivery if missing.

        Returns True if the read receipt is new.
        """
        if user_id == self.senderId or user_id in self.readBy:
            return False
        at = at if at is not None else time.time()
        self.deliveredTo.setdefault(user_id, at)
        self.readBy[user_id] = at
        return True


class HistoryPage(BaseModel):
    """Slice of a room's messages in sequence order."""
    roomId: str
    messages: List[ChatMessage] = Field(default_factory=list)
    hasMore: bool = False


class ReceiptEntry(BaseModel):
    userId: str
    deliveredAt: Optional[float] = None
    readAt: Optional[float] = None


class ReceiptReport(BaseModel):
    """Per-member receipts and aggregate status of one message."""
    roomId: str
    messageId: str
    status: DeliveryStatus
    receipts: List[ReceiptEntry] = Field(default_factory=list)
