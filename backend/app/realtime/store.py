"""Durable storage of rooms, participants, messages and receipts.

The messaging core only sees the ``RoomStore`` interface. ``DuckDBRoomStore``
is the bundled implementation: an embedded DuckDB database behind a singleton,
so the service runs standalone.

Database Schema:
    rooms:          id, name, type, created_by, created_at
    participants:   room_id, user_id, role, joined_at, position (join order)
    messages:       id, room_id, seq (unique per room), sender, content, type,
                    attachments (JSON), reply_to, forwarded_*, ts, edited_at,
                    is_deleted, deleted_at
    receipts:       message_id, user_id, kind ('delivered' | 'read'), recorded_at
    reactions:      message_id, user_id, emoji, ts
    room_sequences: room_id, last_seq (kept across purges)

Thread Safety:
    The DuckDB connection is NOT thread-safe. Every operation runs in a worker
    thread (``asyncio.to_thread``) while holding one lock, so the event loop
    never blocks on I/O and the connection is never used concurrently.

Usage:
    store = DuckDBRoomStore.get_instance(db_path="realtime.duckdb")
    room = await store.create_room("Physics 101", RoomType.COURSE, [("alice", ParticipantRole.OWNER)])
    await store.append_message(message)
"""
import asyncio
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

import duckdb
from pydantic import ValidationError as SchemaValidationError

from .errors import NotFoundError, StoreUnavailableError, ValidationError
from .schemas import (
    ChatMessage,
    ForwardedFrom,
    MessageType,
    Participant,
    ParticipantRole,
    Reaction,
    Room,
    RoomType,
)

logger = logging.getLogger(__name__)

RECEIPT_DELIVERED = "delivered"
RECEIPT_READ = "read"

# (message_id, user_id, kind, recorded_at)
Receipt = Tuple[str, str, str, float]


class RoomStore(ABC):
    """Interface of the durable store used by the messaging core."""

    # Rooms and membership

    @abstractmethod
    async def create_room(
        self,
        name: str,
        room_type: RoomType,
        members: Iterable[Tuple[str, ParticipantRole]],
        created_by: Optional[str] = None,
        room_id: Optional[str] = None,
    ) -> Room: ...

    @abstractmethod
    async def create_direct_room(self, user_a: str, user_b: str) -> Room:
        """Return the direct room of the two users, creating it if needed."""

    @abstractmethod
    async def add_participant(
        self, room_id: str, user_id: str, role: ParticipantRole = ParticipantRole.MEMBER
    ) -> Room: ...

    @abstractmethod
    async def remove_participant(self, room_id: str, user_id: str) -> Room: ...

    @abstractmethod
    async def get_room(self, room_id: str) -> Optional[Room]: ...

    @abstractmethod
    async def peers_of(self, user_id: str) -> Set[str]:
        """Users sharing at least one room with *user_id*."""

    # Messages

    @abstractmethod
    async def append_message(self, message: ChatMessage) -> None:
        """Persist a newly accepted message and advance the room's sequence."""

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[ChatMessage]: ...

    @abstractmethod
    async def get_messages(self, room_id: str, message_ids: Sequence[str]) -> List[ChatMessage]: ...

    @abstractmethod
    async def update_message(self, message: ChatMessage) -> None:
        """Persist content, type, edit and deletion fields of *message*."""

    @abstractmethod
    async def messages_after(self, room_id: str, after_sequence: int, limit: int) -> List[ChatMessage]: ...

    @abstractmethod
    async def messages_before(
        self, room_id: str, before_sequence: Optional[int], limit: int
    ) -> List[ChatMessage]:
        """The newest *limit* messages below *before_sequence*, in sequence order."""

    @abstractmethod
    async def last_sequence(self, room_id: str) -> int: ...

    @abstractmethod
    async def unread_messages(self, room_id: str, user_id: str) -> List[ChatMessage]: ...

    # Receipts, reactions, purge

    @abstractmethod
    async def save_receipts(self, receipts: Sequence[Receipt]) -> None:
        """Insert receipts, ignoring ones already recorded."""

    @abstractmethod
    async def toggle_reaction(self, message_id: str, user_id: str, emoji: str, at: float) -> List[Reaction]: ...

    @abstractmethod
    async def purge_room(self, room_id: str) -> int:
        """Delete every message of the room. Returns the number removed."""

    async def close(self) -> None:
        return None


_MESSAGE_COLUMNS = (
    "id, room_id, seq, sender_id, sender_name, content, type, attachments, reply_to, "
    "forwarded_message_id, forwarded_room_id, forwarded_room_name, ts, edited_at, "
    "is_deleted, deleted_at"
)


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class DuckDBRoomStore(RoomStore):
    """Singleton DuckDB-backed room store.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["DuckDBRoomStore"] = None
    _db_path: str = "realtime.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Open the database and create the schema if needed.

        Args:
            db_path: Path to DuckDB file, or ":memory:". Defaults to "realtime.duckdb".
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()
        with self._guard("initialize"):
            self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "DuckDBRoomStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the singleton's connection and clear it. Used by tests."""
        if cls._instance is not None:
            cls._instance._close()
            cls._instance = None

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    async def close(self) -> None:
        await asyncio.to_thread(self._close)

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except duckdb.Error as e:
            logger.error("[Store] %s failed: %s", operation, e)
            raise StoreUnavailableError(f"Message store failed during {operation}") from e
        except SchemaValidationError as e:
            # A stored row no longer satisfies the domain models
            logger.error("[Store] %s read an invalid row: %s", operation, e)
            raise StoreUnavailableError(f"Message store returned invalid data during {operation}") from e

    @contextmanager
    def _transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        conn = self._get_connection()
        conn.begin()
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        else:
            conn.commit()

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        with self._lock, self._guard(fn.__name__.lstrip("_")):
            return fn(*args)

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(self._call, fn, *args)

    def _initialize_db(self) -> None:
        """Create tables if they don't exist. Safe to call multiple times."""
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS rooms (
                id VARCHAR PRIMARY KEY,
                name VARCHAR NOT NULL,
                type VARCHAR NOT NULL,
                created_by VARCHAR,
                created_at DOUBLE NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS participants (
                room_id VARCHAR NOT NULL,
                user_id VARCHAR NOT NULL,
                role VARCHAR NOT NULL,
                joined_at DOUBLE NOT NULL,
                position INTEGER NOT NULL,
                PRIMARY KEY (room_id, user_id)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id VARCHAR PRIMARY KEY,
                room_id VARCHAR NOT NULL,
                seq BIGINT NOT NULL,
                sender_id VARCHAR NOT NULL,
                sender_name VARCHAR NOT NULL,
                content VARCHAR NOT NULL,
                type VARCHAR NOT NULL,
                attachments VARCHAR NOT NULL,
                reply_to VARCHAR,
                forwarded_message_id VARCHAR,
                forwarded_room_id VARCHAR,
                forwarded_room_name VARCHAR,
                ts DOUBLE NOT NULL,
                edited_at DOUBLE,
                is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
                deleted_at DOUBLE,
                UNIQUE (room_id, seq)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS receipts (
                message_id VARCHAR NOT NULL,
                user_id VARCHAR NOT NULL,
                kind VARCHAR NOT NULL,
                recorded_at DOUBLE NOT NULL,
                PRIMARY KEY (message_id, user_id, kind)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS reactions (
                message_id VARCHAR NOT NULL,
                user_id VARCHAR NOT NULL,
                emoji VARCHAR NOT NULL,
                ts DOUBLE NOT NULL,
                PRIMARY KEY (message_id, user_id, emoji)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS room_sequences (
                room_id VARCHAR PRIMARY KEY,
                last_seq BIGINT NOT NULL
            )
        """)

    # ------------------------------------------------------------------
    # Rooms and membership
    # ------------------------------------------------------------------

    async def create_room(
        self,
        name: str,
        room_type: RoomType,
        members: Iterable[Tuple[str, ParticipantRole]],
        created_by: Optional[str] = None,
        room_id: Optional[str] = None,
    ) -> Room:
        now = time.time()
        fields: Dict[str, Any] = {
            "name": name,
            "type": room_type,
            "participants": [
                Participant(userId=user_id, role=role, joinedAt=now) for user_id, role in members
            ],
            "createdBy": created_by,
            "createdAt": now,
        }
        if room_id:
            fields["id"] = room_id
        try:
            room = Room(**fields)
        except SchemaValidationError as e:
            raise ValidationError(f"Invalid room: {e.errors()[0]['msg']}") from e
        await self._run(self._insert_room, room)
        logger.info("[Store] Created %s room %s (%d participants)", room.type.value, room.id, len(room.participants))
        return room

    def _insert_room(self, room: Room) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO rooms (id, name, type, created_by, created_at) VALUES (?, ?, ?, ?, ?)",
                [room.id, room.name, room.type.value, room.createdBy, room.createdAt],
            )
            for position, p in enumerate(room.participants, start=1):
                conn.execute(
                    "INSERT INTO participants (room_id, user_id, role, joined_at, position) "
                    "VALUES (?, ?, ?, ?, ?)",
                    [room.id, p.userId, p.role.value, p.joinedAt, position],
                )

    async def create_direct_room(self, user_a: str, user_b: str) -> Room:
        if user_a == user_b:
            raise ValidationError("A direct room needs two different users")
        existing_id = await self._run(self._find_direct_room, user_a, user_b)
        if existing_id is not None:
            room = await self.get_room(existing_id)
            if room is not None:
                return room
        return await self.create_room(
            "Direct Chat",
            RoomType.DIRECT,
            [(user_a, ParticipantRole.MEMBER), (user_b, ParticipantRole.MEMBER)],
            created_by=user_a,
        )

    def _find_direct_room(self, user_a: str, user_b: str) -> Optional[str]:
        row = self._get_connection().execute(
            """
            SELECT r.id FROM rooms r
            WHERE r.type = 'direct'
              AND EXISTS (SELECT 1 FROM participants p WHERE p.room_id = r.id AND p.user_id = ?)
              AND EXISTS (SELECT 1 FROM participants p WHERE p.room_id = r.id AND p.user_id = ?)
            LIMIT 1
            """,
            [user_a, user_b],
        ).fetchone()
        return row[0] if row else None

    async def add_participant(
        self, room_id: str, user_id: str, role: ParticipantRole = ParticipantRole.MEMBER
    ) -> Room:
        room = await self._require_room(room_id)
        if room.type == RoomType.DIRECT:
            raise ValidationError("Direct room membership cannot change")
        if room.participant(user_id) is not None:
            raise ValidationError(f"User {user_id} is already a participant")
        await self._run(self._insert_participant, room_id, user_id, role, time.time())
        return await self._require_room(room_id)

    def _insert_participant(self, room_id: str, user_id: str, role: ParticipantRole, joined_at: float) -> None:
        conn = self._get_connection()
        (position,) = conn.execute(
            "SELECT COALESCE(MAX(position), 0) + 1 FROM participants WHERE room_id = ?",
            [room_id],
        ).fetchone()
        conn.execute(
            "INSERT INTO participants (room_id, user_id, role, joined_at, position) VALUES (?, ?, ?, ?, ?)",
            [room_id, user_id, role.value, joined_at, position],
        )

    async def remove_participant(self, room_id: str, user_id: str) -> Room:
        room = await self._require_room(room_id)
        if room.type == RoomType.DIRECT:
            raise ValidationError("Direct room membership cannot change")
        await self._run(self._delete_participant, room_id, user_id)
        return await self._require_room(room_id)

    def _delete_participant(self, room_id: str, user_id: str) -> None:
        self._get_connection().execute(
            "DELETE FROM participants WHERE room_id = ? AND user_id = ?", [room_id, user_id]
        )

    async def _require_room(self, room_id: str) -> Room:
        room = await self.get_room(room_id)
        if room is None:
            raise NotFoundError(f"Room {room_id} not found")
        return room

    async def get_room(self, room_id: str) -> Optional[Room]:
        return await self._run(self._get_room, room_id)

    def _get_room(self, room_id: str) -> Optional[Room]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT id, name, type, created_by, created_at FROM rooms WHERE id = ?", [room_id]
        ).fetchone()
        if row is None:
            return None
        participants = conn.execute(
            "SELECT user_id, role, joined_at FROM participants WHERE room_id = ? ORDER BY position",
            [room_id],
        ).fetchall()
        return Room(
            id=row[0],
            name=row[1],
            type=RoomType(row[2]),
            createdBy=row[3],
            createdAt=row[4],
            participants=[
                Participant(userId=p[0], role=ParticipantRole(p[1]), joinedAt=p[2])
                for p in participants
            ],
        )

    async def peers_of(self, user_id: str) -> Set[str]:
        return await self._run(self._peers_of, user_id)

    def _peers_of(self, user_id: str) -> Set[str]:
        rows = self._get_connection().execute(
            """
            SELECT DISTINCT other.user_id
            FROM participants mine
            JOIN participants other ON other.room_id = mine.room_id
            WHERE mine.user_id = ? AND other.user_id <> ?
            """,
            [user_id, user_id],
        ).fetchall()
        return {row[0] for row in rows}

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def append_message(self, message: ChatMessage) -> None:
        await self._run(self._append_message, message)

    def _append_message(self, message: ChatMessage) -> None:
        forwarded = message.forwardedFrom
        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES ({_placeholders(16)})",
                [
                    message.id,
                    message.roomId,
                    message.sequence,
                    message.senderId,
                    message.senderName,
                    message.content,
                    message.type.value,
                    json.dumps(message.attachments),
                    message.replyTo,
                    forwarded.messageId if forwarded else None,
                    forwarded.roomId if forwarded else None,
                    forwarded.roomName if forwarded else None,
                    message.ts,
                    message.editedAt,
                    message.isDeleted,
                    message.deletedAt,
                ],
            )
            conn.execute(
                """
                INSERT INTO room_sequences (room_id, last_seq) VALUES (?, ?)
                ON CONFLICT (room_id) DO UPDATE SET last_seq = excluded.last_seq
                """,
                [message.roomId, message.sequence],
            )

    async def get_message(self, message_id: str) -> Optional[ChatMessage]:
        return await self._run(self._get_message, message_id)

    def _get_message(self, message_id: str) -> Optional[ChatMessage]:
        rows = self._get_connection().execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", [message_id]
        ).fetchall()
        messages = self._hydrate(rows)
        return messages[0] if messages else None

    async def get_messages(self, room_id: str, message_ids: Sequence[str]) -> List[ChatMessage]:
        if not message_ids:
            return []
        return await self._run(self._get_messages, room_id, list(dict.fromkeys(message_ids)))

    def _get_messages(self, room_id: str, message_ids: List[str]) -> List[ChatMessage]:
        rows = self._get_connection().execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE room_id = ? AND id IN ({_placeholders(len(message_ids))})
            ORDER BY seq
            """,
            [room_id, *message_ids],
        ).fetchall()
        return self._hydrate(rows)

    async def update_message(self, message: ChatMessage) -> None:
        await self._run(self._update_message, message)

    def _update_message(self, message: ChatMessage) -> None:
        self._get_connection().execute(
            """
            UPDATE messages
            SET content = ?, type = ?, attachments = ?, edited_at = ?, is_deleted = ?, deleted_at = ?
            WHERE id = ?
            """,
            [
                message.content,
                message.type.value,
                json.dumps(message.attachments),
                message.editedAt,
                message.isDeleted,
                message.deletedAt,
                message.id,
            ],
        )

    async def messages_after(self, room_id: str, after_sequence: int, limit: int) -> List[ChatMessage]:
        return await self._run(self._messages_after, room_id, after_sequence, limit)

    def _messages_after(self, room_id: str, after_sequence: int, limit: int) -> List[ChatMessage]:
        rows = self._get_connection().execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE room_id = ? AND seq > ?
            ORDER BY seq ASC
            LIMIT ?
            """,
            [room_id, after_sequence, limit],
        ).fetchall()
        return self._hydrate(rows)

    async def messages_before(
        self, room_id: str, before_sequence: Optional[int], limit: int
    ) -> List[ChatMessage]:
        return await self._run(self._messages_before, room_id, before_sequence, limit)

    def _messages_before(self, room_id: str, before_sequence: Optional[int], limit: int) -> List[ChatMessage]:
        if before_sequence is None:
            query = f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE room_id = ? ORDER BY seq DESC LIMIT ?"
            params: List[Any] = [room_id, limit]
        else:
            query = (
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE room_id = ? AND seq < ? "
                "ORDER BY seq DESC LIMIT ?"
            )
            params = [room_id, before_sequence, limit]
        rows = self._get_connection().execute(query, params).fetchall()
        rows.reverse()
        return self._hydrate(rows)

    async def last_sequence(self, room_id: str) -> int:
        return await self._run(self._last_sequence, room_id)

    def _last_sequence(self, room_id: str) -> int:
        row = self._get_connection().execute(
            "SELECT last_seq FROM room_sequences WHERE room_id = ?", [room_id]
        ).fetchone()
        return int(row[0]) if row else 0

    async def unread_messages(self, room_id: str, user_id: str) -> List[ChatMessage]:
        return await self._run(self._unread_messages, room_id, user_id)

    def _unread_messages(self, room_id: str, user_id: str) -> List[ChatMessage]:
        rows = self._get_connection().execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages m
            WHERE m.room_id = ? AND m.sender_id <> ? AND NOT m.is_deleted
              AND NOT EXISTS (
                  SELECT 1 FROM receipts r
                  WHERE r.message_id = m.id AND r.user_id = ? AND r.kind = 'read'
              )
            ORDER BY m.seq
            """,
            [room_id, user_id, user_id],
        ).fetchall()
        return self._hydrate(rows)

    def _hydrate(self, rows: List[tuple]) -> List[ChatMessage]:
        """Build messages from rows and attach their receipts and reactions."""
        if not rows:
            return []
        messages = [self._row_to_message(row) for row in rows]
        by_id = {m.id: m for m in messages}
        ids = list(by_id)
        conn = self._get_connection()
        receipts = conn.execute(
            f"SELECT message_id, user_id, kind, recorded_at FROM receipts "
            f"WHERE message_id IN ({_placeholders(len(ids))}) ORDER BY recorded_at",
            ids,
        ).fetchall()
        for message_id, user_id, kind, at in receipts:
            target = by_id[message_id]
            if kind == RECEIPT_READ:
                target.readBy[user_id] = at
            else:
                target.deliveredTo[user_id] = at
        reactions = conn.execute(
            f"SELECT message_id, user_id, emoji, ts FROM reactions "
            f"WHERE message_id IN ({_placeholders(len(ids))}) ORDER BY ts",
            ids,
        ).fetchall()
        for message_id, user_id, emoji, ts in reactions:
            by_id[message_id].reactions.append(Reaction(userId=user_id, emoji=emoji, ts=ts))
        return messages

    @staticmethod
    def _row_to_message(row: tuple) -> ChatMessage:
        forwarded = None
        if row[9] is not None:
            forwarded = ForwardedFrom(messageId=row[9], roomId=row[10], roomName=row[11] or "")
        return ChatMessage(
            id=row[0],
            roomId=row[1],
            sequence=row[2],
            senderId=row[3],
            senderName=row[4],
            content=row[5],
            type=MessageType(row[6]),
            attachments=json.loads(row[7]),
            replyTo=row[8],
            forwardedFrom=forwarded,
            ts=row[12],
            editedAt=row[13],
            isDeleted=bool(row[14]),
            deletedAt=row[15],
        )

    # ------------------------------------------------------------------
    # Receipts, reactions, purge
    # ------------------------------------------------------------------

    async def save_receipts(self, receipts: Sequence[Receipt]) -> None:
        if receipts:
            await self._run(self._save_receipts, list(receipts))

    def _save_receipts(self, receipts: List[Receipt]) -> None:
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO receipts (message_id, user_id, kind, recorded_at) VALUES (?, ?, ?, ?)
                ON CONFLICT DO NOTHING
                """,
                [list(r) for r in receipts],
            )

    async def toggle_reaction(self, message_id: str, user_id: str, emoji: str, at: float) -> List[Reaction]:
        return await self._run(self._toggle_reaction, message_id, user_id, emoji, at)

    def _toggle_reaction(self, message_id: str, user_id: str, emoji: str, at: float) -> List[Reaction]:
        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT 1 FROM reactions WHERE message_id = ? AND user_id = ? AND emoji = ?",
                [message_id, user_id, emoji],
            ).fetchone()
            if existing:
                conn.execute(
                    "DELETE FROM reactions WHERE message_id = ? AND user_id = ? AND emoji = ?",
                    [message_id, user_id, emoji],
                )
            else:
                conn.execute(
                    "INSERT INTO reactions (message_id, user_id, emoji, ts) VALUES (?, ?, ?, ?)",
                    [message_id, user_id, emoji, at],
                )
            rows = conn.execute(
                "SELECT user_id, emoji, ts FROM reactions WHERE message_id = ? ORDER BY ts",
                [message_id],
            ).fetchall()
        return [Reaction(userId=r[0], emoji=r[1], ts=r[2]) for r in rows]

    async def purge_room(self, room_id: str) -> int:
        return await self._run(self._purge_room, room_id)

    def _purge_room(self, room_id: str) -> int:
        with self._transaction() as conn:
            (count,) = conn.execute(
                "SELECT COUNT(*) FROM messages WHERE room_id = ?", [room_id]
            ).fetchone()
            for table in ("receipts", "reactions"):
                conn.execute(
                    f"DELETE FROM {table} WHERE message_id IN (SELECT id FROM messages WHERE room_id = ?)",
                    [room_id],
                )
            conn.execute("DELETE FROM messages WHERE room_id = ?", [room_id])
        return int(count)
