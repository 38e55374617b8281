"""Tests for the message delivery engine."""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import FakeWebSocket, settle

from app.realtime.delivery import aggregate_status
from app.realtime.errors import AuthorizationError, NotFoundError, StoreUnavailableError, ValidationError
from app.realtime.schemas import (
    DELETED_MESSAGE_CONTENT,
    ChatMessage,
    DeliveryStatus,
    MessageType,
    Participant,
    ParticipantRole,
    Room,
    RoomType,
)


async def group_room(store, *members, admins=(), room_type=RoomType.GROUP):
    people = [(m, ParticipantRole.MEMBER) for m in members]
    people += [(a, ParticipantRole.ADMIN) for a in admins]
    return await store.create_room("Study group", room_type, people)


class TestAggregateStatus:
    def make(self, room_type, members):
        return Room(name="R", type=room_type, participants=[Participant(userId=m) for m in members])

    def test_direct_room_follows_the_other_participant(self):
        room = self.make(RoomType.DIRECT, ["alice", "bob"])
        message = ChatMessage(roomId=room.id, sequence=1, senderId="alice", content="hi")

        assert aggregate_status(room, message) == DeliveryStatus.SENT
        message.record_delivery("bob")
        assert aggregate_status(room, message) == DeliveryStatus.DELIVERED
        message.record_read("bob")
        assert aggregate_status(room, message) == DeliveryStatus.READ

    def test_group_room_is_delivered_once_anyone_has_it(self):
        room = self.make(RoomType.GROUP, ["alice", "bob", "carol"])
        message = ChatMessage(roomId=room.id, sequence=1, senderId="alice", content="hi")

        assert aggregate_status(room, message) == DeliveryStatus.SENT
        message.record_read("bob")
        assert aggregate_status(room, message) == DeliveryStatus.DELIVERED


class TestSend:
    @pytest.mark.asyncio
    async def test_sequences_are_contiguous_under_concurrency(self, coordinator, store):
        room = await group_room(store, "alice", "bob")
        engine = coordinator.engine

        messages = await asyncio.gather(*[
            engine.send(room.id, "alice" if n % 2 else "bob", "Someone", f"message {n}")
            for n in range(20)
        ])

        assert sorted(m.sequence for m in messages) == list(range(1, 21))
        stored = await store.messages_after(room.id, 0, 100)
        assert [m.sequence for m in stored] == list(range(1, 21))
        assert await engine.last_sequence(room.id) == 20

    @pytest.mark.asyncio
    async def test_content_is_stripped(self, coordinator, store):
        room = await group_room(store, "alice")

        message = await coordinator.engine.send(room.id, "alice", "Alice", "  hello  ")

        assert message.content == "hello"
        assert message.senderName == "Alice"

    @pytest.mark.asyncio
    async def test_non_member_cannot_send(self, coordinator, store):
        room = await group_room(store, "alice")
        alice_ws = FakeWebSocket()
        alice = await coordinator.connect(alice_ws, "alice", "Alice")
        await coordinator.handle(alice, {"type": "join_room", "roomId": room.id})

        with pytest.raises(AuthorizationError):
            await coordinator.engine.send(room.id, "mallory", "Mallory", "hi")
        await settle(coordinator, alice)

        assert alice_ws.of_type("new_message") == []
        assert await coordinator.engine.last_sequence(room.id) == 0
        assert await store.messages_after(room.id, 0, 10) == []

    @pytest.mark.asyncio
    async def test_unknown_room(self, coordinator):
        with pytest.raises(NotFoundError):
            await coordinator.engine.send("missing", "alice", "Alice", "hi")

    @pytest.mark.asyncio
    async def test_body_validation(self, coordinator, store):
        room = await group_room(store, "alice")
        engine = coordinator.engine

        with pytest.raises(ValidationError):
            await engine.send(room.id, "alice", "Alice", "   ")
        with pytest.raises(ValidationError):
            await engine.send(room.id, "alice", "Alice", "x" * (engine.max_message_length + 1))
        with pytest.raises(ValidationError):
            await engine.send(room.id, "alice", "Alice", "server says", MessageType.SYSTEM)

        image = await engine.send(
            room.id, "alice", "Alice", "", MessageType.IMAGE, attachments=["files://cat.png"]
        )
        assert image.sequence == 1
        assert image.attachments == ["files://cat.png"]

    @pytest.mark.asyncio
    async def test_store_failure_does_not_consume_the_sequence(self, coordinator, store):
        room = await group_room(store, "alice")
        engine = coordinator.engine
        await engine.send(room.id, "alice", "Alice", "first")

        with patch.object(store, "append_message", AsyncMock(side_effect=StoreUnavailableError())):
            with pytest.raises(StoreUnavailableError):
                await engine.send(room.id, "alice", "Alice", "lost")

        message = await engine.send(room.id, "alice", "Alice", "second")
        assert message.sequence == 2

    @pytest.mark.asyncio
    async def test_reply_must_target_the_same_room(self, coordinator, store):
        room = await group_room(store, "alice")
        other = await group_room(store, "alice")
        elsewhere = await coordinator.engine.send(other.id, "alice", "Alice", "elsewhere")
        original = await coordinator.engine.send(room.id, "alice", "Alice", "question")

        reply = await coordinator.engine.send(room.id, "alice", "Alice", "answer", reply_to=original.id)
        assert reply.replyTo == original.id

        with pytest.raises(NotFoundError):
            await coordinator.engine.send(room.id, "alice", "Alice", "answer", reply_to=elsewhere.id)

    @pytest.mark.asyncio
    async def test_announcement_rooms(self, coordinator, store):
        room = await group_room(store, "student", admins=("instructor",), room_type=RoomType.ANNOUNCEMENT)
        engine = coordinator.engine

        with pytest.raises(AuthorizationError):
            await engine.send(room.id, "student", "Student", "hello all")
        posted = await engine.send(room.id, "instructor", "Instructor", "Exam on Friday", MessageType.ANNOUNCEMENT)

        # Anyone can read an announcement room
        page = await engine.history(room.id, "visitor")
        assert [m.id for m in page.messages] == [posted.id]

    @pytest.mark.asyncio
    async def test_only_admins_post_announcement_messages(self, coordinator, store):
        room = await group_room(store, "student", admins=("instructor",))

        with pytest.raises(AuthorizationError):
            await coordinator.engine.send(room.id, "student", "Student", "Listen up", MessageType.ANNOUNCEMENT)

    @pytest.mark.asyncio
    async def test_fan_out_reaches_members_in_order(self, coordinator, store):
        room = await group_room(store, "alice", "bob")
        alice_ws, bob_ws = FakeWebSocket(), FakeWebSocket()
        alice = await coordinator.connect(alice_ws, "alice", "Alice")
        bob = await coordinator.connect(bob_ws, "bob", "Bob")

        for n in range(5):
            await coordinator.engine.send(room.id, "alice", "Alice", f"m{n}", client_id=f"c{n}", origin=alice)
        await settle(coordinator, alice, bob)

        assert [f["message"]["sequence"] for f in bob_ws.of_type("new_message")] == [1, 2, 3, 4, 5]
        sent = alice_ws.of_type("message_sent")
        assert [f["clientId"] for f in sent] == ["c0", "c1", "c2", "c3", "c4"]
        assert alice_ws.of_type("new_message") == []


class TestReceipts:
    @pytest.mark.asyncio
    async def test_mark_read_is_idempotent(self, coordinator, store):
        room = await group_room(store, "alice", "bob")
        engine = coordinator.engine
        message = await engine.send(room.id, "alice", "Alice", "hi")

        assert await engine.mark_read(room.id, "bob", [message.id]) == [message.id]
        assert await engine.mark_read(room.id, "bob", [message.id]) == []

        stored = await store.get_message(message.id)
        assert set(stored.readBy) <= set(stored.deliveredTo)
        assert "bob" in stored.readBy

    @pytest.mark.asyncio
    async def test_mark_read_without_ids_reads_everything_unread(self, coordinator, store):
        room = await group_room(store, "alice", "bob")
        engine = coordinator.engine
        first = await engine.send(room.id, "alice", "Alice", "one")
        second = await engine.send(room.id, "alice", "Alice", "two")
        await engine.send(room.id, "bob", "Bob", "own message")

        read = await engine.mark_read(room.id, "bob")

        assert read == [first.id, second.id]
        assert await store.unread_messages(room.id, "bob") == []

    @pytest.mark.asyncio
    async def test_sender_never_gets_receipts(self, coordinator, store):
        room = await group_room(store, "alice", "bob")
        message = await coordinator.engine.send(room.id, "alice", "Alice", "hi")

        assert await coordinator.engine.mark_delivered(room.id, "alice", [message.id]) == []
        assert await coordinator.engine.mark_read(room.id, "alice", [message.id]) == []

    @pytest.mark.asyncio
    async def test_non_member_cannot_acknowledge(self, coordinator, store):
        room = await group_room(store, "alice", "bob")
        message = await coordinator.engine.send(room.id, "alice", "Alice", "hi")

        with pytest.raises(AuthorizationError):
            await coordinator.engine.mark_read(room.id, "mallory", [message.id])

    @pytest.mark.asyncio
    async def test_receipt_report(self, coordinator, store):
        room = await group_room(store, "alice", "bob", "carol")
        engine = coordinator.engine
        message = await engine.send(room.id, "alice", "Alice", "hi")
        await engine.mark_delivered(room.id, "bob", [message.id])
        await engine.mark_read(room.id, "carol", [message.id])

        report = await engine.receipts(room.id, "alice", message.id)

        assert report.status == DeliveryStatus.DELIVERED
        by_user = {r.userId: r for r in report.receipts}
        assert set(by_user) == {"bob", "carol"}
        assert by_user["bob"].deliveredAt is not None and by_user["bob"].readAt is None
        assert by_user["carol"].readAt is not None

    @pytest.mark.asyncio
    async def test_status_is_pushed_to_the_sender(self, coordinator, store):
        room = await store.create_direct_room("alice", "bob")
        alice_ws = FakeWebSocket()
        alice = await coordinator.connect(alice_ws, "alice", "Alice")
        message = await coordinator.engine.send(room.id, "alice", "Alice", "hi", origin=alice)

        await coordinator.engine.mark_delivered(room.id, "bob", [message.id])
        await coordinator.engine.mark_read(room.id, "bob", [message.id])
        await settle(coordinator, alice)

        statuses = [f["status"] for f in alice_ws.of_type("message_status")]
        assert statuses == ["delivered", "read"]
        read_events = alice_ws.of_type("messages_read")
        assert read_events[0]["userId"] == "bob"
        assert read_events[0]["messageIds"] == [message.id]


class TestHistory:
    @pytest.mark.asyncio
    async def test_paging(self, coordinator, store):
        room = await group_room(store, "alice", "bob")
        engine = coordinator.engine
        for n in range(5):
            await engine.send(room.id, "alice", "Alice", f"m{n}")

        newest = await engine.history(room.id, "bob", limit=2)
        older = await engine.history(room.id, "bob", before_sequence=4, limit=2)
        oldest = await engine.history(room.id, "bob", before_sequence=2, limit=2)
        resync = await engine.history(room.id, "bob", after_sequence=3)

        assert [m.sequence for m in newest.messages] == [4, 5] and newest.hasMore
        assert [m.sequence for m in older.messages] == [2, 3] and older.hasMore
        assert [m.sequence for m in oldest.messages] == [1] and not oldest.hasMore
        assert [m.sequence for m in resync.messages] == [4, 5] and not resync.hasMore

    @pytest.mark.asyncio
    async def test_limit_is_clamped(self, coordinator, store):
        room = await group_room(store, "alice")
        engine = coordinator.engine
        engine.max_page_size = 3
        for n in range(5):
            await engine.send(room.id, "alice", "Alice", f"m{n}")

        page = await engine.history(room.id, "alice", limit=1000)

        assert len(page.messages) == 3

    @pytest.mark.asyncio
    async def test_fetched_messages_count_as_delivered(self, coordinator, store):
        room = await group_room(store, "alice", "bob")
        message = await coordinator.engine.send(room.id, "alice", "Alice", "hi")

        await coordinator.engine.history(room.id, "bob")

        stored = await store.get_message(message.id)
        assert "bob" in stored.deliveredTo
        assert "bob" not in stored.readBy

    @pytest.mark.asyncio
    async def test_non_member_cannot_fetch(self, coordinator, store):
        room = await group_room(store, "alice")

        with pytest.raises(AuthorizationError):
            await coordinator.engine.history(room.id, "mallory")


class TestEditDeleteReactForwardPurge:
    @pytest.mark.asyncio
    async def test_edit_by_sender(self, coordinator, store):
        room = await group_room(store, "alice", "bob")
        message = await coordinator.engine.send(room.id, "alice", "Alice", "helo")

        edited = await coordinator.engine.edit(room.id, "alice", message.id, "hello")

        assert edited.content == "hello"
        assert edited.sequence == message.sequence
        assert edited.editedAt is not None
        assert (await store.get_message(message.id)).content == "hello"

    @pytest.mark.asyncio
    async def test_edit_by_someone_else_is_rejected(self, coordinator, store):
        room = await group_room(store, "alice", "bob")
        message = await coordinator.engine.send(room.id, "alice", "Alice", "mine")

        with pytest.raises(AuthorizationError):
            await coordinator.engine.edit(room.id, "bob", message.id, "yours now")

        assert (await store.get_message(message.id)).content == "mine"

    @pytest.mark.asyncio
    async def test_delete_is_a_tombstone_and_idempotent(self, coordinator, store):
        room = await group_room(store, "alice", "bob")
        message = await coordinator.engine.send(
            room.id, "alice", "Alice", "oops", MessageType.FILE, attachments=["files://notes.pdf"]
        )

        deleted = await coordinator.engine.delete(room.id, "alice", message.id)
        again = await coordinator.engine.delete(room.id, "alice", message.id)

        assert deleted.isDeleted and again.isDeleted
        assert again.deletedAt == deleted.deletedAt
        stored = await store.get_message(message.id)
        assert stored.content == DELETED_MESSAGE_CONTENT
        assert stored.attachments == []
        assert stored.sequence == message.sequence

        with pytest.raises(ValidationError):
            await coordinator.engine.edit(room.id, "alice", message.id, "back")
        with pytest.raises(ValidationError):
            await coordinator.engine.react(room.id, "bob", message.id, "👍")

    @pytest.mark.asyncio
    async def test_delete_by_someone_else_is_rejected(self, coordinator, store):
        room = await group_room(store, "alice", "bob")
        message = await coordinator.engine.send(room.id, "alice", "Alice", "mine")

        with pytest.raises(AuthorizationError):
            await coordinator.engine.delete(room.id, "bob", message.id)

    @pytest.mark.asyncio
    async def test_react_toggles(self, coordinator, store):
        room = await group_room(store, "alice", "bob")
        message = await coordinator.engine.send(room.id, "alice", "Alice", "quiz tomorrow")

        added = await coordinator.engine.react(room.id, "bob", message.id, "😱")
        removed = await coordinator.engine.react(room.id, "bob", message.id, "😱")

        assert [r.emoji for r in added] == ["😱"]
        assert removed == []

    @pytest.mark.asyncio
    async def test_message_from_another_room_is_not_found(self, coordinator, store):
        room = await group_room(store, "alice")
        other = await group_room(store, "alice")
        message = await coordinator.engine.send(other.id, "alice", "Alice", "elsewhere")

        with pytest.raises(NotFoundError):
            await coordinator.engine.edit(room.id, "alice", message.id, "moved")

    @pytest.mark.asyncio
    async def test_forward(self, coordinator, store):
        source = await group_room(store, "alice", "bob")
        target = await group_room(store, "bob", "carol")
        original = await coordinator.engine.send(source.id, "alice", "Alice", "homework answers")

        copy = await coordinator.engine.forward("bob", "Bob", source.id, original.id, target.id)

        assert copy.roomId == target.id
        assert copy.sequence == 1
        assert copy.senderId == "bob"
        assert copy.content == "homework answers"
        assert copy.forwardedFrom.messageId == original.id
        assert copy.forwardedFrom.roomId == source.id

    @pytest.mark.asyncio
    async def test_forward_requires_write_access_to_target(self, coordinator, store):
        source = await group_room(store, "alice", "bob")
        target = await group_room(store, "carol")
        original = await coordinator.engine.send(source.id, "alice", "Alice", "secret")

        with pytest.raises(AuthorizationError):
            await coordinator.engine.forward("bob", "Bob", source.id, original.id, target.id)

    @pytest.mark.asyncio
    async def test_purge(self, coordinator, store):
        room = await group_room(store, "student", admins=("instructor",), room_type=RoomType.COURSE)
        engine = coordinator.engine
        for n in range(3):
            await engine.send(room.id, "student", "Student", f"m{n}")

        with pytest.raises(AuthorizationError):
            await engine.purge(room.id, "student")
        assert await engine.purge(room.id, "instructor") == 3
        assert (await engine.history(room.id, "instructor")).messages == []

        # Positions are never reused
        message = await engine.send(room.id, "student", "Student", "after purge")
        assert message.sequence == 4
