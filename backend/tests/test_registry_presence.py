"""Tests for the connection registry and the presence tracker built on it."""
import asyncio

import pytest

from conftest import FakeWebSocket

from app.realtime.connection import Connection
from app.realtime.dispatcher import KeyedDispatcher
from app.realtime.presence import PresenceTracker
from app.realtime.registry import ConnectionRegistry

GRACE = 0.05


def connection(user_id):
    return Connection(FakeWebSocket(), user_id, user_id.title())


class Recorder:
    """Async callback that remembers its calls."""

    def __init__(self):
        self.calls = []

    async def __call__(self, *args):
        self.calls.append(args)


@pytest.fixture
def users():
    return KeyedDispatcher("user")


class TestConnectionRegistry:
    @pytest.mark.asyncio
    async def test_transitions_are_reported_once(self, users):
        listener = Recorder()
        registry = ConnectionRegistry(users, listener=listener)
        laptop, phone = connection("alice"), connection("alice")

        await registry.register(laptop)
        await registry.register(phone)
        await registry.register(phone)
        await registry.unregister(laptop)
        await registry.unregister(laptop)
        await registry.unregister(phone)

        assert listener.calls == [
            ("alice", False, True),
            ("alice", True, True),
            ("alice", True, True),
            ("alice", True, False),
        ]
        assert len(registry) == 0
        assert registry.user_ids() == set()

    @pytest.mark.asyncio
    async def test_lookups(self, users):
        registry = ConnectionRegistry(users)
        alice, bob = connection("alice"), connection("bob")
        await registry.register(alice)
        await registry.register(bob)

        assert registry.connections_for("alice") == {alice}
        assert registry.connections_for("nobody") == set()
        assert registry.get(bob.id) is bob
        assert set(registry.all_connections()) == {alice, bob}
        assert registry.user_ids() == {"alice", "bob"}

    @pytest.mark.asyncio
    async def test_audience_is_subscribers_plus_member_connections(self, users):
        registry = ConnectionRegistry(users)
        member, visitor, outsider = connection("alice"), connection("bob"), connection("carol")
        for conn in (member, visitor, outsider):
            await registry.register(conn)
        registry.subscribe(visitor, "announcements")

        audience = registry.audience("announcements", ["alice"])

        assert audience == {member, visitor}

    @pytest.mark.asyncio
    async def test_unregister_drops_subscriptions(self, users):
        registry = ConnectionRegistry(users)
        alice = connection("alice")
        await registry.register(alice)
        registry.subscribe(alice, "r1")
        registry.subscribe(alice, "r2")

        await registry.unregister(alice)

        assert registry.subscribers("r1") == set()
        assert registry.subscribers("r2") == set()
        assert alice.rooms == set()


class TestPresenceTracker:
    @pytest.mark.asyncio
    async def test_online_then_offline_after_grace(self, users):
        notifier = Recorder()
        presence = PresenceTracker(users, GRACE, notifier=notifier)

        await presence.on_connection_change("alice", False, True)
        assert presence.is_online("alice")
        assert notifier.calls == [("alice", True)]

        await presence.on_connection_change("alice", True, False)
        # Still online during the grace window
        assert presence.is_online("alice")
        assert presence.is_pending_offline("alice")

        await asyncio.sleep(GRACE * 3)

        assert not presence.is_online("alice")
        assert notifier.calls == [("alice", True), ("alice", False)]

    @pytest.mark.asyncio
    async def test_reconnect_within_grace_emits_nothing(self, users):
        notifier = Recorder()
        presence = PresenceTracker(users, GRACE, notifier=notifier)
        await presence.on_connection_change("alice", False, True)

        for _ in range(3):
            await presence.on_connection_change("alice", True, False)
            await presence.on_connection_change("alice", False, True)
        await asyncio.sleep(GRACE * 3)

        assert presence.is_online("alice")
        assert notifier.calls == [("alice", True)]

    @pytest.mark.asyncio
    async def test_counts_and_queries(self, users):
        presence = PresenceTracker(users, GRACE)
        await presence.on_connection_change("alice", False, True)
        await presence.on_connection_change("bob", False, True)
        await presence.on_connection_change("bob", True, True)

        assert presence.online_count() == 2
        assert presence.online_among(["carol", "bob", "alice"]) == ["bob", "alice"]

    @pytest.mark.asyncio
    async def test_notifier_errors_do_not_break_presence(self, users):
        async def broken(user_id, online):
            raise RuntimeError("notifier down")

        presence = PresenceTracker(users, GRACE, notifier=broken)

        await presence.on_connection_change("alice", False, True)

        assert presence.is_online("alice")

    @pytest.mark.asyncio
    async def test_with_registry(self, users):
        notifier = Recorder()
        presence = PresenceTracker(users, GRACE, notifier=notifier)
        registry = ConnectionRegistry(users, listener=presence.on_connection_change)
        laptop, phone = connection("alice"), connection("alice")

        await registry.register(laptop)
        await registry.register(phone)
        await registry.unregister(laptop)
        await asyncio.sleep(GRACE * 3)
        assert notifier.calls == [("alice", True)]

        await registry.unregister(phone)
        await asyncio.sleep(GRACE * 3)
        assert notifier.calls == [("alice", True), ("alice", False)]
        assert presence.online_count() == 0

    @pytest.mark.asyncio
    async def test_close_cancels_pending_offline(self, users):
        notifier = Recorder()
        presence = PresenceTracker(users, GRACE, notifier=notifier)
        await presence.on_connection_change("alice", False, True)
        await presence.on_connection_change("alice", True, False)

        presence.close()
        await asyncio.sleep(GRACE * 3)

        assert notifier.calls == [("alice", True)]
