"""Connection registry: which live connections each user holds.

Register/unregister run on the user-keyed dispatcher, so transitions of one
user are serialized. Each transition is reported exactly once to the listener
(the presence tracker) as ``(user_id, was_online, is_online)``, inside the same
serialized step.

The registry also keeps the room subscription index (connections that joined a
room), used for room-scoped broadcasts such as typing indicators.
"""
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from .connection import Connection
from .dispatcher import KeyedDispatcher

logger = logging.getLogger(__name__)

ConnectionListener = Callable[[str, bool, bool], Awaitable[None]]


class ConnectionRegistry:
    """Tracks live connections per user and room subscriptions per room."""

    def __init__(
        self,
        dispatcher: KeyedDispatcher,
        listener: Optional[ConnectionListener] = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._listener = listener
        # user_id -> {connection_id: Connection}
        self._by_user: Dict[str, Dict[str, Connection]] = {}
        self._by_id: Dict[str, Connection] = {}
        # room_id -> connections that joined the room
        self._subscribers: Dict[str, Set[Connection]] = {}

    def set_listener(self, listener: Optional[ConnectionListener]) -> None:
        self._listener = listener

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def register(self, connection: Connection) -> None:
        """Add *connection* under its user. No-op if already registered."""
        await self._dispatcher.submit(connection.user_id, self._register, connection)

    async def unregister(self, connection: Connection) -> None:
        """Remove *connection*. No-op if unknown."""
        await self._dispatcher.submit(connection.user_id, self._unregister, connection)

    async def _register(self, connection: Connection) -> None:
        if connection.id in self._by_id:
            return
        user_conns = self._by_user.setdefault(connection.user_id, {})
        was_online = bool(user_conns)
        user_conns[connection.id] = connection
        self._by_id[connection.id] = connection
        logger.info(
            "[Registry] Registered connection %s for user %s (%d open)",
            connection.id, connection.user_id, len(user_conns),
        )
        await self._notify(connection.user_id, was_online, True)

    async def _unregister(self, connection: Connection) -> None:
        if self._by_id.pop(connection.id, None) is None:
            return
        for room_id in list(connection.rooms):
            self.unsubscribe(connection, room_id)
        user_conns = self._by_user.get(connection.user_id, {})
        user_conns.pop(connection.id, None)
        is_online = bool(user_conns)
        if not is_online:
            self._by_user.pop(connection.user_id, None)
        logger.info(
            "[Registry] Unregistered connection %s for user %s (%d open)",
            connection.id, connection.user_id, len(user_conns),
        )
        await self._notify(connection.user_id, True, is_online)

    async def _notify(self, user_id: str, was_online: bool, is_online: bool) -> None:
        if self._listener is not None:
            await self._listener(user_id, was_online, is_online)

    def connections_for(self, user_id: str) -> Set[Connection]:
        return set(self._by_user.get(user_id, {}).values())

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._by_id.get(connection_id)

    def all_connections(self) -> List[Connection]:
        return list(self._by_id.values())

    def user_ids(self) -> Set[str]:
        return set(self._by_user)

    def __len__(self) -> int:
        return len(self._by_id)

    # ------------------------------------------------------------------
    # Room subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, connection: Connection, room_id: str) -> None:
        connection.rooms.add(room_id)
        self._subscribers.setdefault(room_id, set()).add(connection)

    def unsubscribe(self, connection: Connection, room_id: str) -> None:
        connection.rooms.discard(room_id)
        subscribers = self._subscribers.get(room_id)
        if subscribers is None:
            return
        subscribers.discard(connection)
        if not subscribers:
            del self._subscribers[room_id]

    def subscribers(self, room_id: str) -> Set[Connection]:
        return set(self._subscribers.get(room_id, ()))

    def audience(self, room_id: str, member_ids: Iterable[str]) -> Set[Connection]:
        """Every connection of the given members plus every subscriber of the room."""
        targets = self.subscribers(room_id)
        for user_id in member_ids:
            targets.update(self._by_user.get(user_id, {}).values())
        return targets
