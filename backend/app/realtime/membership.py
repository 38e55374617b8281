"""Room membership index: cached room lookups and access decisions.

Rooms are loaded lazily from the store. A cache entry lives while at least one
connection references the room (``retain`` / ``release``), but never longer
than the TTL, and an explicit membership-change event drops it immediately.
Concurrent misses for the same room share one store read.

A store failure on a miss fails closed with ``UNAVAILABLE``, which is distinct
from ``DENIED``.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from .errors import AuthorizationError, NotFoundError, StoreUnavailableError
from .schemas import Room, RoomType
from .store import RoomStore

logger = logging.getLogger(__name__)

# Default lifetime of a cached room
DEFAULT_CACHE_TTL_SECONDS = 30.0


class RoomAction(str, Enum):
    """What a user is trying to do in a room.

    Attributes:
        READ: Join, fetch history, typing, receipts, reactions.
        WRITE: Send or forward a message into the room, edit or delete own messages.
        MODERATE: Administrative actions such as purging the history.
    """
    READ = "read"
    WRITE = "write"
    MODERATE = "moderate"


class AccessDecision(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


def can(room: Room, user_id: str, action: RoomAction) -> bool:
    """Apply the access rules of *room* to *user_id*."""
    participant = room.participant(user_id)
    if action == RoomAction.READ:
        return participant is not None or room.type == RoomType.ANNOUNCEMENT
    if participant is None:
        return False
    if action == RoomAction.WRITE:
        return room.type != RoomType.ANNOUNCEMENT or participant.is_admin
    # MODERATE
    return room.type == RoomType.DIRECT or participant.is_admin


@dataclass
class _CacheEntry:
    room: Room
    loaded_at: float


class RoomMembershipIndex:
    """Caches rooms and answers ``authorize`` / ``require`` / ``members_of``."""

    def __init__(
        self,
        store: RoomStore,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _CacheEntry] = {}
        self._refs: Dict[str, int] = {}
        self._generations: Dict[str, int] = {}
        self._inflight: Dict[str, asyncio.Future] = {}

    # ------------------------------------------------------------------
    # Reference counting
    # ------------------------------------------------------------------

    def retain(self, room_id: str) -> None:
        self._refs[room_id] = self._refs.get(room_id, 0) + 1

    def release(self, room_id: str) -> None:
        refs = self._refs.get(room_id, 0) - 1
        if refs > 0:
            self._refs[room_id] = refs
            return
        self._refs.pop(room_id, None)
        self._forget_generation(room_id)
        if self._entries.pop(room_id, None) is not None:
            logger.debug("[Membership] Evicted room %s (no references)", room_id)

    def _forget_generation(self, room_id: str) -> None:
        # Generations only guard a retained room or a fill in flight
        if room_id not in self._refs and room_id not in self._inflight:
            self._generations.pop(room_id, None)

    def tracked_rooms(self) -> int:
        """Number of rooms the index still holds any state for."""
        return len(set(self._entries) | set(self._refs) | set(self._generations) | set(self._inflight))

    def references(self, room_id: str) -> int:
        return self._refs.get(room_id, 0)

    def is_cached(self, room_id: str) -> bool:
        entry = self._entries.get(room_id)
        return entry is not None and not self._expired(entry)

    def invalidate(self, room_id: str) -> None:
        """Drop the cached room after a membership change."""
        self._generations[room_id] = self._generations.get(room_id, 0) + 1
        self._entries.pop(room_id, None)
        self._forget_generation(room_id)
        logger.info("[Membership] Invalidated room %s", room_id)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _expired(self, entry: _CacheEntry) -> bool:
        return self._clock() - entry.loaded_at >= self._ttl

    async def get_room(self, room_id: str) -> Room:
        """Return the room, from cache when fresh.

        Raises:
            NotFoundError: The room does not exist.
            StoreUnavailableError: The store failed on a cache miss.
        """
        entry = self._entries.get(room_id)
        if entry is not None and not self._expired(entry):
            return entry.room
        if entry is not None:
            del self._entries[room_id]
        room = await self._fill(room_id)
        if room is None:
            raise NotFoundError(f"Room {room_id} not found")
        return room

    async def _fill(self, room_id: str) -> Optional[Room]:
        pending = self._inflight.get(room_id)
        if pending is not None:
            return await asyncio.shield(pending)
        future = asyncio.get_running_loop().create_future()
        self._inflight[room_id] = future
        generation = self._generations.get(room_id, 0)
        try:
            room = await self._store.get_room(room_id)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved so a miss without concurrent waiters does not warn
            future.exception()
            raise
        else:
            future.set_result(room)
        finally:
            self._inflight.pop(room_id, None)
            self._forget_generation(room_id)
        if (
            room is not None
            and self._refs.get(room_id)
            and self._generations.get(room_id, 0) == generation
        ):
            self._entries[room_id] = _CacheEntry(room=room, loaded_at=self._clock())
        return room

    async def members_of(self, room_id: str) -> List[str]:
        """Participant user IDs in join order."""
        room = await self.get_room(room_id)
        return room.member_ids()

    async def authorize(self, user_id: str, room_id: str, action: RoomAction) -> AccessDecision:
        try:
            room = await self.get_room(room_id)
        except NotFoundError:
            return AccessDecision.NOT_FOUND
        except StoreUnavailableError:
            return AccessDecision.UNAVAILABLE
        return AccessDecision.ALLOWED if can(room, user_id, action) else AccessDecision.DENIED

    async def require(self, user_id: str, room_id: str, action: RoomAction) -> Room:
        """Return the room if *user_id* may perform *action*, else raise.

        Raises:
            AuthorizationError, NotFoundError, StoreUnavailableError
        """
        room = await self.get_room(room_id)
        if not can(room, user_id, action):
            logger.info(
                "[Membership] Denied %s on room %s for user %s", action.value, room_id, user_id
            )
            raise AuthorizationError(f"Not allowed to {action.value} room {room_id}")
        return room
