"""Typing indicators with idle expiry.

One entry per (room, user). ``start_typing`` emits ``user_typing`` only when no
entry exists and otherwise just pushes the expiry back, so a burst of keystrokes
produces a single event. ``stop_typing`` and idle expiry both emit
``user_stopped_typing``, once. Entries of different users are independent.

State changes run on the room-keyed dispatcher. Expiry timers post back to the
same dispatcher with the entry's token, so a timer that fires after a refresh
is ignored.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .dispatcher import KeyedDispatcher
from .events import ServerEvent, UserStoppedTyping, UserTyping

logger = logging.getLogger(__name__)

# Idle time after which a typing indicator stops on its own
DEFAULT_TYPING_TIMEOUT_SECONDS = 2.0

# broadcaster(room_id, event, exclude_user_id)
TypingBroadcaster = Callable[[str, ServerEvent, Optional[str]], None]


@dataclass
class _TypingEntry:
    user_name: str
    token: object = field(default_factory=object)
    handle: Optional[asyncio.TimerHandle] = None


class TypingIndicator:
    """Tracks who is typing where and broadcasts start/stop transitions."""

    def __init__(
        self,
        dispatcher: KeyedDispatcher,
        broadcaster: TypingBroadcaster,
        timeout_seconds: float = DEFAULT_TYPING_TIMEOUT_SECONDS,
    ) -> None:
        self._dispatcher = dispatcher
        self._broadcast = broadcaster
        self.timeout_seconds = timeout_seconds
        self._entries: Dict[Tuple[str, str], _TypingEntry] = {}

    def is_typing(self, room_id: str, user_id: str) -> bool:
        return (room_id, user_id) in self._entries

    def typists(self, room_id: str) -> List[str]:
        return [user_id for (rid, user_id) in self._entries if rid == room_id]

    async def start_typing(self, room_id: str, user_id: str, user_name: str) -> bool:
        """Start or refresh the indicator. Returns True if ``user_typing`` was emitted."""
        return await self._dispatcher.submit(room_id, self._start, room_id, user_id, user_name)

    async def stop_typing(self, room_id: str, user_id: str) -> bool:
        """Stop the indicator. Returns True if ``user_stopped_typing`` was emitted."""
        return await self._dispatcher.submit(room_id, self._stop, room_id, user_id)

    async def _start(self, room_id: str, user_id: str, user_name: str) -> bool:
        key = (room_id, user_id)
        entry = self._entries.get(key)
        started = entry is None
        if entry is None:
            entry = _TypingEntry(user_name=user_name)
            self._entries[key] = entry
        else:
            if entry.handle is not None:
                entry.handle.cancel()
            entry.token = object()
        entry.handle = asyncio.get_running_loop().call_later(
            self.timeout_seconds, self._timer_fired, room_id, user_id, entry.token
        )
        if started:
            logger.debug("[Typing] %s started typing in %s", user_id, room_id)
            self._broadcast(
                room_id,
                UserTyping(roomId=room_id, userId=user_id, userName=user_name),
                user_id,
            )
        return started

    async def _stop(self, room_id: str, user_id: str) -> bool:
        entry = self._entries.pop((room_id, user_id), None)
        if entry is None:
            return False
        if entry.handle is not None:
            entry.handle.cancel()
        logger.debug("[Typing] %s stopped typing in %s", user_id, room_id)
        self._broadcast(
            room_id,
            UserStoppedTyping(roomId=room_id, userId=user_id, userName=entry.user_name),
            user_id,
        )
        return True

    def _timer_fired(self, room_id: str, user_id: str, token: object) -> None:
        self._dispatcher.post(room_id, self._expire, room_id, user_id, token)

    async def _expire(self, room_id: str, user_id: str, token: object) -> None:
        entry = self._entries.get((room_id, user_id))
        if entry is None or entry.token is not token:
            return
        await self._stop(room_id, user_id)

    def close(self) -> None:
        """Cancel every expiry timer and forget all entries."""
        for entry in self._entries.values():
            if entry.handle is not None:
                entry.handle.cancel()
        self._entries.clear()
