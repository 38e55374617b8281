"""Online presence derived from registry transitions.

A user is online while they hold at least one connection. Going offline is
deferred by a grace window so a quick reconnect (page reload, network blip)
emits nothing at all. Only visible flips reach the notifier.

All state changes run on the user-keyed dispatcher: ``on_connection_change`` is
invoked from inside the registry's serialized step, and the grace timer posts
its expiry back to the same dispatcher.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from .dispatcher import KeyedDispatcher

logger = logging.getLogger(__name__)

# Default delay before an offline flip becomes visible
DEFAULT_GRACE_SECONDS = 4.0

PresenceNotifier = Callable[[str, bool], Awaitable[None]]


class _PendingOffline:
    __slots__ = ("handle",)

    def __init__(self) -> None:
        self.handle: Optional[asyncio.TimerHandle] = None


class PresenceTracker:
    """Per-user online flag with an offline grace window."""

    def __init__(
        self,
        dispatcher: KeyedDispatcher,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        notifier: Optional[PresenceNotifier] = None,
    ) -> None:
        self._dispatcher = dispatcher
        self.grace_seconds = grace_seconds
        self._notifier = notifier
        self._online: Set[str] = set()
        self._pending: Dict[str, _PendingOffline] = {}

    def set_notifier(self, notifier: Optional[PresenceNotifier]) -> None:
        self._notifier = notifier

    def is_online(self, user_id: str) -> bool:
        return user_id in self._online

    def online_count(self) -> int:
        return len(self._online)

    def online_among(self, user_ids: Iterable[str]) -> List[str]:
        return [uid for uid in user_ids if uid in self._online]

    def is_pending_offline(self, user_id: str) -> bool:
        return user_id in self._pending

    async def on_connection_change(self, user_id: str, was_online: bool, is_online: bool) -> None:
        """Fold one registry transition into the user's presence."""
        if was_online == is_online:
            return
        if is_online:
            pending = self._pending.pop(user_id, None)
            if pending is not None:
                if pending.handle is not None:
                    pending.handle.cancel()
                logger.debug("[Presence] %s reconnected within grace window", user_id)
                return
            if user_id in self._online:
                return
            self._online.add(user_id)
            logger.info("[Presence] %s online", user_id)
            await self._emit(user_id, True)
        else:
            if user_id not in self._online or user_id in self._pending:
                return
            pending = _PendingOffline()
            pending.handle = asyncio.get_running_loop().call_later(
                self.grace_seconds, self._grace_expired, user_id, pending
            )
            self._pending[user_id] = pending
            logger.debug(
                "[Presence] %s lost last connection, offline in %.1fs", user_id, self.grace_seconds
            )

    def _grace_expired(self, user_id: str, pending: _PendingOffline) -> None:
        self._dispatcher.post(user_id, self._finish_offline, user_id, pending)

    async def _finish_offline(self, user_id: str, pending: _PendingOffline) -> None:
        if self._pending.get(user_id) is not pending:
            return
        del self._pending[user_id]
        self._online.discard(user_id)
        logger.info("[Presence] %s offline", user_id)
        await self._emit(user_id, False)

    async def _emit(self, user_id: str, online: bool) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier(user_id, online)
        except Exception as e:
            logger.error(
                "[Presence] Failed to announce %s for %s: %s",
                "online" if online else "offline", user_id, e,
            )

    def close(self) -> None:
        """Cancel every pending offline timer."""
        for pending in self._pending.values():
            if pending.handle is not None:
                pending.handle.cancel()
        self._pending.clear()
