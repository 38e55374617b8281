"""One live, identity-bound WebSocket and its ordered outbox.

Everything sent to a connection goes through ``enqueue``, which never blocks:
frames land on a bounded queue drained by a single writer task, so they reach
the socket in enqueue order. A full outbox or a failed write counts as a
transient delivery failure; the connection stops accepting frames and reports
itself through ``on_failure`` so the owner can drop it.
"""
import asyncio
import logging
import uuid
from typing import Any, Callable, Optional, Set

from .errors import TransientDeliveryError
from .events import NewMessage, ServerEvent

logger = logging.getLogger(__name__)

# Default outbox capacity per connection
DEFAULT_OUTBOX_SIZE = 256


class Connection:
    """A WebSocket bound to one user.

    Attributes:
        id: Server-assigned connection ID.
        user_id: Verified user ID.
        user_name: Display name from the identity.
        rooms: Room IDs this connection has joined.
    """

    def __init__(
        self,
        websocket: Any,
        user_id: str,
        user_name: str,
        outbox_size: int = DEFAULT_OUTBOX_SIZE,
        on_delivered: Optional[Callable[["Connection", NewMessage], None]] = None,
        on_failure: Optional[Callable[["Connection", TransientDeliveryError], None]] = None,
    ) -> None:
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.user_id = user_id
        self.user_name = user_name
        self.rooms: Set[str] = set()
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=outbox_size)
        self._writer: Optional[asyncio.Task] = None
        self._closed = False
        self._on_delivered = on_delivered
        self._on_failure = on_failure

    def __repr__(self) -> str:
        return f"Connection(id={self.id!r}, user_id={self.user_id!r})"

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the writer task. Must be called from the event loop."""
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain(), name=f"outbox-{self.id}")

    def enqueue(self, event: ServerEvent) -> bool:
        """Queue *event* for this connection without waiting.

        Returns:
            True if queued, False if the connection is closed or its outbox is full.
        """
        if self._closed:
            return False
        try:
            self._outbox.put_nowait(event)
        except asyncio.QueueFull:
            self._fail(TransientDeliveryError(
                f"Outbox full for connection {self.id} (user {self.user_id})",
                connection_id=self.id,
            ))
            return False
        return True

    async def _drain(self) -> None:
        while True:
            event = await self._outbox.get()
            try:
                if self._closed:
                    continue
                try:
                    await self.websocket.send_json(event.to_wire())
                except Exception as exc:
                    self._fail(TransientDeliveryError(
                        f"Write to connection {self.id} (user {self.user_id}) failed: {exc}",
                        connection_id=self.id,
                    ))
                    continue
                if isinstance(event, NewMessage) and self._on_delivered is not None:
                    self._on_delivered(self, event)
            finally:
                self._outbox.task_done()

    def _fail(self, error: TransientDeliveryError) -> None:
        if self._closed:
            return
        logger.warning("[Connection] %s", error.message)
        self._closed = True
        if self._on_failure is not None:
            self._on_failure(self, error)

    async def flush(self) -> None:
        """Wait until every queued frame has been written or discarded."""
        await self._outbox.join()

    async def close(self) -> None:
        """Stop accepting frames and stop the writer. Idempotent."""
        self._closed = True
        writer, self._writer = self._writer, None
        if writer is None or writer.done():
            return
        writer.cancel()
        try:
            await writer
        except asyncio.CancelledError:
            pass
