"""Per-key serialization of state changes.

Each key (a room ID or a user ID) owns a mailbox and at most one worker task.
Jobs for the same key run strictly one at a time in submission order; jobs for
different keys run concurrently. A worker exits once its mailbox drains, so idle
keys cost nothing.

A job must never await another job of the same dispatcher and key: the worker
is busy running the caller, so the inner job would never start.

Usage:
    rooms = KeyedDispatcher("room")
    message = await rooms.submit(room_id, engine._accept, room, draft)
    rooms.post(room_id, typing._expire_entry, room_id, user_id, token)
"""
import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set, Tuple

logger = logging.getLogger(__name__)

Job = Tuple[Callable[..., Awaitable[Any]], tuple, asyncio.Future]


class KeyedDispatcher:
    """Runs coroutine jobs one at a time per key."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._mailboxes: Dict[str, Deque[Job]] = {}
        self._workers: Dict[str, asyncio.Task] = {}

    def _enqueue(self, key: str, fn: Callable[..., Awaitable[Any]], args: tuple) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._mailboxes.setdefault(key, deque()).append((fn, args, future))
        if key not in self._workers:
            self._workers[key] = loop.create_task(
                self._run(key), name=f"{self.name}-dispatch-{key}"
            )
        return future

    async def submit(self, key: str, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Queue ``fn(*args)`` on *key* and wait for its result."""
        return await self._enqueue(key, fn, args)

    def post(self, key: str, fn: Callable[..., Awaitable[Any]], *args: Any) -> asyncio.Future:
        """Queue ``fn(*args)`` on *key* without waiting. Failures are logged."""
        future = self._enqueue(key, fn, args)
        future.add_done_callback(self._log_failure)
        return future

    def pending(self, key: str) -> int:
        """Number of jobs queued (not yet started) for *key*."""
        return len(self._mailboxes.get(key, ()))

    def active_keys(self) -> Set[str]:
        return set(self._workers)

    async def _run(self, key: str) -> None:
        worker = asyncio.current_task()
        while True:
            mailbox = self._mailboxes.get(key)
            if not mailbox:
                self._mailboxes.pop(key, None)
                self._workers.pop(key, None)
                return
            fn, args, future = mailbox.popleft()
            if future.done():
                # Caller gave up before the job started
                continue
            try:
                result = await fn(*args)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                if worker is not None and worker.cancelling():
                    self._workers.pop(key, None)
                    raise
            except Exception as exc:
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)

    def _log_failure(self, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error(
                "[Dispatcher:%s] Posted job failed: %s", self.name, exc, exc_info=exc
            )

    async def close(self) -> None:
        """Cancel every worker and fail queued jobs."""
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        for mailbox in self._mailboxes.values():
            for _, _, future in mailbox:
                if not future.done():
                    future.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._mailboxes.clear()
        self._workers.clear()
        logger.debug("[Dispatcher:%s] closed", self.name)


class BackgroundTasks:
    """Tracks fire-and-forget tasks so none is garbage collected or lost silently."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[Any], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "[Tasks] Background task %s failed: %s", task.get_name(), exc, exc_info=exc
            )

    def __len__(self) -> int:
        return len(self._tasks)

    async def wait(self) -> None:
        """Wait until every tracked task (including ones spawned meanwhile) finishes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
