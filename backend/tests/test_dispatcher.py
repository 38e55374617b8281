"""Tests for the keyed dispatcher and background task tracking."""
import asyncio
import logging

import pytest

from app.realtime.dispatcher import BackgroundTasks, KeyedDispatcher


class TestKeyedDispatcher:
    @pytest.mark.asyncio
    async def test_jobs_of_one_key_run_in_submission_order(self):
        dispatcher = KeyedDispatcher("test")
        seen = []

        async def job(n, delay):
            await asyncio.sleep(delay)
            seen.append(n)
            return n

        results = await asyncio.gather(*[
            dispatcher.submit("room-1", job, n, 0.01 * (5 - n)) for n in range(5)
        ])

        assert results == [0, 1, 2, 3, 4]
        assert seen == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        dispatcher = KeyedDispatcher("test")
        released = asyncio.Event()

        async def waiter():
            await released.wait()
            return "waited"

        async def releaser():
            released.set()
            return "released"

        results = await asyncio.wait_for(
            asyncio.gather(
                dispatcher.submit("a", waiter),
                dispatcher.submit("b", releaser),
            ),
            timeout=1.0,
        )

        assert results == ["waited", "released"]

    @pytest.mark.asyncio
    async def test_submit_propagates_job_errors(self):
        dispatcher = KeyedDispatcher("test")

        async def broken():
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            await dispatcher.submit("k", broken)

        # The key keeps working after a failure
        async def fine():
            return 42

        assert await dispatcher.submit("k", fine) == 42

    @pytest.mark.asyncio
    async def test_post_logs_failures(self, caplog):
        dispatcher = KeyedDispatcher("test")

        async def broken():
            raise RuntimeError("posted job exploded")

        with caplog.at_level(logging.ERROR, logger="app.realtime.dispatcher"):
            future = dispatcher.post("k", broken)
            with pytest.raises(RuntimeError):
                await future
            await asyncio.sleep(0)

        assert "posted job exploded" in caplog.text

    @pytest.mark.asyncio
    async def test_idle_keys_release_their_worker(self):
        dispatcher = KeyedDispatcher("test")

        async def noop():
            return None

        await dispatcher.submit("k", noop)
        await asyncio.sleep(0)

        assert dispatcher.active_keys() == set()
        assert dispatcher.pending("k") == 0

    @pytest.mark.asyncio
    async def test_pending_counts_queued_jobs(self):
        dispatcher = KeyedDispatcher("test")
        gate = asyncio.Event()

        async def blocked():
            await gate.wait()

        first = dispatcher.post("k", blocked)
        second = dispatcher.post("k", blocked)
        await asyncio.sleep(0)

        assert dispatcher.pending("k") == 1
        assert dispatcher.active_keys() == {"k"}

        gate.set()
        await asyncio.gather(first, second)

    @pytest.mark.asyncio
    async def test_close_cancels_running_and_queued_jobs(self):
        dispatcher = KeyedDispatcher("test")
        gate = asyncio.Event()

        async def blocked():
            await gate.wait()

        running = dispatcher.post("k", blocked)
        queued = dispatcher.post("k", blocked)
        await asyncio.sleep(0)

        await dispatcher.close()

        assert running.cancelled()
        assert queued.cancelled()
        assert dispatcher.active_keys() == set()


class TestBackgroundTasks:
    @pytest.mark.asyncio
    async def test_wait_covers_tasks_spawned_meanwhile(self):
        tasks = BackgroundTasks()
        done = []

        async def child():
            done.append("child")

        async def parent():
            tasks.spawn(child(), name="child")
            done.append("parent")

        tasks.spawn(parent(), name="parent")
        await tasks.wait()

        assert sorted(done) == ["child", "parent"]
        assert len(tasks) == 0

    @pytest.mark.asyncio
    async def test_failures_are_logged(self, caplog):
        tasks = BackgroundTasks()

        async def broken():
            raise RuntimeError("background failure")

        with caplog.at_level(logging.ERROR, logger="app.realtime.dispatcher"):
            tasks.spawn(broken(), name="broken-task")
            await tasks.wait()
            await asyncio.sleep(0)

        assert "broken-task" in caplog.text

    @pytest.mark.asyncio
    async def test_close_cancels_outstanding_tasks(self):
        tasks = BackgroundTasks()
        task = tasks.spawn(asyncio.sleep(10), name="sleeper")

        await tasks.close()

        assert task.cancelled()
        assert len(tasks) == 0
