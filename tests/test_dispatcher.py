"""Tests for the dispatcher worker pool."""

import asyncio
import threading

import pytest

from vmcluster_operator.dispatcher import Dispatcher, Result
from vmcluster_operator.models import ClusterKey
from vmcluster_operator.workqueue import ExponentialBackoff, WorkQueue

A = ClusterKey("ns", "a")
B = ClusterKey("ns", "b")


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestProcessOutcomes:

    @pytest.mark.asyncio
    async def test_success_forgets_backoff(self):
        queue = WorkQueue()
        queue.backoff.when(A)

        async def reconcile(key):
            return Result()

        assert await Dispatcher(queue, reconcile).process(A) is None
        assert queue.backoff.retries(A) == 0
        assert not queue.pending_delay(A)

    @pytest.mark.asyncio
    async def test_requeue_after_schedules_delay(self):
        queue = WorkQueue()
        queue.backoff.when(A)

        async def reconcile(key):
            return Result(requeue=True, requeue_after=10)

        assert await Dispatcher(queue, reconcile).process(A) == 10
        assert queue.pending_delay(A)
        assert queue.backoff.retries(A) == 0
        queue.shut_down()

    @pytest.mark.asyncio
    async def test_error_backs_off(self):
        queue = WorkQueue(ExponentialBackoff(base_delay=2.0))

        async def reconcile(key):
            raise RuntimeError("store down")

        dispatcher = Dispatcher(queue, reconcile)
        assert await dispatcher.process(A) == 2.0
        queue.shut_down()
        assert queue.backoff.retries(A) == 1

    @pytest.mark.asyncio
    async def test_backoff_grows_across_failures(self):
        queue = WorkQueue(ExponentialBackoff(base_delay=1.0))

        async def reconcile(key):
            raise RuntimeError("store down")

        dispatcher = Dispatcher(queue, reconcile)
        delays = [await dispatcher.process(A) for _ in range(3)]
        queue.shut_down()
        assert delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_requeue_without_delay_uses_backoff(self):
        queue = WorkQueue(ExponentialBackoff(base_delay=0.5))

        async def reconcile(key):
            return Result(requeue=True)

        assert await Dispatcher(queue, reconcile).process(A) == 0.5
        queue.shut_down()

    @pytest.mark.asyncio
    async def test_sync_reconcile_runs_off_loop(self):
        loop_thread = threading.get_ident()
        seen = []

        def reconcile(key):
            seen.append(threading.get_ident())
            return Result()

        await Dispatcher(WorkQueue(), reconcile).process(A)
        assert seen and seen[0] != loop_thread

    def test_workers_must_be_positive(self):
        with pytest.raises(ValueError):
            Dispatcher(None, lambda key: Result(), workers=0)


class TestWorkers:

    @pytest.mark.asyncio
    async def test_enqueues_during_a_pass_yield_one_more_pass(self):
        queue = WorkQueue()
        calls = []
        started = asyncio.Event()
        release = asyncio.Event()

        async def reconcile(key):
            calls.append(key)
            if len(calls) == 1:
                started.set()
                await release.wait()
            return Result()

        dispatcher = Dispatcher(queue, reconcile, workers=3)
        await dispatcher.start()
        queue.add(A)
        await started.wait()
        for _ in range(7):
            queue.add(A)
        release.set()

        await wait_until(lambda: len(calls) == 2)
        await asyncio.sleep(0.05)
        await dispatcher.stop()
        assert calls == [A, A]

    @pytest.mark.asyncio
    async def test_same_key_never_runs_concurrently(self):
        queue = WorkQueue()
        active = {"now": 0, "max": 0}
        passes = []

        async def reconcile(key):
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
            await asyncio.sleep(0.01)
            active["now"] -= 1
            passes.append(key)
            return Result()

        dispatcher = Dispatcher(queue, reconcile, workers=4)
        await dispatcher.start()
        for _ in range(5):
            queue.add(A)
            await asyncio.sleep(0.005)
        await wait_until(lambda: not queue.is_leased(A) and len(queue) == 0 and passes)
        await dispatcher.stop()
        assert active["max"] == 1

    @pytest.mark.asyncio
    async def test_different_keys_run_in_parallel(self):
        queue = WorkQueue()
        running = set()
        both = asyncio.Event()

        async def reconcile(key):
            running.add(key)
            if len(running) == 2:
                both.set()
            await asyncio.wait_for(both.wait(), 1)
            return Result()

        dispatcher = Dispatcher(queue, reconcile, workers=2)
        await dispatcher.start()
        queue.add(A)
        queue.add(B)
        await asyncio.wait_for(both.wait(), 1)
        await dispatcher.stop()
        assert running == {A, B}

    @pytest.mark.asyncio
    async def test_failed_key_retried(self):
        queue = WorkQueue(ExponentialBackoff(base_delay=0.01))
        attempts = []

        async def reconcile(key):
            attempts.append(key)
            if len(attempts) < 3:
                raise RuntimeError("transient")
            return Result()

        dispatcher = Dispatcher(queue, reconcile)
        await dispatcher.start()
        queue.add(A)
        await wait_until(lambda: len(attempts) == 3)
        await dispatcher.stop()
        assert queue.backoff.retries(A) == 0

    @pytest.mark.asyncio
    async def test_stop_finishes_workers(self):
        async def reconcile(key):
            return Result()

        dispatcher = Dispatcher(WorkQueue(), reconcile, workers=2)
        await dispatcher.start()
        assert dispatcher.running
        await dispatcher.stop()
        assert not dispatcher.running
